import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .arr import ArrClient, as_bool, safe_int
from .config import AppConfig, ArrConfig, ServiceInstance

HISTORY_PAGE_SIZE = 100
QUEUE_SCAN_PAGE_SIZE = 1000


class UnsupportedProviderError(ValueError):
    pass


def parse_arr_datetime_utc(value: Any) -> datetime | None:
    """Parse Arr date strings into a timezone-aware UTC datetime (best effort)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        # Common: "2026-02-24T01:23:45Z"
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        # Common: "2026-02-24" (date-only)
        if len(s) == 10 and s.count("-") == 2:
            s = s + "T00:00:00+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_content_released(release_date: Any, now: datetime | None = None) -> bool:
    """Items without a release date, or dated in the future, cannot be downloaded yet."""
    dt = parse_arr_datetime_utc(release_date)
    if not dt:
        return False
    return dt <= (now or datetime.now(timezone.utc))


@dataclass(frozen=True)
class CandidateItem:
    """A wanted episode, movie, album or book in the shape the filters expect."""

    media_type: str
    item_id: int
    parent_id: int
    title: str
    parent_title: str
    tags: tuple[int, ...]
    quality_profile_id: int
    status: str
    release_date: str | None
    monitored: bool
    year: int
    season_number: int | None = None
    episode_number: int | None = None


@dataclass(frozen=True)
class SearchUnit:
    # "season", "episode", "movie", "album" or "book"
    media_type: str
    # Series id for season units, the item id otherwise.
    media_id: int
    season_number: int | None
    parent_id: int
    title: str
    history_title: str
    # Episode-equivalent cost against the per-run budget.
    cost: int = 1
    item_ids: tuple[int, ...] = ()

    @property
    def history_key(self) -> str:
        season = self.season_number if self.season_number is not None else -1
        return f"{self.media_type}:{self.media_id}:{season}"


class ProviderAdapter:
    """
    Capability set shared by all provider families. The orchestrator only
    talks to this interface; subclasses supply endpoints and field mapping.
    """

    service = ""
    media_label = "items"
    catalog_path: str | None = None
    wanted_sort_key = "releaseDate"
    group_by_season = False
    # Record fields used to correlate history/queue rows with searched units.
    correlation_fields: tuple[str, ...] = ()

    def __init__(self, client: ArrClient) -> None:
        self.client = client

    @property
    def calls_made(self) -> int:
        return self.client.calls_made

    def _path(self, suffix: str) -> str:
        return f"{self.client.api_prefix}{suffix}"

    def get_queue_size(self) -> int:
        return self.client.get_total_records(self._path("/queue"))

    def list_catalog(self) -> dict[int, dict[str, Any]]:
        if not self.catalog_path:
            return {}
        payload = self.client.request("GET", self._path(self.catalog_path))
        if not isinstance(payload, list):
            return {}
        catalog: dict[int, dict[str, Any]] = {}
        for row in payload:
            if not isinstance(row, dict):
                continue
            parent_id = safe_int(row.get("id"))
            if parent_id:
                catalog[parent_id] = row
        return catalog

    def list_wanted(self, mode: str, page: int, page_size: int) -> list[dict[str, Any]]:
        endpoint = "/wanted/missing" if mode == "missing" else "/wanted/cutoff"
        return self.client.get_records(
            self._path(endpoint),
            params={
                "page": int(page),
                "pageSize": int(page_size),
                "sortKey": self.wanted_sort_key,
                "sortDirection": "descending",
            },
        )

    def list_recent_history(self, since: datetime) -> list[dict[str, Any]]:
        rows = self.client.get_records(
            self._path("/history"),
            params={
                "page": 1,
                "pageSize": HISTORY_PAGE_SIZE,
                "sortKey": "date",
                "sortDirection": "descending",
                "eventType": "grabbed",
            },
        )
        out: list[dict[str, Any]] = []
        for row in rows:
            event_type = row.get("eventType")
            if isinstance(event_type, str) and event_type.lower() != "grabbed":
                continue
            event_dt = parse_arr_datetime_utc(row.get("date"))
            if not event_dt or event_dt < since:
                continue
            out.append(row)
        return out

    def list_queue(self) -> list[dict[str, Any]]:
        return self.client.get_records(self._path("/queue"), params={"page": 1, "pageSize": QUEUE_SCAN_PAGE_SIZE})

    def dispatch_search(self, unit: SearchUnit) -> None:
        self.client.command(self.command_body(unit))

    def command_body(self, unit: SearchUnit) -> dict[str, Any]:
        raise NotImplementedError

    def normalize(self, record: dict[str, Any], catalog: dict[int, dict[str, Any]]) -> CandidateItem | None:
        raise NotImplementedError

    def correlation_ids(self, units: list[SearchUnit]) -> dict[str, set[int]]:
        raise NotImplementedError


class SonarrAdapter(ProviderAdapter):
    service = "sonarr"
    media_label = "episodes"
    catalog_path = "/series"
    wanted_sort_key = "airDateUtc"
    group_by_season = True
    correlation_fields = ("seriesId", "episodeId")

    def normalize(self, record: dict[str, Any], catalog: dict[int, dict[str, Any]]) -> CandidateItem | None:
        episode_id = safe_int(record.get("id") or record.get("episodeId"))
        nested = record.get("series") if isinstance(record.get("series"), dict) else {}
        series_id = safe_int(record.get("seriesId") or nested.get("id"))
        series = catalog.get(series_id)
        if not episode_id or series is None:
            return None
        series_title = str(series.get("title") or nested.get("title") or "Unknown")
        season = safe_int(record.get("seasonNumber"))
        episode = safe_int(record.get("episodeNumber"))
        air_date = record.get("airDateUtc") or record.get("airDate")
        return CandidateItem(
            media_type="episode",
            item_id=episode_id,
            parent_id=series_id,
            title=f"{series_title} S{season:02d}E{episode:02d}",
            parent_title=series_title,
            tags=tuple(safe_int(t) for t in (series.get("tags") or [])),
            quality_profile_id=safe_int(series.get("qualityProfileId")),
            status=str(series.get("status") or ""),
            release_date=str(air_date).strip() if air_date else None,
            monitored=bool(as_bool(record.get("monitored"))) and bool(as_bool(series.get("monitored"))),
            year=safe_int(series.get("year")),
            season_number=season,
            episode_number=episode,
        )

    def command_body(self, unit: SearchUnit) -> dict[str, Any]:
        if unit.media_type == "season":
            return {"name": "SeasonSearch", "seriesId": int(unit.media_id), "seasonNumber": int(unit.season_number or 0)}
        return {"name": "EpisodeSearch", "episodeIds": [int(unit.media_id)]}

    def correlation_ids(self, units: list[SearchUnit]) -> dict[str, set[int]]:
        return {
            "seriesId": {u.parent_id for u in units if u.parent_id},
            "episodeId": {u.media_id for u in units if u.media_type == "episode"},
        }


class RadarrAdapter(ProviderAdapter):
    service = "radarr"
    media_label = "movies"
    # Wanted movie records carry tags, profile and status themselves.
    catalog_path = None
    wanted_sort_key = "digitalRelease"
    correlation_fields = ("movieId",)

    def normalize(self, record: dict[str, Any], catalog: dict[int, dict[str, Any]]) -> CandidateItem | None:
        movie_id = safe_int(record.get("id") or record.get("movieId"))
        title = record.get("title")
        if not movie_id or not title:
            return None
        year = safe_int(record.get("year"))
        release = record.get("digitalRelease") or record.get("physicalRelease") or record.get("inCinemas")
        return CandidateItem(
            media_type="movie",
            item_id=movie_id,
            parent_id=0,
            title=f"{title} ({year or '?'})",
            parent_title="",
            tags=tuple(safe_int(t) for t in (record.get("tags") or [])),
            quality_profile_id=safe_int(record.get("qualityProfileId")),
            status=str(record.get("status") or ""),
            release_date=str(release) if release else None,
            monitored=bool(as_bool(record.get("monitored"))),
            year=year,
        )

    def command_body(self, unit: SearchUnit) -> dict[str, Any]:
        return {"name": "MoviesSearch", "movieIds": [int(unit.media_id)]}

    def correlation_ids(self, units: list[SearchUnit]) -> dict[str, set[int]]:
        return {"movieId": {u.media_id for u in units}}


class _ReleaseDateAdapter(ProviderAdapter):
    """Lidarr and Readarr: items hang off a parent (artist/author) with its own filters."""

    parent_id_field = ""
    parent_name_field = ""
    unknown_parent = "Unknown"
    media_type = ""

    def normalize(self, record: dict[str, Any], catalog: dict[int, dict[str, Any]]) -> CandidateItem | None:
        item_id = safe_int(record.get("id"))
        title = record.get("title")
        parent_id = safe_int(record.get(self.parent_id_field))
        parent = catalog.get(parent_id)
        if not item_id or not title or parent is None:
            return None
        parent_name = str(parent.get(self.parent_name_field) or self.unknown_parent)
        release = record.get("releaseDate")
        release_str = str(release) if release else None
        return CandidateItem(
            media_type=self.media_type,
            item_id=item_id,
            parent_id=parent_id,
            title=f"{parent_name} - {title}",
            parent_title=parent_name,
            tags=tuple(safe_int(t) for t in (parent.get("tags") or [])),
            quality_profile_id=safe_int(parent.get("qualityProfileId")),
            status=str(parent.get("status") or ""),
            release_date=release_str,
            monitored=bool(as_bool(record.get("monitored"))) and bool(as_bool(parent.get("monitored"))),
            year=safe_int((release_str or "")[:4]),
        )


class LidarrAdapter(_ReleaseDateAdapter):
    service = "lidarr"
    media_label = "albums"
    media_type = "album"
    catalog_path = "/artist"
    parent_id_field = "artistId"
    parent_name_field = "artistName"
    unknown_parent = "Unknown Artist"
    correlation_fields = ("albumId",)

    def command_body(self, unit: SearchUnit) -> dict[str, Any]:
        return {"name": "AlbumSearch", "albumIds": [int(unit.media_id)]}

    def correlation_ids(self, units: list[SearchUnit]) -> dict[str, set[int]]:
        return {"albumId": {u.media_id for u in units}}


class ReadarrAdapter(_ReleaseDateAdapter):
    service = "readarr"
    media_label = "books"
    media_type = "book"
    catalog_path = "/author"
    parent_id_field = "authorId"
    parent_name_field = "authorName"
    unknown_parent = "Unknown Author"
    correlation_fields = ("bookId",)

    def command_body(self, unit: SearchUnit) -> dict[str, Any]:
        return {"name": "BookSearch", "bookIds": [int(unit.media_id)]}

    def correlation_ids(self, units: list[SearchUnit]) -> dict[str, set[int]]:
        return {"bookId": {u.media_id for u in units}}


ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "sonarr": SonarrAdapter,
    "radarr": RadarrAdapter,
    "lidarr": LidarrAdapter,
    "readarr": ReadarrAdapter,
}


def create_adapter(
    instance: ServiceInstance,
    app: AppConfig,
    logger: logging.Logger,
    api_key: str | None = None,
) -> ProviderAdapter:
    service = str(instance.service or "").strip().lower()
    adapter_cls = ADAPTERS.get(service)
    if adapter_cls is None:
        raise UnsupportedProviderError(f"Unsupported service type: {instance.service}")
    client = ArrClient(
        name=service,
        config=ArrConfig(enabled=instance.arr.enabled, url=instance.arr.url, api_key=api_key or instance.arr.api_key),
        timeout_seconds=app.request_timeout_seconds,
        verify_ssl=app.verify_ssl,
        logger=logger,
    )
    return adapter_cls(client)
