import logging
import random
from datetime import datetime, timezone

from arrhunt.config import AppConfig, ArrConfig, HuntConfig, ServiceInstance
from arrhunt.engine import HuntEngine, wanted_fetch_size
from arrhunt.grabs import GrabDetector
from arrhunt.history import SearchHistoryLedger
from arrhunt.providers import RadarrAdapter, SonarrAdapter, UnsupportedProviderError
from arrhunt.state import StateStore

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class _FakeClient:
    api_prefix = "/api/v3"


class _FakeArr:
    """Canned data behind the real field mapping of the family it is mixed into."""

    def __init__(self, wanted=None, catalog=None, queue_size=0, queue_exc=None, fail_ids=(), history_exc=None, queue=None):  # noqa: ANN001
        super().__init__(_FakeClient())
        self.wanted = wanted or []
        self.catalog = catalog or {}
        self.queue_size = queue_size
        self.queue_exc = queue_exc
        self.fail_ids = set(fail_ids)
        self.history_exc = history_exc
        self.queue = queue or []
        self.dispatched = []
        self.wanted_pages = []
        self.calls = 0

    @property
    def calls_made(self) -> int:
        return self.calls

    def get_queue_size(self) -> int:
        self.calls += 1
        if self.queue_exc:
            raise self.queue_exc
        return self.queue_size

    def list_catalog(self):
        self.calls += 1
        return self.catalog

    def list_wanted(self, mode, page, page_size):  # noqa: ANN001
        self.calls += 1
        self.wanted_pages.append(page)
        return self.wanted if page == 1 else []

    def dispatch_search(self, unit) -> None:  # noqa: ANN001
        self.calls += 1
        self.dispatched.append(unit)
        if unit.media_id in self.fail_ids:
            raise RuntimeError(f"boom {unit.media_id}")

    def list_recent_history(self, since):  # noqa: ANN001
        self.calls += 1
        if self.history_exc:
            raise self.history_exc
        return []

    def list_queue(self):
        self.calls += 1
        return self.queue


class _FakeSonarr(_FakeArr, SonarrAdapter):
    pass


class _FakeRadarr(_FakeArr, RadarrAdapter):
    pass


SERIES = {10: {"id": 10, "title": "Show", "monitored": True, "status": "continuing", "qualityProfileId": 1, "tags": []}}


def _episode(episode_id: int, season: int = 1, air: str = "2025-01-01T00:00:00Z") -> dict:
    return {"id": episode_id, "seriesId": 10, "seasonNumber": season, "episodeNumber": episode_id, "airDateUtc": air, "monitored": True}


def _movie(movie_id: int) -> dict:
    return {"id": movie_id, "title": f"Movie {movie_id}", "year": 2020, "digitalRelease": "2021-01-01T00:00:00Z", "monitored": True}


def _instance(service: str = "sonarr", **hunt) -> ServiceInstance:  # noqa: ANN003
    hunt.setdefault("id", f"{service}-1")
    return ServiceInstance(
        instance_id=1,
        instance_name=f"{service.title()} Main",
        service=service,
        enabled=True,
        arr=ArrConfig(enabled=True, url="http://example", api_key="abc"),
        hunt=HuntConfig(**hunt),
    )


def _engine(tmp_path, adapter, sleeps=None) -> HuntEngine:  # noqa: ANN001
    sleeps = sleeps if sleeps is not None else []
    app = AppConfig(db_path=str(tmp_path / "x.db"), request_timeout_seconds=5, verify_ssl=True, log_level="INFO")

    def _factory(instance, app, logger, api_key=None):  # noqa: ANN001
        if isinstance(adapter, Exception):
            raise adapter
        return adapter

    return HuntEngine(
        app=app,
        store=StateStore(app.db_path),
        logger=logging.getLogger("test"),
        sleep=sleeps.append,
        rng=random.Random(1),
        adapter_factory=_factory,
        grab_detector=GrabDetector(settle_seconds=0, sleep=sleeps.append, logger=logging.getLogger("test")),
    )


def test_unreleased_items_complete_with_nothing_searched(tmp_path) -> None:
    wanted = [_episode(i, air="2099-01-01T00:00:00Z") for i in range(1, 11)]
    adapter = _FakeSonarr(wanted=wanted, catalog=SERIES)
    result = _engine(tmp_path, adapter).execute_hunt(_instance(missing_batch_size=5), mode="missing", now=NOW)
    assert result.status == "completed"
    assert result.items_searched == 0
    assert "match the current filters" in result.message
    assert adapter.dispatched == []


def test_queue_over_threshold_skips(tmp_path) -> None:
    adapter = _FakeSonarr(wanted=[_episode(1)], catalog=SERIES, queue_size=12)
    result = _engine(tmp_path, adapter).execute_hunt(_instance(queue_threshold=10), mode="missing", now=NOW)
    assert result.status == "skipped"
    assert result.items_searched == 0
    assert adapter.wanted_pages == []


def test_unreachable_queue_fails_closed(tmp_path) -> None:
    adapter = _FakeSonarr(wanted=[_episode(1)], catalog=SERIES, queue_exc=RuntimeError("refused"))
    result = _engine(tmp_path, adapter).execute_hunt(_instance(), mode="missing", now=NOW)
    assert result.status == "skipped"
    assert "Queue check failed" in result.message


def test_zero_threshold_disables_queue_check(tmp_path) -> None:
    adapter = _FakeSonarr(wanted=[_episode(1)], catalog=SERIES, queue_exc=RuntimeError("refused"))
    result = _engine(tmp_path, adapter).execute_hunt(_instance(queue_threshold=0), mode="missing", now=NOW)
    assert result.status == "completed"
    assert result.items_searched == 1


def test_full_season_dispatches_one_season_search(tmp_path) -> None:
    adapter = _FakeSonarr(wanted=[_episode(i) for i in range(1, 5)], catalog=SERIES)
    engine = _engine(tmp_path, adapter)
    result = engine.execute_hunt(_instance(missing_batch_size=5), mode="missing", now=NOW)
    assert result.status == "completed"
    assert result.items_searched == 4
    assert len(adapter.dispatched) == 1
    assert adapter.command_body(adapter.dispatched[0]) == {"name": "SeasonSearch", "seriesId": 10, "seasonNumber": 1}
    assert result.searched_items == ("Show Season 1 (4 episodes)",)

    ledger = SearchHistoryLedger.load(engine.store, "sonarr-1", "missing", 7, now=NOW)
    assert ledger.was_recently_searched("season", 10, 1)


def test_one_failed_dispatch_makes_partial(tmp_path) -> None:
    sleeps: list[float] = []
    adapter = _FakeRadarr(wanted=[_movie(1), _movie(2), _movie(3)], fail_ids={2})
    engine = _engine(tmp_path, adapter, sleeps)
    result = engine.execute_hunt(_instance("radarr", missing_batch_size=3), mode="missing", now=NOW)
    assert result.status == "partial"
    assert result.items_searched == 2
    assert len(result.errors) == 1
    assert "boom 2" in result.errors[0]
    assert len(adapter.dispatched) == 3
    # Fixed pause between dispatches, none before the first.
    assert sleeps == [5.0, 5.0]

    ledger = SearchHistoryLedger.load(engine.store, "radarr-1", "missing", 7, now=NOW)
    assert ledger.was_recently_searched("movie", 1)
    # The failed attempt is on cooldown as well.
    assert ledger.was_recently_searched("movie", 2)
    assert sorted(result.searched_items) == ["Movie 1 (2020)", "Movie 2 (2020)", "Movie 3 (2020)"]

    again = engine.execute_hunt(_instance("radarr", missing_batch_size=3), mode="missing", now=NOW)
    assert again.status == "completed"
    assert again.items_searched == 0
    assert len(adapter.dispatched) == 3


def test_queue_fallback_reports_grab(tmp_path) -> None:
    adapter = _FakeRadarr(
        wanted=[_movie(1)],
        history_exc=RuntimeError("history down"),
        queue=[{"movieId": 1, "title": "Movie.1.2020.1080p"}, {"movieId": 99, "title": "Other"}],
    )
    result = _engine(tmp_path, adapter).execute_hunt(_instance("radarr"), mode="missing", now=NOW)
    assert result.status == "completed"
    assert result.items_grabbed == 1
    assert result.grabbed_items[0].title == "Movie.1.2020.1080p"


def test_recently_searched_items_are_reported(tmp_path) -> None:
    adapter = _FakeRadarr(wanted=[_movie(1), _movie(2)])
    engine = _engine(tmp_path, adapter)
    first = engine.execute_hunt(_instance("radarr", missing_batch_size=5), mode="missing", now=NOW)
    assert first.items_searched == 2

    second = engine.execute_hunt(_instance("radarr", missing_batch_size=5), mode="missing", now=NOW)
    assert second.status == "completed"
    assert second.items_searched == 0
    assert second.message == "All 2 eligible movies were recently searched"


def test_budget_limits_dispatch(tmp_path) -> None:
    adapter = _FakeRadarr(wanted=[_movie(i) for i in range(1, 11)])
    result = _engine(tmp_path, adapter).execute_hunt(_instance("radarr", missing_batch_size=3), mode="missing", now=NOW)
    assert result.items_searched == 3
    assert len(adapter.dispatched) == 3


def test_empty_wanted_list(tmp_path) -> None:
    adapter = _FakeRadarr(wanted=[])
    result = _engine(tmp_path, adapter).execute_hunt(_instance("radarr"), mode="upgrade", now=NOW)
    assert result.status == "completed"
    assert result.message == "No upgradeable movies found"


def test_page_rotation_wraps_to_first_page(tmp_path) -> None:
    adapter = _FakeRadarr(wanted=[_movie(1)])
    engine = _engine(tmp_path, adapter)
    for media_id in range(1000, 1000 + wanted_fetch_size(5)):
        engine.store.record_search("radarr-1", "missing", "movie", media_id, None, "old", searched_at=NOW)

    result = engine.execute_hunt(_instance("radarr", missing_batch_size=5), mode="missing", now=NOW)
    assert adapter.wanted_pages == [2, 1]
    assert result.items_searched == 1


def test_fetch_failure_is_an_error(tmp_path) -> None:
    adapter = _FakeRadarr(wanted=[_movie(1)])

    def _broken():
        raise RuntimeError("catalog down")

    adapter.list_catalog = _broken
    result = _engine(tmp_path, adapter).execute_hunt(_instance("radarr"), mode="missing", now=NOW)
    assert result.status == "error"
    assert adapter.dispatched == []


def test_unsupported_provider_is_an_error(tmp_path) -> None:
    engine = _engine(tmp_path, UnsupportedProviderError("Unsupported service type: whisparr"))
    result = engine.execute_hunt(_instance("whisparr"), mode="missing", now=NOW)
    assert result.status == "error"
    assert "whisparr" in result.message
    assert result.as_dict()["items_searched"] == 0


def test_upgrade_season_bigger_than_batch_searches_episodes(tmp_path) -> None:
    adapter = _FakeSonarr(wanted=[_episode(i) for i in range(1, 4)], catalog=SERIES)
    engine = _engine(tmp_path, adapter)
    result = engine.execute_hunt(_instance(upgrade_batch_size=2), mode="upgrade", now=NOW)
    assert result.status == "completed"
    assert result.items_searched == 2
    assert [adapter.command_body(u)["name"] for u in adapter.dispatched] == ["EpisodeSearch", "EpisodeSearch"]

    # The remaining episode is picked up by the next run.
    later = engine.execute_hunt(_instance(upgrade_batch_size=2), mode="upgrade", now=NOW)
    assert later.items_searched == 1
    assert len({u.media_id for u in adapter.dispatched}) == 3
