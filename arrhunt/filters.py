"""
Hunt filters.

Turns the raw filter fields of a hunt configuration into a ``ParsedFilters``
value and evaluates candidate items against it. Status filters are
hierarchical: selecting an early lifecycle status (e.g. "announced" for Radarr)
also matches every later one ("inCinemas", "released").
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .config import HuntConfig
from .providers import CandidateItem, parse_arr_datetime_utc

# Order: tba -> announced -> inCinemas -> released
RADARR_STATUS_HIERARCHY: dict[str, list[str]] = {
    "tba": ["tba", "announced", "inCinemas", "released"],
    "announced": ["announced", "inCinemas", "released"],
    "incinemas": ["inCinemas", "released"],
    "released": ["released"],
}

# Order: upcoming -> continuing -> ended
SONARR_STATUS_HIERARCHY: dict[str, list[str]] = {
    "upcoming": ["upcoming", "continuing", "ended"],
    "continuing": ["continuing", "ended"],
    "ended": ["ended"],
}

# Artists and authors: continuing -> ended
ARTIST_STATUS_HIERARCHY: dict[str, list[str]] = {
    "continuing": ["continuing", "ended"],
    "ended": ["ended"],
}

STATUS_HIERARCHY_MAP: dict[str, dict[str, list[str]]] = {
    "sonarr": SONARR_STATUS_HIERARCHY,
    "radarr": RADARR_STATUS_HIERARCHY,
    "lidarr": ARTIST_STATUS_HIERARCHY,
    "readarr": ARTIST_STATUS_HIERARCHY,
}

EXCLUDE_CONDITIONS = ("exclude_tags", "exclude_quality_profiles")
INCLUDE_CONDITIONS = (
    "monitored",
    "include_tags",
    "include_quality_profiles",
    "include_statuses",
    "year_min",
    "year_max",
    "age_threshold",
)


@dataclass(frozen=True)
class ParsedFilters:
    filter_logic: str = "AND"
    monitored_only: bool = False
    include_tags: tuple[int, ...] = ()
    exclude_tags: tuple[int, ...] = ()
    include_quality_profiles: tuple[int, ...] = ()
    exclude_quality_profiles: tuple[int, ...] = ()
    include_statuses: tuple[str, ...] = ()
    # Pre-expanded for hierarchical matching.
    expanded_statuses: frozenset[str] = field(default_factory=frozenset)
    year_min: int | None = None
    year_max: int | None = None
    age_threshold_days: int | None = None


def expand_status_filters(statuses: Any, service: str) -> set[str]:
    """
    Expand selected status keys with every status further along the
    service's lifecycle. Unknown statuses are kept (lowercased) so they can
    still match.
    """
    hierarchy = STATUS_HIERARCHY_MAP.get(str(service or "").lower(), {})
    expanded: set[str] = set()
    for status in statuses or []:
        key = str(status).lower()
        related = hierarchy.get(key)
        if related:
            expanded.update(s.lower() for s in related)
        else:
            expanded.add(key)
    return expanded


def _as_list(value: Any, field_name: str, config_id: str, logger: logging.Logger) -> list[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            logger.warning(
                "Failed to parse hunt filter %s=%r (config %s) - filter will be ignored",
                field_name,
                value,
                config_id,
            )
            return []
        if isinstance(parsed, list):
            return parsed
    logger.warning(
        "Hunt filter %s has unexpected type %s (config %s) - filter will be ignored",
        field_name,
        type(value).__name__,
        config_id,
    )
    return []


def _int_ids(values: list[Any]) -> tuple[int, ...]:
    out: list[int] = []
    for v in values:
        try:
            out.append(int(v))
        except (TypeError, ValueError):
            continue
    return tuple(out)


def parse_filters(config: HuntConfig, service: str, logger: logging.Logger) -> ParsedFilters:
    include_statuses = tuple(
        str(s) for s in _as_list(config.include_statuses, "include_statuses", config.id, logger) if s
    )
    return ParsedFilters(
        filter_logic="OR" if str(config.filter_logic or "").upper() == "OR" else "AND",
        monitored_only=bool(config.monitored_only),
        include_tags=_int_ids(_as_list(config.include_tags, "include_tags", config.id, logger)),
        exclude_tags=_int_ids(_as_list(config.exclude_tags, "exclude_tags", config.id, logger)),
        include_quality_profiles=_int_ids(
            _as_list(config.include_quality_profiles, "include_quality_profiles", config.id, logger)
        ),
        exclude_quality_profiles=_int_ids(
            _as_list(config.exclude_quality_profiles, "exclude_quality_profiles", config.id, logger)
        ),
        include_statuses=include_statuses,
        expanded_statuses=frozenset(expand_status_filters(include_statuses, service)),
        year_min=config.year_min,
        year_max=config.year_max,
        age_threshold_days=config.age_threshold_days,
    )


def check_filter_condition(
    item: CandidateItem,
    filters: ParsedFilters,
    condition: str,
    now: datetime | None = None,
) -> bool:
    """Evaluate one named condition. An unconfigured condition always passes."""
    if condition == "monitored":
        return (not filters.monitored_only) or item.monitored

    if condition == "include_tags":
        if not filters.include_tags:
            return True
        return any(tag in item.tags for tag in filters.include_tags)

    if condition == "exclude_tags":
        if not filters.exclude_tags:
            return True
        return not any(tag in item.tags for tag in filters.exclude_tags)

    if condition == "include_quality_profiles":
        if not filters.include_quality_profiles:
            return True
        return item.quality_profile_id in filters.include_quality_profiles

    if condition == "exclude_quality_profiles":
        if not filters.exclude_quality_profiles:
            return True
        return item.quality_profile_id not in filters.exclude_quality_profiles

    if condition == "include_statuses":
        if not filters.include_statuses:
            return True
        return str(item.status or "").lower() in filters.expanded_statuses

    if condition == "year_min":
        if filters.year_min is None:
            return True
        return item.year >= filters.year_min

    if condition == "year_max":
        if filters.year_max is None:
            return True
        return item.year <= filters.year_max

    if condition == "age_threshold":
        if filters.age_threshold_days is None:
            return True
        release_dt = parse_arr_datetime_utc(item.release_date)
        if not release_dt:
            return True
        now_utc = now or datetime.now(timezone.utc)
        # Only hunt content older than the threshold.
        return release_dt <= now_utc - timedelta(days=int(filters.age_threshold_days))

    return True


def _is_active(filters: ParsedFilters, condition: str) -> bool:
    if condition == "monitored":
        return filters.monitored_only
    if condition == "include_tags":
        return bool(filters.include_tags)
    if condition == "include_quality_profiles":
        return bool(filters.include_quality_profiles)
    if condition == "include_statuses":
        return bool(filters.include_statuses)
    if condition == "year_min":
        return filters.year_min is not None
    if condition == "year_max":
        return filters.year_max is not None
    if condition == "age_threshold":
        return filters.age_threshold_days is not None
    return False


def passes_filters(item: CandidateItem, filters: ParsedFilters, now: datetime | None = None) -> bool:
    # Exclusions are blockers regardless of the filter logic.
    if not all(check_filter_condition(item, filters, c, now=now) for c in EXCLUDE_CONDITIONS):
        return False

    if filters.filter_logic == "OR":
        active = [c for c in INCLUDE_CONDITIONS if _is_active(filters, c)]
        if not active:
            return True
        return any(check_filter_condition(item, filters, c, now=now) for c in active)

    return all(check_filter_condition(item, filters, c, now=now) for c in INCLUDE_CONDITIONS)
