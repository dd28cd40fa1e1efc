import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from .arr import safe_int


@dataclass(frozen=True)
class GrabbedItem:
    title: str
    quality: str | None = None
    indexer: str | None = None
    size: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"title": self.title, "quality": self.quality, "indexer": self.indexer, "size": self.size}


class GrabProvider(Protocol):
    correlation_fields: tuple[str, ...]

    def list_recent_history(self, since: datetime) -> list[dict[str, Any]]: ...

    def list_queue(self) -> list[dict[str, Any]]: ...


def _dig(record: Any, *path: str) -> Any:
    cur = record
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _first_str(*values: Any) -> str | None:
    for v in values:
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def _size(*values: Any) -> int | None:
    for v in values:
        if isinstance(v, bool):
            continue
        if isinstance(v, (int, float)):
            return int(v)
        if isinstance(v, str) and v.strip().isdigit():
            return int(v.strip())
    return None


def extract_grab(record: dict[str, Any]) -> GrabbedItem:
    """Pull release details out of a history or queue row, tolerating missing fields."""
    return GrabbedItem(
        title=_first_str(
            record.get("sourceTitle"),
            _dig(record, "data", "releaseTitle"),
            _dig(record, "data", "title"),
            record.get("title"),
        )
        or "Unknown",
        quality=_first_str(_dig(record, "quality", "quality", "name"), _dig(record, "quality", "name")),
        indexer=_first_str(_dig(record, "data", "indexer"), record.get("indexer")),
        size=_size(_dig(record, "data", "size"), record.get("size")),
    )


def record_matches(record: dict[str, Any], ids: dict[str, set[int]]) -> bool:
    for field_name, wanted in ids.items():
        if not wanted:
            continue
        value = safe_int(record.get(field_name))
        if value and value in wanted:
            return True
    return False


class HistoryGrabSource:
    """Grabbed events in the instance history since the hunt started."""

    name = "history"

    def detect(self, provider: GrabProvider, since: datetime, ids: dict[str, set[int]]) -> list[GrabbedItem]:
        return [extract_grab(r) for r in provider.list_recent_history(since) if record_matches(r, ids)]


class QueueGrabSource:
    """Live download queue. Shows items in progress, not necessarily newly grabbed."""

    name = "queue"

    def detect(self, provider: GrabProvider, since: datetime, ids: dict[str, set[int]]) -> list[GrabbedItem]:
        return [extract_grab(r) for r in provider.list_queue() if record_matches(r, ids)]


class GrabDetector:
    def __init__(
        self,
        primary: HistoryGrabSource | QueueGrabSource | None = None,
        fallback: HistoryGrabSource | QueueGrabSource | None = None,
        settle_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.primary = primary or HistoryGrabSource()
        self.fallback = fallback or QueueGrabSource()
        self.settle_seconds = settle_seconds
        self.sleep = sleep
        self.logger = logger or logging.getLogger("arrhunt.grabs")

    def detect(self, provider: GrabProvider, since: datetime, ids: dict[str, set[int]]) -> list[GrabbedItem]:
        if not any(ids.values()):
            return []
        if self.settle_seconds > 0:
            self.sleep(self.settle_seconds)
        try:
            return self.primary.detect(provider, since, ids)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("Grab check via %s failed, falling back to %s: %s", self.primary.name, self.fallback.name, exc)
        try:
            return self.fallback.detect(provider, since, ids)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("Grab check via %s failed, reporting no grabs: %s", self.fallback.name, exc)
            return []
