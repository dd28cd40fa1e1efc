from datetime import datetime, timedelta, timezone

from .providers import SearchUnit
from .state import StateStore


def history_key(media_type: str, media_id: int, season_number: int | None = None) -> str:
    season = int(season_number) if season_number is not None else -1
    return f"{media_type}:{int(media_id)}:{season}"


class SearchHistoryLedger:
    """
    Cooldown bookkeeping for one hunt configuration and mode.

    The set of recently searched keys is loaded once per run; lookups are
    pure, writes go straight to the store.
    """

    def __init__(
        self,
        store: StateStore,
        config_id: str,
        hunt_type: str,
        recent_keys: set[str],
    ) -> None:
        self.store = store
        self.config_id = config_id
        self.hunt_type = hunt_type
        self._recent = set(recent_keys)
        self._filtered = 0

    @classmethod
    def load(
        cls,
        store: StateStore,
        config_id: str,
        hunt_type: str,
        cooldown_days: int,
        now: datetime | None = None,
    ) -> "SearchHistoryLedger":
        if int(cooldown_days) <= 0:
            # No cooldown: nothing counts as recent.
            return cls(store, config_id, hunt_type, set())
        since = (now or datetime.now(timezone.utc)) - timedelta(days=int(cooldown_days))
        return cls(store, config_id, hunt_type, store.get_recent_search_keys(config_id, hunt_type, since))

    def was_recently_searched(self, media_type: str, media_id: int, season_number: int | None = None) -> bool:
        return history_key(media_type, media_id, season_number) in self._recent

    def filter_recently_searched(self, units: list[SearchUnit]) -> list[SearchUnit]:
        kept: list[SearchUnit] = []
        for unit in units:
            if self.was_recently_searched(unit.media_type, unit.media_id, unit.season_number):
                self._filtered += 1
                continue
            kept.append(unit)
        return kept

    def record_searches(self, units: list[SearchUnit], searched_at: datetime | None = None) -> None:
        ts = searched_at or datetime.now(timezone.utc)
        for unit in units:
            self.store.record_search(
                self.config_id,
                self.hunt_type,
                unit.media_type,
                unit.media_id,
                unit.season_number,
                unit.history_title,
                searched_at=ts,
            )

    def get_filtered_count(self) -> int:
        return self._filtered

    def get_recent_search_count(self) -> int:
        return len(self._recent)
