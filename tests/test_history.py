from datetime import datetime, timedelta, timezone

from arrhunt.history import SearchHistoryLedger
from arrhunt.providers import SearchUnit
from arrhunt.state import StateStore

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _unit(media_type: str, media_id: int, season: int | None = None, cost: int = 1) -> SearchUnit:
    return SearchUnit(
        media_type=media_type,
        media_id=media_id,
        season_number=season,
        parent_id=0,
        title=f"{media_type} {media_id}",
        history_title=f"{media_type} {media_id}",
        cost=cost,
    )


def test_recorded_search_is_recent_within_cooldown(tmp_path) -> None:
    store = StateStore(str(tmp_path / "x.db"))
    ledger = SearchHistoryLedger.load(store, "radarr-1", "missing", 7, now=NOW)
    ledger.record_searches([_unit("movie", 5), _unit("season", 10, season=2, cost=4)], searched_at=NOW)

    reloaded = SearchHistoryLedger.load(store, "radarr-1", "missing", 7, now=NOW + timedelta(days=3))
    assert reloaded.was_recently_searched("movie", 5)
    assert reloaded.was_recently_searched("movie", 5)
    assert reloaded.was_recently_searched("season", 10, 2)
    assert not reloaded.was_recently_searched("season", 10, 3)
    assert reloaded.get_recent_search_count() == 2

    expired = SearchHistoryLedger.load(store, "radarr-1", "missing", 7, now=NOW + timedelta(days=8))
    assert not expired.was_recently_searched("movie", 5)


def test_history_is_isolated_per_config_and_mode(tmp_path) -> None:
    store = StateStore(str(tmp_path / "x.db"))
    SearchHistoryLedger.load(store, "a", "missing", 7, now=NOW).record_searches([_unit("movie", 5)], searched_at=NOW)

    assert not SearchHistoryLedger.load(store, "b", "missing", 7, now=NOW).was_recently_searched("movie", 5)
    assert not SearchHistoryLedger.load(store, "a", "upgrade", 7, now=NOW).was_recently_searched("movie", 5)
    assert SearchHistoryLedger.load(store, "a", "missing", 7, now=NOW).was_recently_searched("movie", 5)


def test_filter_counts_one_per_skipped_unit(tmp_path) -> None:
    store = StateStore(str(tmp_path / "x.db"))
    first = SearchHistoryLedger.load(store, "s", "missing", 7, now=NOW)
    first.record_searches([_unit("season", 10, season=1, cost=4)], searched_at=NOW)

    ledger = SearchHistoryLedger.load(store, "s", "missing", 7, now=NOW)
    kept = ledger.filter_recently_searched([_unit("season", 10, season=1, cost=4), _unit("episode", 3)])
    assert [u.media_id for u in kept] == [3]
    assert ledger.get_filtered_count() == 1


def test_repeat_search_increments_count(tmp_path) -> None:
    store = StateStore(str(tmp_path / "x.db"))
    ledger = SearchHistoryLedger.load(store, "l", "upgrade", 7, now=NOW)
    ledger.record_searches([_unit("album", 9)], searched_at=NOW)
    ledger.record_searches([_unit("album", 9)], searched_at=NOW + timedelta(hours=1))

    rows = store.get_search_history("l")
    assert len(rows) == 1
    assert rows[0]["search_count"] == 2
    assert rows[0]["season_number"] is None
    assert rows[0]["searched_at"] == (NOW + timedelta(hours=1)).isoformat()


def test_zero_cooldown_never_filters(tmp_path) -> None:
    store = StateStore(str(tmp_path / "x.db"))
    SearchHistoryLedger.load(store, "r", "missing", 0, now=NOW).record_searches([_unit("book", 1)], searched_at=NOW)
    assert not SearchHistoryLedger.load(store, "r", "missing", 0, now=NOW).was_recently_searched("book", 1)


def test_prune_removes_only_old_rows(tmp_path) -> None:
    store = StateStore(str(tmp_path / "x.db"))
    now = datetime.now(timezone.utc)
    ledger = SearchHistoryLedger.load(store, "p", "missing", 7)
    ledger.record_searches([_unit("movie", 1)], searched_at=now - timedelta(days=120))
    ledger.record_searches([_unit("movie", 2)], searched_at=now)

    assert store.prune_search_history(90) == 1
    assert [r["media_id"] for r in store.get_search_history("p")] == [2]
