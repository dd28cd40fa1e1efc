from dataclasses import dataclass, field
from typing import Protocol

from .providers import CandidateItem, SearchUnit

# Minimum missing episodes in one season before a season search replaces
# individual episode searches.
SEASON_SEARCH_THRESHOLD = 3


class UnitLedger(Protocol):
    def filter_recently_searched(self, units: list[SearchUnit]) -> list[SearchUnit]: ...


@dataclass
class SearchPlan:
    season_units: list[SearchUnit] = field(default_factory=list)
    item_units: list[SearchUnit] = field(default_factory=list)
    # Units proposed after cooldown dedup, before the budget was applied.
    proposed_count: int = 0

    @property
    def ordered_units(self) -> list[SearchUnit]:
        return [*self.season_units, *self.item_units]

    @property
    def total_cost(self) -> int:
        return sum(u.cost for u in self.ordered_units)


def season_threshold(prefer_season_packs: bool) -> int:
    return 1 if prefer_season_packs else SEASON_SEARCH_THRESHOLD


def _item_unit(item: CandidateItem) -> SearchUnit:
    return SearchUnit(
        media_type=item.media_type,
        media_id=item.item_id,
        season_number=None,
        parent_id=item.parent_id,
        title=item.title,
        history_title=item.title,
        cost=1,
        item_ids=(item.item_id,),
    )


def _season_unit(group: list[CandidateItem]) -> SearchUnit:
    first = group[0]
    season = int(first.season_number or 0)
    count = len(group)
    return SearchUnit(
        media_type="season",
        media_id=first.parent_id,
        season_number=season,
        parent_id=first.parent_id,
        title=f"{first.parent_title} Season {season} ({count} episodes)",
        history_title=f"{first.parent_title} S{season:02d}",
        cost=count,
        item_ids=tuple(i.item_id for i in group),
    )


def propose_units(
    items: list[CandidateItem],
    threshold: int = SEASON_SEARCH_THRESHOLD,
    group_by_season: bool = True,
) -> tuple[list[SearchUnit], list[SearchUnit]]:
    """
    Split candidates into (season_units, item_units).

    Episodes are grouped by (series, season). A group of at least `threshold`
    episodes becomes a single season unit costing one per episode; smaller
    groups stay as individual episode units. Groups keep the order in which
    they first appear in `items`.
    """
    if not group_by_season:
        return [], [_item_unit(i) for i in items]

    groups: dict[tuple[int, int], list[CandidateItem]] = {}
    singles: list[CandidateItem] = []
    for item in items:
        if item.media_type != "episode" or item.season_number is None:
            singles.append(item)
            continue
        groups.setdefault((item.parent_id, int(item.season_number)), []).append(item)

    season_units: list[SearchUnit] = []
    item_units: list[SearchUnit] = []
    for group in groups.values():
        if len(group) >= max(1, int(threshold)):
            season_units.append(_season_unit(group))
        else:
            item_units.extend(_item_unit(i) for i in group)
    item_units.extend(_item_unit(i) for i in singles)
    return season_units, item_units


def allocate(
    items: list[CandidateItem],
    budget: int,
    threshold: int,
    ledger: UnitLedger | None = None,
    group_by_season: bool = True,
) -> SearchPlan:
    season_units, item_units = propose_units(items, threshold=threshold, group_by_season=group_by_season)
    if ledger is not None:
        season_units = ledger.filter_recently_searched(season_units)
        item_units = ledger.filter_recently_searched(item_units)

    plan = SearchPlan(proposed_count=len(season_units) + len(item_units))
    remaining = max(0, int(budget))

    episodes: dict[tuple[int, int], list[CandidateItem]] = {}
    for item in items:
        if item.media_type == "episode" and item.season_number is not None:
            episodes.setdefault((item.parent_id, int(item.season_number)), []).append(item)

    spilled: list[SearchUnit] = []
    for unit in season_units:
        if remaining <= 0:
            break
        if unit.cost > remaining:
            # Too big for what is left: its episodes compete as single units.
            spilled.extend(_item_unit(i) for i in episodes.get((unit.media_id, int(unit.season_number or 0)), []))
            continue
        plan.season_units.append(unit)
        remaining -= unit.cost
    if spilled and ledger is not None:
        spilled = ledger.filter_recently_searched(spilled)

    for unit in [*spilled, *item_units]:
        if remaining <= 0:
            break
        plan.item_units.append(unit)
        remaining -= unit.cost

    return plan
