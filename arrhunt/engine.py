import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .allocator import allocate, season_threshold
from .config import AppConfig, HuntConfig, ServiceInstance
from .filters import parse_filters, passes_filters
from .grabs import GrabbedItem, GrabDetector
from .history import SearchHistoryLedger
from .logging_utils import HuntLoggerAdapter
from .providers import ProviderAdapter, UnsupportedProviderError, create_adapter, is_content_released
from .state import StateStore

# The wanted page is fetched wider than the batch so cooldown and filters
# still leave enough candidates.
WANTED_FETCH_MULTIPLIER = 5
WANTED_FETCH_MIN = 50

AdapterFactory = Callable[..., ProviderAdapter]


@dataclass(frozen=True)
class HuntResult:
    status: str
    message: str
    items_searched: int = 0
    items_grabbed: int = 0
    searched_items: tuple[str, ...] = ()
    grabbed_items: tuple[GrabbedItem, ...] = ()
    api_calls_made: int = 0
    errors: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "items_searched": self.items_searched,
            "items_grabbed": self.items_grabbed,
            "searched_items": list(self.searched_items),
            "grabbed_items": [g.as_dict() for g in self.grabbed_items],
            "api_calls_made": self.api_calls_made,
            "errors": list(self.errors),
        }


def wanted_fetch_size(batch_size: int) -> int:
    return max(int(batch_size) * WANTED_FETCH_MULTIPLIER, WANTED_FETCH_MIN)


class HuntEngine:
    """Runs one hunt (a configuration in one mode) against one instance."""

    def __init__(
        self,
        app: AppConfig,
        store: StateStore,
        logger: logging.Logger,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        adapter_factory: AdapterFactory = create_adapter,
        grab_detector: GrabDetector | None = None,
    ) -> None:
        self.app = app
        self.store = store
        self.logger = logger
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.adapter_factory = adapter_factory
        self.grab_detector = grab_detector or GrabDetector(
            settle_seconds=app.grab_check_delay_seconds,
            sleep=sleep,
            logger=logger,
        )

    def execute_hunt(
        self,
        instance: ServiceInstance,
        hunt_config: HuntConfig | None = None,
        mode: str = "missing",
        now: datetime | None = None,
    ) -> HuntResult:
        hunt = hunt_config or instance.hunt
        log = HuntLoggerAdapter(self.logger, hunt.id, instance.instance_name, mode)
        started_at = now or datetime.now(timezone.utc)

        try:
            api_key = self.store.get_arr_api_key(instance.service, instance.instance_id)
            adapter = self.adapter_factory(instance, self.app, self.logger, api_key=api_key)
        except UnsupportedProviderError as exc:
            log.error("%s", exc)
            return HuntResult(status="error", message=str(exc), errors=(str(exc),))
        except Exception as exc:
            log.exception("Cannot set up provider client")
            return HuntResult(status="error", message=f"Hunt failed: {exc}", errors=(str(exc),))

        try:
            return self._run(adapter, hunt, mode, started_at, log)
        except Exception as exc:
            log.exception("Hunt failed")
            return HuntResult(
                status="error",
                message=f"Hunt failed: {exc}",
                api_calls_made=adapter.calls_made,
                errors=(str(exc),),
            )

    def _run(
        self,
        adapter: ProviderAdapter,
        hunt: HuntConfig,
        mode: str,
        started_at: datetime,
        log: HuntLoggerAdapter,
    ) -> HuntResult:
        label = adapter.media_label

        def done(status: str, message: str, **kwargs: Any) -> HuntResult:
            log.info("%s: %s", status, message)
            return HuntResult(status=status, message=message, api_calls_made=adapter.calls_made, **kwargs)

        # Admission: a saturated (or unreachable) instance is left alone.
        threshold = int(hunt.queue_threshold)
        if threshold > 0:
            try:
                queue_size = adapter.get_queue_size()
            except Exception as exc:
                log.warning("Queue check failed: %s", exc)
                return done("skipped", f"Queue check failed: {exc}", errors=(str(exc),))
            if queue_size >= threshold:
                return done("skipped", f"Queue ({queue_size}) at or above threshold ({threshold})")

        ledger = SearchHistoryLedger.load(self.store, hunt.id, mode, hunt.research_after_days, now=started_at)
        filters = parse_filters(hunt, adapter.service, log)
        budget = hunt.batch_size(mode)

        fetch_size = wanted_fetch_size(budget)
        page = ledger.get_recent_search_count() // fetch_size + 1
        try:
            catalog = adapter.list_catalog()
            records = adapter.list_wanted(mode, page, fetch_size)
            if not records and page > 1:
                log.debug("Wanted page %s is empty, wrapping to page 1", page)
                records = adapter.list_wanted(mode, 1, fetch_size)
        except Exception as exc:
            log.error("Failed to fetch wanted %s: %s", label, exc)
            return done("error", f"Failed to fetch wanted {label}: {exc}", errors=(str(exc),))

        if not records:
            kind = "missing" if mode == "missing" else "upgradeable"
            return done("completed", f"No {kind} {label} found")

        no_match = f"No {label} match the current filters"
        eligible = []
        not_released = 0
        for record in records:
            item = adapter.normalize(record, catalog)
            if item is None:
                continue
            if not is_content_released(item.release_date, now=started_at):
                not_released += 1
                continue
            if passes_filters(item, filters, now=started_at):
                eligible.append(item)
        log.debug("%s wanted, %s not released, %s eligible", len(records), not_released, len(eligible))
        if not eligible:
            return done("completed", no_match)

        self.rng.shuffle(eligible)
        plan = allocate(
            eligible,
            budget=budget,
            threshold=season_threshold(hunt.prefer_season_packs),
            ledger=ledger,
            group_by_season=adapter.group_by_season,
        )
        units = plan.ordered_units
        if not units:
            filtered = ledger.get_filtered_count()
            if filtered:
                return done("completed", f"All {filtered} eligible {label} were recently searched")
            return done("completed", no_match)

        dispatched = []
        errors: list[str] = []
        for idx, unit in enumerate(units):
            if idx > 0 and self.app.search_delay_seconds > 0:
                self.sleep(self.app.search_delay_seconds)
            try:
                adapter.dispatch_search(unit)
            except Exception as exc:
                log.warning("Search failed for %s: %s", unit.title, exc)
                errors.append(f"{unit.title}: {exc}")
                continue
            log.info("Triggered search: %s", unit.title)
            dispatched.append(unit)

        # Failed attempts go on cooldown too, so a unit the instance rejects
        # does not take the budget of every run.
        ledger.record_searches(units, searched_at=started_at)

        grabbed: list[GrabbedItem] = []
        if dispatched:
            grabbed = self.grab_detector.detect(adapter, started_at, adapter.correlation_ids(dispatched))
            for grab in grabbed:
                log.info("Grabbed: %s (%s)", grab.title, grab.quality or "unknown quality")

        items_searched = sum(u.cost for u in dispatched)
        message = f"Triggered {len(dispatched)} search(es) covering {items_searched} {label} - {len(grabbed)} grabbed"
        if errors:
            message = f"{message} ({len(errors)} search errors)"
        return done(
            "partial" if errors else "completed",
            message,
            items_searched=items_searched,
            items_grabbed=len(grabbed),
            searched_items=tuple(u.title for u in units),
            grabbed_items=tuple(grabbed),
            errors=tuple(errors),
        )
