import argparse
import json
import logging
import threading
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .config import HUNT_MODES, RuntimeConfig, ServiceInstance, load_config
from .engine import HuntEngine, HuntResult
from .logging_utils import setup_logging
from .state import StateStore

API_CAP_WINDOW = timedelta(hours=1)
PRUNE_EVERY = timedelta(days=1)


class HuntScheduler:
    """Decides which hunts are due and runs them one after another."""

    def __init__(
        self,
        config: RuntimeConfig,
        store: StateStore,
        engine: HuntEngine,
        logger: logging.Logger,
    ) -> None:
        self.config = config
        self.store = store
        self.engine = engine
        self.logger = logger
        self._manual: deque[tuple[str, str]] = deque()
        self._manual_lock = threading.Lock()
        self._last_prune: datetime | None = None

    def queue_manual_hunt(self, config_id: str, mode: str) -> None:
        if mode not in HUNT_MODES:
            raise ValueError(f"Unknown hunt mode: {mode}")
        if self.config.find_hunt(config_id) is None:
            raise ValueError(f"Unknown hunt config: {config_id}")
        with self._manual_lock:
            self._manual.append((config_id, mode))

    def _pop_manual(self) -> tuple[str, str] | None:
        with self._manual_lock:
            return self._manual.popleft() if self._manual else None

    def run_hunt(self, instance: ServiceInstance, mode: str, now: datetime | None = None) -> HuntResult:
        now_utc = now or datetime.now(timezone.utc)
        started_at = datetime.now(timezone.utc).isoformat()
        t0 = time.monotonic()
        result = self.engine.execute_hunt(instance, instance.hunt, mode)
        duration_ms = int((time.monotonic() - t0) * 1000)
        self.store.record_hunt_log(
            config_id=instance.hunt.id,
            service=instance.service,
            instance_id=instance.instance_id,
            instance_name=instance.instance_name,
            hunt_type=mode,
            result=result.as_dict(),
            started_at=started_at,
            completed_at=datetime.now(timezone.utc).isoformat(),
            duration_ms=duration_ms,
        )
        if result.status != "skipped":
            # Skipped hunts retry on the next tick instead of waiting a full interval.
            self.store.mark_hunt_ran(
                instance.hunt.id,
                mode,
                ran_at=now_utc,
                api_calls=result.api_calls_made,
                reset_at_if_unset=now_utc + API_CAP_WINDOW,
            )
        self.logger.info(
            "Hunt %s (%s) finished: %s - %s",
            instance.hunt.id,
            mode,
            result.status,
            result.message,
        )
        return result

    def _api_calls_remaining(self, instance: ServiceInstance, now: datetime) -> int:
        schedule = self.store.get_hunt_schedule(instance.hunt.id)
        calls = int(schedule["api_calls_this_hour"])
        reset_at = schedule["api_calls_reset_at"]
        if reset_at is not None and reset_at <= now:
            self.store.reset_api_calls(instance.hunt.id, now + API_CAP_WINDOW)
            calls = 0
        return int(instance.hunt.hourly_api_cap) - calls

    def _is_due(self, instance: ServiceInstance, mode: str, now: datetime) -> bool:
        last = self.store.get_hunt_schedule(instance.hunt.id)[f"last_{mode}_hunt"]
        if last is None:
            return True
        return last + timedelta(minutes=instance.hunt.interval_minutes(mode)) <= now

    def _housekeeping(self, now: datetime) -> None:
        if self._last_prune is not None and now - self._last_prune < PRUNE_EVERY:
            return
        self._last_prune = now
        removed = self.store.prune_search_history(self.config.app.history_retention_days)
        if removed:
            self.logger.info("Pruned %s search history rows", removed)

    def tick(self, now: datetime | None = None, force: bool = False) -> list[tuple[str, str, HuntResult]]:
        """Run the next queued manual hunt, then every scheduled hunt that is due."""
        now_utc = now or datetime.now(timezone.utc)
        self._housekeeping(now_utc)
        ran: list[tuple[str, str, HuntResult]] = []

        manual = self._pop_manual()
        if manual is not None:
            config_id, mode = manual
            instance = self.config.find_hunt(config_id)
            if instance is not None:
                ran.append((config_id, mode, self.run_hunt(instance, mode, now=now_utc)))

        for instance in self.config.instances:
            if not instance.enabled or not instance.arr.enabled:
                continue
            for mode in HUNT_MODES:
                if not instance.hunt.mode_enabled(mode):
                    continue
                if not force and not self._is_due(instance, mode, now_utc):
                    continue
                if self._api_calls_remaining(instance, now_utc) <= 0:
                    self.logger.info(
                        "Hourly API cap (%s) reached for %s, skipping %s hunt",
                        instance.hunt.hourly_api_cap,
                        instance.hunt.id,
                        mode,
                    )
                    continue
                ran.append((instance.hunt.id, mode, self.run_hunt(instance, mode, now=now_utc)))
        return ran

    def run_forever(self, stop_event: threading.Event, force_first: bool = False) -> None:
        force = force_first
        while not stop_event.is_set():
            try:
                self.tick(force=force)
            except Exception as exc:
                self.logger.exception("Scheduler tick failed: %s", exc)
            force = False
            stop_event.wait(timeout=float(self.config.app.scheduler_tick_seconds))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="arrhunt")
    parser.add_argument(
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one scheduler tick and exit.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore due times and run every enabled hunt immediately.",
    )
    parser.add_argument(
        "--hunt",
        help="Run a single hunt config by id and print its result.",
    )
    parser.add_argument(
        "--mode",
        choices=HUNT_MODES,
        default="missing",
        help="Hunt mode used with --hunt.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config).resolve()
    config = load_config(str(config_path))
    setup_logging(config.app.log_level)
    logger = logging.getLogger("arrhunt")
    store = StateStore(config.app.db_path)

    if not config.instances:
        logger.error("No instances configured. Add entries under instances.")
        return 1

    engine = HuntEngine(app=config.app, store=store, logger=logger)
    scheduler = HuntScheduler(config=config, store=store, engine=engine, logger=logger)

    if args.hunt:
        instance = config.find_hunt(args.hunt)
        if instance is None:
            logger.error("Unknown hunt config: %s", args.hunt)
            return 1
        result = scheduler.run_hunt(instance, args.mode)
        print(json.dumps(result.as_dict(), indent=2))
        return 2 if result.status == "error" else 0

    if args.once:
        for config_id, mode, result in scheduler.tick(force=args.force):
            logger.info("%s %s: %s", config_id, mode, result.as_dict())
        return 0

    stop_event = threading.Event()
    try:
        scheduler.run_forever(stop_event, force_first=args.force)
    except KeyboardInterrupt:
        logger.info("Stopped by user.")
        stop_event.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
