"""
Trigger modes for scans and briefings.

- A BackgroundScheduler runs the scan sweep every few hours and the daily
  briefing sweep at the top of every hour.
- ScanDispatcher accepts on-demand scans and runs them on a thread pool.

Both paths end up in scan_engine.run_scan.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timezone
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import Config
from .daily_runner import run_daily_briefings
from .llm_client import LLMClient
from .scan_engine import ScanDependencies, run_scan, run_scheduled_sweep

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Job wrappers
# ---------------------------------------------------------------------------


def scan_sweep_job(deps: ScanDependencies, max_workers: int = 1) -> None:
    """Scheduler entry point for the periodic scan sweep; never raises."""
    try:
        counts = run_scheduled_sweep(deps, max_workers=max_workers)
        logger.info("Scheduler: scan sweep finished %s", counts)
    except Exception:
        logger.exception("Scheduler: scan sweep failed")


def daily_briefing_job(deps: ScanDependencies, llm: Optional[LLMClient]) -> None:
    """Scheduler entry point for the hourly briefing sweep; never raises."""
    try:
        counts = run_daily_briefings(deps.store, llm)
        logger.info("Scheduler: briefing sweep finished %s", counts)
    except Exception:
        logger.exception("Scheduler: briefing sweep failed")


# ---------------------------------------------------------------------------
# Scheduler setup
# ---------------------------------------------------------------------------


def build_scheduler(
    config: Config,
    deps: ScanDependencies,
    llm: Optional[LLMClient],
) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=timezone.utc)

    # 1. Scan sweep (every SCAN_SWEEP_INTERVAL_HOURS)
    scheduler.add_job(
        scan_sweep_job,
        "interval",
        hours=config.scan_sweep_interval_hours,
        args=[deps, config.scan_max_workers],
        id="email_scan_sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    # 2. Daily briefings (top of every hour, each user checked in their own timezone)
    scheduler.add_job(
        daily_briefing_job,
        CronTrigger(minute=0),
        args=[deps, llm],
        id="daily_briefing_sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler


def start_scheduler(
    config: Config,
    deps: ScanDependencies,
    llm: Optional[LLMClient],
) -> BackgroundScheduler:
    scheduler = build_scheduler(config, deps, llm)
    scheduler.start()
    logger.info(
        "Background scheduler started: scan sweep every %d hour(s), briefing sweep hourly.",
        config.scan_sweep_interval_hours,
    )
    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler, deps: ScanDependencies) -> None:
    """Stop the jobs, wait for running ones, then release the mailbox clients."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
    deps.close()
    logger.info("Background scheduler stopped.")


# ---------------------------------------------------------------------------
# On-demand dispatch
# ---------------------------------------------------------------------------


class ScanDispatcher:
    """
    Fire-and-forget manual scans.

    request_scan returns as soon as the job is queued. A config that already
    has a queued or running scan gets the existing Future back instead of a
    second run. Scans started elsewhere (the scheduled sweep) are guarded by
    deps.in_flight inside run_scan.
    """

    def __init__(self, deps: ScanDependencies, max_workers: int = 2):
        self.deps = deps
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="scan")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, Future] = {}

    def request_scan(self, config_id: str) -> Future:
        with self._lock:
            existing = self._in_flight.get(config_id)
            if existing is not None and not existing.done():
                logger.info("Scan for config %s already in flight.", config_id)
                return existing

            future = self._executor.submit(run_scan, self.deps, config_id)
            self._in_flight[config_id] = future

        future.add_done_callback(lambda f, cid=config_id: self._finished(cid, f))
        logger.info("Queued manual scan for config %s.", config_id)
        return future

    def _finished(self, config_id: str, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(config_id) is future:
                del self._in_flight[config_id]
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Manual scan for config %s raised: %s", config_id, error)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
