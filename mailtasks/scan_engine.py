"""
Scan engine: orchestrates mailbox + extractor + storage into one scan run.

Core pieces:
- Eligibility gates (enabled, quiet hours, weekend)
- run_scan: refresh token -> list -> per-email dedup/extract/persist -> finalize -> notify
- run_scheduled_sweep: run_scan over every enabled config

Both the periodic ticker and the on-demand dispatcher call run_scan, so gate,
dedup and error semantics are identical for the two trigger modes.
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Set

from .config import Config
from .credentials import CredentialStore, TokenCipher
from .errors import ConfigError, NotFoundError, StorageError
from .extractor import ExtractionFailure, TaskExtractor
from .llm_client import LLMClient
from .mailbox import MailboxAdapter, build_mailbox_adapters
from .models import (
    EmailProvider,
    EmailStub,
    Notification,
    NotificationType,
    ScanConfig,
    ScanLog,
    ScanStatus,
    Source,
    Task,
    TaskSourceType,
    TaskStatus,
)
from .sanitize import sanitize_email_subject
from .storage import Store

logger = logging.getLogger(__name__)

MIN_INTERVAL_HOURS = 1
MAX_INTERVAL_HOURS = 24
DEFAULT_CONFIDENCE_THRESHOLD = 0.7


class InFlightScans:
    """Config ids with a scan currently running in this process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids: Set[str] = set()

    def claim(self, config_id: str) -> bool:
        with self._lock:
            if config_id in self._ids:
                return False
            self._ids.add(config_id)
            return True

    def release(self, config_id: str) -> None:
        with self._lock:
            self._ids.discard(config_id)


@dataclass
class ScanDependencies:
    """Everything a scan run needs, passed explicitly."""

    store: Store
    credentials: CredentialStore
    adapters: Mapping[EmailProvider, MailboxAdapter]
    extractor: TaskExtractor
    max_results: int = 20
    # Shared by the scheduler and the dispatcher: one run per config at a time
    in_flight: InFlightScans = field(default_factory=InFlightScans)

    @classmethod
    def from_config(cls, config: Config, store: Store) -> "ScanDependencies":
        """Wire the production collaborators. Raises ConfigError on missing secrets."""
        cipher = TokenCipher.from_config(config)
        llm = LLMClient.from_config(config)
        adapters = build_mailbox_adapters(config)
        return cls(
            store=store,
            credentials=CredentialStore(cipher, adapters),
            adapters=adapters,
            extractor=TaskExtractor(llm),
            max_results=config.scan_max_results,
        )

    def close(self) -> None:
        for adapter in self.adapters.values():
            adapter.close()


# ---------------------------------------------------------------------------
# Eligibility gates
# ---------------------------------------------------------------------------


def parse_hhmm(value: Optional[str]) -> Optional[int]:
    """Convert "HH:MM" to minutes since midnight; None if missing or malformed."""
    if not value:
        return None
    try:
        hours, minutes = value.split(":")[:2]
        h, m = int(hours), int(minutes)
    except ValueError:
        logger.warning("Ignoring malformed HH:MM value %r", value)
        return None
    if not (0 <= h < 24 and 0 <= m < 60):
        logger.warning("Ignoring out-of-range HH:MM value %r", value)
        return None
    return h * 60 + m


def is_quiet_hours(start: Optional[str], end: Optional[str], now: datetime) -> bool:
    """
    True if `now` falls inside the quiet window.

    A window with start <= end is same-day; start > end wraps past midnight
    (e.g. 22:00-06:00). Missing bounds mean no quiet hours.
    """
    start_minutes = parse_hhmm(start)
    end_minutes = parse_hhmm(end)
    if start_minutes is None or end_minutes is None:
        return False

    current = now.hour * 60 + now.minute
    if start_minutes <= end_minutes:
        return start_minutes <= current < end_minutes
    # Overnight quiet hours
    return current >= start_minutes or current < end_minutes


def is_weekend(now: datetime) -> bool:
    return now.weekday() >= 5


def skip_reason(config: ScanConfig, now: datetime) -> Optional[str]:
    """Return why a config must not be scanned at `now`, or None if it may."""
    if not config.enabled:
        return "disabled"
    if is_quiet_hours(config.quiet_hours_start, config.quiet_hours_end, now):
        return "quiet hours"
    if not config.weekend_scan and is_weekend(now):
        return "weekend"
    return None


def effective_threshold(config: ScanConfig) -> float:
    threshold = config.confidence_threshold
    if math.isnan(threshold):
        logger.warning(
            "Config %s has confidence_threshold=NaN; using default %s",
            config.id,
            DEFAULT_CONFIDENCE_THRESHOLD,
        )
        return DEFAULT_CONFIDENCE_THRESHOLD
    if not 0 <= threshold <= 1:
        clamped = min(max(threshold, 0.0), 1.0)
        logger.warning(
            "Config %s has confidence_threshold=%s outside [0, 1]; using %s",
            config.id,
            threshold,
            clamped,
        )
        return clamped
    return threshold


def effective_interval_hours(config: ScanConfig) -> int:
    hours = config.scan_interval_hours
    if not MIN_INTERVAL_HOURS <= hours <= MAX_INTERVAL_HOURS:
        clamped = min(max(hours, MIN_INTERVAL_HOURS), MAX_INTERVAL_HOURS)
        logger.warning(
            "Config %s has scan_interval_hours=%s outside [%d, %d]; using %d",
            config.id,
            hours,
            MIN_INTERVAL_HOURS,
            MAX_INTERVAL_HOURS,
            clamped,
        )
        return clamped
    return hours


# ---------------------------------------------------------------------------
# Per-email processing
# ---------------------------------------------------------------------------


def _process_email(
    deps: ScanDependencies,
    config: ScanConfig,
    adapter: MailboxAdapter,
    access_token: str,
    stub: EmailStub,
    threshold: float,
    log: ScanLog,
) -> None:
    """
    Dedup, extract, and persist one email. Failures are appended to log.errors
    and never escape, so one bad email cannot stop the loop.
    """
    try:
        existing = deps.store.find_source(config.workspace_id, TaskSourceType.EMAIL, stub.id)
        if existing is not None:
            logger.debug("Email %s already processed as source %s; skipping.", stub.id, existing.id)
            return

        email = adapter.resolve(access_token, stub)
        result = deps.extractor.extract(email)

        if isinstance(result, ExtractionFailure):
            if result.retryable:
                log.errors.append(f"Error processing email {stub.id}: {result.detail}")
            # No Source row is written, so the email is retried on the next scan
            return

        if not result:
            return

        try:
            source = deps.store.create_source(
                Source(
                    workspace_id=config.workspace_id,
                    type=TaskSourceType.EMAIL,
                    external_id=stub.id,
                    title=sanitize_email_subject(email.subject),
                    content_preview=email.snippet[:200] if email.snippet else None,
                    metadata={
                        "sender": email.sender,
                        "subject": email.subject,
                        "date": email.date,
                        "provider": config.provider.value,
                    },
                    processed_at=datetime.now(timezone.utc),
                )
            )
        except StorageError as e:
            logger.warning("Failed to create source for email %s: %s", stub.id, e)
            log.errors.append(f"Failed to create source for email {stub.id}")
            return

        for candidate in result:
            needs_review = candidate.confidence_score < threshold
            try:
                deps.store.create_task(
                    Task(
                        workspace_id=config.workspace_id,
                        title=candidate.title,
                        description=candidate.description,
                        status=TaskStatus.INBOX,
                        priority=candidate.priority,
                        due_date=candidate.due_date,
                        creator_id=config.user_id,
                        source_type=TaskSourceType.EMAIL,
                        source_id=source.id,
                        confidence_score=candidate.confidence_score,
                        needs_review=needs_review,
                    )
                )
            except StorageError as e:
                log.errors.append(f"Failed to create task: {e}")
                continue

            log.tasks_extracted += 1
            if needs_review:
                log.tasks_for_review += 1

    except Exception as e:
        logger.exception("Error processing email %s", stub.id)
        log.errors.append(f"Error processing email {stub.id}: {e}")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


def _plural(n: int) -> str:
    return "" if n == 1 else "s"


def _notify(store: Store, config: ScanConfig, log: ScanLog) -> None:
    notifications: List[Notification] = []

    if log.tasks_extracted > 0:
        notifications.append(
            Notification(
                workspace_id=config.workspace_id,
                user_id=config.user_id,
                type=NotificationType.SCAN_COMPLETE,
                title="Email scan complete",
                message=(
                    f"{log.tasks_extracted} task{_plural(log.tasks_extracted)} extracted, "
                    f"{log.tasks_for_review} for review"
                ),
                action_url="/review" if log.tasks_for_review > 0 else "/inbox",
            )
        )

    if log.tasks_for_review > 0:
        notifications.append(
            Notification(
                workspace_id=config.workspace_id,
                user_id=config.user_id,
                type=NotificationType.REVIEW_NEEDED,
                title="Tasks need review",
                message=(
                    f"{log.tasks_for_review} new task{_plural(log.tasks_for_review)} "
                    "need your review"
                ),
                action_url="/review",
            )
        )

    for notification in notifications:
        try:
            store.create_notification(notification)
        except StorageError:
            # The log is already final; a lost notification must not change it
            logger.exception(
                "Failed to create %s notification for config %s",
                notification.type.value,
                config.id,
            )


# ---------------------------------------------------------------------------
# Main scan orchestration
# ---------------------------------------------------------------------------


def run_scan(
    deps: ScanDependencies,
    config_id: str,
    now: Optional[datetime] = None,
) -> Optional[ScanLog]:
    """
    Run one scan for one config.

    1. Load the config and apply the gates (enabled, quiet hours, weekend).
       A closed gate, or a scan already running for the config, returns
       None without writing anything.
    2. Create a running ScanLog.
    3. Refresh the access token and persist it immediately.
    4. List recent mail, then dedup/extract/persist each email in isolation.
    5. Finalize the log as completed (or failed if steps 3-4 raised), bump
       last_scan_at on success, and emit notifications.

    Args:
        now: wall-clock time used for the gates; defaults to local time.

    Raises:
        NotFoundError: if the config does not exist.
    """
    store = deps.store
    config = store.get_scan_config(config_id)
    if config is None:
        raise NotFoundError(f"Config not found: {config_id}")

    gate_time = now or datetime.now()
    reason = skip_reason(config, gate_time)
    if reason is not None:
        logger.info("Skipping scan for config %s: %s", config.id, reason)
        return None

    if not deps.in_flight.claim(config.id):
        logger.info("Skipping scan for config %s: already running", config.id)
        return None
    try:
        return _execute_scan(deps, config)
    finally:
        deps.in_flight.release(config.id)


def _execute_scan(deps: ScanDependencies, config: ScanConfig) -> ScanLog:
    store = deps.store
    log = store.create_scan_log(ScanLog(config_id=config.id, workspace_id=config.workspace_id))
    logger.info("Starting scan %s for config %s (%s).", log.id, config.id, config.provider.value)

    threshold = effective_threshold(config)
    hours_back = effective_interval_hours(config)

    try:
        if not config.encrypted_refresh_token:
            raise ConfigError("No refresh token stored for this mailbox")

        adapter = deps.adapters.get(config.provider)
        if adapter is None:
            raise ConfigError(f"No mailbox adapter registered for provider {config.provider.value!r}")

        refreshed = deps.credentials.refresh(config.provider, config.encrypted_refresh_token)
        # Persist before anything else can fail
        store.update_scan_config(config.id, encrypted_access_token=refreshed.encrypted_access_token)

        stubs = adapter.list_recent(refreshed.access_token, hours_back, deps.max_results)
        log.emails_scanned = len(stubs)
        logger.info("Config %s: %d recent email(s).", config.id, len(stubs))

        for stub in stubs:
            _process_email(deps, config, adapter, refreshed.access_token, stub, threshold, log)

    except Exception as e:
        logger.exception("Scan %s for config %s failed", log.id, config.id)
        log.errors.append(str(e) or e.__class__.__name__)
        log.status = ScanStatus.FAILED
    else:
        log.status = ScanStatus.COMPLETED

    log.completed_at = datetime.now(timezone.utc)
    store.finalize_scan_log(log)

    if log.status == ScanStatus.COMPLETED:
        store.update_scan_config(config.id, last_scan_at=log.completed_at)
        _notify(store, config, log)

    logger.info(
        "Scan %s %s: %d scanned, %d extracted, %d for review, %d error(s).",
        log.id,
        log.status.value,
        log.emails_scanned,
        log.tasks_extracted,
        log.tasks_for_review,
        len(log.errors),
    )
    return log


def run_scheduled_sweep(
    deps: ScanDependencies,
    now: Optional[datetime] = None,
    max_workers: int = 1,
) -> Dict[str, int]:
    """
    Scan every enabled config. Each run is independent; an exception in one
    is logged and the sweep moves on.
    """
    configs = deps.store.list_enabled_scan_configs()
    logger.info("Scheduled sweep: %d enabled config(s).", len(configs))

    counts = {"processed": len(configs), "scanned": 0, "skipped": 0, "failed": 0}

    def _tally(result: Optional[ScanLog]) -> None:
        if result is None:
            counts["skipped"] += 1
        elif result.status == ScanStatus.FAILED:
            counts["failed"] += 1
        else:
            counts["scanned"] += 1

    if max_workers <= 1:
        for config in configs:
            try:
                _tally(run_scan(deps, config.id, now=now))
            except Exception:
                logger.exception("Scheduled scan for config %s raised", config.id)
                counts["failed"] += 1
        return counts

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(run_scan, deps, c.id, now): c.id for c in configs}
        for future in as_completed(futures):
            try:
                _tally(future.result())
            except Exception:
                logger.exception("Scheduled scan for config %s raised", futures[future])
                counts["failed"] += 1

    return counts
