"""
Daily briefing runner: generate-and-store, the hourly delivery sweep,
feedback, and markdown output helpers.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from .briefing_generator import generate_briefing, resolve_timezone
from .errors import StorageError, ValidationFailed
from .llm_client import LLMClient
from .models import (
    TERMINAL_STATUSES,
    Briefing,
    BriefingFeedback,
    BriefingPreference,
    Notification,
    NotificationType,
    TaskStatus,
)
from .scan_engine import parse_hhmm
from .storage import Store

logger = logging.getLogger(__name__)

BRIEFING_ACTION_URL = "/briefing"


def default_preference(workspace_id: str, user_id: str) -> BriefingPreference:
    return BriefingPreference(workspace_id=workspace_id, user_id=user_id)


def load_preference(store: Store, workspace_id: str, user_id: str) -> BriefingPreference:
    """Stored preference, or the defaults when none exists."""
    return store.get_briefing_preference(workspace_id, user_id) or default_preference(
        workspace_id, user_id
    )


def _briefing_tasks(store: Store, workspace_id: str):
    # Active tasks plus done ones so completed_today can be counted
    active = [s for s in TaskStatus if s not in TERMINAL_STATUSES]
    return store.list_tasks(workspace_id, statuses=active + [TaskStatus.DONE])


def generate_and_store_briefing(
    store: Store,
    llm: Optional[LLMClient],
    workspace_id: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> Briefing:
    """
    Generate today's briefing for one user and upsert it.

    "Today" is the current date in the user's preferred timezone. An existing
    briefing for that date is overwritten.
    """
    preference = load_preference(store, workspace_id, user_id)
    tz = resolve_timezone(preference.timezone)
    now = now or datetime.now(timezone.utc)
    today = now.astimezone(tz).date()

    tasks = _briefing_tasks(store, workspace_id)
    content = generate_briefing(tasks, preference, llm, today=today, tz=tz)

    briefing = store.upsert_briefing(
        Briefing(
            workspace_id=workspace_id,
            user_id=user_id,
            briefing_date=today,
            content=content,
        )
    )
    logger.info(
        "Stored briefing %s for user %s on %s (ai_generated=%s).",
        briefing.id,
        user_id,
        today.isoformat(),
        content.ai_generated,
    )
    return briefing


def _is_delivery_hour(preference: BriefingPreference, now: datetime) -> bool:
    minutes = parse_hhmm(preference.delivery_time)
    if minutes is None:
        logger.warning(
            "Invalid delivery_time %r for user %s; skipping.",
            preference.delivery_time,
            preference.user_id,
        )
        return False
    local = now.astimezone(resolve_timezone(preference.timezone))
    return local.hour == minutes // 60


def run_daily_briefings(
    store: Store,
    llm: Optional[LLMClient],
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Hourly sweep: deliver briefings to users whose local delivery hour is now.

    A user who already has a briefing for their local date is skipped. Each
    delivered briefing also gets a briefing_ready notification.
    """
    now = now or datetime.now(timezone.utc)
    preferences = store.list_enabled_briefing_preferences()
    counts = {"checked": len(preferences), "generated": 0, "skipped": 0, "failed": 0}

    for preference in preferences:
        if not _is_delivery_hour(preference, now):
            counts["skipped"] += 1
            continue

        today = now.astimezone(resolve_timezone(preference.timezone)).date()
        if store.get_briefing(preference.workspace_id, preference.user_id, today) is not None:
            counts["skipped"] += 1
            continue

        try:
            generate_and_store_briefing(
                store, llm, preference.workspace_id, preference.user_id, now=now
            )
        except Exception:
            logger.exception("Daily briefing for user %s failed", preference.user_id)
            counts["failed"] += 1
            continue

        counts["generated"] += 1
        try:
            store.create_notification(
                Notification(
                    workspace_id=preference.workspace_id,
                    user_id=preference.user_id,
                    type=NotificationType.BRIEFING_READY,
                    title="Daily briefing ready",
                    message="Your daily briefing is ready to view.",
                    action_url=BRIEFING_ACTION_URL,
                )
            )
        except StorageError as e:
            logger.error("Failed to create briefing notification for %s: %s", preference.user_id, e)

    logger.info(
        "Daily briefing sweep: %d checked, %d generated, %d skipped, %d failed.",
        counts["checked"],
        counts["generated"],
        counts["skipped"],
        counts["failed"],
    )
    return counts


def record_briefing_feedback(
    store: Store,
    briefing_id: str,
    workspace_id: str,
    user_id: str,
    feedback: str,
    notes: Optional[str] = None,
) -> Briefing:
    """
    Attach thumbs up/down feedback to a briefing owned by this user.

    Raises:
        ValidationFailed: if feedback is not thumbs_up or thumbs_down.
        NotFoundError: if the briefing does not exist for this user.
    """
    try:
        value = BriefingFeedback(feedback)
    except ValueError as e:
        raise ValidationFailed("Feedback must be 'thumbs_up' or 'thumbs_down'") from e
    return store.set_briefing_feedback(briefing_id, workspace_id, user_id, value, notes)


# ---------------------------------------------------------------------------
# Markdown output
# ---------------------------------------------------------------------------


def render_briefing_markdown(briefing: Briefing) -> str:
    """Convert a Briefing into a human-readable markdown string."""
    content = briefing.content
    lines: list[str] = []

    lines.append(f"# Daily Briefing: {briefing.briefing_date.isoformat()}")
    lines.append("")
    lines.append(content.summary.overview or "_No overview._")
    lines.append("")
    lines.append(
        f"**Active:** {content.summary.total_tasks} | "
        f"**Urgent:** {content.summary.urgent_count} | "
        f"**Completed today:** {content.summary.completed_today}"
    )
    lines.append("")

    lines.append("## Top Outcomes")
    lines.append("")
    if not content.top_outcomes:
        lines.append("_Nothing stands out today._")
    for idx, item in enumerate(content.top_outcomes, start=1):
        lines.append(f"{idx}. {item.title} (`{item.priority.value}`)")
    lines.append("")

    lines.append("## Must Do")
    lines.append("")
    if not content.must_do:
        lines.append("_No must-do tasks._")
    for item in content.must_do:
        due = f", due {item.due_date.isoformat()}" if item.due_date else ""
        lines.append(f"- {item.title} (`{item.priority.value}`{due})")
    lines.append("")

    lines.append("## Overdue")
    lines.append("")
    if not content.overdue:
        lines.append("_Nothing overdue._")
    for item in content.overdue:
        days = "day" if item.days_overdue == 1 else "days"
        lines.append(f"- {item.title}: {item.days_overdue} {days} overdue")
    lines.append("")

    lines.append("## Waiting On")
    lines.append("")
    if not content.waiting_on:
        lines.append("_Not waiting on anyone._")
    for item in content.waiting_on:
        lines.append(f"- {item.title}: {item.waiting_for}")
    lines.append("")

    if content.defer_suggestions:
        lines.append("## Could Defer")
        lines.append("")
        for item in content.defer_suggestions:
            reason = f": {item.reason}" if item.reason else ""
            lines.append(f"- {item.title}{reason}")
        lines.append("")

    return "\n".join(lines)


def write_briefing_to_file(path: Path, text: str) -> Path:
    """Write the rendered briefing to `path`, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path
