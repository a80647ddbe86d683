"""
Daily briefing generation.

The deterministic parts (must-do, overdue, waiting-on, counts) are always
computed locally. The LLM only contributes top outcomes, deferral
suggestions and the overview sentence; if its call or its answer is unusable
the briefing falls back to deterministic content.
"""

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, StrictStr, ValidationError

from .briefing_preprocessor import PreprocessedTasks, preprocess_tasks
from .errors import LLMError
from .llm_client import LLMClient, parse_json_payload
from .models import (
    PRIORITY_ORDER,
    BriefingContent,
    BriefingPreference,
    BriefingSummary,
    DeferSuggestion,
    MustDoItem,
    OverdueItem,
    Task,
    TaskPriority,
    TopOutcome,
    WaitingOnItem,
)
from .prompts import build_briefing_prompt

logger = logging.getLogger(__name__)

MUST_DO_LIMIT = 5
TOP_OUTCOMES_LIMIT = 3
DEFER_LIMIT = 3
DEFAULT_WAITING_FOR = "Waiting on response"


class AIBriefingOutput(BaseModel):
    """Minimum shape the model's JSON must have to be used at all."""

    top_outcomes: List[Any]
    defer_suggestions: List[Any]
    summary: StrictStr


def resolve_timezone(name: Optional[str]) -> tzinfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; using UTC", name)
        return ZoneInfo("UTC")


def _coerce_priority(value: Any) -> TaskPriority:
    try:
        return TaskPriority(value)
    except ValueError:
        return TaskPriority.NONE


def _usable_items(items: Iterable[Any]) -> List[Dict[str, Any]]:
    return [
        item
        for item in items
        if isinstance(item, dict)
        and isinstance(item.get("task_id"), str)
        and isinstance(item.get("title"), str)
    ]


# ---------------------------------------------------------------------------
# Deterministic sections
# ---------------------------------------------------------------------------


def build_must_do(pre: PreprocessedTasks) -> List[MustDoItem]:
    """Overdue + due today + urgent, deduplicated, priority-sorted, capped."""
    seen = set()
    candidates: List[Task] = []
    for task in [o.task for o in pre.overdue] + pre.due_today + pre.urgent:
        if task.id in seen:
            continue
        seen.add(task.id)
        candidates.append(task)

    candidates.sort(key=lambda t: PRIORITY_ORDER.index(t.priority))
    return [
        MustDoItem(task_id=t.id, title=t.title, due_date=t.due_date, priority=t.priority)
        for t in candidates[:MUST_DO_LIMIT]
    ]


def build_overdue(pre: PreprocessedTasks) -> List[OverdueItem]:
    return [
        OverdueItem(
            task_id=o.task.id,
            title=o.task.title,
            days_overdue=o.days_overdue,
            priority=o.task.priority,
        )
        for o in pre.overdue
    ]


def build_waiting_on(pre: PreprocessedTasks) -> List[WaitingOnItem]:
    return [
        WaitingOnItem(task_id=t.id, title=t.title, waiting_for=t.description or DEFAULT_WAITING_FOR)
        for t in pre.waiting
    ]


def build_summary(pre: PreprocessedTasks) -> BriefingSummary:
    total = len(pre.all_active_ids())
    urgent = len(pre.urgent)
    completed = len(pre.completed_today)
    overview = (
        f"You have {total} active task{'' if total == 1 else 's'}, "
        f"{urgent} urgent, and {completed} completed today."
    )
    return BriefingSummary(
        total_tasks=total,
        urgent_count=urgent,
        completed_today=completed,
        overview=overview,
    )


# ---------------------------------------------------------------------------
# LLM layer
# ---------------------------------------------------------------------------


def build_task_data(pre: PreprocessedTasks, today: date) -> Dict[str, Any]:
    """Compact JSON-ready view of the buckets for the prompt."""
    # Sunday-based week, matching how users read "this week"
    days_since_sunday = (today.weekday() + 1) % 7
    end_of_week = today + timedelta(days=7 - days_since_sunday)

    def brief(t: Task) -> Dict[str, Any]:
        return {"task_id": t.id, "title": t.title, "priority": t.priority.value}

    low_priority = [
        {**brief(t), "due_date": t.due_date.isoformat() if t.due_date else None}
        for t in pre.active
        if t.priority in (TaskPriority.LOW, TaskPriority.NONE)
        and (t.due_date is None or t.due_date > end_of_week)
    ]

    return {
        "overdue": [{**brief(o.task), "days_overdue": o.days_overdue} for o in pre.overdue],
        "due_today": [brief(t) for t in pre.due_today],
        "urgent": [brief(t) for t in pre.urgent],
        "high_priority": [brief(t) for t in pre.high_priority],
        "active_low_priority": low_priority,
        "stats": {
            "total_active": len(pre.all_active_ids()),
            "overdue_count": len(pre.overdue),
            "due_today_count": len(pre.due_today),
            "urgent_count": len(pre.urgent),
            "waiting_count": len(pre.waiting),
            "completed_today": len(pre.completed_today),
        },
    }


def generate_briefing_with_llm(
    llm: LLMClient,
    pre: PreprocessedTasks,
    today: date,
) -> Optional[AIBriefingOutput]:
    """
    Ask the LLM for the judgment calls. Returns None on any failure; never raises.
    """
    prompt = build_briefing_prompt(build_task_data(pre, today))
    try:
        text = llm.complete(prompt, max_tokens=1024)
        parsed = parse_json_payload(text)
        return AIBriefingOutput.model_validate(parsed)
    except LLMError as e:
        logger.warning("Briefing LLM call failed; using deterministic briefing: %s", e)
    except ValidationError as e:
        logger.warning("Briefing LLM output has the wrong shape; using deterministic briefing: %s", e)
    return None


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------


def generate_briefing(
    tasks: Iterable[Task],
    preferences: BriefingPreference,
    llm: Optional[LLMClient],
    today: Optional[date] = None,
    tz: Optional[tzinfo] = None,
) -> BriefingContent:
    """
    Build a BriefingContent for one user.

    `today` and `tz` default to the current date in the preference's
    timezone. Passing llm=None produces the deterministic briefing directly.
    """
    tz = tz or resolve_timezone(preferences.timezone)
    today = today or datetime.now(tz).date()

    pre = preprocess_tasks(tasks, preferences.filters, today, tz)

    must_do = build_must_do(pre)
    overdue = build_overdue(pre)
    waiting_on = build_waiting_on(pre)
    summary = build_summary(pre)

    ai = generate_briefing_with_llm(llm, pre, today) if llm is not None else None

    if ai is None:
        return BriefingContent(
            top_outcomes=[
                TopOutcome(task_id=m.task_id, title=m.title, priority=m.priority)
                for m in must_do[:TOP_OUTCOMES_LIMIT]
            ],
            must_do=must_do,
            defer_suggestions=[],
            waiting_on=waiting_on,
            overdue=overdue,
            summary=summary,
            ai_generated=False,
        )

    top_outcomes = [
        TopOutcome(
            task_id=item["task_id"],
            title=item["title"],
            priority=_coerce_priority(item.get("priority")),
        )
        for item in _usable_items(ai.top_outcomes)[:TOP_OUTCOMES_LIMIT]
    ]
    defer_suggestions = [
        DeferSuggestion(
            task_id=item["task_id"],
            title=item["title"],
            reason=item["reason"] if isinstance(item.get("reason"), str) else "",
        )
        for item in _usable_items(ai.defer_suggestions)[:DEFER_LIMIT]
    ]
    if ai.summary.strip():
        summary = summary.model_copy(update={"overview": ai.summary.strip()})

    return BriefingContent(
        top_outcomes=top_outcomes,
        must_do=must_do,
        defer_suggestions=defer_suggestions,
        waiting_on=waiting_on,
        overdue=overdue,
        summary=summary,
        ai_generated=True,
    )
