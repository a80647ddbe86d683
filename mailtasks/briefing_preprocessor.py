"""
Deterministic bucketing of a task set for the daily briefing.
"""

from dataclasses import dataclass, field
from datetime import date, tzinfo
from typing import Iterable, List, Optional

from .models import (
    PRIORITY_ORDER,
    TERMINAL_STATUSES,
    BriefingFilters,
    Task,
    TaskPriority,
    TaskStatus,
)


@dataclass
class OverdueTask:
    task: Task
    days_overdue: int


@dataclass
class PreprocessedTasks:
    overdue: List[OverdueTask] = field(default_factory=list)
    due_today: List[Task] = field(default_factory=list)
    urgent: List[Task] = field(default_factory=list)
    high_priority: List[Task] = field(default_factory=list)
    waiting: List[Task] = field(default_factory=list)
    active: List[Task] = field(default_factory=list)
    completed_today: List[Task] = field(default_factory=list)

    def all_active_ids(self) -> set:
        """Ids of every non-terminal task across all buckets."""
        ids = {t.id for t in self.active}
        ids.update(o.task.id for o in self.overdue)
        for bucket in (self.due_today, self.urgent, self.high_priority, self.waiting):
            ids.update(t.id for t in bucket)
        return ids


def sort_by_priority(tasks: Iterable[Task]) -> List[Task]:
    return sorted(tasks, key=lambda t: PRIORITY_ORDER.index(t.priority))


def _apply_filters(tasks: Iterable[Task], filters: Optional[BriefingFilters]) -> List[Task]:
    tasks = list(tasks)
    if filters is None:
        return tasks
    if filters.projects:
        allowed_projects = set(filters.projects)
        tasks = [t for t in tasks if t.project_id and t.project_id in allowed_projects]
    if filters.priorities:
        allowed_priorities = {TaskPriority(p) for p in filters.priorities}
        tasks = [t for t in tasks if t.priority in allowed_priorities]
    return tasks


def _completed_on(task: Task, today: date, tz: Optional[tzinfo]) -> bool:
    if task.status != TaskStatus.DONE or task.completed_at is None:
        return False
    completed_at = task.completed_at
    if tz is not None and completed_at.tzinfo is not None:
        completed_at = completed_at.astimezone(tz)
    return completed_at.date() == today


def preprocess_tasks(
    tasks: Iterable[Task],
    filters: Optional[BriefingFilters],
    today: date,
    tz: Optional[tzinfo] = None,
) -> PreprocessedTasks:
    """
    Bucket tasks relative to `today`.

    Filters are applied first. Terminal tasks only feed completed_today, where
    completed_at is compared to `today` in `tz`. Due dates are compared by
    calendar day. A task can land in several buckets (overdue and urgent, for
    instance); `active` holds the non-terminal tasks that are neither overdue
    nor due today.
    """
    result = PreprocessedTasks()

    for task in _apply_filters(tasks, filters):
        if task.status in TERMINAL_STATUSES:
            if _completed_on(task, today, tz):
                result.completed_today.append(task)
            continue

        if task.status == TaskStatus.WAITING:
            result.waiting.append(task)

        if task.priority == TaskPriority.URGENT:
            result.urgent.append(task)
        elif task.priority == TaskPriority.HIGH:
            result.high_priority.append(task)

        if task.due_date is not None:
            diff = (today - task.due_date).days
            if diff > 0:
                result.overdue.append(OverdueTask(task=task, days_overdue=diff))
                continue
            if diff == 0:
                result.due_today.append(task)
                continue

        result.active.append(task)

    # Most overdue first
    result.overdue.sort(key=lambda o: o.days_overdue, reverse=True)
    result.due_today = sort_by_priority(result.due_today)
    result.urgent = sort_by_priority(result.urgent)
    result.high_priority = sort_by_priority(result.high_priority)
    return result
