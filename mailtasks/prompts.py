"""
Prompt templates for task extraction and daily briefings.
"""

import json
from typing import Any, Dict

from .models import NormalizedEmail


def _pretty_json(obj: Any) -> str:
    return json.dumps(obj, indent=2, sort_keys=False, default=str)


# ---------------------------------------------------------------------------
# Task extraction
# ---------------------------------------------------------------------------

EXTRACTION_PROMPT = (
    "You are an expert at identifying actionable tasks from email content.\n"
    "Analyze the following email and extract any actionable tasks. For each task, provide:\n"
    '- title: A clear, concise task title (imperative form, e.g. "Review Q3 report")\n'
    "- description: Brief context from the email (1-2 sentences max), or null if self-explanatory\n"
    '- priority: One of "urgent", "high", "medium", "low", "none" based on language urgency\n'
    "- due_date: ISO 8601 date string if a deadline is mentioned, otherwise null\n"
    "- confidence_score: 0.0-1.0 how confident you are this is a real actionable task\n\n"
    "Rules:\n"
    "- Only extract genuine action items, not FYI or informational content\n"
    "- A task must have a clear action the recipient needs to take\n"
    "- Set confidence_score >= 0.7 for clear action items with explicit asks\n"
    "- Set confidence_score 0.4-0.7 for implied action items\n"
    "- Set confidence_score < 0.4 for very uncertain/questionable items\n"
    "- If no actionable tasks exist, return an empty array\n"
    "- Do NOT extract tasks from automated notifications, newsletters, or marketing emails\n\n"
    "Respond with ONLY a JSON array. No markdown, no explanation."
)


def build_extraction_prompt(email: NormalizedEmail, sanitized_body: str) -> str:
    """
    Build the single-turn extraction prompt for one email.

    The body must already be sanitized; headers are passed through as-is.
    """
    email_context = (
        f"From: {email.sender}\n"
        f"Subject: {email.subject}\n"
        f"Date: {email.date}\n\n"
        f"{sanitized_body}"
    )
    return f"{EXTRACTION_PROMPT}\n\nEmail:\n{email_context}"


# ---------------------------------------------------------------------------
# Daily briefing
# ---------------------------------------------------------------------------

BRIEFING_PROMPT = (
    "You are a productivity assistant analyzing a user's task list to create a morning briefing.\n\n"
    "Given the preprocessed task data below, provide THREE things:\n\n"
    "1. top_outcomes: Pick the 3 most impactful tasks the user should focus on today."
    " Choose from the urgent, high-priority, and due-today tasks. Return their task_id,"
    " title, and priority.\n\n"
    "2. defer_suggestions: From the active low-priority tasks that are NOT due this week,"
    " suggest up to 3 that could be safely deferred. For each, provide task_id, title,"
    " and a brief reason (1 sentence).\n\n"
    "3. summary: A 1-2 sentence morning overview based on the statistics provided."
    " Be encouraging but honest about workload.\n\n"
    "Respond with ONLY valid JSON in this exact format:\n"
    "{\n"
    '  "top_outcomes": [{"task_id": "...", "title": "...", "priority": "..."}],\n'
    '  "defer_suggestions": [{"task_id": "...", "title": "...", "reason": "..."}],\n'
    '  "summary": "..."\n'
    "}"
)


def build_briefing_prompt(task_data: Dict[str, Any]) -> str:
    return f"{BRIEFING_PROMPT}\n\nTask Data:\n{_pretty_json(task_data)}"
