"""
Task extraction: one email in, a list of candidate tasks out.

`extract` never raises. Soft failures are returned as an ExtractionFailure
so the caller has to decide what an unusable answer means for its run.
"""

import logging
from dataclasses import dataclass
from typing import List, Union

from pydantic import ValidationError

from .errors import LLMError
from .llm_client import LLMClient, parse_json_payload
from .models import CandidateTask, NormalizedEmail
from .prompts import build_extraction_prompt
from .sanitize import sanitize_email_content

logger = logging.getLogger(__name__)

MALFORMED_OUTPUT = "malformed_output"
LLM_ERROR = "llm_error"


@dataclass(frozen=True)
class ExtractionFailure:
    """The LLM call failed or its answer could not be used."""

    reason: str
    detail: str = ""

    @property
    def retryable(self) -> bool:
        return self.reason == LLM_ERROR


ExtractionResult = Union[List[CandidateTask], ExtractionFailure]


def parse_candidate_tasks(parsed: list) -> List[CandidateTask]:
    """Keep the elements with a usable title, coercing the rest of each item."""
    tasks: List[CandidateTask] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        title = item.get("title")
        if not isinstance(title, str) or not title.strip():
            continue
        try:
            tasks.append(
                CandidateTask(
                    title=title,
                    description=item.get("description"),
                    priority=item.get("priority"),
                    due_date=item.get("due_date"),
                    confidence_score=item.get("confidence_score"),
                )
            )
        except ValidationError as ve:
            logger.warning("Skipping invalid candidate task %r: %s", title, ve)
    return tasks


class TaskExtractor:
    def __init__(self, llm: LLMClient, max_tokens: int = 2048):
        self.llm = llm
        self.max_tokens = max_tokens

    def extract(self, email: NormalizedEmail) -> ExtractionResult:
        sanitized_body = sanitize_email_content(email.body)
        if not sanitized_body.strip():
            return []

        prompt = build_extraction_prompt(email, sanitized_body)
        try:
            text = self.llm.complete(prompt, max_tokens=self.max_tokens)
        except LLMError as e:
            logger.warning("LLM call failed for email %s: %s", email.id, e)
            return ExtractionFailure(LLM_ERROR, str(e))

        try:
            parsed = parse_json_payload(text)
        except LLMError as e:
            logger.warning("Unparseable extraction output for email %s: %s", email.id, e)
            return ExtractionFailure(MALFORMED_OUTPUT, str(e))

        if not isinstance(parsed, list):
            logger.warning(
                "Extraction output for email %s is %s, expected an array",
                email.id,
                type(parsed).__name__,
            )
            return ExtractionFailure(MALFORMED_OUTPUT, "top-level value is not an array")

        tasks = parse_candidate_tasks(parsed)
        logger.info("Extracted %d candidate task(s) from email %s", len(tasks), email.id)
        return tasks


def extract_tasks_from_email(extractor: TaskExtractor, email: NormalizedEmail) -> List[CandidateTask]:
    """Plain-list form of TaskExtractor.extract: any failure yields []."""
    result = extractor.extract(email)
    if isinstance(result, ExtractionFailure):
        return []
    return result
