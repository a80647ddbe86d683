"""
LLM client wrapper.

This module provides a thin wrapper around an OpenAI-compatible chat
completion API using httpx. The client only returns the model's text;
callers decide how to parse it. `parse_json_payload` accepts bare or
fenced JSON and nothing else.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from .config import Config
from .errors import ConfigError, LLMError

logger = logging.getLogger(__name__)

__all__ = ["LLMClient", "LLMError", "parse_json_payload"]


def _strip_code_fences(text: str) -> str:
    if "```" not in text:
        return text
    parts = text.split("```")
    if len(parts) < 3:
        return text
    # parts[1] is after first ```, maybe "json\n[...]"
    inner = parts[1]
    if inner.lstrip().lower().startswith("json"):
        inner = inner.split("\n", 1)[-1]
    return inner.strip()


def parse_json_payload(text: str) -> Any:
    """
    Parse JSON out of raw model text.

    Accepts pure JSON (object or array), optionally wrapped in ```json ... ```
    or ``` ... ``` fences. Anything else, including JSON buried in
    commentary, is rejected.

    Raises:
        LLMError: if the text is not a JSON value.
    """
    text = (text or "").strip()
    if not text:
        raise LLMError("Empty response from model when JSON was expected.")

    try:
        return json.loads(_strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise LLMError(f"Failed to parse JSON from LLM content: {e}") from e


class LLMClient:
    """
    Minimal `complete(prompt) -> text` client shared by the task extractor
    and the briefing generator.
    """

    def __init__(
        self,
        api_key: str,
        model_name: str,
        base_url: str = "https://api.openai.com/v1/chat/completions",
        timeout: float = 60.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.model_name = model_name
        self.base_url = base_url
        self.timeout = timeout
        self._http = http_client

    @classmethod
    def from_config(cls, config: Config) -> "LLMClient":
        if not config.openai_api_key or not config.openai_api_key.get_secret_value():
            raise ConfigError("OPENAI_API_KEY (or equivalent) is not set in config.")
        return cls(
            api_key=config.openai_api_key.get_secret_value(),
            model_name=config.model_name,
            base_url=config.llm_base_url,
            timeout=config.llm_timeout_seconds,
        )

    def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self._http is not None:
            return self._http.post(self.base_url, headers=headers, json=payload, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(self.base_url, headers=headers, json=payload)

    def complete(
        self,
        prompt: str,
        max_tokens: int = 2048,
        temperature: float = 0.2,
        system: Optional[str] = None,
    ) -> str:
        """
        Send a single-turn prompt and return the model's text.

        Raises:
            LLMError: on transport errors, non-2xx responses, or an
                unexpected response envelope.
        """
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {
            "model": self.model_name,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        try:
            logger.info("Calling LLM model=%s", self.model_name)
            resp = self._post(payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("HTTP error calling LLM: %s", e)
            raise LLMError(f"HTTP error from LLM API: {e}") from e

        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise LLMError("Invalid JSON from LLM HTTP response.") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("Unexpected structure in LLM response.") from e

        if not isinstance(content, str):
            raise LLMError(f"LLM content is not a string: {type(content)}")

        logger.debug("LLM raw content (first 500 chars): %s", content[:500])
        return content
