"""Unified async LLM client supporting Anthropic and OpenAI-compatible APIs.

Provider and credentials come from the environment:

- ``LLM_PROVIDER``: ``anthropic`` (default), ``openai`` or ``openai_compatible``
- ``LLM_MODEL``: model name; a small, cheap default is used per provider
- ``ANTHROPIC_API_KEY`` / ``OPENAI_API_KEY`` / ``OPENAI_BASE_URL``
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

log = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def llm_configured() -> bool:
    """True when the configured provider has credentials to call."""
    provider = os.environ.get("LLM_PROVIDER", "anthropic")
    if provider == "anthropic":
        return bool(os.environ.get("ANTHROPIC_API_KEY"))
    if provider == "openai":
        return bool(os.environ.get("OPENAI_API_KEY"))
    if provider == "openai_compatible":
        return bool(os.environ.get("OPENAI_BASE_URL"))
    return False


def ai_timeout() -> float:
    try:
        return float(os.environ.get("DRILL_AI_TIMEOUT", "20"))
    except ValueError:
        return 20.0


class LLMClient:
    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 1024,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.max_tokens = max_tokens
        self._client: Any = self._make_client(api_key, base_url)

    def _make_client(self, api_key: str | None, base_url: str | None) -> Any:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            return anthropic.AsyncAnthropic(api_key=api_key or os.environ.get("ANTHROPIC_API_KEY"))
        if self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            return openai.AsyncOpenAI(**kwargs)
        raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send one system+user exchange and return the reply parsed as a JSON object."""
        try:
            if self.provider == "anthropic":
                text = await self._call_anthropic(system, user)
            else:
                text = await self._call_openai(system, user)
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
        if not isinstance(data, dict):
            raise LLMCallError(f"LLM returned {type(data).__name__}, expected a JSON object")
        return data

    async def _call_anthropic(self, system: str, user: str) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        text = response.content[0].text.strip()
        m = _FENCED_JSON_RE.search(text)
        return m.group(1) if m else text

    async def _call_openai(self, system: str, user: str) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or "{}"
