"""LLM client: unified async interface for Claude and OpenAI-compatible models."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import anthropic
import openai

from auditengine.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
    asyncio.TimeoutError,
)


class LLMClient:
    """Unified async client for LLM-powered contract analysis.

    Features:
    - Primary (Claude) + fallback (OpenAI-compatible) with automatic failover
    - Exponential backoff retries on rate limits / transient errors
    - Per-call timeout so a stalled provider cannot hold a job
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._has_anthropic = bool(settings.anthropic_api_key)
        self._has_openai = bool(settings.openai_api_key)
        self._anthropic = (
            anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
            if self._has_anthropic else None
        )
        self._openai = (
            openai.AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url or None,
            )
            if self._has_openai else None
        )
        self._primary_model = settings.primary_llm_model
        self._fallback_model = settings.fallback_llm_model
        self._max_retries = max(1, settings.llm_max_retries)
        self._retry_base_delay = settings.llm_retry_base_delay
        self._timeout = settings.llm_timeout_seconds

    async def analyze(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.1,
        max_tokens: int = 4000,
    ) -> dict[str, Any]:
        """Send an analysis prompt and return the parsed JSON response.

        Tries Claude first when a key is configured and falls back to the
        OpenAI-compatible provider on failure. Each call is retried with
        exponential backoff on transient errors.
        """
        if self._anthropic is not None:
            try:
                return await self._retry(
                    self._call_claude, self._primary_model, system_prompt,
                    user_prompt, temperature, max_tokens,
                )
            except Exception as e:
                if self._openai is None:
                    raise
                logger.warning("Claude API failed after retries: %s, falling back to %s",
                               e, self._fallback_model)
        if self._openai is None:
            raise RuntimeError("No LLM provider configured")
        return await self._retry(
            self._call_openai, self._fallback_model, system_prompt,
            user_prompt, temperature, max_tokens,
        )

    async def _retry(self, fn, *args, **kwargs) -> dict[str, Any]:
        """Retry a call with exponential backoff; each attempt is time-bounded."""
        last_error: BaseException | None = None
        for attempt in range(self._max_retries):
            try:
                return await asyncio.wait_for(fn(*args, **kwargs), timeout=self._timeout)
            except _TRANSIENT_ERRORS as e:
                last_error = e
                if attempt + 1 >= self._max_retries:
                    break
                delay = self._retry_base_delay * (2 ** attempt)
                logger.info("LLM retry %d/%d after %.1fs: %s",
                            attempt + 1, self._max_retries, delay, e or type(e).__name__)
                await asyncio.sleep(delay)
        raise last_error  # type: ignore[misc]

    async def _call_claude(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        message = await self._anthropic.messages.create(  # type: ignore[union-attr]
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        content = message.content[0].text
        return self._parse_json_response(content)

    async def _call_openai(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        response = await self._openai.chat.completions.create(  # type: ignore[union-attr]
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
        content = response.choices[0].message.content or "{}"
        return self._parse_json_response(content)

    @staticmethod
    def _parse_json_response(content: str) -> dict[str, Any]:
        """Extract JSON from an LLM response, handling markdown code blocks.

        Arrays are wrapped as ``{"items": [...]}``; unparseable text yields
        ``{"raw_response": ..., "parse_error": True}``.
        """
        content = content.strip()

        if content.startswith("```"):
            json_lines: list[str] = []
            in_block = False
            for line in content.split("\n"):
                if line.startswith("```") and not in_block:
                    in_block = True
                    continue
                elif line.startswith("```") and in_block:
                    break
                elif in_block:
                    json_lines.append(line)
            content = "\n".join(json_lines)

        try:
            parsed = json.loads(content)
            return parsed if isinstance(parsed, dict) else {"items": parsed}
        except json.JSONDecodeError:
            pass

        start = content.find("{")
        end = content.rfind("}") + 1
        if start >= 0 and end > start:
            try:
                return json.loads(content[start:end])
            except json.JSONDecodeError:
                pass

        start = content.find("[")
        end = content.rfind("]") + 1
        if start >= 0 and end > start:
            try:
                return {"items": json.loads(content[start:end])}
            except json.JSONDecodeError:
                pass
        return {"raw_response": content, "parse_error": True}
