from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from openai import OpenAI, OpenAIError

from taskpilot.backends.base import (
    BackendExecutionError,
    BackendUnavailableError,
    LanguageModelBackend,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You assist an AI coding agent that works through dependent tasks. "
    "Answer precisely and follow any requested output format exactly."
)


class OpenAIBackend(LanguageModelBackend):
    """Responses API backend; calls run in a worker thread."""

    name = "openai"

    def __init__(self, *, model: str = "gpt-4o-mini", client: Any | None = None) -> None:
        self.model = model
        self._client = client
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                logger.info("OpenAI client unavailable: %s", exc)
                self._client = None

    @staticmethod
    def _build_input(prompt: str, prior_messages: list[str] | None) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        for item in prior_messages or []:
            messages.append({"role": "user", "content": item})
        messages.append({"role": "user", "content": prompt})
        return messages

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def stream(
        self,
        prompt: str,
        prior_messages: list[str] | None = None,
    ) -> AsyncIterator[str]:
        if self._client is None:
            raise BackendUnavailableError(
                "OpenAI client is not configured (missing API key?).", backend=self.name
            )
        client = self._client

        def _request() -> Any:
            return client.responses.create(
                model=self.model,
                input=self._build_input(prompt, prior_messages),
            )

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            raise BackendExecutionError(
                f"OpenAI request failed: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
