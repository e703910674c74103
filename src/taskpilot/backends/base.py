from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator


class BackendExecutionError(RuntimeError):
    """Raised when a language-model call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a call exceeds its configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when a backend subprocess cannot be started or exits abnormally."""


class BackendUnavailableError(BackendExecutionError):
    """Raised when no language model is reachable at all."""

    def __init__(self, message: str, *, backend: str | None = None) -> None:
        super().__init__(message, backend=backend, retriable=False)


class LanguageModelBackend(ABC):
    name = "backend"

    @abstractmethod
    async def stream(
        self,
        prompt: str,
        prior_messages: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Send a prompt and stream textual chunks of the reply."""

    async def send(self, prompt: str, prior_messages: list[str] | None = None) -> str:
        chunks: list[str] = []
        async for chunk in self.stream(prompt, prior_messages):
            chunks.append(chunk)
        return "".join(chunks).strip()


async def request_text(
    backend: LanguageModelBackend | None,
    prompt: str,
    *,
    timeout_seconds: float,
    prior_messages: list[str] | None = None,
) -> str:
    """Collect a full reply from backend, bounded by timeout_seconds."""
    if backend is None:
        raise BackendUnavailableError("No language model backend is configured.")
    try:
        return await asyncio.wait_for(
            backend.send(prompt, prior_messages), timeout=timeout_seconds
        )
    except TimeoutError as exc:
        raise BackendTimeoutError(
            f"Backend request timed out after {timeout_seconds:.1f}s",
            backend=backend.name,
            retriable=True,
        ) from exc
