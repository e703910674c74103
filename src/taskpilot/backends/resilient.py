from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from taskpilot.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    BackendUnavailableError,
    LanguageModelBackend,
)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


class ResilientBackend(LanguageModelBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: LanguageModelBackend,
        fallback_name: str,
        fallback_backend: LanguageModelBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect(
        self,
        backend: LanguageModelBackend,
        prompt: str,
        prior_messages: list[str] | None,
    ) -> str:
        try:
            return await asyncio.wait_for(
                backend.send(prompt, prior_messages),
                timeout=self.retry_policy.timeout_seconds,
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                backend=backend.name,
                retriable=True,
            ) from exc

    def _attempt_failed(
        self, errors: list[str], backend_name: str, attempt: int, exc: Exception, retriable: bool
    ) -> None:
        errors.append(f"{backend_name}[{attempt}]: {exc}")
        self._emit(
            {
                "event": "backend_attempt_failed",
                "backend": backend_name,
                "attempt": attempt,
                "error": str(exc),
                "retriable": retriable,
            }
        )

    async def send(self, prompt: str, prior_messages: list[str] | None = None) -> str:
        chain = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            chain.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        unavailable = 0
        previous_name: str | None = None
        for backend_name, backend in chain:
            if previous_name is not None:
                self._emit(
                    {
                        "event": "backend_failover_start",
                        "from_backend": previous_name,
                        "to_backend": backend_name,
                    }
                )
            previous_name = backend_name
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt:
                    delay = self.retry_policy.backoff_seconds * 2 ** (attempt - 1)
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    text = await self._collect(backend, prompt, prior_messages)
                except BackendUnavailableError as exc:
                    unavailable += 1
                    self._attempt_failed(errors, backend_name, attempt, exc, False)
                    break
                except BackendExecutionError as exc:
                    self._attempt_failed(errors, backend_name, attempt, exc, exc.retriable)
                    if not exc.retriable:
                        break
                    continue
                except Exception as exc:
                    self._attempt_failed(errors, backend_name, attempt, exc, True)
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                return text

        detail = "; ".join(errors[-6:])
        if unavailable == len(chain):
            raise BackendUnavailableError(f"No language-model backend is available. {detail}")
        raise BackendExecutionError(f"Every backend attempt failed. {detail}", retriable=False)

    async def stream(
        self,
        prompt: str,
        prior_messages: list[str] | None = None,
    ) -> AsyncIterator[str]:
        text = await self.send(prompt, prior_messages)
        if text:
            yield text
