from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from taskpilot.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendUnavailableError,
    LanguageModelBackend,
)


def _is_unbalanced(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


class ClaudeCLIBackend(LanguageModelBackend):
    """Runs the `claude` CLI in print mode and streams its JSON events."""

    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]

    @staticmethod
    def build_prompt(prompt: str, prior_messages: list[str] | None) -> str:
        if not prior_messages:
            return prompt
        history = "\n\n".join(f"[previous message]\n{item}" for item in prior_messages)
        return f"{history}\n\n{prompt}"

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "result":
            # The final result repeats the assistant text already streamed.
            return ""
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    async def _events(lines: AsyncIterator[bytes]) -> AsyncIterator[dict[str, Any] | str]:
        """Reassemble JSON events split across lines; non-JSON lines pass through as text."""
        pending = ""
        async for raw_line in lines:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = pending + line
            try:
                event = json.loads(candidate)
            except json.JSONDecodeError:
                if _is_unbalanced(candidate):
                    pending = candidate
                    continue
                pending = ""
                yield line
                continue
            pending = ""
            if isinstance(event, dict):
                yield event
        if pending:
            yield pending

    async def stream(
        self,
        prompt: str,
        prior_messages: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(self.build_prompt(prompt, prior_messages))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendUnavailableError(
                f"Claude binary not found: {self.binary}", backend=self.name
            ) from exc
        if process.stdout is None:
            raise BackendProcessError(
                "Claude process has no stdout pipe.", backend=self.name, retriable=False
            )

        try:
            async for item in self._events(process.stdout):
                text = item if isinstance(item, str) else self._extract_content(item)
                if text:
                    yield text
            exit_code = await process.wait()
        finally:
            # Reader stopped early, e.g. on timeout.
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        if exit_code != 0:
            detail = ""
            if process.stderr is not None:
                detail = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
            raise BackendExecutionError(
                f"claude exited with status {exit_code}: {detail}",
                backend=self.name,
                exit_code=exit_code,
                retriable=True,
            )
