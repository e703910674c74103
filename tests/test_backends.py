import asyncio
import os
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from taskpilot.backends import (
    BackendExecutionError,
    BackendTimeoutError,
    BackendUnavailableError,
    ClaudeCLIBackend,
    LanguageModelBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
    request_text,
)


class AlwaysFailBackend(LanguageModelBackend):
    name = "failing"

    async def stream(
        self, prompt: str, prior_messages: list[str] | None = None
    ) -> AsyncIterator[str]:
        _ = prompt, prior_messages
        raise BackendExecutionError("boom", backend="fake", retriable=True)
        yield ""  # pragma: no cover


class MissingBackend(LanguageModelBackend):
    name = "missing"

    async def stream(
        self, prompt: str, prior_messages: list[str] | None = None
    ) -> AsyncIterator[str]:
        _ = prompt, prior_messages
        raise BackendUnavailableError("not installed", backend="missing")
        yield ""  # pragma: no cover


class SuccessBackend(LanguageModelBackend):
    name = "success"

    async def stream(
        self, prompt: str, prior_messages: list[str] | None = None
    ) -> AsyncIterator[str]:
        _ = prompt, prior_messages
        yield "o"
        yield "k "


class SlowBackend(LanguageModelBackend):
    name = "slow"

    async def stream(
        self, prompt: str, prior_messages: list[str] | None = None
    ) -> AsyncIterator[str]:
        _ = prompt, prior_messages
        await asyncio.sleep(5)
        yield "late"


def _policy() -> RetryPolicy:
    return RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0)


def test_send_joins_streamed_chunks() -> None:
    assert asyncio.run(SuccessBackend().send("hi")) == "ok"


def test_claude_build_command_shape() -> None:
    backend = ClaudeCLIBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("summarize progress")

    assert command[0:2] == ["claude", "-p"]
    assert "summarize progress" in command
    assert "--output-format" in command
    assert "stream-json" in command


def test_claude_prompt_includes_prior_messages() -> None:
    prompt = ClaudeCLIBackend.build_prompt("now", ["earlier"])

    assert prompt.index("earlier") < prompt.index("now")
    assert ClaudeCLIBackend.build_prompt("now", None) == "now"


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=AlwaysFailBackend(),
        fallback_name="openai",
        fallback_backend=SuccessBackend(),
        retry_policy=_policy(),
        event_hook=events.append,
    )

    output = asyncio.run(backend.send("prompt"))

    assert output == "ok"
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert "backend_failover_start" in event_names
    assert "backend_fallback_success" in event_names
    failover = next(event for event in events if event["event"] == "backend_failover_start")
    assert failover["from_backend"] == "claude"
    assert failover["to_backend"] == "openai"


def test_resilient_backend_reports_unavailable_when_nothing_is_installed() -> None:
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=MissingBackend(),
        fallback_name="openai",
        fallback_backend=MissingBackend(),
        retry_policy=_policy(),
    )

    with pytest.raises(BackendUnavailableError):
        asyncio.run(backend.send("prompt"))


def test_resilient_backend_gives_up_after_all_attempts() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=AlwaysFailBackend(),
        fallback_name="openai",
        fallback_backend=AlwaysFailBackend(),
        retry_policy=_policy(),
        event_hook=events.append,
    )

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.send("prompt"))

    assert not isinstance(excinfo.value, BackendUnavailableError)
    assert excinfo.value.retriable is False
    assert sum(1 for event in events if event["event"] == "backend_attempt_failed") == 4


def test_request_text_times_out() -> None:
    with pytest.raises(BackendTimeoutError):
        asyncio.run(request_text(SlowBackend(), "prompt", timeout_seconds=0.01))


def test_request_text_without_backend() -> None:
    with pytest.raises(BackendUnavailableError):
        asyncio.run(request_text(None, "prompt", timeout_seconds=1.0))


def test_claude_backend_parses_split_json_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeStdout:
        def __init__(self, lines: list[bytes]) -> None:
            self._lines = lines
            self._index = 0

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if self._index >= len(self._lines):
                raise StopAsyncIteration
            line = self._lines[self._index]
            self._index += 1
            return line

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        def __init__(self) -> None:
            self.stdout = FakeStdout(
                [
                    b'{"type":"assistant","message":{"content":[{"type":"text",\n',
                    b'"text":"hello "}]}}\n',
                    b"plain text line\n",
                    b'{"type":"result","result":"hello plain text line"}\n',
                ]
            )
            self.stderr = FakeStderr()
            self.returncode: int | None = None

        async def wait(self) -> int:
            self.returncode = 0
            return 0

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    output = asyncio.run(ClaudeCLIBackend().send("prompt"))

    assert output == "hello plain text line"


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell script")
def test_claude_backend_kills_process_on_timeout(tmp_path: Path) -> None:
    pid_file = tmp_path / "claude.pid"
    script = tmp_path / "claude"
    script.write_text(f"#!/bin/sh\necho $$ > {pid_file}\nexec sleep 30\n", encoding="utf-8")
    script.chmod(0o755)

    with pytest.raises(BackendTimeoutError):
        asyncio.run(request_text(ClaudeCLIBackend(binary=str(script)), "prompt", timeout_seconds=1.0))

    pid = int(pid_file.read_text(encoding="utf-8").strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_claude_backend_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> Any:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendUnavailableError):
        asyncio.run(ClaudeCLIBackend(binary="no-such-claude").send("prompt"))


def test_openai_backend_uses_configured_model() -> None:
    captured: dict[str, Any] = {}

    class FakeResponses:
        def create(self, **kwargs: Any) -> dict[str, Any]:
            captured.update(kwargs)
            return {"output_text": "  ok  "}

    class FakeClient:
        def __init__(self) -> None:
            self.responses = FakeResponses()

    backend = OpenAIBackend(model="gpt-4o-mini", client=FakeClient())

    output = asyncio.run(backend.send("prompt", ["earlier"]))

    assert output == "ok"
    assert captured["model"] == "gpt-4o-mini"
    assert [item["role"] for item in captured["input"]] == ["system", "user", "user"]
    assert captured["input"][-1]["content"] == "prompt"


def test_openai_backend_wraps_client_errors() -> None:
    class BrokenResponses:
        def create(self, **kwargs: Any) -> Any:
            raise ConnectionError("network down")

    class BrokenClient:
        responses = BrokenResponses()

    backend = OpenAIBackend(client=BrokenClient())

    with pytest.raises(BackendExecutionError, match="network down"):
        asyncio.run(backend.send("prompt"))
