import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from autoverify.agents.base import SpecialistAgent
from autoverify.backends import RetryPolicy
from autoverify.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from autoverify.backends.claude import ClaudeCodeBackend
from autoverify.backends.cli_agent import TurnState
from autoverify.backends.codex import CodexBackend
from autoverify.backends.resilient import ResilientBackend
from autoverify.backends.stream import extract_content, iter_stream_events, render_prompt


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.retriable = retriable
        self.attempts = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.attempts += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        yield "o"
        yield "k"


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(5)
        yield "late"


async def _collect(backend: AgentBackend) -> str:
    parts: list[str] = []
    async for part in backend.execute("system", "user", context={}):
        parts.append(part)
    return "".join(parts)


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"goal": "x", "model": "gpt-5-codex", "working_directory": "/repo"},
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "/repo" not in command[-1]


def test_codex_resume_command_reuses_session() -> None:
    backend = CodexBackend()
    command = backend.build_command(
        "system", "fix it", {"session_id": "thread-9", "resume": True}
    )

    assert command[0:4] == ["codex", "exec", "resume", "thread-9"]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature")

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[command.index("--append-system-prompt") + 1] == "system"


def test_claude_session_flags() -> None:
    backend = ClaudeCodeBackend()

    first = backend.build_command("s", "u", {"session_id": "abc", "resume": False})
    later = backend.build_command("s", "u", {"session_id": "abc", "resume": True})

    assert first[-2:] == ["--session-id", "abc"]
    assert later[-2:] == ["--resume", "abc"]


def _fake_cli(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "fake-agent"
    script.write_text("#!/usr/bin/env bash\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_codex_maps_reported_thread_for_resume(tmp_path: Path) -> None:
    script = _fake_cli(
        tmp_path,
        "echo 'warming up'\n"
        """echo '{"type": "thread.started", "thread_id": "t-42"}'\n"""
        """echo '{"type": "item.completed", "item": {"text": "done"}}'\n""",
    )
    events: list[dict[str, Any]] = []
    backend = CodexBackend(binary=str(script), event_hook=events.append)

    async def _run() -> str:
        parts = [
            part
            async for part in backend.execute("sys", "go", {"session_id": "s-1", "resume": False})
        ]
        return "".join(parts)

    assert asyncio.run(_run()) == "done"
    assert backend.sessions == {"s-1": "t-42"}
    assert backend.build_command("sys", "again", {"session_id": "s-1", "resume": True})[2:4] == [
        "resume",
        "t-42",
    ]
    names = [event["event"] for event in events]
    assert names == ["agent_cli_start", "agent_session", "agent_cli_exit"]


def test_claude_uses_result_only_when_nothing_streamed() -> None:
    backend = ClaudeCodeBackend()
    turn = TurnState()

    assert backend.translate({"type": "system", "session_id": "abc"}, turn) is None
    assert backend.translate({"type": "result", "result": "final"}, turn) == "final"
    assert turn.reported_session == "abc"

    streamed = TurnState()
    assert backend.translate({"type": "assistant", "message": {"content": "hi"}}, streamed) == "hi"
    assert backend.translate({"type": "result", "result": "hi"}, streamed) is None


def test_cli_backend_reports_nonzero_exit(tmp_path: Path) -> None:
    script = _fake_cli(tmp_path, "echo 'rate limited' >&2\nexit 3\n")
    backend = ClaudeCodeBackend(binary=str(script))

    with pytest.raises(BackendExecutionError, match="exit code 3: rate limited") as excinfo:
        asyncio.run(_collect(backend))

    assert excinfo.value.retriable is True
    assert excinfo.value.exit_code == 3


def test_cli_backend_missing_binary_is_permanent(tmp_path: Path) -> None:
    backend = CodexBackend(binary=str(tmp_path / "missing"))

    with pytest.raises(BackendProcessError) as excinfo:
        asyncio.run(_collect(backend))

    assert excinfo.value.retriable is False


def test_render_prompt_skips_control_keys() -> None:
    assert render_prompt("task", {"model": "m", "resume": True}) == "task"
    rendered = render_prompt("task", {"ticket": 42})
    assert rendered.startswith("task\n\nContext JSON:")
    assert '"ticket": 42' in rendered


def test_extract_content_handles_event_shapes() -> None:
    assert extract_content({"content": "plain"}) == "plain"
    assert extract_content({"content": [{"text": "a"}, {"image": "x"}, {"text": "b"}]}) == "ab"
    assert extract_content({"delta": {"text": "d"}}) == "d"
    assert extract_content({"message": {"content": [{"type": "text", "text": "m"}]}}) == "m"
    assert extract_content({"item": {"text": "i"}}) == "i"
    assert extract_content({"type": "ping"}) == ""


def test_iter_stream_events_reassembles_split_json() -> None:
    payload = [
        json.dumps({"type": "a"}),
        '{"type": "b",',
        '"content": "joined"}',
        "plain text line",
        "",
    ]

    async def _run() -> list[Any]:
        reader = asyncio.StreamReader()
        reader.feed_data(("\n".join(payload) + "\n").encode("utf-8"))
        reader.feed_eof()
        return [event async for event in iter_stream_events(reader)]

    events = asyncio.run(_run())

    assert events == [{"type": "a"}, {"type": "b", "content": "joined"}, "plain text line"]


def test_resilient_backend_retries_then_switches_backend() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        [("claude", primary), ("codex", SuccessBackend())],
        RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = asyncio.run(_collect(backend))

    assert output == "ok"
    assert primary.attempts == 2
    assert [event["event"] for event in events] == [
        "backend_attempt_failed",
        "backend_retry",
        "backend_attempt_failed",
        "backend_switched",
        "backend_recovered",
    ]
    assert events[-1]["backend"] == "codex"


def test_resilient_backend_skips_retries_for_permanent_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        [("claude", primary), ("codex", SuccessBackend())],
        RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    assert asyncio.run(_collect(backend)) == "ok"
    assert primary.attempts == 1


def test_resilient_backend_raises_when_every_attempt_fails() -> None:
    backend = ResilientBackend(
        [("claude", AlwaysFailBackend()), ("codex", AlwaysFailBackend())],
        RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed") as excinfo:
        asyncio.run(_collect(backend))

    assert "claude[0]: boom; codex[0]: boom" in str(excinfo.value)
    assert excinfo.value.retriable is False


def test_resilient_backend_deduplicates_chain_and_times_out() -> None:
    backend = ResilientBackend(
        [("claude", SlowBackend()), ("claude", SuccessBackend())],
        RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
    )

    assert len(backend.chain) == 1
    with pytest.raises(BackendExecutionError, match="timed out"):
        asyncio.run(_collect(backend))


def test_retry_policy_backoff_doubles() -> None:
    policy = RetryPolicy(backoff_seconds=0.5)

    assert [policy.delay_for(retry) for retry in (1, 2, 3)] == [0.5, 1.0, 2.0]


def test_resilient_backend_requires_a_backend() -> None:
    with pytest.raises(ValueError):
        ResilientBackend([])


def test_specialist_agent_collects_stream_and_applies_model() -> None:
    class EchoContextBackend(AgentBackend):
        async def execute(
            self,
            system_prompt: str,
            user_prompt: str,
            context: dict[str, Any],
        ) -> AsyncIterator[str]:
            yield f"{system_prompt}|{user_prompt}|{context.get('model')}"

    agent = SpecialistAgent(EchoContextBackend(), model="sonnet", system_prompt="  be terse  ")

    response = asyncio.run(agent.run("review this"))

    assert response.content == "be terse|review this|sonnet"
    assert response.role == "specialist"


def test_specialist_agent_timeout_is_not_retriable() -> None:
    agent = SpecialistAgent(SlowBackend())

    with pytest.raises(BackendTimeoutError) as excinfo:
        asyncio.run(agent.run("anything", timeout=0.05))

    assert excinfo.value.retriable is False
