from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar

from autoverify.backends.base import AgentBackend, BackendExecutionError, BackendProcessError
from autoverify.backends.stream import iter_stream_events
from autoverify.events import EventHook, emit

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnState:
    streamed_text: bool = False
    reported_session: str | None = None


class CliAgentBackend(AgentBackend):
    """An agent driven through a coding CLI that streams JSON lines on stdout.

    Subclasses build the command line and translate each stream event into
    text. Session ids supplied by the caller are mapped to whatever id the
    tool reports, so a later ``resume`` reaches the right conversation.
    """

    name: ClassVar[str]

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.binary = binary or self.name
        self.working_directory = working_directory
        self.event_hook = event_hook
        self.sessions: dict[str, str] = {}

    def session_for(self, context: dict[str, Any]) -> str | None:
        session_id = context.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            return None
        return self.sessions.get(session_id, session_id)

    @abstractmethod
    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]: ...

    @abstractmethod
    def translate(self, event: dict[str, Any] | str, turn: TurnState) -> str | None:
        """Text to yield for one stream event, or ``None`` to drop it."""

    async def _spawn(self, command: list[str], cwd: Any) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc
        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )
        return process

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context)
        emit(
            self.event_hook,
            "agent_cli_start",
            backend=self.name,
            model=context.get("model"),
            resume=bool(context.get("resume")),
        )
        process = await self._spawn(
            command, context.get("working_directory") or self.working_directory
        )
        assert process.stdout is not None

        turn = TurnState()
        completed = False
        try:
            async for event in iter_stream_events(process.stdout):
                text = self.translate(event, turn)
                if text:
                    yield text
            completed = True
        finally:
            if not completed and process.returncode is None:
                process.kill()

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        requested = context.get("session_id")
        if turn.reported_session and isinstance(requested, str) and requested:
            self.sessions[requested] = turn.reported_session
            emit(
                self.event_hook,
                "agent_session",
                backend=self.name,
                session_id=requested,
                reported=turn.reported_session,
            )
        emit(
            self.event_hook,
            "agent_cli_exit",
            backend=self.name,
            exit_code=return_code,
            stderr=stderr_output[:400],
        )
        if return_code != 0:
            logger.warning("%s exited with code %d", self.name, return_code)
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
