from __future__ import annotations

import asyncio
import os
import re
import shlex
import signal
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
KILL_GRACE_SECONDS = 2.0


class CommandTimeout(RuntimeError):
    """Raised when a command exceeds its time budget."""

    def __init__(self, command: str, timeout_seconds: float) -> None:
        super().__init__(f"Command timed out after {timeout_seconds:.0f}s: {command}")
        self.command = command
        self.timeout_seconds = timeout_seconds


class CommandCancelled(RuntimeError):
    """Raised when a command is abandoned because its run was cancelled."""


class CancellationToken:
    """One-shot cancellation flag shared by every stage of a run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class ProcessRegistry:
    """Tracks live child processes so an owner can tear them down."""

    def __init__(self) -> None:
        self._processes: set[asyncio.subprocess.Process] = set()

    def __len__(self) -> int:
        return len(self._processes)

    def register(self, process: asyncio.subprocess.Process) -> None:
        self._processes.add(process)

    def unregister(self, process: asyncio.subprocess.Process) -> None:
        self._processes.discard(process)

    def terminate_all(self) -> int:
        count = 0
        for process in list(self._processes):
            if process.returncode is None:
                _send_signal(process, signal.SIGTERM)
                count += 1
        self._processes.clear()
        return count


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    used_shell: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


def _send_signal(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
    except (ProcessLookupError, PermissionError):
        pass


async def _stop(process: asyncio.subprocess.Process, communicate: asyncio.Task) -> None:
    _send_signal(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(asyncio.shield(communicate), timeout=KILL_GRACE_SECONDS)
    except TimeoutError:
        _send_signal(process, signal.SIGKILL)
        await communicate


def _split_command(command: str | Sequence[str]) -> tuple[str, list[str] | None]:
    if not isinstance(command, str):
        argv = [str(part) for part in command]
        return shlex.join(argv), argv
    command_text = command.strip()
    if SHELL_REQUIRED_PATTERN.search(command_text):
        return command_text, None
    try:
        return command_text, shlex.split(command_text)
    except ValueError:
        return command_text, None


async def run_command(
    command: str | Sequence[str],
    *,
    cwd: Path,
    timeout: float,
    token: CancellationToken | None = None,
    registry: ProcessRegistry | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run a command, racing completion against ``timeout`` and ``token``.

    Raises ``FileNotFoundError`` when the executable does not exist,
    ``CommandTimeout`` when the budget runs out and ``CommandCancelled`` when
    the token fires. In both of the latter cases the process group is sent
    SIGTERM and, after a short grace period, SIGKILL.
    """
    if token is not None and token.cancelled:
        raise CommandCancelled("Run cancelled before command start.")

    command_text, argv = _split_command(command)
    if not command_text:
        raise ValueError("Command is empty.")
    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    started = time.monotonic()
    if argv is None:
        process = await asyncio.create_subprocess_shell(
            command_text,
            cwd=str(cwd),
            env=process_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    else:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=process_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    if registry is not None:
        registry.register(process)

    communicate = asyncio.ensure_future(process.communicate())
    waiters: set[asyncio.Future] = {communicate}
    cancel_waiter: asyncio.Task | None = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if communicate not in done:
            await _stop(process, communicate)
            if cancel_waiter is not None and cancel_waiter in done:
                raise CommandCancelled(f"Command cancelled: {command_text}")
            raise CommandTimeout(command_text, timeout)
        stdout, stderr = communicate.result()
    except asyncio.CancelledError:
        if not communicate.done():
            await _stop(process, communicate)
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if registry is not None:
            registry.unregister(process)

    return CommandResult(
        command=command_text,
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_ms=int((time.monotonic() - started) * 1000),
        used_shell=argv is None,
    )
