from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from autoverify.config import STATE_DIRNAME, GatesConfig
from autoverify.events import EventHook
from autoverify.models import StageKind, StageResult, VerificationContext
from autoverify.process import (
    CommandCancelled,
    CommandResult,
    CommandTimeout,
    ProcessRegistry,
    run_command,
)
from autoverify.toolchain import DEFAULT_TOOLCHAIN, Toolchain
from autoverify.vcs.git import GitWorkspace

logger = logging.getLogger(__name__)

SHELL_NOT_FOUND_EXIT = 127


class InfrastructureUnavailable(RuntimeError):
    """Raised when a checker cannot run at all, as opposed to finding a problem."""


@dataclass(slots=True)
class StageEnvironment:
    """Collaborators shared by every runner of a pipeline."""

    workspace: GitWorkspace
    toolchain: Toolchain = DEFAULT_TOOLCHAIN
    gates: GatesConfig = field(default_factory=GatesConfig)
    registry: ProcessRegistry = field(default_factory=ProcessRegistry)
    app_url: str | None = None
    event_hook: EventHook | None = None

    @property
    def state_dir(self) -> Path:
        return self.workspace.repo_root / STATE_DIRNAME

    @property
    def evidence_dir(self) -> Path:
        return self.state_dir / "evidence"


class StageRunner(ABC):
    kind: ClassVar[StageKind]
    timeout_seconds: ClassVar[float] = 60.0
    # Slack over timeout_seconds so a command's own timeout reports first.
    timeout_grace_seconds: ClassVar[float] = 5.0

    def __init__(self, env: StageEnvironment) -> None:
        self.env = env

    @abstractmethod
    async def _execute(
        self, ctx: VerificationContext, upstream: Mapping[StageKind, StageResult]
    ) -> StageResult:
        """Run the check and return its verdict."""

    def timeout_result(self) -> StageResult:
        return StageResult.blocked(
            self.kind, f"{self.kind.value} timed out after {self.timeout_seconds:.0f}s"
        )

    async def _execute_bounded(
        self, ctx: VerificationContext, upstream: Mapping[StageKind, StageResult]
    ) -> StageResult:
        """Race ``_execute`` against the run token and the stage budget.

        The losing task is cancelled and awaited, so agent and browser
        processes are torn down before the runner returns.
        """
        task = asyncio.ensure_future(self._execute(ctx, upstream))
        cancel_waiter = asyncio.ensure_future(ctx.token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter},
                timeout=self.timeout_seconds + self.timeout_grace_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if task in done:
                return task.result()
            if cancel_waiter in done:
                raise CommandCancelled(f"{self.kind.value} cancelled")
            logger.warning(
                "Stage %s exceeded its %.0fs budget", self.kind.value, self.timeout_seconds
            )
            return self.timeout_result()
        finally:
            cancel_waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})

    async def run(
        self,
        ctx: VerificationContext,
        upstream: Mapping[StageKind, StageResult] | None = None,
    ) -> StageResult:
        if ctx.token.cancelled:
            return StageResult.cancelled(self.kind)
        started = time.monotonic()
        try:
            result = await self._execute_bounded(ctx, upstream or {})
        except InfrastructureUnavailable as exc:
            result = StageResult.advisory(self.kind, f"{exc} (skipped)")
        except FileNotFoundError as exc:
            result = StageResult.advisory(self.kind, f"Tool not available: {exc} (skipped)")
        except CommandCancelled:
            result = StageResult.cancelled(self.kind)
        except CommandTimeout as exc:
            result = StageResult.blocked(
                self.kind, f"{self.kind.value} timed out after {exc.timeout_seconds:.0f}s"
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Stage %s crashed", self.kind.value)
            result = StageResult.blocked(self.kind, f"{self.kind.value} crashed: {exc}")

        if ctx.token.cancelled:
            result = StageResult.cancelled(self.kind)
        elapsed = int((time.monotonic() - started) * 1000)
        return dataclasses.replace(result, duration_ms=result.duration_ms or elapsed)

    async def _run_tool(
        self, command: str, ctx: VerificationContext, *, timeout: float | None = None
    ) -> CommandResult:
        result = await run_command(
            command,
            cwd=ctx.working_dir,
            timeout=timeout or self.timeout_seconds,
            token=ctx.token,
            registry=self.env.registry,
        )
        if result.used_shell and result.exit_code == SHELL_NOT_FOUND_EXIT:
            raise InfrastructureUnavailable(f"Command not found: {command}")
        return result
