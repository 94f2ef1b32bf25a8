from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from uuid import uuid4

from autoverify.agents.coder import CoderAgent, build_coder_prompt, read_project_context
from autoverify.events import EventHook, emit
from autoverify.feedback import FeedbackSink
from autoverify.models import (
    FeedbackRecord,
    IterationResult,
    StageKind,
    StageResult,
    StopReason,
    VerificationContext,
    WorkerResult,
    build_summary,
    failure_fingerprint,
)
from autoverify.pipeline import GatedPipeline, PipelinePlan
from autoverify.process import CancellationToken
from autoverify.spec_tests import SpecTestWriter, augment_task_with_specs
from autoverify.stages.base import StageRunner
from autoverify.toolchain import DEFAULT_TOOLCHAIN, Toolchain
from autoverify.vcs.git import AUTOSTASH_MESSAGE, GitWorkspace, WorkspaceError

logger = logging.getLogger(__name__)

FEEDBACK_ERROR_LINES = 25
FEEDBACK_MAX_FILES = 20
AGENT_SUMMARY_LIMIT = 500


class WorkerInitError(RuntimeError):
    """Raised when the worker cannot establish a baseline or isolate local changes."""


@dataclass(slots=True)
class WorkerOptions:
    max_iterations: int = 5
    stall_limit: int = 3
    turn_timeout_seconds: float = 600.0
    plan: PipelinePlan = field(default_factory=PipelinePlan)
    spec_tests: bool = False
    video: bool = True


def build_feedback_prompt(
    iteration: int,
    max_iterations: int,
    results: Sequence[StageResult],
    changed_files: Sequence[str],
) -> str:
    lines = [
        f"VERIFICATION FAILED - Iteration {iteration}/{max_iterations}",
        "",
        "The following checks failed after your last changes:",
    ]
    for result in results:
        if result.passed:
            continue
        lines.append("")
        lines.append(
            f"## {result.stage.value.upper()} FAILED ({result.duration_ms / 1000:.1f}s)"
        )
        if result.error:
            error_lines = result.error.split("\n")
            lines.extend(error_lines[:FEEDBACK_ERROR_LINES])
            if len(error_lines) > FEEDBACK_ERROR_LINES:
                lines.append(f"... ({len(error_lines) - FEEDBACK_ERROR_LINES} more lines)")
    if changed_files:
        lines.extend(["", "Files you changed:"])
        lines.extend(f"- {path}" for path in changed_files[:FEEDBACK_MAX_FILES])
    lines.extend(
        [
            "",
            f"You have {max_iterations - iteration} iterations remaining. Fix the errors above.",
        ]
    )
    return "\n".join(lines)


class Worker:
    """Drives the coder agent through write, verify and fix iterations."""

    def __init__(
        self,
        workspace: GitWorkspace,
        coder: CoderAgent,
        runners: Mapping[StageKind, StageRunner],
        *,
        options: WorkerOptions | None = None,
        toolchain: Toolchain = DEFAULT_TOOLCHAIN,
        feedback: FeedbackSink | None = None,
        spec_writer: SpecTestWriter | None = None,
        event_hook: EventHook | None = None,
        session_id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self.workspace = workspace
        self.coder = coder
        self.runners = dict(runners)
        self.options = options or WorkerOptions()
        self.toolchain = toolchain
        self.feedback = feedback
        self.spec_writer = spec_writer
        self.event_hook = event_hook
        self.session_id_factory = session_id_factory

    def _emit(self, event: str, **payload: object) -> None:
        emit(self.event_hook, event, **payload)

    def _write_feedback(
        self,
        *,
        ok: bool,
        started: float,
        changed_files: Sequence[str],
        results: Sequence[StageResult],
    ) -> None:
        if self.feedback is None:
            return
        duration_ms = int((time.monotonic() - started) * 1000)
        record = FeedbackRecord(
            ok=ok,
            duration_ms=duration_ms,
            git_ref=self.workspace.try_head_ref(short=True),
            trigger_files=list(changed_files),
            checks=list(results),
            summary=build_summary(list(results), duration_ms),
        )
        try:
            self.feedback.write(record)
        except OSError as exc:
            logger.warning("Could not write feedback record: %s", exc)

    def _finish(
        self,
        *,
        ok: bool,
        stop_reason: StopReason,
        started: float,
        iterations: list[IterationResult],
        changed_files: Sequence[str],
        video: StageResult | None = None,
    ) -> WorkerResult:
        result = WorkerResult(
            ok=ok,
            iterations=iterations,
            total_duration_ms=int((time.monotonic() - started) * 1000),
            stop_reason=stop_reason,
            changed_files=tuple(changed_files),
            video=video,
        )
        self._emit(
            "done",
            ok=ok,
            stop_reason=stop_reason,
            iterations=len(iterations),
            total_duration_ms=result.total_duration_ms,
        )
        return result

    async def run(self, task: str) -> WorkerResult:
        started = time.monotonic()
        try:
            baseline = self.workspace.head_ref()
        except WorkspaceError as exc:
            raise WorkerInitError(f"Could not resolve baseline commit: {exc}") from exc

        with ExitStack() as stack:
            try:
                stashed = stack.enter_context(
                    self.workspace.stash_guard(AUTOSTASH_MESSAGE, self.event_hook)
                )
            except WorkspaceError as exc:
                raise WorkerInitError(f"Could not stash local changes: {exc}") from exc
            self._emit("git_stash", stashed=stashed)
            return await self._run_task(task, baseline, started)

    async def _spec_phase(self, task: str) -> str:
        if self.spec_writer is None or not self.options.spec_tests:
            return task
        self._emit("stage_start", stage=StageKind.SPEC_TEST.value)
        try:
            spec = await self.spec_writer.run(task)
        except (OSError, WorkspaceError) as exc:
            logger.warning("Spec-test phase failed, continuing without acceptance tests: %s", exc)
            return task
        if spec.ok and spec.test_files:
            return augment_task_with_specs(task, spec.test_files)
        return task

    async def _agent_turn(self, message: str, session_id: str, iteration: int) -> tuple[str, int]:
        self._emit("agent_start", iteration=iteration)
        try:
            response = await self.coder.run(
                message,
                {
                    "session_id": session_id,
                    "resume": iteration > 1,
                    "working_directory": str(self.workspace.repo_root),
                },
                timeout=self.options.turn_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._emit("error", iteration=iteration, error=f"Agent failed: {exc}")
            return "", 0
        self._emit(
            "agent_done",
            iteration=iteration,
            duration_ms=response.duration_ms,
            summary=response.content[:200],
        )
        return response.content, response.duration_ms

    async def _run_task(self, task: str, baseline: str, started: float) -> WorkerResult:
        options = self.options
        iterations: list[IterationResult] = []
        changed_files: list[str] = []
        try:
            task = await self._spec_phase(task)
            self.coder.system_prompt = build_coder_prompt(
                self.toolchain, task, read_project_context(self.workspace.repo_root)
            )
            session_id = self.session_id_factory()
            pipeline = GatedPipeline(
                self.runners,
                replace(options.plan, build=False, video=False),
                event_hook=self.event_hook,
            )
            last_fingerprint = ""
            consecutive_stalls = 0

            for iteration in range(1, options.max_iterations + 1):
                self._emit(
                    "iteration_start", iteration=iteration, max_iterations=options.max_iterations
                )
                if iterations:
                    previous = iterations[-1]
                    message = build_feedback_prompt(
                        previous.iteration,
                        options.max_iterations,
                        previous.results,
                        previous.changed_files,
                    )
                else:
                    message = task
                reply, agent_ms = await self._agent_turn(message, session_id, iteration)

                changed_files = await asyncio.to_thread(self.workspace.changed_files, baseline)
                self._emit("verify_start", iteration=iteration, changed_files=changed_files)
                ctx = VerificationContext.create(
                    self.workspace.repo_root,
                    changed_files,
                    CancellationToken(),
                    baseline_ref=baseline,
                    trigger="iteration",
                    task=task,
                )
                run = await pipeline.run(ctx)
                self._emit(
                    "verify_done",
                    iteration=iteration,
                    all_passed=run.all_passed,
                    checks=[result.to_dict() for result in run.results],
                )
                current = IterationResult(
                    iteration=iteration,
                    agent_duration_ms=agent_ms,
                    verify_duration_ms=run.duration_ms,
                    results=tuple(run.results),
                    all_passed=run.all_passed,
                    changed_files=tuple(changed_files),
                    agent_summary=reply[:AGENT_SUMMARY_LIMIT],
                )
                iterations.append(current)

                if run.all_passed:
                    video = await self._video_proof(ctx)
                    self._write_feedback(
                        ok=True, started=started, changed_files=changed_files, results=run.results
                    )
                    return self._finish(
                        ok=True,
                        stop_reason="success",
                        started=started,
                        iterations=iterations,
                        changed_files=changed_files,
                        video=video,
                    )

                fingerprint = failure_fingerprint(run.results)
                if fingerprint and fingerprint == last_fingerprint:
                    consecutive_stalls += 1
                else:
                    consecutive_stalls = 0
                last_fingerprint = fingerprint
                if consecutive_stalls:
                    self._emit(
                        "stall_warning",
                        iteration=iteration,
                        consecutive_stalls=consecutive_stalls,
                        stall_limit=options.stall_limit,
                    )
                if consecutive_stalls >= options.stall_limit:
                    self._write_feedback(
                        ok=False, started=started, changed_files=changed_files, results=run.results
                    )
                    return self._finish(
                        ok=False,
                        stop_reason="stall",
                        started=started,
                        iterations=iterations,
                        changed_files=changed_files,
                    )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Worker failed")
            self._emit("error", error=str(exc))
            last_results = iterations[-1].results if iterations else ()
            self._write_feedback(
                ok=False, started=started, changed_files=changed_files, results=last_results
            )
            return self._finish(
                ok=False,
                stop_reason="error",
                started=started,
                iterations=iterations,
                changed_files=changed_files,
            )

        last_results = iterations[-1].results if iterations else ()
        self._write_feedback(
            ok=False, started=started, changed_files=changed_files, results=last_results
        )
        return self._finish(
            ok=False,
            stop_reason="max-iterations",
            started=started,
            iterations=iterations,
            changed_files=changed_files,
        )

    async def _video_proof(self, ctx: VerificationContext) -> StageResult | None:
        runner = self.runners.get(StageKind.VIDEO)
        if not self.options.video or runner is None:
            return None
        self._emit("stage_start", stage=StageKind.VIDEO.value)
        result = await runner.run(ctx)
        self._emit("video_done", result=result.to_dict())
        return result
