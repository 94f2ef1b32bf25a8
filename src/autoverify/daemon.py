from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from autoverify.events import EventHook, emit
from autoverify.feedback import FeedbackSink
from autoverify.models import (
    FeedbackRecord,
    StageKind,
    VerificationContext,
    build_summary,
)
from autoverify.pipeline import GatedPipeline, PipelinePlan, PipelineRun
from autoverify.process import CancellationToken, ProcessRegistry
from autoverify.stages.base import StageRunner
from autoverify.vcs.git import GitWorkspace
from autoverify.watcher import CommitDetected, FilesChanged, WatcherEvent

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _ActiveRun:
    files: tuple[str, ...]
    commit: bool
    token: CancellationToken
    task: asyncio.Task[PipelineRun]


class RunCoordinator:
    """Keeps at most one verification run alive, superseding it when new changes arrive."""

    def __init__(
        self,
        workspace: GitWorkspace,
        runners: Mapping[StageKind, StageRunner],
        *,
        save_plan: PipelinePlan,
        commit_plan: PipelinePlan,
        registry: ProcessRegistry,
        feedback: FeedbackSink | None = None,
        event_hook: EventHook | None = None,
        rerun_grace_seconds: float = 0.1,
    ) -> None:
        self.workspace = workspace
        self.runners = dict(runners)
        self.save_plan = save_plan
        self.commit_plan = commit_plan
        self.registry = registry
        self.feedback = feedback
        self.event_hook = event_hook
        self.rerun_grace_seconds = rerun_grace_seconds
        self.history: list[PipelineRun] = []
        self._active: _ActiveRun | None = None
        self._pending: dict[str, None] = {}
        self._pending_commit = False
        self._rerun: asyncio.TimerHandle | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    @property
    def running(self) -> bool:
        return self._active is not None

    def handle_event(self, event: WatcherEvent) -> None:
        if self._closed:
            return
        if isinstance(event, FilesChanged):
            files, commit = event.files, False
        elif isinstance(event, CommitDetected):
            files, commit = (), True
        else:
            raise TypeError(f"Unsupported watcher event: {event!r}")

        if self._active is not None or self._rerun is not None:
            self._pending.update(dict.fromkeys(files))
            self._pending_commit = self._pending_commit or commit
            if self._active is not None and not self._active.token.cancelled:
                logger.info("Superseding active run")
                self._active.token.cancel()
            return
        self._start(files, commit)

    def _start(self, files: tuple[str, ...], commit: bool) -> None:
        self._idle.clear()
        token = CancellationToken()
        task = asyncio.get_running_loop().create_task(self._execute(files, commit, token))
        self._active = _ActiveRun(files=files, commit=commit, token=token, task=task)
        task.add_done_callback(self._on_done)

    async def _execute(
        self, files: tuple[str, ...], commit: bool, token: CancellationToken
    ) -> PipelineRun:
        emit(self.event_hook, "run_start", trigger_files=list(files), commit=commit)
        ctx = VerificationContext.create(
            self.workspace.repo_root,
            files,
            token,
            trigger="commit" if commit else "save",
        )
        pipeline = GatedPipeline(
            self.runners,
            self.commit_plan if commit else self.save_plan,
            event_hook=self.event_hook,
        )
        run = await pipeline.run(ctx)
        if run.cancelled:
            emit(self.event_hook, "run_cancelled", trigger_files=list(files))
            return run

        summary = build_summary(run.results, run.duration_ms)
        if self.feedback is not None:
            git_ref = await asyncio.to_thread(self.workspace.try_head_ref, short=True)
            record = FeedbackRecord(
                ok=run.all_passed,
                duration_ms=run.duration_ms,
                git_ref=git_ref,
                trigger_files=list(files),
                checks=list(run.results),
                summary=summary,
            )
            try:
                self.feedback.write(record)
            except OSError as exc:
                logger.warning("Could not write feedback record: %s", exc)
        emit(
            self.event_hook,
            "run_done",
            ok=run.all_passed,
            duration_ms=run.duration_ms,
            summary=summary,
        )
        return run

    def _on_done(self, task: asyncio.Task[PipelineRun]) -> None:
        active = self._active
        self._active = None
        if task.cancelled():
            self._settle()
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Verification run crashed", exc_info=exc)
            emit(self.event_hook, "error", error=str(exc))
        else:
            run = task.result()
            self.history.append(run)
            if run.cancelled and active is not None:
                merged = dict.fromkeys(active.files)
                merged.update(self._pending)
                self._pending = merged
                self._pending_commit = self._pending_commit or active.commit
        self._schedule_pending()

    def _schedule_pending(self) -> None:
        if self._closed or (not self._pending and not self._pending_commit):
            self._settle()
            return
        if self._rerun is None:
            loop = asyncio.get_running_loop()
            self._rerun = loop.call_later(self.rerun_grace_seconds, self._start_pending)

    def _start_pending(self) -> None:
        self._rerun = None
        if self._closed:
            self._settle()
            return
        files = tuple(self._pending)
        commit = self._pending_commit
        self._pending = {}
        self._pending_commit = False
        self._start(files, commit)

    def _settle(self) -> None:
        if self._active is None and self._rerun is None:
            self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def shutdown(self) -> None:
        self._closed = True
        if self._rerun is not None:
            self._rerun.cancel()
            self._rerun = None
        self._pending.clear()
        self._pending_commit = False
        active = self._active
        if active is not None:
            active.token.cancel()
            await asyncio.wait({active.task})
        killed = self.registry.terminate_all()
        if killed:
            logger.info("Terminated %d leftover process(es)", killed)
        self._idle.set()
