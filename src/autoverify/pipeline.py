from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field

from autoverify.events import EventHook, emit
from autoverify.models import StageKind, StageOutcome, StageResult, VerificationContext
from autoverify.stages.base import StageRunner


@dataclass(slots=True)
class PipelinePlan:
    tests: bool = True
    coverage: bool = True
    browser: bool = True
    screenshot: bool = True
    ux: bool = False
    review: bool = True
    build: bool = False
    video: bool = False


@dataclass(slots=True)
class PipelineRun:
    results: list[StageResult] = field(default_factory=list)
    skipped: list[tuple[StageKind, str]] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: int = 0

    @property
    def all_passed(self) -> bool:
        return not self.cancelled and all(result.passed for result in self.results)

    def get(self, kind: StageKind) -> StageResult | None:
        for result in self.results:
            if result.stage is kind:
                return result
        return None


class _Cancelled(Exception):
    pass


class GatedPipeline:
    """Runs stage runners in a fixed order, skipping stages whose prerequisites failed."""

    def __init__(
        self,
        runners: Mapping[StageKind, StageRunner],
        plan: PipelinePlan | None = None,
        *,
        event_hook: EventHook | None = None,
    ) -> None:
        self.runners = dict(runners)
        self.plan = plan or PipelinePlan()
        self.event_hook = event_hook

    def _record(self, run: PipelineRun, result: StageResult) -> None:
        run.results.append(result)
        emit(
            self.event_hook,
            "stage_done",
            stage=result.stage.value,
            outcome=result.outcome.value,
            passed=result.passed,
            duration_ms=result.duration_ms,
            error=result.error,
        )

    def _skip(self, run: PipelineRun, kind: StageKind, reason: str) -> None:
        run.skipped.append((kind, reason))

    def _checkpoint(self, ctx: VerificationContext, run: PipelineRun) -> None:
        if ctx.token.cancelled or any(
            result.outcome is StageOutcome.CANCELLED for result in run.results
        ):
            raise _Cancelled

    async def _run_one(
        self, kind: StageKind, ctx: VerificationContext, run: PipelineRun
    ) -> StageResult | None:
        runner = self.runners.get(kind)
        if runner is None:
            self._skip(run, kind, "no runner configured")
            return None
        emit(self.event_hook, "stage_start", stage=kind.value)
        upstream = {result.stage: result for result in run.results}
        result = await runner.run(ctx, upstream)
        self._record(run, result)
        self._checkpoint(ctx, run)
        return result

    @staticmethod
    def _clean(run: PipelineRun) -> bool:
        return all(result.passed for result in run.results)

    async def run(self, ctx: VerificationContext) -> PipelineRun:
        started = time.monotonic()
        run = PipelineRun()
        try:
            await self._run_stages(ctx, run)
        except _Cancelled:
            run.cancelled = True
            emit(
                self.event_hook,
                "pipeline_cancelled",
                completed=[result.stage.value for result in run.results],
            )
        run.duration_ms = int((time.monotonic() - started) * 1000)
        return run

    async def _run_stages(self, ctx: VerificationContext, run: PipelineRun) -> None:
        plan = self.plan
        self._checkpoint(ctx, run)

        static_kinds: list[StageKind] = []
        for kind in (StageKind.LINT, StageKind.TYPECHECK):
            if kind in self.runners:
                static_kinds.append(kind)
                emit(self.event_hook, "stage_start", stage=kind.value)
            else:
                self._skip(run, kind, "no runner configured")
        static_results = await asyncio.gather(
            *(self.runners[kind].run(ctx, {}) for kind in static_kinds)
        )
        for result in static_results:
            self._record(run, result)
        self._checkpoint(ctx, run)

        test_result: StageResult | None = None
        if plan.tests:
            test_result = await self._run_one(StageKind.TEST, ctx, run)
        else:
            self._skip(run, StageKind.TEST, "disabled")

        if not plan.coverage:
            self._skip(run, StageKind.COVERAGE, "disabled")
        elif test_result is None:
            self._skip(run, StageKind.COVERAGE, "tests did not run")
        elif not test_result.passed:
            self._skip(run, StageKind.COVERAGE, "tests failed")
        else:
            await self._run_one(StageKind.COVERAGE, ctx, run)

        browser_result: StageResult | None = None
        if not plan.browser:
            self._skip(run, StageKind.BROWSER, "disabled")
        elif not self._clean(run):
            self._skip(run, StageKind.BROWSER, "earlier stages failed")
        else:
            browser_result = await self._run_one(StageKind.BROWSER, ctx, run)

        browser_ok = browser_result is not None and browser_result.passed
        if not plan.screenshot:
            self._skip(run, StageKind.SCREENSHOT, "disabled")
        elif not browser_ok:
            self._skip(run, StageKind.SCREENSHOT, "browser check did not pass")
        elif not browser_result.artifacts.get("screenshot"):  # type: ignore[union-attr]
            self._skip(run, StageKind.SCREENSHOT, "no screenshot captured")
        else:
            await self._run_one(StageKind.SCREENSHOT, ctx, run)

        if not plan.ux:
            self._skip(run, StageKind.UX, "disabled")
        elif not browser_ok:
            self._skip(run, StageKind.UX, "browser check did not pass")
        else:
            await self._run_one(StageKind.UX, ctx, run)

        if not plan.review:
            self._skip(run, StageKind.REVIEW, "disabled")
        elif not self._clean(run):
            self._skip(run, StageKind.REVIEW, "earlier stages failed")
        else:
            await self._run_one(StageKind.REVIEW, ctx, run)

        build_result: StageResult | None = None
        if plan.build:
            build_result = await self._run_one(StageKind.BUILD, ctx, run)
        else:
            self._skip(run, StageKind.BUILD, "disabled")

        if not plan.video:
            self._skip(run, StageKind.VIDEO, "disabled")
        elif build_result is not None and not build_result.passed:
            self._skip(run, StageKind.VIDEO, "build failed")
        else:
            await self._run_one(StageKind.VIDEO, ctx, run)
