from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from autoverify.process import CancellationToken

ERROR_LIMIT = 2000
TRUNCATION_MARKER = "\n... (truncated)"

Trigger = Literal["save", "commit", "iteration", "manual"]
StopReason = Literal["success", "max-iterations", "stall", "error"]


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def truncate_error(text: str, limit: int = ERROR_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


class StageKind(StrEnum):
    LINT = "lint"
    TYPECHECK = "typecheck"
    TEST = "test"
    COVERAGE = "coverage-diff"
    BROWSER = "browser"
    SCREENSHOT = "screenshot-diff"
    UX = "ux-eval"
    REVIEW = "review"
    BUILD = "build"
    VIDEO = "video"
    SPEC_TEST = "spec-test"


class StageOutcome(StrEnum):
    PASSED = "passed"
    ADVISORY = "advisory"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class StageResult:
    stage: StageKind
    outcome: StageOutcome
    duration_ms: int = 0
    error: str | None = None
    files: tuple[str, ...] = ()
    artifacts: Mapping[str, str] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.outcome in {StageOutcome.PASSED, StageOutcome.ADVISORY}

    @classmethod
    def ok(
        cls,
        stage: StageKind,
        *,
        duration_ms: int = 0,
        files: Iterable[str] = (),
        artifacts: Mapping[str, str] | None = None,
    ) -> StageResult:
        return cls(
            stage=stage,
            outcome=StageOutcome.PASSED,
            duration_ms=duration_ms,
            files=tuple(files),
            artifacts=dict(artifacts or {}),
        )

    @classmethod
    def advisory(
        cls,
        stage: StageKind,
        message: str,
        *,
        duration_ms: int = 0,
        files: Iterable[str] = (),
        artifacts: Mapping[str, str] | None = None,
    ) -> StageResult:
        return cls(
            stage=stage,
            outcome=StageOutcome.ADVISORY,
            duration_ms=duration_ms,
            error=truncate_error(message),
            files=tuple(files),
            artifacts=dict(artifacts or {}),
        )

    @classmethod
    def blocked(
        cls,
        stage: StageKind,
        message: str,
        *,
        duration_ms: int = 0,
        files: Iterable[str] = (),
        artifacts: Mapping[str, str] | None = None,
    ) -> StageResult:
        return cls(
            stage=stage,
            outcome=StageOutcome.BLOCKED,
            duration_ms=duration_ms,
            error=truncate_error(message.strip() or f"{stage.value} failed"),
            files=tuple(files),
            artifacts=dict(artifacts or {}),
        )

    @classmethod
    def cancelled(cls, stage: StageKind, *, duration_ms: int = 0) -> StageResult:
        return cls(
            stage=stage,
            outcome=StageOutcome.CANCELLED,
            duration_ms=duration_ms,
            error="Cancelled",
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stage": self.stage.value,
            "passed": self.passed,
            "outcome": self.outcome.value,
            "durationMs": self.duration_ms,
        }
        if self.error:
            payload["error"] = self.error
        if self.files:
            payload["files"] = list(self.files)
        if self.artifacts:
            payload["artifacts"] = dict(self.artifacts)
        return payload


@dataclass(slots=True, frozen=True)
class VerificationContext:
    working_dir: Path
    changed_files: tuple[str, ...]
    token: CancellationToken
    baseline_ref: str | None = None
    trigger: Trigger = "save"
    task: str = ""

    @classmethod
    def create(
        cls,
        working_dir: Path,
        changed_files: Iterable[str],
        token: CancellationToken,
        *,
        baseline_ref: str | None = None,
        trigger: Trigger = "save",
        task: str = "",
    ) -> VerificationContext:
        ordered: dict[str, None] = {}
        for path in changed_files:
            normalized = str(path).replace("\\", "/").strip()
            if normalized:
                ordered[normalized] = None
        return cls(
            working_dir=working_dir.resolve(),
            changed_files=tuple(ordered),
            token=token,
            baseline_ref=baseline_ref,
            trigger=trigger,
            task=task,
        )


@dataclass(slots=True, frozen=True)
class ReviewIssue:
    confidence: Literal["high", "medium", "low"]
    file: str
    line: int
    description: str

    def render(self) -> str:
        return f"[{self.confidence}] {self.file}:{self.line} - {self.description}"


@dataclass(slots=True)
class IterationResult:
    iteration: int
    agent_duration_ms: int
    verify_duration_ms: int
    results: tuple[StageResult, ...]
    all_passed: bool
    changed_files: tuple[str, ...]
    agent_summary: str = ""

    @property
    def failures(self) -> list[StageResult]:
        return [result for result in self.results if not result.passed]


@dataclass(slots=True)
class WorkerResult:
    ok: bool
    iterations: list[IterationResult]
    total_duration_ms: int
    stop_reason: StopReason
    changed_files: tuple[str, ...] = ()
    video: StageResult | None = None


@dataclass(slots=True)
class FeedbackRecord:
    ok: bool
    duration_ms: int
    git_ref: str
    trigger_files: list[str]
    checks: list[StageResult]
    summary: str
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "ok": self.ok,
            "durationMs": self.duration_ms,
            "gitRef": self.git_ref,
            "triggerFiles": list(self.trigger_files),
            "checks": [check.to_dict() for check in self.checks],
            "summary": self.summary,
        }


def failure_fingerprint(results: Iterable[StageResult]) -> str:
    return ",".join(sorted({result.stage.value for result in results if not result.passed}))


def _seconds(duration_ms: int) -> str:
    return f"{duration_ms / 1000:.1f}s"


def build_summary(results: list[StageResult], duration_ms: int) -> str:
    failed = [result for result in results if not result.passed]
    if not failed:
        return f"All {len(results)} checks passed ({_seconds(duration_ms)})"
    lines = [f"{len(failed)}/{len(results)} checks failed ({_seconds(duration_ms)}):"]
    for result in failed:
        first_line = (result.error or "").strip().splitlines()
        detail = first_line[0] if first_line else "failed"
        lines.append(
            f"- {result.stage.value} FAILED ({_seconds(result.duration_ms)}): {detail}"
        )
    return "\n".join(lines)
