from __future__ import annotations

import asyncio
import functools
import re
from collections.abc import Collection, Mapping

from autoverify.agents.reviewer import ReviewerAgent
from autoverify.backends.base import BackendExecutionError
from autoverify.models import (
    TRUNCATION_MARKER,
    ReviewIssue,
    StageKind,
    StageResult,
    VerificationContext,
)
from autoverify.stages.base import InfrastructureUnavailable, StageEnvironment, StageRunner
from autoverify.vcs.diff import ChangedHunkMap, is_near_changed_line

ISSUE_PATTERN = re.compile(
    r"^ISSUE:\s*(?:\[(?P<confidence>high|medium|med|low)\]\s*)?"
    r"(?P<file>[^:\s][^:]*):(?P<line>\d+)\s*-\s*(?P<description>.+)$",
    re.IGNORECASE | re.MULTILINE,
)
CONFIDENCE_ALIASES = {"high": "high", "medium": "medium", "med": "medium", "low": "low"}


def parse_review_findings(
    output: str,
    changed_files: Collection[str],
    hunks: ChangedHunkMap,
    *,
    tolerance: int = 5,
) -> list[ReviewIssue]:
    """Parse ``ISSUE:`` lines, keeping only those anchored near a changed line."""
    issues: list[ReviewIssue] = []
    for match in ISSUE_PATTERN.finditer(output):
        path = match.group("file").strip()
        line = int(match.group("line"))
        if path not in changed_files:
            continue
        if not is_near_changed_line(line, hunks.get(path, set()), tolerance):
            continue
        confidence = CONFIDENCE_ALIASES[(match.group("confidence") or "medium").lower()]
        issues.append(
            ReviewIssue(
                confidence=confidence,  # type: ignore[arg-type]
                file=path,
                line=line,
                description=match.group("description").strip(),
            )
        )
    return issues


def truncate_diff(diff_text: str, limit: int) -> str:
    if len(diff_text) <= limit:
        return diff_text
    return diff_text[:limit] + TRUNCATION_MARKER


class ReviewStage(StageRunner):
    kind = StageKind.REVIEW
    timeout_seconds = 120.0

    def __init__(self, env: StageEnvironment, reviewer: ReviewerAgent | None = None) -> None:
        super().__init__(env)
        self.reviewer = reviewer

    def timeout_result(self) -> StageResult:
        return StageResult.advisory(
            self.kind, f"Review agent timed out after {self.timeout_seconds:.0f}s (skipped)"
        )

    async def _execute(
        self, ctx: VerificationContext, upstream: Mapping[StageKind, StageResult]
    ) -> StageResult:
        if self.reviewer is None:
            raise InfrastructureUnavailable("No review agent configured")
        workspace = self.env.workspace
        diff_text = await asyncio.to_thread(
            functools.partial(workspace.diff, ctx.baseline_ref, include_untracked=True)
        )
        if not diff_text.strip():
            return StageResult.ok(self.kind)

        gates = self.env.gates
        instruction = ReviewerAgent.build_instruction(
            truncate_diff(diff_text, gates.review_max_diff_chars)
        )
        try:
            response = await self.reviewer.run(
                instruction,
                {"working_directory": str(ctx.working_dir)},
                timeout=self.timeout_seconds,
            )
        except BackendExecutionError as exc:
            raise InfrastructureUnavailable(f"Review agent unavailable: {exc}") from exc

        hunks = await asyncio.to_thread(
            workspace.changed_hunks, ctx.baseline_ref, ctx.changed_files
        )
        issues = parse_review_findings(
            response.content,
            set(ctx.changed_files),
            hunks,
            tolerance=gates.review_line_tolerance,
        )
        blocking = [issue for issue in issues if issue.confidence == "high"]
        if blocking:
            message = "Review found high-confidence issues:\n" + "\n".join(
                issue.render() for issue in blocking
            )
            return StageResult.blocked(self.kind, message, files=[i.file for i in blocking])
        if issues:
            message = "Review findings (advisory):\n" + "\n".join(
                issue.render() for issue in issues
            )
            return StageResult.advisory(self.kind, message)
        return StageResult.ok(self.kind)
