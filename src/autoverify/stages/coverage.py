from __future__ import annotations

import asyncio
import shutil
from collections.abc import Collection, Mapping
from pathlib import Path

from autoverify.models import StageKind, StageResult, VerificationContext
from autoverify.stages.base import InfrastructureUnavailable, StageRunner
from autoverify.toolchain import ToolchainCommand

CoverageRecord = dict[str, dict[int, int]]

FALLBACK_REPORT_PATHS = ("coverage.lcov", "lcov.info", "coverage/lcov.info")


def parse_lcov(content: str, root: Path | None = None) -> CoverageRecord:
    """Parse LCOV ``SF``/``DA``/``end_of_record`` entries, skipping anything malformed."""
    records: CoverageRecord = {}
    current_file: str | None = None
    current_lines: dict[int, int] = {}
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if line.startswith("SF:"):
            current_file = _relative_path(line[3:].strip(), root)
            current_lines = {}
        elif line.startswith("DA:") and current_file is not None:
            parts = line[3:].split(",")
            if len(parts) < 2:
                continue
            try:
                current_lines[int(parts[0])] = int(parts[1])
            except ValueError:
                continue
        elif line == "end_of_record" and current_file is not None:
            records[current_file] = current_lines
            current_file = None
    return records


def _relative_path(path: str, root: Path | None) -> str:
    candidate = Path(path)
    if root is not None and candidate.is_absolute():
        try:
            return candidate.resolve().relative_to(root.resolve()).as_posix()
        except ValueError:
            return candidate.as_posix()
    return path.replace("\\", "/")


def evaluate_coverage(
    changed: Mapping[str, Collection[int]],
    records: CoverageRecord,
    added_files: Collection[str],
    *,
    min_changed_lines: int = 5,
    modified_threshold: float = 0.5,
    new_threshold: float = 0.3,
) -> list[str]:
    findings: list[str] = []
    for path, lines in changed.items():
        if len(lines) < min_changed_lines:
            continue
        record = records.get(path)
        if record is None:
            continue
        executable = [line for line in lines if line in record]
        if not executable:
            continue
        covered = sum(1 for line in executable if record[line] > 0)
        ratio = covered / len(executable)
        threshold = new_threshold if path in added_files else modified_threshold
        if ratio < threshold:
            findings.append(
                f"{path}: {round(ratio * 100)}% of changed lines covered "
                f"(need {round(threshold * 100)}%)"
            )
    return findings


class CoverageDeltaStage(StageRunner):
    kind = StageKind.COVERAGE
    timeout_seconds = 180.0

    def _candidates(self, ctx: VerificationContext) -> list[str]:
        toolchain = self.env.toolchain
        return [
            path
            for path in ctx.changed_files
            if toolchain.is_source_file(path)
            and not toolchain.is_test_file(path)
            and not toolchain.should_skip(path)
            and (ctx.working_dir / path).is_file()
        ]

    def _locate_report(self, report: Path, working_dir: Path) -> Path | None:
        if report.is_file():
            return report
        for relative in FALLBACK_REPORT_PATHS:
            candidate = working_dir / relative
            if candidate.is_file():
                return candidate
        return None

    async def _collect_records(
        self, ctx: VerificationContext, command: ToolchainCommand
    ) -> CoverageRecord:
        report_dir = self.env.state_dir / "coverage-tmp"
        report_dir.mkdir(parents=True, exist_ok=True)
        report = report_dir / "lcov.info"
        try:
            result = await self._run_tool(command.render(report=str(report)), ctx)
            located = self._locate_report(report, ctx.working_dir)
            if located is None:
                raise InfrastructureUnavailable(
                    f"No LCOV report produced (coverage exited with {result.exit_code})"
                )
            try:
                content = located.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                raise InfrastructureUnavailable(f"Coverage report unreadable: {exc}") from exc
        finally:
            shutil.rmtree(report_dir, ignore_errors=True)
        records = parse_lcov(content, ctx.working_dir)
        if not records:
            raise InfrastructureUnavailable("Coverage report contained no records")
        return records

    async def _execute(
        self, ctx: VerificationContext, upstream: Mapping[StageKind, StageResult]
    ) -> StageResult:
        command = self.env.toolchain.coverage
        if command is None:
            return StageResult.ok(self.kind)
        candidates = self._candidates(ctx)
        if not candidates:
            return StageResult.ok(self.kind)

        records = await self._collect_records(ctx, command)
        workspace = self.env.workspace
        baseline = ctx.baseline_ref
        renamed = await asyncio.to_thread(workspace.renamed_files, baseline)
        added = await asyncio.to_thread(workspace.added_files, baseline)
        checked = [path for path in candidates if path not in renamed]
        changed = await asyncio.to_thread(workspace.changed_hunks, baseline, checked)

        gates = self.env.gates
        findings = evaluate_coverage(
            changed,
            records,
            added,
            min_changed_lines=gates.coverage_min_changed_lines,
            modified_threshold=gates.coverage_modified_threshold,
            new_threshold=gates.coverage_new_threshold,
        )
        if findings:
            message = "Insufficient test coverage for changed lines:\n" + "\n".join(
                f"- {finding}" for finding in findings
            )
            return StageResult.blocked(self.kind, message, files=checked)
        return StageResult.ok(self.kind, files=checked)
