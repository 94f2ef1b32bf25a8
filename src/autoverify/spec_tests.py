from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from autoverify.agents.spec_writer import SpecWriterAgent, build_spec_writer_prompt
from autoverify.backends.base import BackendExecutionError
from autoverify.events import EventHook, emit
from autoverify.toolchain import Toolchain
from autoverify.vcs.git import GitWorkspace, WorkspaceError

logger = logging.getLogger(__name__)

SPEC_TIMEOUT_SECONDS = 180.0
MAX_TEST_FILES = 3
MAX_TOTAL_LINES = 300


@dataclass(slots=True)
class SpecTestResult:
    ok: bool
    test_files: list[str] = field(default_factory=list)
    duration_ms: int = 0
    error: str | None = None


def _line_count(path: Path) -> int:
    try:
        return len(path.read_text(encoding="utf-8", errors="replace").splitlines())
    except OSError:
        return 0


def prune_test_files(
    working_dir: Path,
    files: list[str],
    *,
    max_files: int = MAX_TEST_FILES,
    max_lines: int = MAX_TOTAL_LINES,
) -> list[str]:
    """Keep the smallest test files within the file and line budget, deleting the rest."""
    sized = [(path, _line_count(working_dir / path)) for path in files]
    if len(files) <= max_files and sum(lines for _, lines in sized) <= max_lines:
        return list(files)

    kept: list[str] = []
    total = 0
    for path, lines in sorted(sized, key=lambda item: item[1]):
        if len(kept) >= max_files:
            break
        if kept and total + lines > max_lines:
            break
        kept.append(path)
        total += lines

    for path in files:
        if path not in kept:
            (working_dir / path).unlink(missing_ok=True)
    return kept


def augment_task_with_specs(task: str, test_files: list[str]) -> str:
    if not test_files:
        return task
    return "\n".join(
        [
            task,
            "",
            "ACCEPTANCE TESTS (written before your implementation, make them pass):",
            *(f"- {path}" for path in test_files),
            "",
            "Your implementation MUST make these acceptance tests pass.",
        ]
    )


class SpecTestWriter:
    """Asks an agent for acceptance tests before the coder starts."""

    def __init__(
        self,
        agent: SpecWriterAgent,
        workspace: GitWorkspace,
        toolchain: Toolchain,
        *,
        event_hook: EventHook | None = None,
        timeout_seconds: float = SPEC_TIMEOUT_SECONDS,
    ) -> None:
        self.agent = agent
        self.workspace = workspace
        self.toolchain = toolchain
        self.event_hook = event_hook
        self.timeout_seconds = timeout_seconds

    def discover_new_test_files(self) -> list[str]:
        try:
            paths = self.workspace.dirty_paths()
        except WorkspaceError as exc:
            logger.warning("Could not list test files written by the spec agent: %s", exc)
            return []
        return [path for path in paths if self.toolchain.is_test_file(path)]

    async def run(self, task: str) -> SpecTestResult:
        started = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        instruction = build_spec_writer_prompt(self.toolchain.prompt_hints, task)
        try:
            await self.agent.run(
                instruction,
                {"working_directory": str(self.workspace.repo_root)},
                timeout=self.timeout_seconds,
            )
        except BackendExecutionError as exc:
            result = SpecTestResult(
                ok=False, duration_ms=_elapsed(), error=f"Spec-test agent failed: {str(exc)[:200]}"
            )
        else:
            files = self.discover_new_test_files()
            if files:
                kept = prune_test_files(self.workspace.repo_root, files)
                result = SpecTestResult(ok=True, test_files=kept, duration_ms=_elapsed())
            else:
                result = SpecTestResult(
                    ok=False,
                    duration_ms=_elapsed(),
                    error="Spec agent did not create any test files",
                )
        emit(
            self.event_hook,
            "spec_tests_done",
            ok=result.ok,
            test_files=result.test_files,
            duration_ms=result.duration_ms,
            error=result.error,
        )
        return result
