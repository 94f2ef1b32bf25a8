import asyncio
import subprocess
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from autoverify.agents.reviewer import ReviewerAgent
from autoverify.backends.base import AgentBackend, BackendExecutionError
from autoverify.models import StageOutcome, VerificationContext
from autoverify.process import CancellationToken
from autoverify.stages.base import StageEnvironment
from autoverify.stages.review import ReviewStage, parse_review_findings, truncate_diff
from autoverify.vcs.git import GitWorkspace


class ScriptedBackend(AgentBackend):
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        self.prompts.append(user_prompt)
        yield self.reply


class StalledBackend(AgentBackend):
    def __init__(self, delay: float = 3.0) -> None:
        self.delay = delay
        self.torn_down = False

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.torn_down = True
            raise
        yield "ISSUE: [high] app.py:1 - too late"


class BrokenBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        raise BackendExecutionError("offline", retriable=False)
        yield ""  # pragma: no cover


def _init_git_repo(repo_path: Path) -> None:
    for args in (
        ["init"],
        ["config", "user.email", "test@example.com"],
        ["config", "user.name", "Test User"],
    ):
        subprocess.run(["git", *args], cwd=repo_path, check=True, capture_output=True)
    (repo_path / "app.py").write_text(
        "".join(f"line {index}\n" for index in range(1, 31)), encoding="utf-8"
    )
    subprocess.run(["git", "add", "."], cwd=repo_path, check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", "seed"], cwd=repo_path, check=True, capture_output=True)


def _edit_line(repo_path: Path, number: int) -> None:
    path = repo_path / "app.py"
    lines = path.read_text(encoding="utf-8").splitlines()
    lines[number - 1] = f"edited {number}"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def test_findings_outside_changed_files_or_hunks_are_dropped() -> None:
    output = "\n".join(
        [
            "ISSUE: [high] src/unknown.py:5 - not part of the change",
            "ISSUE: [high] src/a.py:100 - far from any hunk",
            "ISSUE: [high] src/b.py:12 - off-by-one in loop bound",
            "Some prose the reviewer added.",
        ]
    )
    hunks = {"src/a.py": {5, 6, 7}, "src/b.py": {10}}

    issues = parse_review_findings(output, {"src/a.py", "src/b.py"}, hunks, tolerance=5)

    assert [(issue.file, issue.line) for issue in issues] == [("src/b.py", 12)]
    assert issues[0].confidence == "high"
    assert issues[0].render() == "[high] src/b.py:12 - off-by-one in loop bound"


def test_confidence_defaults_to_medium_and_accepts_med() -> None:
    output = "ISSUE: src/a.py:5 - untagged\nISSUE: [MED] src/a.py:6 - abbreviated\n"

    issues = parse_review_findings(output, {"src/a.py"}, {"src/a.py": {5}})

    assert [issue.confidence for issue in issues] == ["medium", "medium"]


def test_files_without_hunks_reject_all_findings() -> None:
    issues = parse_review_findings("ISSUE: [high] src/a.py:1 - x", {"src/a.py"}, {})

    assert issues == []


def test_truncate_diff_marks_cut() -> None:
    assert truncate_diff("abc", 10) == "abc"
    assert truncate_diff("abcdef", 3).startswith("abc\n... (truncated)")


def _review(repo: Path, backend: AgentBackend) -> ReviewStage:
    env = StageEnvironment(workspace=GitWorkspace(repo))
    return ReviewStage(env, ReviewerAgent(backend))


def test_high_confidence_issue_near_change_blocks(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _edit_line(tmp_path, 10)
    backend = ScriptedBackend(
        "ISSUE: [high] app.py:12 - unchecked None\nISSUE: [high] app.py:29 - unrelated"
    )
    ctx = VerificationContext.create(tmp_path, ["app.py"], CancellationToken())

    result = asyncio.run(_review(tmp_path, backend).run(ctx))

    assert result.outcome is StageOutcome.BLOCKED
    assert "app.py:12 - unchecked None" in (result.error or "")
    assert "app.py:29" not in (result.error or "")
    assert "edited 10" in backend.prompts[0]


def test_medium_issues_are_advisory(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _edit_line(tmp_path, 10)
    backend = ScriptedBackend("ISSUE: [medium] app.py:10 - consider validating input")
    ctx = VerificationContext.create(tmp_path, ["app.py"], CancellationToken())

    result = asyncio.run(_review(tmp_path, backend).run(ctx))

    assert result.outcome is StageOutcome.ADVISORY
    assert result.passed


def test_empty_diff_passes_without_calling_reviewer(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    backend = ScriptedBackend("ISSUE: [high] app.py:1 - impossible")
    ctx = VerificationContext.create(tmp_path, [], CancellationToken())

    result = asyncio.run(_review(tmp_path, backend).run(ctx))

    assert result.outcome is StageOutcome.PASSED
    assert backend.prompts == []


def test_unavailable_reviewer_is_advisory(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _edit_line(tmp_path, 3)
    ctx = VerificationContext.create(tmp_path, ["app.py"], CancellationToken())

    result = asyncio.run(_review(tmp_path, BrokenBackend()).run(ctx))

    assert result.outcome is StageOutcome.ADVISORY
    assert "Review agent unavailable" in (result.error or "")


def test_untracked_files_reach_the_reviewer(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "feature.py").write_text("def ratio(a):\n    return a / 0\n", encoding="utf-8")
    backend = ScriptedBackend("ISSUE: [high] feature.py:2 - division by zero")
    ctx = VerificationContext.create(tmp_path, ["feature.py"], CancellationToken())

    result = asyncio.run(_review(tmp_path, backend).run(ctx))

    assert len(backend.prompts) == 1
    assert "+    return a / 0" in backend.prompts[0]
    assert result.outcome is StageOutcome.BLOCKED
    assert "feature.py:2 - division by zero" in (result.error or "")


def test_cancellation_interrupts_a_running_review(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _edit_line(tmp_path, 3)
    backend = StalledBackend()
    token = CancellationToken()
    ctx = VerificationContext.create(tmp_path, ["app.py"], token)

    async def scenario() -> tuple[StageOutcome, float]:
        started = time.monotonic()
        task = asyncio.create_task(_review(tmp_path, backend).run(ctx))
        await asyncio.sleep(0.2)
        token.cancel()
        result = await task
        return result.outcome, time.monotonic() - started

    outcome, elapsed = asyncio.run(scenario())

    assert outcome is StageOutcome.CANCELLED
    assert elapsed < 1.5
    assert backend.torn_down


class QuickReviewStage(ReviewStage):
    timeout_seconds = 0.2
    timeout_grace_seconds = 0.0


def test_review_timeout_is_advisory(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _edit_line(tmp_path, 3)
    backend = StalledBackend()
    env = StageEnvironment(workspace=GitWorkspace(tmp_path))
    stage = QuickReviewStage(env, ReviewerAgent(backend))
    ctx = VerificationContext.create(tmp_path, ["app.py"], CancellationToken())

    result = asyncio.run(stage.run(ctx))

    assert result.outcome is StageOutcome.ADVISORY
    assert result.passed
    assert "timed out" in (result.error or "")
    assert backend.torn_down
