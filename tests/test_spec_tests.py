import asyncio
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from autoverify.agents.spec_writer import SpecWriterAgent
from autoverify.backends.base import AgentBackend, BackendExecutionError
from autoverify.spec_tests import SpecTestWriter, augment_task_with_specs, prune_test_files
from autoverify.toolchain import DEFAULT_TOOLCHAIN
from autoverify.vcs.git import GitWorkspace


class WritingBackend(AgentBackend):
    def __init__(self, repo: Path, files: dict[str, str]) -> None:
        self.repo = repo
        self.files = files

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        for relative, content in self.files.items():
            target = self.repo / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        yield "wrote tests"


class FailingBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        raise BackendExecutionError("quota exceeded", retriable=False)
        yield ""  # pragma: no cover


def _init_git_repo(repo_path: Path) -> None:
    for args in (
        ["init"],
        ["config", "user.email", "test@example.com"],
        ["config", "user.name", "Test User"],
        ["commit", "--allow-empty", "-m", "seed"],
    ):
        subprocess.run(["git", *args], cwd=repo_path, check=True, capture_output=True)


def _lines(count: int) -> str:
    return "".join(f"# line {index}\n" for index in range(count))


def test_prune_keeps_everything_within_budget(tmp_path: Path) -> None:
    for name in ("a.py", "b.py"):
        (tmp_path / name).write_text(_lines(10), encoding="utf-8")

    assert prune_test_files(tmp_path, ["a.py", "b.py"]) == ["a.py", "b.py"]


def test_prune_prefers_smallest_files_and_deletes_the_rest(tmp_path: Path) -> None:
    sizes = {"big.py": 250, "small.py": 20, "medium.py": 100, "tiny.py": 5}
    for name, count in sizes.items():
        (tmp_path / name).write_text(_lines(count), encoding="utf-8")

    kept = prune_test_files(tmp_path, list(sizes), max_files=3, max_lines=300)

    assert kept == ["tiny.py", "small.py", "medium.py"]
    assert not (tmp_path / "big.py").exists()
    assert (tmp_path / "medium.py").exists()


def test_prune_stops_at_line_budget(tmp_path: Path) -> None:
    for name, count in {"a.py": 200, "b.py": 150}.items():
        (tmp_path / name).write_text(_lines(count), encoding="utf-8")

    assert prune_test_files(tmp_path, ["a.py", "b.py"], max_lines=300) == ["b.py"]
    assert not (tmp_path / "a.py").exists()


def test_augment_task_lists_acceptance_tests() -> None:
    augmented = augment_task_with_specs("add login", ["tests/test_login.py"])

    assert augmented.splitlines() == [
        "add login",
        "",
        "ACCEPTANCE TESTS (written before your implementation, make them pass):",
        "- tests/test_login.py",
        "",
        "Your implementation MUST make these acceptance tests pass.",
    ]
    assert augment_task_with_specs("add login", []) == "add login"


def test_writer_reports_new_test_files(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    backend = WritingBackend(
        tmp_path,
        {"tests/test_login.py": _lines(12), "src/helper.py": "VALUE = 1\n"},
    )
    events: list[dict[str, Any]] = []
    writer = SpecTestWriter(
        SpecWriterAgent(backend),
        GitWorkspace(tmp_path),
        DEFAULT_TOOLCHAIN,
        event_hook=events.append,
    )

    result = asyncio.run(writer.run("add login"))

    assert result.ok
    assert result.test_files == ["tests/test_login.py"]
    assert events[-1]["event"] == "spec_tests_done"
    assert events[-1]["ok"] is True


def test_writer_without_test_files_fails_softly(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    writer = SpecTestWriter(
        SpecWriterAgent(WritingBackend(tmp_path, {})), GitWorkspace(tmp_path), DEFAULT_TOOLCHAIN
    )

    result = asyncio.run(writer.run("add login"))

    assert not result.ok
    assert result.error == "Spec agent did not create any test files"


def test_writer_agent_failure_fails_softly(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    writer = SpecTestWriter(
        SpecWriterAgent(FailingBackend()), GitWorkspace(tmp_path), DEFAULT_TOOLCHAIN
    )

    result = asyncio.run(writer.run("add login"))

    assert not result.ok
    assert (result.error or "").startswith("Spec-test agent failed:")
