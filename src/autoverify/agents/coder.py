from __future__ import annotations

from pathlib import Path

from autoverify.agents.base import SpecialistAgent
from autoverify.models import truncate_error
from autoverify.toolchain import Toolchain

PROJECT_CONTEXT_FILES = ("CLAUDE.md", ".claude/CLAUDE.md", "AGENTS.md")


def read_project_context(working_dir: Path, limit: int = 2000) -> str:
    for name in PROJECT_CONTEXT_FILES:
        candidate = working_dir / name
        if not candidate.is_file():
            continue
        content = candidate.read_text(encoding="utf-8", errors="replace")
        if content.strip():
            return truncate_error(content, limit)
    return ""


def build_coder_prompt(toolchain: Toolchain, task: str, project_context: str = "") -> str:
    hints = toolchain.prompt_hints
    sections = [
        "You are a senior software engineer working autonomously on a coding task.",
        "You have full access to the codebase through your file and shell tools.",
        "",
        "Your workflow:",
        "1. Read relevant files to understand the codebase and its existing patterns",
        "2. Plan your approach",
        "3. Implement the changes",
        "4. Write tests for all new or modified functionality",
        f"5. Run `{hints.run_tests}` and fix any failures before handing off",
        f"6. Run `{hints.run_lint}` and fix any issues",
        "",
        "After you finish, an automated verification pipeline checks your work",
        "(lint, typecheck, tests, coverage, review). If it finds problems you",
        "will receive the errors and get another chance to fix them.",
        "",
        "## Quality Requirements",
        "- Write tests for all new or modified functionality",
        f"- Test framework: {hints.test_framework}",
        f"- Test placement: {hints.test_placement}",
        f"- Code style: {hints.code_style}",
        "- Follow existing conventions and keep changes focused on the task",
        "- Do NOT commit or push",
    ]
    if project_context:
        sections.extend(["", "## Project Context", project_context])
    sections.extend(["", f"TASK: {task}"])
    return "\n".join(sections)


class CoderAgent(SpecialistAgent):
    role = "coder"
    fallback_prompt = """
You are a senior software engineer working autonomously on a coding task.
Implement the requested change with tests and leave the working tree ready for verification.
""".strip()
