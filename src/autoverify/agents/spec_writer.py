from __future__ import annotations

from autoverify.agents.base import SpecialistAgent
from autoverify.toolchain import PromptHints


def build_spec_writer_prompt(hints: PromptHints, task: str) -> str:
    return "\n".join(
        [
            "You are a TDD engineer. Your ONLY job is to write acceptance tests.",
            "",
            "Rules:",
            "1. Read the task description and the relevant source files",
            "2. Write tests for the EXPECTED behaviour described in the task",
            "3. Test observable behaviour and public contracts, not implementation details",
            "4. Do NOT implement any production code",
            f"5. Test placement: {hints.test_placement}",
            f"6. Test framework: {hints.test_framework}",
            "7. Keep tests simple and focused, one behaviour per test",
            "",
            f"TASK: {task}",
        ]
    )


class SpecWriterAgent(SpecialistAgent):
    role = "spec_writer"
    fallback_prompt = "You are a TDD engineer. Write acceptance tests only, never implementation."
