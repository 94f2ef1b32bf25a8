from __future__ import annotations

from autoverify.agents.base import SpecialistAgent


def build_ux_instruction(criteria: str, evidence: str, sample: int) -> str:
    return "\n".join(
        [
            "Below is the CAPTURED EVIDENCE from the app (page text, errors, timing, elements).",
            "Evaluate honestly whether the actual user experience matches what was promised.",
            "",
            "ACCEPTANCE CRITERIA:",
            criteria,
            "",
            "CAPTURED EVIDENCE:",
            evidence,
            "",
            "Instructions:",
            "1. Compare the captured page text against what the criteria promise",
            "2. Check for loading issues, stuck states and timeouts",
            "3. Check for error messages, console errors and network failures",
            "4. Be SPECIFIC about what works and what does not",
            "5. If the criteria describe a matrix of cases,"
            f" evaluate {sample} sampled combinations",
            "",
            "Report format (use EXACTLY this structure):",
            "VERDICT: pass|fail|partial",
            "FINDING: [critical|major|minor] - <description>",
            "SUMMARY: <plain-English honest assessment>",
            "",
            "CRITICAL = crashes, hangs, broken flows, missing core functionality",
            "MAJOR = wrong content, poor UX, accessibility failures, slow loads over 10s",
            "MINOR = visual glitches and other cosmetic issues",
        ]
    )


class UxEvaluatorAgent(SpecialistAgent):
    role = "ux_evaluator"
    fallback_prompt = "You are a QA engineer evaluating a web app against acceptance criteria."
