from autoverify.agents.base import SpecialistAgent, SpecialistResponse
from autoverify.agents.coder import CoderAgent
from autoverify.agents.reviewer import ReviewerAgent
from autoverify.agents.spec_writer import SpecWriterAgent
from autoverify.agents.ux_evaluator import UxEvaluatorAgent

__all__ = [
    "CoderAgent",
    "ReviewerAgent",
    "SpecWriterAgent",
    "SpecialistAgent",
    "SpecialistResponse",
    "UxEvaluatorAgent",
]
