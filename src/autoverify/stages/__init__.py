from __future__ import annotations

from autoverify.agents.reviewer import ReviewerAgent
from autoverify.agents.ux_evaluator import UxEvaluatorAgent
from autoverify.models import StageKind
from autoverify.stages.base import InfrastructureUnavailable, StageEnvironment, StageRunner
from autoverify.stages.browser import BrowserInspectStage
from autoverify.stages.commands import BuildStage, LintStage, TestStage, TypecheckStage
from autoverify.stages.coverage import CoverageDeltaStage
from autoverify.stages.review import ReviewStage
from autoverify.stages.screenshot import ScreenshotDeltaStage
from autoverify.stages.ux import UxExplorationStage
from autoverify.stages.video import VideoProofStage

RunnerTable = dict[StageKind, StageRunner]


def build_runners(
    env: StageEnvironment,
    *,
    reviewer: ReviewerAgent | None = None,
    ux_evaluator: UxEvaluatorAgent | None = None,
    ux_steps: int = 10,
    ux_sample: int = 5,
) -> RunnerTable:
    runners: list[StageRunner] = [
        LintStage(env),
        TypecheckStage(env),
        TestStage(env),
        CoverageDeltaStage(env),
        BrowserInspectStage(env),
        ScreenshotDeltaStage(env),
        UxExplorationStage(env, ux_evaluator, max_steps=ux_steps, sample=ux_sample),
        ReviewStage(env, reviewer),
        BuildStage(env),
        VideoProofStage(env),
    ]
    return {runner.kind: runner for runner in runners}


__all__ = [
    "BrowserInspectStage",
    "BuildStage",
    "CoverageDeltaStage",
    "InfrastructureUnavailable",
    "LintStage",
    "ReviewStage",
    "RunnerTable",
    "ScreenshotDeltaStage",
    "StageEnvironment",
    "StageRunner",
    "TestStage",
    "TypecheckStage",
    "UxExplorationStage",
    "VideoProofStage",
    "build_runners",
]
