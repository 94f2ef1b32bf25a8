from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path

from autoverify.devserver import detect_dev_server
from autoverify.models import StageKind, StageResult, VerificationContext
from autoverify.process import run_command
from autoverify.stages.base import InfrastructureUnavailable, StageRunner

logger = logging.getLogger(__name__)

PROOF_SCRIPT = Path("scripts") / "proof-run.sh"
EVIDENCE_FILENAME = "evidence.json"


def parse_evidence(evidence_path: Path, working_dir: Path) -> dict[str, str]:
    """Read the proof script's evidence report into stage artifacts."""
    if not evidence_path.is_file():
        return {}
    try:
        data = json.loads(evidence_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Unreadable proof evidence %s: %s", evidence_path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    artifacts = {"report": os.path.relpath(evidence_path, working_dir)}
    if data.get("videoPath"):
        artifacts["video"] = str(data["videoPath"])
    screenshots = data.get("screenshots") or []
    if isinstance(screenshots, list) and screenshots:
        artifacts["screenshots"] = ",".join(str(item) for item in screenshots)
    return artifacts


class VideoProofStage(StageRunner):
    kind = StageKind.VIDEO
    timeout_seconds = 120.0

    async def _execute(
        self, ctx: VerificationContext, upstream: Mapping[StageKind, StageResult]
    ) -> StageResult:
        app_url = await detect_dev_server(self.env.app_url)
        if app_url is None:
            raise InfrastructureUnavailable("No dev server detected")
        script = ctx.working_dir / PROOF_SCRIPT
        if not script.is_file():
            raise InfrastructureUnavailable("proof-run.sh not found")

        evidence_dir = self.env.evidence_dir
        evidence_dir.mkdir(parents=True, exist_ok=True)
        result = await run_command(
            ["bash", str(script), "fast"],
            cwd=ctx.working_dir,
            timeout=self.timeout_seconds,
            token=ctx.token,
            registry=self.env.registry,
            env={
                "APP_URL": app_url,
                "EVIDENCE_DIR": str(evidence_dir),
                "FORCE_COLOR": "0",
                "NO_COLOR": "1",
            },
        )
        if not result.ok:
            output = result.output or f"proof-run.sh exited with code {result.exit_code}"
            return StageResult.blocked(self.kind, output, duration_ms=result.duration_ms)
        artifacts = parse_evidence(evidence_dir / EVIDENCE_FILENAME, ctx.working_dir)
        return StageResult.ok(self.kind, duration_ms=result.duration_ms, artifacts=artifacts)
