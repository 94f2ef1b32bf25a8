from __future__ import annotations

import asyncio
import hashlib
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image, UnidentifiedImageError

from autoverify.models import StageKind, StageResult, VerificationContext
from autoverify.stages.base import InfrastructureUnavailable, StageRunner

DEFAULT_PAGE_ID = "default"


@dataclass(slots=True)
class DiffResult:
    total_pixels: int
    diff_pixels: int
    diff_percent: float
    diff_image_path: Path | None = None


def page_hash(page_url: str | None) -> str:
    if not page_url:
        return DEFAULT_PAGE_ID
    return hashlib.sha256(page_url.encode("utf-8")).hexdigest()[:16]


def _save_diff(pixels: np.ndarray, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(pixels).save(path, format="PNG")
    return path


def compare_screenshots(
    baseline_path: Path,
    current_path: Path,
    diff_output_path: Path,
    *,
    pixel_tolerance: int = 30,
    max_dimension_delta: int = 50,
) -> DiffResult:
    """Pixel-compare ``current_path`` against ``baseline_path``.

    The current image is resized to the baseline's dimensions unless either
    side differs by more than ``max_dimension_delta`` pixels, in which case the
    images count as entirely different and the diff image is solid red.
    Otherwise differing pixels are painted red in a copy of the current image.
    Either way the diff image is written to ``diff_output_path``.
    """
    with Image.open(baseline_path) as baseline_image, Image.open(current_path) as current_image:
        baseline = baseline_image.convert("RGBA")
        current = current_image.convert("RGBA")

    width, height = baseline.size
    total_pixels = width * height
    if (
        abs(current.width - width) > max_dimension_delta
        or abs(current.height - height) > max_dimension_delta
    ):
        highlighted = np.zeros((current.height, current.width, 4), dtype=np.uint8)
        highlighted[...] = (255, 0, 0, 255)
        return DiffResult(
            total_pixels=total_pixels,
            diff_pixels=total_pixels,
            diff_percent=1.0,
            diff_image_path=_save_diff(highlighted, diff_output_path),
        )
    if current.size != baseline.size:
        current = current.resize((width, height))

    base_pixels = np.asarray(baseline, dtype=np.int16)
    current_pixels = np.asarray(current, dtype=np.int16)
    channel_delta = np.abs(base_pixels[..., :3] - current_pixels[..., :3])
    mask = (channel_delta > pixel_tolerance).any(axis=-1)
    diff_pixels = int(mask.sum())

    diff_image_path: Path | None = None
    if diff_pixels:
        highlighted = np.array(current, dtype=np.uint8)
        highlighted[mask] = (255, 0, 0, 255)
        diff_image_path = _save_diff(highlighted, diff_output_path)

    return DiffResult(
        total_pixels=total_pixels,
        diff_pixels=diff_pixels,
        diff_percent=diff_pixels / total_pixels if total_pixels else 0.0,
        diff_image_path=diff_image_path,
    )


class ScreenshotDeltaStage(StageRunner):
    kind = StageKind.SCREENSHOT
    timeout_seconds = 60.0

    @property
    def baselines_dir(self) -> Path:
        return self.env.state_dir / "baselines"

    async def _execute(
        self, ctx: VerificationContext, upstream: Mapping[StageKind, StageResult]
    ) -> StageResult:
        browser = upstream.get(StageKind.BROWSER)
        screenshot = browser.artifacts.get("screenshot") if browser else None
        if not screenshot or not Path(screenshot).is_file():
            raise InfrastructureUnavailable("No screenshot available from browser stage")

        current = Path(screenshot)
        identity = page_hash(browser.artifacts.get("page_url") if browser else None)
        baseline = self.baselines_dir / f"{identity}.png"
        if not baseline.exists():
            baseline.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(current, baseline)
            return StageResult.advisory(
                self.kind, "Baseline created (first run)", artifacts={"baseline": str(baseline)}
            )

        gates = self.env.gates
        diff_output = self.env.evidence_dir / f"screenshot-diff-{identity}.png"
        try:
            result = await asyncio.to_thread(
                compare_screenshots,
                baseline,
                current,
                diff_output,
                pixel_tolerance=gates.pixel_tolerance,
                max_dimension_delta=gates.screenshot_max_dimension_delta,
            )
        except (OSError, UnidentifiedImageError, ValueError) as exc:
            raise InfrastructureUnavailable(f"Screenshot comparison failed: {exc}") from exc

        artifacts = {"baseline": str(baseline)}
        if result.diff_image_path is not None:
            artifacts["diff_image"] = str(result.diff_image_path)
        if result.diff_percent > gates.screenshot_diff_threshold:
            message = (
                f"Visual regression: {result.diff_pixels}/{result.total_pixels} pixels differ "
                f"({result.diff_percent * 100:.2f}% > "
                f"{gates.screenshot_diff_threshold * 100:.1f}% threshold)"
            )
            if result.diff_image_path is not None:
                message += f"\nDiff image: {result.diff_image_path}"
            return StageResult.blocked(self.kind, message, artifacts=artifacts)
        return StageResult.ok(self.kind, artifacts=artifacts)
