from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from autoverify.config import STATE_DIRNAME
from autoverify.models import FeedbackRecord

logger = logging.getLogger(__name__)

FEEDBACK_FILENAME = "feedback.json"
QA_FEEDBACK_FILENAME = "QA-FEEDBACK.md"


class FeedbackSink(Protocol):
    def write(self, record: FeedbackRecord) -> None: ...


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def render_qa_feedback(record: FeedbackRecord) -> str:
    lines = [
        "# QA Feedback",
        "",
        f"> Auto-generated: {record.timestamp} | ref {record.git_ref}",
        "",
    ]
    if record.ok:
        lines.extend(["## VERDICT: PASS", "", f"All {len(record.checks)} checks passed.", ""])
    else:
        failed = [check for check in record.checks if not check.passed]
        plural = "" if len(failed) == 1 else "s"
        lines.extend([f"## VERDICT: FAIL ({len(failed)} check{plural} failed)", ""])
        for check in failed:
            lines.append(f"### {check.stage.value} FAILED")
            if check.error:
                lines.extend(["", check.error])
            lines.append("")
    advisories = [check for check in record.checks if check.passed and check.error]
    if advisories:
        lines.extend(["## Advisories", ""])
        for check in advisories:
            first_line = (check.error or "").strip().splitlines() or [""]
            lines.append(f"- {check.stage.value}: {first_line[0]}")
        lines.append("")
    lines.extend(["## Summary", "", record.summary])
    return "\n".join(lines) + "\n"


class FeedbackStore:
    """Persists the latest feedback record under the workspace state directory."""

    def __init__(self, repo_root: Path, *, write_markdown: bool = True) -> None:
        self.repo_root = repo_root
        self.write_markdown = write_markdown

    @property
    def path(self) -> Path:
        return self.repo_root / STATE_DIRNAME / FEEDBACK_FILENAME

    @property
    def markdown_path(self) -> Path:
        return self.repo_root / QA_FEEDBACK_FILENAME

    def write(self, record: FeedbackRecord) -> None:
        payload = json.dumps(record.to_dict(), ensure_ascii=False, indent=2)
        _atomic_write(self.path, payload + "\n")
        if self.write_markdown:
            _atomic_write(self.markdown_path, render_qa_feedback(record))

    def read_last(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read feedback record %s: %s", self.path, exc)
            return None
        return payload if isinstance(payload, dict) else None
