import json
from pathlib import Path
from typing import Any

from autoverify.events import EventLog, emit, fanout
from autoverify.feedback import FeedbackStore, render_qa_feedback
from autoverify.models import (
    FeedbackRecord,
    StageKind,
    StageResult,
    build_summary,
    failure_fingerprint,
    truncate_error,
)


def _record(ok: bool, checks: list[StageResult]) -> FeedbackRecord:
    return FeedbackRecord(
        ok=ok,
        duration_ms=2500,
        git_ref="abc1234",
        trigger_files=["src/app.ts"],
        checks=checks,
        summary=build_summary(checks, 2500),
        timestamp="2026-01-01T00:00:00+00:00",
    )


def test_store_writes_json_and_markdown(tmp_path: Path) -> None:
    store = FeedbackStore(tmp_path)
    record = _record(
        True,
        [
            StageResult.ok(StageKind.LINT, duration_ms=100),
            StageResult.advisory(StageKind.BROWSER, "No dev server detected (skipped)"),
        ],
    )

    store.write(record)

    payload = json.loads(store.path.read_text(encoding="utf-8"))
    assert payload == store.read_last()
    assert payload["ok"] is True
    assert payload["gitRef"] == "abc1234"
    assert payload["checks"][0] == {
        "stage": "lint",
        "passed": True,
        "outcome": "passed",
        "durationMs": 100,
    }
    assert payload["checks"][1]["outcome"] == "advisory"
    markdown = store.markdown_path.read_text(encoding="utf-8")
    assert "## VERDICT: PASS" in markdown
    assert "- browser: No dev server detected (skipped)" in markdown
    assert list(tmp_path.glob(".autoverify/*.tmp")) == []


def test_store_without_markdown(tmp_path: Path) -> None:
    store = FeedbackStore(tmp_path, write_markdown=False)

    store.write(_record(True, []))

    assert store.path.is_file()
    assert not store.markdown_path.exists()


def test_read_last_tolerates_missing_and_corrupt_files(tmp_path: Path) -> None:
    store = FeedbackStore(tmp_path)
    assert store.read_last() is None

    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json", encoding="utf-8")
    assert store.read_last() is None


def test_failed_verdict_lists_failed_checks() -> None:
    markdown = render_qa_feedback(
        _record(
            False,
            [
                StageResult.blocked(StageKind.TEST, "1 failed: test_total"),
                StageResult.blocked(StageKind.TYPECHECK, "app.ts(3,1): error TS2322"),
            ],
        )
    )

    assert markdown.startswith("# QA Feedback\n")
    assert "> Auto-generated: 2026-01-01T00:00:00+00:00 | ref abc1234" in markdown
    assert "## VERDICT: FAIL (2 checks failed)" in markdown
    assert "### test FAILED\n\n1 failed: test_total" in markdown
    assert "### typecheck FAILED" in markdown
    assert "2/2 checks failed (2.5s):" in markdown


def test_failure_fingerprint_is_order_independent() -> None:
    first = [
        StageResult.blocked(StageKind.TEST, "x"),
        StageResult.ok(StageKind.LINT),
        StageResult.blocked(StageKind.COVERAGE, "y"),
    ]
    second = [
        StageResult.blocked(StageKind.COVERAGE, "other text"),
        StageResult.blocked(StageKind.TEST, "different"),
    ]

    assert failure_fingerprint(first) == "coverage-diff,test"
    assert failure_fingerprint(first) == failure_fingerprint(second)
    assert failure_fingerprint([StageResult.ok(StageKind.LINT)]) == ""


def test_truncate_error_appends_marker() -> None:
    assert truncate_error("short") == "short"
    truncated = truncate_error("x" * 3000)
    assert truncated.endswith("\n... (truncated)")
    assert len(truncated) == 2000 + len("\n... (truncated)")


def test_event_log_appends_and_trims(tmp_path: Path) -> None:
    log = EventLog(tmp_path / "state" / "events.jsonl", max_events=3)
    seen: list[dict[str, Any]] = []
    hook = fanout(log, None, seen.append)

    for index in range(5):
        emit(hook, "stage_done", index=index)

    events = log.read()
    assert [event["index"] for event in events] == [2, 3, 4]
    assert all("at" in event for event in events)
    assert len(seen) == 5
    assert "at" not in seen[0]


def test_emit_without_hook_is_noop() -> None:
    emit(None, "anything", value=1)
