from __future__ import annotations

import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urljoin, urlsplit

from autoverify.agents.ux_evaluator import UxEvaluatorAgent, build_ux_instruction
from autoverify.backends.base import BackendExecutionError
from autoverify.devserver import detect_dev_server
from autoverify.models import StageKind, StageResult, VerificationContext
from autoverify.stages.base import InfrastructureUnavailable, StageEnvironment, StageRunner
from autoverify.stages.browser import LAUNCH_ARGS, VIEWPORT, load_async_playwright

Verdict = Literal["pass", "fail", "partial"]
Severity = Literal["critical", "major", "minor"]

PAGE_LOAD_TIMEOUT_MS = 30_000
SETTLE_WAIT_MS = 3_000
LOADING_CHECK_INTERVAL_MS = 2_000
LOADING_MAX_WAIT_MS = 60_000
SLOW_LOAD_MS = 10_000

VERDICT_PATTERN = re.compile(r"^VERDICT:\s*(pass|fail|partial)", re.IGNORECASE | re.MULTILINE)
FINDING_PATTERN = re.compile(
    r"^FINDING:\s*\[(critical|major|minor)\]\s*-\s*(.+)$", re.IGNORECASE | re.MULTILINE
)
SUMMARY_PATTERN = re.compile(
    r"^SUMMARY:\s*(.+(?:\n(?!VERDICT:|FINDING:).+)*)", re.IGNORECASE | re.MULTILINE
)
FAILURE_WORDS = re.compile(r"\b(fail|broken|error|crash|hang|stuck|timeout)\b", re.IGNORECASE)
PARTIAL_WORDS = re.compile(r"\b(partial|some|intermittent)\b", re.IGNORECASE)
NO_AUTH_PATTERN = re.compile(
    r"\b(public|no.?login|no.?auth|landing|unauthenticated|without.?login)\b", re.IGNORECASE
)
LOADING_PATTERN = re.compile(r"preparing|loading|please wait|spinner|generating", re.IGNORECASE)
FULL_URL_PATTERN = re.compile(r"https?://[^\s,)]+")
BARE_PATH_PATTERN = re.compile(r"(?:(?<=\s)|^)(/[\w-]+(?:/[\w-]+)*)", re.MULTILINE)
DISMISS_PATTERN = re.compile(r"^(close|cancel|dismiss|x)$", re.IGNORECASE)

INTERACTIVE_ELEMENTS_JS = """
() => {
  const out = [];
  for (const el of Array.from(document.querySelectorAll("button, [role=button]")).slice(0, 20)) {
    const text = (el.innerText || "").trim();
    if (text) out.push(`button: "${text.slice(0, 50)}"`);
  }
  for (const el of Array.from(document.querySelectorAll("input, textarea, select")).slice(0, 20)) {
    const label = el.placeholder || el.name || "(unnamed)";
    out.push(`${el.tagName.toLowerCase()}[${el.type || "text"}]: ${label}`);
  }
  for (const el of Array.from(document.querySelectorAll("a[href]")).slice(0, 20)) {
    const text = (el.innerText || "").trim();
    if (text) out.push(`link: "${text.slice(0, 50)}" -> ${el.href.slice(0, 80)}`);
  }
  return out;
}
"""
CLICK_TARGETS_JS = """
() => Array.from(document.querySelectorAll("button, a[href], [role=button], [onclick]"))
  .slice(0, 30)
  .map((el) => (el.innerText || "").trim())
  .filter((text) => text && text.length < 100)
"""
LOGIN_GATE_JS = """
() => document.querySelectorAll(
  'input[type="password"], input[type="email"], input[name="password"]'
).length > 0
"""
BODY_TEXT_JS = "() => document.body ? document.body.innerText.trim() : ''"


@dataclass(slots=True)
class UxFinding:
    severity: Severity
    description: str


@dataclass(slots=True)
class UxEvalResult:
    verdict: Verdict
    findings: list[UxFinding] = field(default_factory=list)
    summary: str = ""


@dataclass(slots=True)
class CapturedPage:
    url: str
    title: str = ""
    body_text: str = ""
    console_errors: list[str] = field(default_factory=list)
    network_failures: list[str] = field(default_factory=list)
    load_time_ms: int = 0
    stuck_on_loading: bool = False
    has_login_gate: bool = False
    screenshot_path: str = ""
    interactive_elements: list[str] = field(default_factory=list)


def parse_ux_output(output: str) -> UxEvalResult:
    verdict_match = VERDICT_PATTERN.search(output)
    verdict: Verdict = "fail"
    if verdict_match:
        verdict = verdict_match.group(1).lower()  # type: ignore[assignment]
    findings = [
        UxFinding(
            severity=match.group(1).lower(),  # type: ignore[arg-type]
            description=match.group(2).strip(),
        )
        for match in FINDING_PATTERN.finditer(output)
    ]
    summary_match = SUMMARY_PATTERN.search(output)
    summary = summary_match.group(1).strip() if summary_match else ""

    if not summary and verdict_match is None and not findings:
        summary = output[:1000].strip()
        if PARTIAL_WORDS.search(output) and not FAILURE_WORDS.search(output):
            verdict = "partial"
    return UxEvalResult(verdict=verdict, findings=findings, summary=summary)


def format_ux_report(result: UxEvalResult) -> str:
    count = len(result.findings)
    plural = "" if count == 1 else "s"
    if result.verdict == "pass":
        label = "PASS"
    else:
        label = f"{result.verdict.upper()} ({count} issue{plural} found)"
    lines = [f"VERDICT: {label}"]
    if result.findings:
        lines.append("")
        lines.extend(
            f"{finding.severity.upper()}: {finding.description}" for finding in result.findings
        )
    if result.summary:
        lines.extend(["", f"SUMMARY: {result.summary}"])
    actionable = [finding for finding in result.findings if finding.severity != "minor"]
    if actionable:
        lines.extend(["", "What to fix:"])
        lines.extend(
            f"{index}. {finding.description}" for index, finding in enumerate(actionable, start=1)
        )
    return "\n".join(lines)


def extract_test_routes(app_url: str, criteria: str) -> list[str]:
    """Routes worth visiting: the app root, full URLs re-homed onto it, then bare paths."""
    routes = [app_url]
    for match in FULL_URL_PATTERN.finditer(criteria):
        parsed = urlsplit(match.group(0))
        target = parsed.path or "/"
        if parsed.query:
            target = f"{target}?{parsed.query}"
        normalized = urljoin(app_url, target)
        if normalized not in routes:
            routes.append(normalized)
    for match in BARE_PATH_PATTERN.finditer(criteria):
        normalized = urljoin(app_url, match.group(1))
        if normalized not in routes:
            routes.append(normalized)
    return routes


def implies_no_auth(criteria: str) -> bool:
    return bool(NO_AUTH_PATTERN.search(criteria))


def programmatic_findings(captures: list[CapturedPage], criteria: str) -> list[UxFinding]:
    no_auth = implies_no_auth(criteria)
    findings: list[UxFinding] = []
    for capture in captures:
        if capture.stuck_on_loading:
            findings.append(
                UxFinding(
                    "critical",
                    f"{capture.url} stuck on loading state for >{LOADING_MAX_WAIT_MS // 1000}s",
                )
            )
        if not capture.body_text:
            findings.append(UxFinding("critical", f"{capture.url} rendered a blank page"))
        if capture.has_login_gate:
            if no_auth:
                findings.append(
                    UxFinding(
                        "critical",
                        f"{capture.url} shows login page but criteria expect public access",
                    )
                )
            else:
                findings.append(
                    UxFinding("major", f"{capture.url} login gate blocks UX evaluation")
                )
        if capture.load_time_ms > SLOW_LOAD_MS and not capture.stuck_on_loading:
            findings.append(
                UxFinding(
                    "major", f"{capture.url} took {capture.load_time_ms / 1000:.1f}s to load"
                )
            )
        for error in capture.console_errors[:3]:
            findings.append(UxFinding("major", f"Console error on {capture.url}: {error[:100]}"))
    return findings


def merge_findings(ai_text: str, pre_findings: list[UxFinding]) -> UxEvalResult:
    if not ai_text.strip():
        has_critical = any(finding.severity == "critical" for finding in pre_findings)
        has_major = any(finding.severity == "major" for finding in pre_findings)
        verdict: Verdict = "fail" if has_critical else "partial" if has_major else "pass"
        summary = (
            f"Programmatic check found {len(pre_findings)} issue(s). AI evaluation unavailable."
            if pre_findings
            else "Page loaded successfully. AI evaluation unavailable for deep content check."
        )
        return UxEvalResult(verdict=verdict, findings=list(pre_findings), summary=summary)

    result = parse_ux_output(ai_text)
    for finding in pre_findings:
        prefix = finding.description[:30].lower()
        if not any(prefix in existing.description.lower() for existing in result.findings):
            result.findings.append(finding)
    if result.verdict == "pass" and any(f.severity == "critical" for f in pre_findings):
        result.verdict = "fail"
    return result


def build_evidence_report(captures: list[CapturedPage]) -> str:
    sections: list[str] = []
    for capture in captures:
        lines = [
            f"-- Page: {capture.url} --",
            f"Title: {capture.title or '(empty)'}",
            f"Load time: {capture.load_time_ms}ms",
        ]
        if capture.stuck_on_loading:
            lines.append(
                f"STUCK ON LOADING: loading state persisted for >{LOADING_MAX_WAIT_MS // 1000}s"
            )
        if capture.has_login_gate:
            lines.append("LOGIN GATE: page shows a login or signup form")
        if capture.body_text:
            lines.append(f"\nVisible text (first 3000 chars):\n{capture.body_text}")
        else:
            lines.append("BLANK PAGE: no visible text content")
        if capture.console_errors:
            lines.append(f"\nConsole errors ({len(capture.console_errors)}):")
            lines.extend(f"  - {error}" for error in capture.console_errors)
        if capture.network_failures:
            lines.append(f"\nNetwork failures ({len(capture.network_failures)}):")
            lines.extend(f"  - {failure}" for failure in capture.network_failures)
        if capture.interactive_elements:
            lines.append("\nInteractive elements:")
            lines.extend(f"  - {element}" for element in capture.interactive_elements)
        lines.append(f"Screenshot: {capture.screenshot_path}")
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


async def _safe_evaluate(page: Any, script: str, default: Any) -> Any:
    from playwright.async_api import Error as PlaywrightError

    try:
        return await page.evaluate(script)
    except PlaywrightError:
        return default


async def capture_page(page: Any, url: str, evidence_dir: Path, label: str) -> CapturedPage:
    from playwright.async_api import Error as PlaywrightError

    capture = CapturedPage(url=url)

    def _on_console(message: Any) -> None:
        if message.type == "error":
            capture.console_errors.append(message.text[:300])

    def _on_request_failed(request: Any) -> None:
        capture.network_failures.append(f"{request.method} {request.url[:200]} -> failed")

    def _on_response(response: Any) -> None:
        if response.status >= 400:
            capture.network_failures.append(
                f"{response.request.method} {response.url[:200]} -> {response.status}"
            )

    page.on("console", _on_console)
    page.on("requestfailed", _on_request_failed)
    page.on("response", _on_response)
    started = time.monotonic()
    try:
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=PAGE_LOAD_TIMEOUT_MS)
        except PlaywrightError:
            pass
        await page.wait_for_timeout(SETTLE_WAIT_MS)

        body_text = await _safe_evaluate(page, BODY_TEXT_JS, "")
        if LOADING_PATTERN.search(body_text):
            waited = 0
            while waited < LOADING_MAX_WAIT_MS:
                await page.wait_for_timeout(LOADING_CHECK_INTERVAL_MS)
                waited += LOADING_CHECK_INTERVAL_MS
                body_text = await _safe_evaluate(page, BODY_TEXT_JS, "")
                if not LOADING_PATTERN.search(body_text):
                    break
            else:
                capture.stuck_on_loading = True
        capture.load_time_ms = int((time.monotonic() - started) * 1000)

        capture.body_text = (await _safe_evaluate(page, BODY_TEXT_JS, ""))[:3000]
        capture.title = await page.title()
        capture.interactive_elements = await _safe_evaluate(page, INTERACTIVE_ELEMENTS_JS, [])
        capture.has_login_gate = bool(await _safe_evaluate(page, LOGIN_GATE_JS, False))

        safe_label = re.sub(r"[^a-zA-Z0-9_-]", "_", label)[:50]
        screenshot = evidence_dir / f"ux-eval-{safe_label}.png"
        try:
            await page.screenshot(path=str(screenshot), full_page=True)
            capture.screenshot_path = str(screenshot)
        except PlaywrightError:
            pass
    finally:
        page.remove_listener("console", _on_console)
        page.remove_listener("requestfailed", _on_request_failed)
        page.remove_listener("response", _on_response)
    return capture


class UxExplorationStage(StageRunner):
    kind = StageKind.UX
    timeout_seconds = 300.0

    def __init__(
        self,
        env: StageEnvironment,
        evaluator: UxEvaluatorAgent | None = None,
        *,
        max_steps: int = 10,
        sample: int = 5,
    ) -> None:
        super().__init__(env)
        self.evaluator = evaluator
        self.max_steps = max_steps
        self.sample = sample

    async def _explore(self, ctx: VerificationContext, app_url: str) -> list[CapturedPage]:
        async_playwright = load_async_playwright()
        from playwright.async_api import Error as PlaywrightError

        evidence_dir = self.env.evidence_dir
        evidence_dir.mkdir(parents=True, exist_ok=True)
        captures: list[CapturedPage] = []
        async with async_playwright() as playwright:
            try:
                browser = await playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)
            except PlaywrightError as exc:
                raise InfrastructureUnavailable(f"No usable Chromium: {exc.message}") from exc
            try:
                page = await browser.new_page(viewport=VIEWPORT)
                steps = 0
                for route in extract_test_routes(app_url, ctx.task):
                    if ctx.token.cancelled or steps >= self.max_steps:
                        break
                    steps += 1
                    label = "main" if steps == 1 else f"route-{steps}-{urlsplit(route).path}"
                    captures.append(await capture_page(page, route, evidence_dir, label))

                targets = [
                    text
                    for text in await _safe_evaluate(page, CLICK_TARGETS_JS, [])
                    if not DISMISS_PATTERN.match(text)
                ]
                budget = max(0, min(self.sample, self.max_steps - steps))
                for text in targets[:budget]:
                    if ctx.token.cancelled:
                        break
                    steps += 1
                    locator = page.get_by_text(text, exact=False).first
                    try:
                        if not await locator.is_visible():
                            continue
                        await locator.click(timeout=5000)
                    except PlaywrightError:
                        continue
                    await page.wait_for_timeout(SETTLE_WAIT_MS)
                    label = f"step-{steps}-{text[:20]}"
                    captures.append(await capture_page(page, page.url, evidence_dir, label))
            finally:
                await browser.close()
        return captures

    async def _execute(
        self, ctx: VerificationContext, upstream: Mapping[StageKind, StageResult]
    ) -> StageResult:
        app_url = await detect_dev_server(self.env.app_url)
        if app_url is None:
            raise InfrastructureUnavailable("No dev server detected")

        captures = await self._explore(ctx, app_url)
        criteria = ctx.task or "The app loads and its main flows work without errors."
        pre_findings = programmatic_findings(captures, criteria)

        ai_text = ""
        if self.evaluator is not None and captures:
            instruction = build_ux_instruction(
                criteria, build_evidence_report(captures), self.sample
            )
            try:
                response = await self.evaluator.run(instruction, timeout=self.timeout_seconds)
                ai_text = response.content
            except BackendExecutionError:
                ai_text = ""

        result = merge_findings(ai_text, pre_findings)
        artifacts = {"page_url": app_url}
        if result.verdict == "pass":
            return StageResult.ok(self.kind, artifacts=artifacts)
        return StageResult.blocked(self.kind, format_ux_report(result), artifacts=artifacts)
