from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from autoverify.devserver import detect_dev_server
from autoverify.models import StageKind, StageResult, VerificationContext
from autoverify.stages.base import InfrastructureUnavailable, StageRunner

VIEWPORT = {"width": 1280, "height": 720}
PAGE_LOAD_TIMEOUT_MS = 30_000
SETTLE_WAIT_MS = 3_000
LAUNCH_ARGS = ["--no-default-browser-check", "--disable-features=TranslateUI"]

IGNORED_URL_PATTERNS = (
    re.compile(r"favicon\.ico"),
    re.compile(r"hot-update"),
    re.compile(r"/__webpack_hmr"),
    re.compile(r"/__vite_ping"),
    re.compile(r"/sockjs-node/"),
    re.compile(r"ws://"),
    re.compile(r"chrome-extension:"),
    re.compile(r"^data:"),
)
IGNORED_CONSOLE_PATTERNS = (
    re.compile(r"Download the React DevTools", re.IGNORECASE),
    re.compile(r"React does not recognize the .* prop", re.IGNORECASE),
    re.compile(r"Warning: Each child in a list", re.IGNORECASE),
    re.compile(r"\[HMR\]"),
    re.compile(r"\[vite\]", re.IGNORECASE),
    re.compile(r"Hot Module Replacement", re.IGNORECASE),
    re.compile(r"favicon\.ico", re.IGNORECASE),
)


def should_ignore_url(url: str) -> bool:
    return any(pattern.search(url) for pattern in IGNORED_URL_PATTERNS)


def should_ignore_console(text: str) -> bool:
    return any(pattern.search(text) for pattern in IGNORED_CONSOLE_PATTERNS)


def load_async_playwright() -> Any:
    try:
        from playwright.async_api import async_playwright
    except ImportError as exc:
        raise InfrastructureUnavailable(
            "playwright not installed (pip install 'autoverify[browser]')"
        ) from exc
    return async_playwright


@dataclass(slots=True)
class BrowserFindings:
    app_url: str
    console_errors: list[str] = field(default_factory=list)
    console_warnings: list[str] = field(default_factory=list)
    page_errors: list[str] = field(default_factory=list)
    network_failures: list[str] = field(default_factory=list)
    page_title: str = ""
    blank_page: bool = False
    screenshot_path: str | None = None

    @property
    def has_errors(self) -> bool:
        return bool(
            self.page_errors or self.console_errors or self.network_failures or self.blank_page
        )

    def attach(self, page: Any) -> None:
        page.on("console", self._on_console)
        page.on("pageerror", self._on_page_error)
        page.on("requestfailed", self._on_request_failed)
        page.on("response", self._on_response)

    def _on_console(self, message: Any) -> None:
        text = message.text
        location = message.location or {}
        source = location.get("url") or ""
        if should_ignore_console(text) or should_ignore_url(source):
            return
        where = f" ({source}:{location.get('lineNumber')})" if source else ""
        if message.type == "error":
            self.console_errors.append(f"{text[:500]}{where}")
        elif message.type == "warning":
            self.console_warnings.append(text[:300])

    def _on_page_error(self, error: Any) -> None:
        message = str(getattr(error, "message", error))[:500]
        stack = getattr(error, "stack", None) or ""
        stack_head = "\n".join(f"    {line}" for line in stack.splitlines()[1:4])
        self.page_errors.append(f"{message}\n{stack_head}" if stack_head else message)

    def _on_request_failed(self, request: Any) -> None:
        if should_ignore_url(request.url):
            return
        self.network_failures.append(f"{request.method} {request.url[:200]} -> failed")

    def _on_response(self, response: Any) -> None:
        if response.status < 400 or should_ignore_url(response.url):
            return
        self.network_failures.append(
            f"{response.request.method} {response.url[:200]} -> "
            f"{response.status} {response.status_text}".rstrip()
        )


def format_findings(findings: BrowserFindings) -> str:
    lines: list[str] = []
    if findings.blank_page:
        lines.append("BLANK PAGE: the app rendered no visible content")
    if findings.page_errors:
        lines.append(f"\n{len(findings.page_errors)} uncaught exception(s):")
        lines.extend(f"  {error}" for error in findings.page_errors[:5])
    if findings.console_errors:
        lines.append(f"\n{len(findings.console_errors)} console error(s):")
        lines.extend(f"  {entry}" for entry in findings.console_errors[:10])
    if findings.console_warnings:
        lines.append(f"\n{len(findings.console_warnings)} console warning(s):")
        lines.extend(f"  {entry}" for entry in findings.console_warnings[:5])
    if findings.network_failures:
        lines.append(f"\n{len(findings.network_failures)} network failure(s):")
        lines.extend(f"  {entry}" for entry in findings.network_failures[:10])
    return "\n".join(lines).strip()


class BrowserInspectStage(StageRunner):
    kind = StageKind.BROWSER
    timeout_seconds = 90.0

    async def _inspect(self, app_url: str) -> BrowserFindings:
        async_playwright = load_async_playwright()
        from playwright.async_api import Error as PlaywrightError

        evidence_dir = self.env.evidence_dir
        evidence_dir.mkdir(parents=True, exist_ok=True)
        findings = BrowserFindings(app_url=app_url)
        async with async_playwright() as playwright:
            try:
                browser = await playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)
            except PlaywrightError as exc:
                raise InfrastructureUnavailable(f"No usable Chromium: {exc.message}") from exc
            try:
                page = await browser.new_page(viewport=VIEWPORT)
                findings.attach(page)
                try:
                    await page.goto(
                        app_url, wait_until="domcontentloaded", timeout=PAGE_LOAD_TIMEOUT_MS
                    )
                except PlaywrightError as exc:
                    findings.page_errors.append(f"Navigation failed: {exc.message}")
                await page.wait_for_timeout(SETTLE_WAIT_MS)
                body_text = await page.evaluate(
                    "() => document.body ? document.body.innerText.trim() : ''"
                )
                findings.blank_page = not body_text
                findings.page_title = await page.title()
                screenshot = evidence_dir / "browser-inspect.png"
                await page.screenshot(path=str(screenshot), full_page=True)
                findings.screenshot_path = str(screenshot)
            finally:
                await browser.close()
        return findings

    async def _execute(
        self, ctx: VerificationContext, upstream: Mapping[StageKind, StageResult]
    ) -> StageResult:
        app_url = await detect_dev_server(self.env.app_url)
        if app_url is None:
            raise InfrastructureUnavailable("No dev server detected")

        findings = await self._inspect(app_url)
        artifacts = {"page_url": app_url}
        if findings.screenshot_path:
            artifacts["screenshot"] = findings.screenshot_path
        if findings.has_errors:
            return StageResult.blocked(self.kind, format_findings(findings), artifacts=artifacts)
        if findings.console_warnings:
            return StageResult.advisory(self.kind, format_findings(findings), artifacts=artifacts)
        return StageResult.ok(self.kind, artifacts=artifacts)
