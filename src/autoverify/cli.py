from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import click

from autoverify import __version__
from autoverify.agents import CoderAgent, ReviewerAgent, SpecWriterAgent, UxEvaluatorAgent
from autoverify.backends import ClaudeCodeBackend, CodexBackend, ResilientBackend, RetryPolicy
from autoverify.config import (
    CONFIG_FILENAME,
    STATE_DIRNAME,
    AutoverifyConfig,
    BackendName,
    ConfigError,
    load_config,
    save_config,
)
from autoverify.daemon import RunCoordinator
from autoverify.events import EventHook, EventLog, fanout
from autoverify.feedback import FeedbackStore
from autoverify.models import FeedbackRecord, VerificationContext, build_summary
from autoverify.pipeline import GatedPipeline, PipelinePlan
from autoverify.process import CancellationToken, ProcessRegistry
from autoverify.spec_tests import SpecTestWriter
from autoverify.stages import RunnerTable, StageEnvironment, build_runners
from autoverify.toolchain import Toolchain
from autoverify.vcs.git import GitWorkspace, WorkspaceError
from autoverify.watcher import WATCH_EXTENSIONS, WorkspaceWatcher
from autoverify.worker import Worker, WorkerInitError, WorkerOptions

EVENT_LOG_FILENAME = "events.jsonl"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: AutoverifyConfig
    workspace: GitWorkspace
    toolchain: Toolchain
    registry: ProcessRegistry
    event_log: EventLog
    feedback: FeedbackStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, repo_root: Path, event_hook: EventHook
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root, event_hook=event_hook)
    return ClaudeCodeBackend(working_directory=repo_root, event_hook=event_hook)


def _build_backend(runtime: Runtime) -> ResilientBackend:
    config = runtime.config.backend
    hook = runtime.event_log
    policy = RetryPolicy(
        max_retries=max(0, int(config.max_retries)),
        backoff_seconds=max(0.0, float(config.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.timeout_seconds)),
    )
    chain = [
        (name, _build_single_backend(name, runtime.repo_root, hook))
        for name in dict.fromkeys((config.primary, config.fallback))
    ]
    return ResilientBackend(chain, policy, event_hook=hook)


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    workspace = GitWorkspace(repo_root)
    if not workspace.is_repo():
        raise click.ClickException(f"{repo_root} is not a git repository.")
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        workspace=workspace,
        toolchain=Toolchain.from_config(config.toolchain),
        registry=ProcessRegistry(),
        event_log=EventLog(repo_root / STATE_DIRNAME / EVENT_LOG_FILENAME),
        feedback=FeedbackStore(repo_root),
    )


def _build_environment(
    runtime: Runtime, app_url: str | None, hook: EventHook
) -> StageEnvironment:
    return StageEnvironment(
        workspace=runtime.workspace,
        toolchain=runtime.toolchain,
        gates=runtime.config.gates,
        registry=runtime.registry,
        app_url=app_url or None,
        event_hook=hook,
    )


def _echo_event(event: dict[str, Any], json_output: bool) -> None:
    if json_output:
        click.echo(json.dumps(event, ensure_ascii=False, default=str))
        return
    name = event.get("event")
    if name == "stage_done":
        label = {"passed": "PASS", "advisory": "WARN", "blocked": "FAIL"}.get(
            str(event.get("outcome")), "STOP"
        )
        seconds = int(event.get("duration_ms") or 0) / 1000
        click.echo(f"  [{label}] {event.get('stage')} ({seconds:.1f}s)")
    elif name == "run_start":
        files = event.get("trigger_files") or []
        kind = "commit" if event.get("commit") else f"{len(files)} file(s)"
        click.echo(f"Verifying {kind}...")
    elif name == "run_done":
        click.echo(str(event.get("summary", "")))
    elif name == "run_cancelled":
        click.echo("  superseded by newer changes")
    elif name == "iteration_start":
        click.echo(f"Iteration {event.get('iteration')}/{event.get('max_iterations')}")
    elif name == "stall_warning":
        click.echo(
            f"  same failures repeated ({event.get('consecutive_stalls')}/"
            f"{event.get('stall_limit')})"
        )
    elif name == "error":
        click.echo(f"  error: {event.get('error')}", err=True)


def _event_hook(runtime: Runtime, json_output: bool) -> EventHook:
    return fanout(runtime.event_log, lambda event: _echo_event(event, json_output))


@click.group()
@click.version_option(__version__, prog_name="autoverify")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Autonomous verification loop for coding agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)
    (repo_root / STATE_DIRNAME).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized autoverify in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Toolchain: {config.toolchain.preset}")
    click.echo(f"Backend: {config.backend.primary}")


@cli.command("check")
@click.argument("files", nargs=-1)
@click.option("--full", is_flag=True, default=False, help="Also run build and video stages.")
@click.option("--json", "json_output", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def check_command(
    files: tuple[str, ...], full: bool, json_output: bool, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    hook = _event_hook(runtime, json_output)
    daemon = runtime.config.daemon
    env = _build_environment(runtime, daemon.app_url, hook)
    reviewer = ReviewerAgent(_build_backend(runtime), model=runtime.config.agents.reviewer_model)
    runners = build_runners(env, reviewer=reviewer)
    plan = PipelinePlan(tests=daemon.tests, build=full, video=full and daemon.video)

    async def _check() -> bool:
        changed = list(files) or await asyncio.to_thread(runtime.workspace.changed_files, None)
        ctx = VerificationContext.create(
            runtime.repo_root, changed, CancellationToken(), trigger="manual"
        )
        run = await GatedPipeline(runners, plan, event_hook=hook).run(ctx)
        summary = build_summary(run.results, run.duration_ms)
        runtime.feedback.write(
            FeedbackRecord(
                ok=run.all_passed,
                duration_ms=run.duration_ms,
                git_ref=runtime.workspace.try_head_ref(short=True),
                trigger_files=list(ctx.changed_files),
                checks=run.results,
                summary=summary,
            )
        )
        if not json_output:
            click.echo(summary)
        return run.all_passed

    try:
        ok = asyncio.run(_check())
    except WorkspaceError as exc:
        raise click.ClickException(str(exc)) from exc
    raise SystemExit(0 if ok else 1)


def _daemon_plans(
    *, full: bool, tests: bool, video: bool
) -> tuple[PipelinePlan, PipelinePlan]:
    save_plan = PipelinePlan(tests=tests, build=full, video=full and video)
    commit_plan = replace(save_plan, build=True, video=video)
    return save_plan, commit_plan


@cli.command("watch")
@click.option("--full", is_flag=True, default=False, help="Run build and video on every save.")
@click.option("--no-tests", is_flag=True, default=False)
@click.option("--no-video", is_flag=True, default=False)
@click.option("--app-url", default=None)
@click.option("--json", "json_output", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def watch_command(
    full: bool,
    no_tests: bool,
    no_video: bool,
    app_url: str | None,
    json_output: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    hook = _event_hook(runtime, json_output)
    daemon = runtime.config.daemon
    env = _build_environment(runtime, app_url or daemon.app_url, hook)
    reviewer = ReviewerAgent(_build_backend(runtime), model=runtime.config.agents.reviewer_model)
    save_plan, commit_plan = _daemon_plans(
        full=full or daemon.full,
        tests=daemon.tests and not no_tests,
        video=daemon.video and not no_video,
    )

    async def _watch() -> None:
        coordinator = RunCoordinator(
            runtime.workspace,
            build_runners(env, reviewer=reviewer),
            save_plan=save_plan,
            commit_plan=commit_plan,
            registry=runtime.registry,
            feedback=runtime.feedback,
            event_hook=hook,
            rerun_grace_seconds=daemon.rerun_grace_seconds,
        )
        extensions = (*WATCH_EXTENSIONS, *runtime.toolchain.source_extensions)
        watcher = WorkspaceWatcher(
            runtime.workspace,
            coordinator.handle_event,
            debounce_seconds=daemon.debounce_seconds,
            commit_debounce_seconds=daemon.commit_debounce_seconds,
            extensions=extensions,
        )
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)
        watcher.start(loop)
        if not json_output:
            click.echo(f"Watching {runtime.repo_root} (Ctrl-C to stop)")
        try:
            await stop.wait()
        finally:
            watcher.stop()
            await coordinator.shutdown()

    asyncio.run(_watch())


@cli.command("work")
@click.argument("task")
@click.option("--max-iterations", type=int, default=None)
@click.option("--stall-limit", type=int, default=None)
@click.option("--turn-timeout", type=float, default=None, help="Seconds per agent turn.")
@click.option("--no-tests", is_flag=True, default=False)
@click.option("--no-coverage", is_flag=True, default=False)
@click.option("--no-browser", is_flag=True, default=False)
@click.option("--no-screenshot", is_flag=True, default=False)
@click.option("--no-review", is_flag=True, default=False)
@click.option("--no-video", is_flag=True, default=False)
@click.option("--spec-tests/--no-spec-tests", default=None)
@click.option("--ux/--no-ux", default=None)
@click.option("--app-url", default=None)
@click.option("--json", "json_output", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def work_command(
    task: str,
    max_iterations: int | None,
    stall_limit: int | None,
    turn_timeout: float | None,
    no_tests: bool,
    no_coverage: bool,
    no_browser: bool,
    no_screenshot: bool,
    no_review: bool,
    no_video: bool,
    spec_tests: bool | None,
    ux: bool | None,
    app_url: str | None,
    json_output: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    hook = _event_hook(runtime, json_output)
    settings = runtime.config.worker
    agents = runtime.config.agents
    backend = _build_backend(runtime)
    env = _build_environment(runtime, app_url or runtime.config.daemon.app_url, hook)
    runners: RunnerTable = build_runners(
        env,
        reviewer=ReviewerAgent(backend, model=agents.reviewer_model),
        ux_evaluator=UxEvaluatorAgent(backend, model=agents.reviewer_model),
        ux_steps=settings.ux_steps,
        ux_sample=settings.ux_sample,
    )
    options = WorkerOptions(
        max_iterations=max(1, max_iterations or settings.max_iterations),
        stall_limit=max(1, stall_limit or settings.stall_limit),
        turn_timeout_seconds=turn_timeout or settings.turn_timeout_seconds,
        plan=PipelinePlan(
            tests=settings.tests and not no_tests,
            coverage=settings.coverage and not no_coverage,
            browser=settings.browser and not no_browser,
            screenshot=settings.screenshot and not no_screenshot,
            ux=settings.ux if ux is None else ux,
            review=settings.review and not no_review,
        ),
        spec_tests=settings.spec_tests if spec_tests is None else spec_tests,
        video=settings.video and not no_video,
    )
    worker = Worker(
        runtime.workspace,
        CoderAgent(backend, model=agents.coder_model),
        runners,
        options=options,
        toolchain=runtime.toolchain,
        feedback=runtime.feedback,
        spec_writer=SpecTestWriter(
            SpecWriterAgent(backend, model=agents.coder_model),
            runtime.workspace,
            runtime.toolchain,
            event_hook=hook,
        ),
        event_hook=hook,
    )
    try:
        result = asyncio.run(worker.run(task))
    except (WorkerInitError, WorkspaceError) as exc:
        raise click.ClickException(str(exc)) from exc

    if not json_output:
        click.echo(
            f"{'Done' if result.ok else 'Stopped'}: {result.stop_reason} after "
            f"{len(result.iterations)} iteration(s) ({result.total_duration_ms / 1000:.1f}s)"
        )
    raise SystemExit(0 if result.ok else 1)


@cli.command("status")
@click.option(
    "--events",
    "event_count",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Also print this many recent events from the event log.",
)
def status_command(event_count: int) -> None:
    repo_root = Path.cwd().resolve()
    payload = FeedbackStore(repo_root).read_last()
    if payload is None:
        click.echo("No verification results yet.")
    else:
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    if event_count:
        event_log = EventLog(repo_root / STATE_DIRNAME / EVENT_LOG_FILENAME)
        for event in event_log.read()[-event_count:]:
            click.echo(json.dumps(event, ensure_ascii=False))
