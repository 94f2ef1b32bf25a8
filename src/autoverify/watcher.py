from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from autoverify.vcs.git import GitWorkspace

logger = logging.getLogger(__name__)

WATCH_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".mts", ".json", ".sh", ".py")
IGNORED_DIRS = frozenset(
    {
        "node_modules",
        "dist",
        ".git",
        ".autoverify",
        "coverage",
        "vendor",
        ".next",
        ".turbo",
        ".cache",
        "build",
        "__pycache__",
        ".venv",
        ".pytest_cache",
    }
)
IGNORED_FILES = frozenset(
    {".DS_Store", "pnpm-lock.yaml", "package-lock.json", "yarn.lock", "poetry.lock", "uv.lock"}
)
GIT_REFS_DIR = Path(".git") / "refs" / "heads"


@dataclass(slots=True, frozen=True)
class FilesChanged:
    files: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class CommitDetected:
    ref: str


WatcherEvent = FilesChanged | CommitDetected


def is_relevant_path(relative: str, extensions: Iterable[str] = WATCH_EXTENSIONS) -> bool:
    pure = PurePosixPath(relative.replace("\\", "/"))
    if not pure.parts or pure.parts[0] == "..":
        return False
    if any(part in IGNORED_DIRS for part in pure.parts[:-1]):
        return False
    name = pure.name
    if name in IGNORED_FILES or name.startswith("bun.lock"):
        return False
    return name.endswith(tuple(extensions))


class Debouncer:
    """Invokes ``callback`` once ``delay`` seconds pass without another trigger."""

    def __init__(
        self,
        delay: float,
        callback: Callable[[], None],
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.delay = delay
        self.callback = callback
        self.loop = loop
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        loop = self.loop or asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.callback()


class _ThreadBridge(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread onto the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, sink: Callable[[str], None]) -> None:
        super().__init__()
        self.loop = loop
        self.sink = sink

    def _forward(self, path: str | bytes) -> None:
        self.loop.call_soon_threadsafe(self.sink, os.fsdecode(path))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.dest_path)


class WorkspaceWatcher:
    """Watches a workspace for saved files and new commits."""

    def __init__(
        self,
        workspace: GitWorkspace,
        on_event: Callable[[WatcherEvent], None],
        *,
        debounce_seconds: float = 1.5,
        commit_debounce_seconds: float = 3.0,
        extensions: Iterable[str] = WATCH_EXTENSIONS,
    ) -> None:
        self.workspace = workspace
        self.on_event = on_event
        self.debounce_seconds = debounce_seconds
        self.commit_debounce_seconds = commit_debounce_seconds
        self.extensions = tuple(dict.fromkeys(extensions))
        self._pending: dict[str, None] = {}
        self._observer: Observer | None = None
        self._file_debouncer: Debouncer | None = None
        self._commit_debouncer: Debouncer | None = None
        self._commit_tasks: set[asyncio.Task[None]] = set()

    @property
    def root(self) -> Path:
        return self.workspace.repo_root

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        self._file_debouncer = Debouncer(self.debounce_seconds, self._flush, loop)
        self._commit_debouncer = Debouncer(
            self.commit_debounce_seconds, lambda: self._spawn_commit_lookup(loop), loop
        )
        observer = Observer()
        observer.schedule(_ThreadBridge(loop, self.record_path), str(self.root), recursive=True)
        refs_dir = self.root / GIT_REFS_DIR
        if refs_dir.is_dir():
            observer.schedule(_ThreadBridge(loop, self.record_ref), str(refs_dir), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Watching %s", self.root)

    def stop(self) -> None:
        for debouncer in (self._file_debouncer, self._commit_debouncer):
            if debouncer is not None:
                debouncer.cancel()
        for task in list(self._commit_tasks):
            task.cancel()
        self._pending.clear()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

    def record_path(self, absolute: str) -> None:
        try:
            relative = Path(absolute).resolve().relative_to(self.root).as_posix()
        except ValueError:
            return
        if not is_relevant_path(relative, self.extensions):
            return
        self._pending[relative] = None
        if self._file_debouncer is not None:
            self._file_debouncer.trigger()

    def record_ref(self, absolute: str) -> None:
        if self._commit_debouncer is not None:
            self._commit_debouncer.trigger()

    def _flush(self) -> None:
        if not self._pending:
            return
        files = tuple(self._pending)
        self._pending.clear()
        self.on_event(FilesChanged(files))

    def _spawn_commit_lookup(self, loop: asyncio.AbstractEventLoop) -> None:
        task = loop.create_task(self._emit_commit())
        self._commit_tasks.add(task)
        task.add_done_callback(self._commit_tasks.discard)

    async def _emit_commit(self) -> None:
        ref = await asyncio.to_thread(self.workspace.try_head_ref, short=True)
        if ref != "unknown":
            self.on_event(CommitDetected(ref))
