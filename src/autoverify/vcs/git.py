from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from autoverify.vcs.diff import ChangedHunkMap, parse_changed_hunks

logger = logging.getLogger(__name__)

AUTOSTASH_MESSAGE = "autoverify-work-autostash"
INTERNAL_PREFIXES = (".autoverify/",)


class WorkspaceError(RuntimeError):
    """Raised when a git operation on the workspace fails."""


class GitWorkspace:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise WorkspaceError("git executable not found") from exc
        if check and proc.returncode != 0:
            message = proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed"
            raise WorkspaceError(message)
        return proc

    def is_repo(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except WorkspaceError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def head_ref(self, *, short: bool = False) -> str:
        args = ["rev-parse", "--short", "HEAD"] if short else ["rev-parse", "HEAD"]
        return self._run_git(args).stdout.strip()

    def try_head_ref(self, *, short: bool = False) -> str:
        try:
            return self.head_ref(short=short)
        except WorkspaceError:
            return "unknown"

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate.strip('"')

    def status_porcelain(self) -> list[str]:
        proc = self._run_git(["status", "--porcelain", "--untracked-files=all"])
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def dirty_paths(self) -> list[str]:
        paths: list[str] = []
        for line in self.status_porcelain():
            path = self._status_line_path(line)
            if path and not path.startswith(INTERNAL_PREFIXES):
                paths.append(path)
        return paths

    def untracked_files(self) -> list[str]:
        proc = self._run_git(["ls-files", "--others", "--exclude-standard"], check=False)
        return [
            line.strip()
            for line in proc.stdout.splitlines()
            if line.strip() and not line.strip().startswith(INTERNAL_PREFIXES)
        ]

    def changed_files(self, baseline: str | None) -> list[str]:
        """Tracked files changed since ``baseline`` plus untracked files."""
        proc = self._run_git(["diff", "--name-only", baseline or "HEAD"], check=False)
        ordered: dict[str, None] = {}
        for line in proc.stdout.splitlines():
            if line.strip() and not line.strip().startswith(INTERNAL_PREFIXES):
                ordered[line.strip()] = None
        for path in self.untracked_files():
            ordered[path] = None
        return list(ordered)

    def name_status(self, baseline: str | None) -> dict[str, str]:
        proc = self._run_git(["diff", "--name-status", "-M", baseline or "HEAD"], check=False)
        statuses: dict[str, str] = {}
        for line in proc.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 2 or not parts[0]:
                continue
            statuses[parts[-1].strip()] = parts[0][0]
        return statuses

    def added_files(self, baseline: str | None) -> set[str]:
        added = {path for path, status in self.name_status(baseline).items() if status == "A"}
        added.update(self.untracked_files())
        return added

    def renamed_files(self, baseline: str | None) -> set[str]:
        return {path for path, status in self.name_status(baseline).items() if status == "R"}

    def diff(
        self,
        baseline: str | None,
        paths: Iterable[str] = (),
        *,
        unified: int | None = None,
        include_untracked: bool = False,
    ) -> str:
        """Unified diff against ``baseline``.

        With ``include_untracked`` every untracked file (limited to ``paths``
        when given) is appended as a creation diff from ``/dev/null``.
        """
        args = ["diff"]
        if unified is not None:
            args.append(f"--unified={unified}")
        args.append(baseline or "HEAD")
        path_list = list(paths)
        if path_list:
            args.extend(["--", *path_list])
        parts = [self._run_git(args, check=False).stdout]
        if include_untracked:
            wanted = set(path_list)
            for path in self.untracked_files():
                if wanted and path not in wanted:
                    continue
                # --no-index exits 1 whenever the inputs differ.
                proc = self._run_git(["diff", "--no-index", "--", "/dev/null", path], check=False)
                parts.append(proc.stdout)
        return "".join(part if part.endswith("\n") else part + "\n" for part in parts if part)

    def _line_count(self, path: str) -> int:
        try:
            content = (self.repo_root / path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return 0
        return len(content.splitlines())

    def changed_hunks(self, baseline: str | None, paths: Iterable[str]) -> ChangedHunkMap:
        """Touched lines per path. Untracked files count as entirely changed."""
        path_list = list(paths)
        untracked = set(self.untracked_files())
        hunks: ChangedHunkMap = {path: set() for path in path_list}
        tracked = [path for path in path_list if path not in untracked]
        if tracked:
            parsed = parse_changed_hunks(self.diff(baseline, tracked, unified=0))
            for path in tracked:
                hunks[path] = parsed.get(path, set())
        for path in path_list:
            if path in untracked:
                hunks[path] = set(range(1, self._line_count(path) + 1))
        return hunks

    def stash_push(self, message: str = AUTOSTASH_MESSAGE) -> bool:
        if not self.dirty_paths():
            return False
        proc = self._run_git(
            ["stash", "push", "-u", "-m", message, "--", ".", ":(exclude).autoverify"]
        )
        return "No local changes" not in proc.stdout

    def stash_pop(self) -> None:
        self._run_git(["stash", "pop"])

    @contextmanager
    def stash_guard(
        self,
        message: str = AUTOSTASH_MESSAGE,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> Iterator[bool]:
        """Stash uncommitted work for the duration of the block.

        Acquisition failures propagate. Restore failures are logged and
        reported through ``event_hook`` but never raised.
        """
        stashed = self.stash_push(message)
        if stashed and event_hook is not None:
            event_hook({"event": "git_stash", "action": "push", "message": message})
        try:
            yield stashed
        finally:
            if stashed:
                try:
                    self.stash_pop()
                    if event_hook is not None:
                        event_hook({"event": "git_stash", "action": "pop"})
                except WorkspaceError as exc:
                    logger.warning("Failed to restore stashed changes: %s", exc)
                    if event_hook is not None:
                        event_hook({"event": "stash_restore_failed", "error": str(exc)})
