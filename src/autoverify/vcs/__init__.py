from autoverify.vcs.diff import ChangedHunkMap, parse_changed_hunks
from autoverify.vcs.git import GitWorkspace, WorkspaceError

__all__ = [
    "ChangedHunkMap",
    "GitWorkspace",
    "WorkspaceError",
    "parse_changed_hunks",
]
