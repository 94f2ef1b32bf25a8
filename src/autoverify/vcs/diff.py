from __future__ import annotations

import re

HUNK_HEADER_PATTERN = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,(\d+))? @@")
TARGET_FILE_PATTERN = re.compile(r"^\+\+\+ (?:b/)?(.+?)\s*$")

ChangedHunkMap = dict[str, set[int]]


def hunk_range(header: str) -> range | None:
    """Return the new-side line range ``[c, c+d)`` described by a hunk header."""
    match = HUNK_HEADER_PATTERN.match(header)
    if match is None:
        return None
    start = int(match.group(1))
    count = int(match.group(2)) if match.group(2) is not None else 1
    return range(start, start + count)


def parse_changed_hunks(diff_text: str) -> ChangedHunkMap:
    """Map every target file of a multi-file unified diff to its touched lines."""
    hunks: ChangedHunkMap = {}
    current: str | None = None
    for raw_line in diff_text.splitlines():
        if raw_line.startswith("+++ "):
            match = TARGET_FILE_PATTERN.match(raw_line)
            target = match.group(1) if match else None
            current = None if target in {None, "/dev/null"} else target
            if current is not None:
                hunks.setdefault(current, set())
            continue
        if current is None or not raw_line.startswith("@@"):
            continue
        span = hunk_range(raw_line)
        if span is not None:
            hunks[current].update(span)
    return hunks


def is_near_changed_line(line: int, changed: set[int], tolerance: int) -> bool:
    return any(abs(line - candidate) <= tolerance for candidate in changed)
