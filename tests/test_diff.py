from autoverify.vcs.diff import (
    hunk_range,
    is_near_changed_line,
    parse_changed_hunks,
)

MULTI_FILE_DIFF = """\
diff --git a/src/app.py b/src/app.py
index 1111111..2222222 100644
--- a/src/app.py
+++ b/src/app.py
@@ -10,2 +10,3 @@ def main():
+    value = compute()
@@ -40 +41 @@ def helper():
-    return 1
+    return 2
diff --git a/src/old.py b/src/old.py
deleted file mode 100644
--- a/src/old.py
+++ /dev/null
@@ -1,3 +0,0 @@
-gone
diff --git a/src/new.py b/src/new.py
new file mode 100644
--- /dev/null
+++ b/src/new.py
@@ -0,0 +1,4 @@
+one
"""


def test_hunk_range_defaults_count_to_one() -> None:
    assert hunk_range("@@ -40 +41 @@") == range(41, 42)
    assert hunk_range("@@ -10,2 +10,3 @@ def main():") == range(10, 13)
    assert hunk_range("@@ -5,2 +4,0 @@") == range(4, 4)
    assert hunk_range("not a hunk") is None


def test_parse_changed_hunks_skips_malformed_headers() -> None:
    diff = "+++ b/app.py\n@@ -1,2 +1,3 @@\n+a\n@@ garbage @@\n@@ -20 +21,2 @@\n+b\n"

    assert parse_changed_hunks(diff) == {"app.py": {1, 2, 3, 21, 22}}


def test_parse_changed_hunks_maps_each_target_file() -> None:
    hunks = parse_changed_hunks(MULTI_FILE_DIFF)

    assert hunks == {
        "src/app.py": {10, 11, 12, 41},
        "src/new.py": {1, 2, 3, 4},
    }


def test_is_near_changed_line_uses_tolerance() -> None:
    changed = {5, 6, 7}

    assert is_near_changed_line(12, changed, 5)
    assert not is_near_changed_line(100, changed, 5)
    assert not is_near_changed_line(3, set(), 5)
