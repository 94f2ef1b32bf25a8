from __future__ import annotations

import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from autoverify.config import ToolchainConfig

PYTHON_SKIP_PATTERNS = (
    re.compile(r"(^|/)__init__\.py$"),
    re.compile(r"(^|/)conftest\.py$"),
    re.compile(r"(^|/)setup\.py$"),
    re.compile(r"\.(json|md|toml|cfg|ini|txt)$"),
)
SCRIPT_SKIP_PATTERNS = (
    re.compile(r"\.d\.ts$"),
    re.compile(r"[-/]types?\.(ts|tsx)$"),
    re.compile(r"\.config\.(ts|tsx|js|mjs)$"),
    re.compile(r"\.(json|md|css|scss|svg)$"),
)


@dataclass(slots=True, frozen=True)
class ToolchainCommand:
    command: str
    file_args: bool = False

    def render(self, files: Iterable[str] = (), **placeholders: str) -> str:
        rendered = self.command
        for key, value in placeholders.items():
            rendered = rendered.replace("{" + key + "}", value)
        file_list = list(files)
        if self.file_args and file_list:
            rendered = f"{rendered} {shlex.join(file_list)}"
        return rendered

    @property
    def executable(self) -> str:
        try:
            parts = shlex.split(self.command)
        except ValueError:
            parts = self.command.split()
        return parts[0] if parts else ""


@dataclass(slots=True, frozen=True)
class TestDiscovery:
    __test__ = False

    colocated_suffix: str | None = None
    test_dir: str | None = "tests"
    test_prefix: str | None = "test_"
    test_extensions: tuple[str, ...] = (".py",)
    skip_patterns: tuple[re.Pattern[str], ...] = PYTHON_SKIP_PATTERNS


@dataclass(slots=True, frozen=True)
class PromptHints:
    test_framework: str = "pytest (def test_*, assert)"
    test_placement: str = "tests/ directory with test_*.py files"
    run_tests: str = "pytest"
    run_lint: str = "ruff check"
    code_style: str = "clean Python with type hints"


@dataclass(slots=True, frozen=True)
class Toolchain:
    name: str
    source_extensions: tuple[str, ...]
    lint: ToolchainCommand | None = None
    typecheck: ToolchainCommand | None = None
    test: ToolchainCommand | None = None
    build: ToolchainCommand | None = None
    coverage: ToolchainCommand | None = None
    test_discovery: TestDiscovery = field(default_factory=TestDiscovery)
    prompt_hints: PromptHints = field(default_factory=PromptHints)

    @classmethod
    def from_config(cls, config: ToolchainConfig) -> Toolchain:
        def _command(text: str, file_args: bool = False) -> ToolchainCommand | None:
            return ToolchainCommand(text.strip(), file_args=file_args) if text.strip() else None

        extensions = tuple(
            ext if ext.startswith(".") else f".{ext}" for ext in config.source_extensions
        )
        python_like = ".py" in extensions
        return cls(
            name=config.preset,
            source_extensions=extensions,
            lint=_command(config.lint, config.lint_file_args),
            typecheck=_command(config.typecheck),
            test=_command(config.test, config.test_file_args),
            build=_command(config.build),
            coverage=_command(config.coverage),
            test_discovery=TestDiscovery(
                colocated_suffix=config.colocated_suffix or None,
                test_dir=config.test_dir or None,
                test_prefix=config.test_prefix or None,
                test_extensions=tuple(config.test_extensions),
                skip_patterns=PYTHON_SKIP_PATTERNS if python_like else SCRIPT_SKIP_PATTERNS,
            ),
            prompt_hints=PromptHints(
                run_tests=config.test or "(no test command)",
                run_lint=config.lint or "(no lint command)",
            ),
        )

    def is_source_file(self, path: str) -> bool:
        return path.endswith(self.source_extensions)

    def is_test_file(self, path: str) -> bool:
        normalized = path.replace("\\", "/")
        pure = PurePosixPath(normalized)
        discovery = self.test_discovery
        if discovery.colocated_suffix and normalized.endswith(discovery.colocated_suffix):
            return True
        if not normalized.endswith(discovery.test_extensions):
            return False
        if discovery.test_prefix and pure.name.startswith(discovery.test_prefix):
            return True
        if pure.stem.endswith("_test") or ".test." in pure.name or ".spec." in pure.name:
            return True
        segments = set(pure.parts[:-1])
        return bool({"tests", "test", "__tests__"} & segments) or (
            bool(discovery.test_dir) and discovery.test_dir in segments
        )

    def should_skip(self, path: str) -> bool:
        normalized = path.replace("\\", "/")
        return any(pattern.search(normalized) for pattern in self.test_discovery.skip_patterns)

    def discover_test_files(self, changed_files: Iterable[str], working_dir: Path) -> list[str]:
        """Existing tests that exercise ``changed_files``, in first-seen order."""
        discovery = self.test_discovery
        found: dict[str, None] = {}
        for path in changed_files:
            normalized = path.replace("\\", "/")
            if self.is_test_file(normalized):
                if (working_dir / normalized).is_file():
                    found[normalized] = None
                continue
            if not self.is_source_file(normalized):
                continue
            pure = PurePosixPath(normalized)
            candidates: list[str] = []
            if discovery.colocated_suffix:
                candidates.append(str(pure.with_suffix("")) + discovery.colocated_suffix)
            if discovery.test_dir:
                prefix = discovery.test_prefix or ""
                candidates.append(f"{discovery.test_dir}/{prefix}{pure.name}")
                if discovery.test_prefix:
                    candidates.append(str(pure.parent / f"{prefix}{pure.name}"))
            for candidate in candidates:
                if (working_dir / candidate).is_file():
                    found[candidate] = None
        return list(found)


DEFAULT_TOOLCHAIN = Toolchain.from_config(ToolchainConfig())
