from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

BackendName = Literal["codex", "claude"]

CONFIG_FILENAME = "autoverify.toml"
STATE_DIRNAME = ".autoverify"


class ConfigError(ValueError):
    """Raised when a configuration file cannot be interpreted."""


@dataclass(slots=True)
class ToolchainConfig:
    preset: str = "python"
    source_extensions: list[str] = field(default_factory=lambda: [".py"])
    lint: str = "ruff check"
    lint_file_args: bool = True
    typecheck: str = "mypy ."
    test: str = "pytest -x --tb=short"
    test_file_args: bool = True
    build: str = ""
    coverage: str = "pytest --cov --cov-report=lcov:{report}"
    colocated_suffix: str = ""
    test_dir: str = "tests"
    test_prefix: str = "test_"
    test_extensions: list[str] = field(default_factory=lambda: [".py"])


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class AgentsConfig:
    coder_model: str = "claude-sonnet-4-5"
    reviewer_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class DaemonConfig:
    debounce_seconds: float = 1.5
    commit_debounce_seconds: float = 3.0
    rerun_grace_seconds: float = 0.1
    tests: bool = True
    video: bool = True
    full: bool = False
    app_url: str = ""


@dataclass(slots=True)
class WorkerConfig:
    max_iterations: int = 5
    stall_limit: int = 3
    turn_timeout_seconds: float = 600.0
    tests: bool = True
    coverage: bool = True
    browser: bool = True
    screenshot: bool = True
    review: bool = True
    spec_tests: bool = False
    ux: bool = False
    video: bool = True
    ux_steps: int = 10
    ux_sample: int = 5


@dataclass(slots=True)
class GatesConfig:
    coverage_min_changed_lines: int = 5
    coverage_modified_threshold: float = 0.5
    coverage_new_threshold: float = 0.3
    pixel_tolerance: int = 30
    screenshot_diff_threshold: float = 0.005
    screenshot_max_dimension_delta: int = 50
    review_line_tolerance: int = 5
    review_max_diff_chars: int = 15000


SECTION_TYPES: dict[str, type] = {
    "toolchain": ToolchainConfig,
    "backend": BackendConfig,
    "agents": AgentsConfig,
    "daemon": DaemonConfig,
    "worker": WorkerConfig,
    "gates": GatesConfig,
}


@dataclass(slots=True)
class AutoverifyConfig:
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)

    @classmethod
    def default(cls) -> AutoverifyConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutoverifyConfig:
        unknown_sections = sorted(set(data) - set(SECTION_TYPES))
        if unknown_sections:
            raise ConfigError(f"Unknown config sections: {', '.join(unknown_sections)}")
        sections: dict[str, Any] = {}
        for name, section_type in SECTION_TYPES.items():
            values = data.get(name, {})
            if not isinstance(values, dict):
                raise ConfigError(f"Config section [{name}] must be a table.")
            try:
                sections[name] = section_type(**values)
            except TypeError as exc:
                raise ConfigError(f"Invalid keys in [{name}]: {exc}") from exc
        return cls(**sections)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        data: dict[str, dict[str, Any]] = {}
        for name in SECTION_TYPES:
            section = getattr(self, name)
            data[name] = {}
            for item in fields(section):
                value = getattr(section, item.name)
                data[name][item.name] = list(value) if isinstance(value, list) else value
        return data


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutoverifyConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_TYPES:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AutoverifyConfig:
    if not path.exists():
        return AutoverifyConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return AutoverifyConfig.from_dict(data)


def save_config(path: Path, config: AutoverifyConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
