from autoverify.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from autoverify.backends.claude import ClaudeCodeBackend
from autoverify.backends.cli_agent import CliAgentBackend
from autoverify.backends.codex import CodexBackend
from autoverify.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CliAgentBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
]
