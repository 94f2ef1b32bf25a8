from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

from autoverify.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from autoverify.events import EventHook, emit

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 6


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0

    def delay_for(self, retry: int) -> float:
        return self.backoff_seconds * (2 ** (retry - 1))


class ResilientBackend(AgentBackend):
    """Runs a turn against an ordered chain of backends.

    Each backend gets ``max_retries`` extra attempts with exponential backoff
    before the next one in the chain takes over. Non-retriable errors move on
    immediately. Chunks are buffered so a half-streamed failure never leaks
    partial output to the caller.
    """

    def __init__(
        self,
        chain: Sequence[tuple[str, AgentBackend]],
        policy: RetryPolicy | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        unique: dict[str, AgentBackend] = {}
        for name, backend in chain:
            unique.setdefault(name, backend)
        if not unique:
            raise ValueError("ResilientBackend needs at least one backend")
        self.chain = list(unique.items())
        self.policy = policy or RetryPolicy()
        self.event_hook = event_hook

    async def _turn(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            return [
                chunk async for chunk in backend.execute(system_prompt, user_prompt, context)
            ]

        try:
            return await asyncio.wait_for(_consume(), timeout=self.policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def _try_backend(
        self,
        name: str,
        backend: AgentBackend,
        prompts: tuple[str, str, dict[str, Any]],
        errors: list[str],
    ) -> list[str] | None:
        for attempt in range(self.policy.max_retries + 1):
            if attempt:
                delay = self.policy.delay_for(attempt)
                emit(
                    self.event_hook,
                    "backend_retry",
                    backend=name,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await asyncio.sleep(delay)
            try:
                return await self._turn(backend, *prompts)
            except BackendExecutionError as exc:
                logger.warning("Backend %s attempt %d failed: %s", name, attempt, exc)
                errors.append(f"{name}[{attempt}]: {exc}")
                emit(
                    self.event_hook,
                    "backend_attempt_failed",
                    backend=name,
                    attempt=attempt,
                    error=str(exc),
                    retriable=exc.retriable,
                )
                if not exc.retriable:
                    return None
        return None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        prompts = (system_prompt, user_prompt, context)
        chunks: list[str] | None = None
        for position, (name, backend) in enumerate(self.chain):
            if position:
                emit(self.event_hook, "backend_switched", backend=name, position=position)
            chunks = await self._try_backend(name, backend, prompts, errors)
            if chunks is not None:
                if position:
                    emit(self.event_hook, "backend_recovered", backend=name)
                break

        if chunks is None:
            summary = "; ".join(errors[-MAX_REPORTED_ERRORS:])
            raise BackendExecutionError(
                f"All backend attempts failed. {summary}",
                retriable=False,
            )
        for chunk in chunks:
            yield chunk
