from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from autoverify.backends.base import AgentBackend, BackendTimeoutError


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    duration_ms: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    fallback_prompt: str = "You are a software specialist."

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = (system_prompt or self.fallback_prompt).strip()

    async def run(
        self,
        instruction: str,
        context: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> SpecialistResponse:
        run_context = dict(context or {})
        if self.model:
            run_context["model"] = self.model

        async def _collect() -> list[str]:
            chunks: list[str] = []
            async for chunk in self.backend.execute(
                system_prompt=self.system_prompt,
                user_prompt=instruction,
                context=run_context,
            ):
                chunks.append(chunk)
            return chunks

        started = time.monotonic()
        try:
            chunks = await asyncio.wait_for(_collect(), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"{self.role} agent timed out after {timeout:.0f}s", retriable=False
            ) from exc
        return SpecialistResponse(
            role=self.role,
            content="".join(chunks).strip(),
            duration_ms=int((time.monotonic() - started) * 1000),
            metadata={"instruction": instruction[:200]},
        )
