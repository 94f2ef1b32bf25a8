from __future__ import annotations

import json
from typing import Any

from autoverify.backends.cli_agent import CliAgentBackend, TurnState
from autoverify.backends.stream import extract_content, render_prompt


class CodexBackend(CliAgentBackend):
    name = "codex"

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        command = [self.binary, "exec"]
        session = self.session_for(context)
        if session and context.get("resume"):
            command.extend(["resume", session])
        command.extend(
            [
                "--json",
                "--full-auto",
                "-c",
                f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
            ]
        )
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(render_prompt(user_prompt, context))
        return command

    def translate(self, event: dict[str, Any] | str, turn: TurnState) -> str | None:
        # Codex interleaves plain progress lines with its JSON events.
        if isinstance(event, str):
            return None
        thread_id = event.get("thread_id") or event.get("session_id")
        if isinstance(thread_id, str) and thread_id:
            turn.reported_session = thread_id
        return extract_content(event) or None
