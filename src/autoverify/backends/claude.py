from __future__ import annotations

from typing import Any

from autoverify.backends.cli_agent import CliAgentBackend, TurnState
from autoverify.backends.stream import extract_content, render_prompt


class ClaudeCodeBackend(CliAgentBackend):
    name = "claude"

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any] | None = None,
    ) -> list[str]:
        context = context or {}
        command = [
            self.binary,
            "-p",
            render_prompt(user_prompt, context),
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            "acceptEdits",
        ]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        session = self.session_for(context)
        if session:
            command.extend(["--resume" if context.get("resume") else "--session-id", session])
        return command

    def translate(self, event: dict[str, Any] | str, turn: TurnState) -> str | None:
        if isinstance(event, str):
            turn.streamed_text = True
            return event
        event_type = event.get("type")
        if event_type == "user":
            return None
        if event_type == "system":
            session_id = event.get("session_id")
            if isinstance(session_id, str) and session_id:
                turn.reported_session = session_id
            return None
        if event_type == "result":
            # The final result repeats the streamed text; only use it when nothing streamed.
            result_text = event.get("result")
            if turn.streamed_text or not isinstance(result_text, str):
                return None
            return result_text
        content = extract_content(event)
        if content:
            turn.streamed_text = True
        return content or None
