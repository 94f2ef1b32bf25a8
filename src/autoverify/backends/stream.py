from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

CONTROL_KEYS = {"model", "session_id", "resume", "working_directory"}


def render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
    extra = {key: value for key, value in context.items() if key not in CONTROL_KEYS}
    if not extra:
        return user_prompt
    return (
        f"{user_prompt}\n\nContext JSON:\n"
        f"{json.dumps(extra, ensure_ascii=False, indent=2, default=str)}"
    )


def extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    if isinstance(delta, dict) and isinstance(delta.get("text"), str):
        return delta["text"]
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_content(message)
    item = event.get("item")
    if isinstance(item, dict) and isinstance(item.get("text"), str):
        return item["text"]
    return ""


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


async def iter_stream_events(
    stdout: asyncio.StreamReader,
) -> AsyncIterator[dict[str, Any] | str]:
    """Yield decoded JSON events, or raw text for lines that are not JSON.

    Objects split across several lines are reassembled before decoding.
    """
    parse_buffer = ""
    async for raw_line in stdout:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        candidate = f"{parse_buffer}{line}" if parse_buffer else line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if appears_partial_json(candidate):
                parse_buffer = candidate
                continue
            parse_buffer = ""
            yield line
            continue
        parse_buffer = ""
        if isinstance(event, dict):
            yield event
    if parse_buffer:
        yield parse_buffer
