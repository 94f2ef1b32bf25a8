from __future__ import annotations

import asyncio
from collections.abc import Iterable

DEV_PORTS = (3000, 3001, 5173, 5174, 4200, 8080, 8000)
PROBE_TIMEOUT_SECONDS = 0.5


async def is_port_open(
    port: int, host: str = "127.0.0.1", timeout: float = PROBE_TIMEOUT_SECONDS
) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def detect_dev_server(
    app_url: str | None = None, ports: Iterable[int] = DEV_PORTS
) -> str | None:
    """Return ``app_url`` when given, else the first local dev port that accepts connections."""
    if app_url:
        return app_url
    for port in ports:
        if await is_port_open(port):
            return f"http://localhost:{port}"
    return None
