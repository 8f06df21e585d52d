from __future__ import annotations

import asyncio
import json
from typing import Any, Dict

from simplenvr.backend.control import DEFAULT_HOST, DEFAULT_PORT


async def send_command(
    line: str, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, timeout: float = 30
) -> str:
    """Send one control line and return the server's one-line response."""
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port), timeout=timeout
    )
    try:
        writer.write(line.strip().encode("utf-8") + b"\n")
        await writer.drain()
        response = await asyncio.wait_for(reader.readline(), timeout=timeout)
    finally:
        writer.close()
        await writer.wait_closed()
    if not response:
        raise ConnectionError("control server closed the connection")
    return response.decode("utf-8").rstrip("\n")


def build_line(command: str, payload: Dict[str, Any] | str | None = None) -> str:
    """Format ``command`` and an optional payload as a control line."""
    if payload is None:
        return command
    if not isinstance(payload, str):
        payload = json.dumps(payload)
    return f"{command}|{payload}"
