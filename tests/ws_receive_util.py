import asyncio
import json
from typing import Any, Callable, Dict, Iterable

from aiohttp import ClientWebSocketResponse, WSMessage, WSMsgType


async def _receive_with_deadline(ws: ClientWebSocketResponse, deadline: float) -> WSMessage:
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise asyncio.TimeoutError("Timed out waiting for websocket message")
    return await ws.receive(timeout=remaining)


async def _next_payload(ws: ClientWebSocketResponse, deadline: float) -> Any | None:
    msg = await _receive_with_deadline(ws, deadline)
    if msg.type == WSMsgType.PING:
        await ws.pong()
        return None
    if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
        raise AssertionError("WebSocket closed while waiting for message")
    if msg.type == WSMsgType.ERROR:
        raise AssertionError(f"WebSocket error while waiting for message: {ws.exception()}")
    if msg.type != WSMsgType.TEXT:
        return None
    try:
        return json.loads(msg.data)
    except ValueError:
        return None


async def recv_json_until(
    ws: ClientWebSocketResponse,
    *,
    deadline: float,
    predicate: Callable[[Any], bool],
) -> Any:
    while True:
        payload = await _next_payload(ws, deadline)
        if payload is not None and predicate(payload):
            return payload


async def collect_frames(
    ws: ClientWebSocketResponse,
    *,
    deadline: float,
    types: Iterable[str],
) -> Dict[str, Dict[str, Any]]:
    """Read until one frame of each type in ``types`` has arrived; keeps the first of each."""

    wanted = set(types)
    seen: Dict[str, Dict[str, Any]] = {}
    while not wanted.issubset(seen):
        payload = await _next_payload(ws, deadline)
        if isinstance(payload, dict) and payload.get("t") in wanted:
            seen.setdefault(payload["t"], payload)
    return seen


async def assert_no_app_messages(ws: ClientWebSocketResponse, *, timeout: float) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            payload = await _next_payload(ws, deadline)
        except asyncio.TimeoutError:
            return
        if payload is not None:
            raise AssertionError(f"Unexpected websocket message: {payload}")
