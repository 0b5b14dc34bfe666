"""WebSocket endpoint streaming the signed-in user's gamification events."""

import asyncio
import contextlib
import json

import jwt
import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from ascend import events
from ascend.auth.jwt import user_id_from_token
from ascend.redis_client import get_redis_or_none

logger = structlog.get_logger()

router = APIRouter()


async def _forward_events(websocket: WebSocket, redis: object, user_id: int) -> None:
    async for event in events.listen(redis, user_id=user_id):
        await websocket.send_json(event)


async def _receive_loop(websocket: WebSocket) -> None:
    """Answer pings until the client goes away."""
    while True:
        raw = await websocket.receive_text()
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await websocket.send_json({"type": "error", "message": "Invalid JSON"})
            continue
        if isinstance(msg, dict) and msg.get("action") == "ping":
            await websocket.send_json({"type": "pong"})
        else:
            await websocket.send_json({"type": "error", "message": "Unknown action"})


@router.websocket("/ws/ascend")
async def ascend_events(
    websocket: WebSocket,
    token: str = Query(...),
) -> None:
    """Push xp_awarded, level_up, challenge_updated, badge_earned and leaderboard events.

    Protocol:
        Server -> Client: {"event": "xp_awarded", "data": {...}}
        Client -> Server: {"action": "ping"}  ->  {"type": "pong"}
    """
    try:
        user_id = user_id_from_token(token)
    except jwt.InvalidTokenError as e:
        await websocket.close(code=4001, reason=f"Authentication failed: {e}")
        return

    redis = get_redis_or_none()
    if redis is None:
        await websocket.close(code=1013, reason="Event stream unavailable")
        return

    await websocket.accept()
    logger.info("ws_connected", user_id=user_id)
    tasks = [
        asyncio.create_task(_forward_events(websocket, redis, user_id)),
        asyncio.create_task(_receive_loop(websocket)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("ws_stream_error", user_id=user_id, error=str(exc))
    finally:
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                await task
        logger.info("ws_disconnected", user_id=user_id)
