"""Change notification over Redis pub/sub.

Services publish small JSON events after their writes commit; subscribers
(the WebSocket route, dashboards) use them as a cue to re-read state.
Publishing is best effort: a Redis outage never fails the write that
triggered it.

Helpers that write inside a caller-owned transaction (the XP ledger, badge
awards) queue their events on the session with ``defer_event``. The caller
sends them with ``publish_deferred`` once its commit succeeded, or drops
them with ``discard_deferred`` when it rolls back.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "pubsub:"

XP_AWARDED = "xp_awarded"
LEVEL_UP = "level_up"
CHALLENGE_UPDATED = "challenge_updated"
BADGE_EARNED = "badge_earned"
PROGRESS_UPDATED = "progress_updated"
LEADERBOARD_REFRESHED = "leaderboard_refreshed"

EVENTS = (
    XP_AWARDED,
    LEVEL_UP,
    CHALLENGE_UPDATED,
    BADGE_EARNED,
    PROGRESS_UPDATED,
    LEADERBOARD_REFRESHED,
)

# Events without a user_id are delivered to every subscriber.
BROADCAST_EVENTS = frozenset({LEADERBOARD_REFRESHED})

PENDING_KEY = "ascend.pending_events"


def channel_for(event: str) -> str:
    return f"{CHANNEL_PREFIX}{event}"


async def publish_event(redis: object, event: str, payload: dict[str, Any]) -> bool:
    """Publish an event. Returns False when skipped or when Redis failed."""
    if redis is None:
        return False
    try:
        await redis.publish(channel_for(event), json.dumps(payload, default=str))  # type: ignore[attr-defined]
    except Exception:
        logger.warning("Failed to publish %s event", event, exc_info=True)
        return False
    return True


def defer_event(db: Any, redis: object, event: str, payload: dict[str, Any]) -> None:
    """Queue an event on the session until the caller's commit."""
    if redis is None:
        return
    db.info.setdefault(PENDING_KEY, []).append((redis, event, payload))


def pending_mark(db: Any) -> int:
    """Position in the queue; pass to ``discard_deferred`` when a savepoint rolls back."""
    return len(db.info.get(PENDING_KEY, ()))


def discard_deferred(db: Any, since: int = 0) -> None:
    pending = db.info.get(PENDING_KEY)
    if pending:
        del pending[since:]


async def publish_deferred(db: Any) -> int:
    """Publish and clear the session's queued events. Call only after a successful commit."""
    pending = db.info.pop(PENDING_KEY, [])
    for redis, event, payload in pending:
        await publish_event(redis, event, payload)
    return len(pending)


def _decode(message: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    if message.get("type") != "message":
        return None
    channel = message.get("channel", "")
    if isinstance(channel, bytes):
        channel = channel.decode()
    data = message.get("data", "{}")
    if isinstance(data, bytes):
        data = data.decode()
    try:
        payload = json.loads(data)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Dropping malformed event on %s", channel)
        return None
    return channel.removeprefix(CHANNEL_PREFIX), payload


async def listen(redis: Any, user_id: int | None = None) -> AsyncIterator[dict[str, Any]]:
    """Yield ``{"event": ..., "data": ...}`` for events relevant to ``user_id``.

    With ``user_id=None`` every event is yielded.
    """
    pubsub = redis.pubsub()
    await pubsub.subscribe(*(channel_for(e) for e in EVENTS))
    try:
        async for message in pubsub.listen():
            decoded = _decode(message)
            if decoded is None:
                continue
            event, payload = decoded
            if user_id is not None and event not in BROADCAST_EVENTS and payload.get("user_id") != user_id:
                continue
            yield {"event": event, "data": payload}
    finally:
        await pubsub.unsubscribe()
        await pubsub.aclose()
