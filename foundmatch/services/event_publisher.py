"""
FoundMatch — Outbound Match Events

Match state changes are published to a Redis stream for the notification
dispatcher, the audit store and claim workflows:

  match.created   full PhotoMatch snapshot + ``notify`` gate flag
  match.updated   full PhotoMatch snapshot (re-score, acknowledgements)
  match.resolved  match id + final status

Services never publish directly.  They ``queue_event`` on the session that
carries the change, and the caller runs ``EventPublisher.flush`` after the
commit succeeds, so a rolled-back write never produces an event.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from foundmatch.config import get_settings
from foundmatch.models.match import PhotoMatch
from foundmatch.schemas.match import PhotoMatchResponse

logger = structlog.get_logger("foundmatch.event_publisher")

_PENDING_EVENTS_KEY = "foundmatch.pending_events"

EVENT_TYPES: set[str] = {"match.created", "match.updated", "match.resolved"}


def match_snapshot(match: PhotoMatch) -> dict:
    """JSON-ready snapshot of every PhotoMatch column."""
    return PhotoMatchResponse.model_validate(match).model_dump(mode="json")


def queue_event(session: AsyncSession, event_type: str, payload: dict) -> None:
    """Attach an event to the session's unit of work."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type {event_type!r}")
    session.info.setdefault(_PENDING_EVENTS_KEY, []).append(
        {"type": event_type, "payload": payload}
    )


def pending_events(session: AsyncSession) -> list[dict]:
    return list(session.info.get(_PENDING_EVENTS_KEY, []))


def discard_events(session: AsyncSession) -> None:
    session.info.pop(_PENDING_EVENTS_KEY, None)


# ---------------------------------------------------------------------------
# Redis client (shared per process)
# ---------------------------------------------------------------------------

_redis_client = None


async def connect_redis() -> None:
    global _redis_client
    import redis.asyncio as aioredis

    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis_connected", url=settings.REDIS_URL)


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("redis_closed")


def get_redis():
    """Return the shared Redis client (``None`` before startup)."""
    return _redis_client


class EventPublisher:
    """Publishes queued match events to the configured Redis stream."""

    def __init__(
        self,
        redis: Any | None = None,
        stream_key: str | None = None,
        maxlen: int | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self.stream_key = stream_key or settings.EVENT_STREAM_KEY
        self.maxlen = maxlen or settings.EVENT_STREAM_MAXLEN

    async def publish(self, event_type: str, payload: dict) -> str | None:
        """XADD one event; returns the stream entry id."""
        redis = self._redis or get_redis()
        if redis is None:
            logger.warning("event_publish_skipped", event_type=event_type, reason="no_redis")
            return None

        fields = {
            "type": event_type,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "payload": json.dumps(payload, sort_keys=True),
        }
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        ):
            with attempt:
                entry_id = await redis.xadd(
                    self.stream_key, fields, maxlen=self.maxlen, approximate=True
                )
        logger.info("event_published", event_type=event_type, entry_id=entry_id)
        return entry_id

    async def flush(self, session: AsyncSession) -> int:
        """Publish and clear every event queued on ``session``.

        Call only after the session's transaction has committed.  A failed
        publish is logged and the remaining events are still attempted; the
        committed match state is unaffected.
        """
        events = session.info.pop(_PENDING_EVENTS_KEY, [])
        published = 0
        for event in events:
            try:
                if await self.publish(event["type"], event["payload"]) is not None:
                    published += 1
            except (RedisConnectionError, RedisTimeoutError):
                logger.exception(
                    "event_publish_failed",
                    event_type=event["type"],
                    match_id=event["payload"].get("id") or event["payload"].get("match_id"),
                )
        return published
