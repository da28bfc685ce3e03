from __future__ import annotations

"""Best-effort operational events over Redis pub/sub.

Used for mutation fallbacks and failures so an operator can watch schema
drift as it happens. Publishing is off unless REDIS_URL is set, and a broken
Redis never fails the request that emitted the event.
"""

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, Dict, Optional

import redis


LOG = logging.getLogger("projectbot.events")

DEFAULT_PREFIX = "projectbot.events"


def envelope(event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": event_type,
        "at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "data": payload,
    }


class EventPublisher:
    def __init__(self, url: str, prefix: str = DEFAULT_PREFIX) -> None:
        self.url = url
        self.prefix = prefix
        self._client: Optional[redis.Redis] = None
        self._connect()

    @classmethod
    def from_env(cls) -> Optional["EventPublisher"]:
        url = os.getenv("REDIS_URL")
        if not url:
            return None
        return cls(url, os.getenv("PROJECTBOT_EVENTS_PREFIX", DEFAULT_PREFIX))

    def _connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(self.url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            LOG.debug("redis_connect_failed", extra={"err": str(exc)})
            self._client = None

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        if self._client is None:
            self._connect()
        if self._client is None:
            return False
        channel = f"{self.prefix}.{event_type}"
        try:
            self._client.publish(channel, json.dumps(envelope(event_type, payload), default=str))
        except Exception as exc:
            LOG.debug("redis_publish_failed", extra={"channel": channel, "err": str(exc)})
            # Reconnect on the next event.
            self._client = None
            return False
        return True


_publisher: Optional[EventPublisher] = None


def _get_publisher() -> Optional[EventPublisher]:
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher.from_env()
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    publisher = _get_publisher()
    if publisher is not None:
        publisher.publish(event_type, payload)
