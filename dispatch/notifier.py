"""
Outbound presence/assignment events.

Publishers push JSON events to the Redis channel `dispatch:events`; the API process
subscribes in a background thread and keeps the most recent events in memory for
GET /activity. Delivery is at-most-once: publish failures are logged, never raised.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "dispatch:events"
MAX_EVENTS = 200

CONNECTED_AGENTS_UPDATE = "connected-agents-update"
TICKETS_REASSIGNED = "tickets-reassigned"
SYSTEM_MODE_UPDATE = "system-mode-update"
TICKET_ASSIGNED = "ticket-assigned"


@dataclass
class ActivityEvent:
    """A single published event."""

    ts: float = field(default_factory=time.time)
    type: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class ActivityFeed:
    """Bounded in-memory list of recent events."""

    def __init__(self, max_events: int = MAX_EVENTS):
        self._events: list[ActivityEvent] = []
        self._lock = threading.Lock()
        self._max = max_events

    def append(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        with self._lock:
            self._events.append(ActivityEvent(type=event_type, data=data or {}))
            while len(self._events) > self._max:
                self._events.pop(0)

    def recent(self, limit: int = 100) -> list[dict]:
        """Most recent events, newest last."""
        with self._lock:
            return [{"ts": e.ts, "type": e.type, "data": e.data} for e in self._events[-limit:]]


feed = ActivityFeed()


class Notifier:
    """publish(topic, payload) over Redis pub/sub."""

    def __init__(self, r, channel: str = EVENTS_CHANNEL):
        self._r = r
        self.channel = channel

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            self._r.publish(self.channel, json.dumps({"type": topic, "data": payload}, default=str))
        except Exception as e:
            logger.warning("Event publish failed (%s): %s", topic, e)


def _subscriber_thread(r, channel: str, target: ActivityFeed) -> None:
    """Daemon thread: append every event seen on the channel to the feed."""
    try:
        pubsub = r.pubsub()
        pubsub.subscribe(channel)
        logger.info("Event subscriber listening on channel %s", channel)
        for message in pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                payload = json.loads(message["data"])
                target.append(payload.get("type", "unknown"), payload.get("data", {}))
            except (ValueError, AttributeError) as e:
                logger.warning("Event message parse error: %s", e)
    except Exception as e:
        logger.warning("Event subscriber failed: %s", e)


def start_subscriber(r, channel: str = EVENTS_CHANNEL, target: ActivityFeed = feed) -> threading.Thread:
    """Start the background thread that mirrors published events into the feed."""
    t = threading.Thread(target=_subscriber_thread, args=(r, channel, target), daemon=True)
    t.start()
    return t
