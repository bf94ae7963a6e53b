"""
Event publishing and the in-memory activity feed.
Run: pytest tests/test_notifier.py -v
"""

import json

import redis

from dispatch.notifier import (
    EVENTS_CHANNEL,
    SYSTEM_MODE_UPDATE,
    ActivityFeed,
    Notifier,
    _subscriber_thread,
)


class _BrokenRedis:
    def publish(self, channel, message):
        raise redis.exceptions.ConnectionError("down")


class _StubPubSub:
    def __init__(self, messages):
        self._messages = messages
        self.channels = []

    def subscribe(self, channel):
        self.channels.append(channel)

    def listen(self):
        yield from self._messages


class _StubRedis:
    def __init__(self, messages):
        self.pubsub_obj = _StubPubSub(messages)

    def pubsub(self):
        return self.pubsub_obj


class TestActivityFeed:
    def test_bounded(self):
        feed = ActivityFeed(max_events=3)
        for i in range(5):
            feed.append("ticket-assigned", {"n": i})
        events = feed.recent()
        assert [e["data"]["n"] for e in events] == [2, 3, 4]

    def test_limit_returns_newest(self):
        feed = ActivityFeed()
        for i in range(5):
            feed.append("ticket-assigned", {"n": i})
        assert [e["data"]["n"] for e in feed.recent(limit=2)] == [3, 4]


class TestNotifier:
    def test_publish_reaches_subscribers(self, r):
        pubsub = r.pubsub()
        pubsub.subscribe(EVENTS_CHANNEL)
        Notifier(r).publish(SYSTEM_MODE_UPDATE, {"mode": "off"})
        message = None
        for _ in range(10):
            message = pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
            if message:
                break
        assert json.loads(message["data"]) == {"type": SYSTEM_MODE_UPDATE, "data": {"mode": "off"}}

    def test_publish_failure_is_swallowed(self):
        Notifier(_BrokenRedis()).publish(SYSTEM_MODE_UPDATE, {"mode": "off"})

    def test_subscriber_fills_feed(self):
        stub = _StubRedis([
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": json.dumps({"type": SYSTEM_MODE_UPDATE, "data": {"mode": "off"}})},
            {"type": "message", "data": "not json"},
        ])
        feed = ActivityFeed()
        _subscriber_thread(stub, EVENTS_CHANNEL, feed)
        assert stub.pubsub_obj.channels == [EVENTS_CHANNEL]
        assert [(e["type"], e["data"]) for e in feed.recent()] == [(SYSTEM_MODE_UPDATE, {"mode": "off"})]
