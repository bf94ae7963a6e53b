import fakeredis
import pytest
import redis

from dispatch.engine import build_engine
from dispatch.notifier import Notifier

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__(r=None)
        self.events = []

    def publish(self, topic, payload):
        self.events.append((topic, payload))

    def of(self, topic):
        return [payload for t, payload in self.events if t == topic]


class FlakyRedis:
    """Wraps a client; `method` raises ConnectionError for the first `failures` calls."""

    def __init__(self, r, failures: int = 1, method: str = "transaction"):
        self._r = r
        self._method = method
        self.failures = failures
        self.calls = 0

    def __getattr__(self, name):
        attr = getattr(self._r, name)
        if name != self._method:
            return attr

        def _flaky(*args, **kwargs):
            self.calls += 1
            if self.failures > 0:
                self.failures -= 1
                raise redis.exceptions.ConnectionError("connection reset")
            return attr(*args, **kwargs)

        return _flaky


@pytest.fixture
def r():
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(r, clock, notifier):
    return build_engine(r, clock=clock, notifier=notifier)
