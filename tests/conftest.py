from datetime import datetime, timedelta, timezone

import pytest

from storage import MemoryStorage, Storage

START = datetime(2030, 1, 1, tzinfo=timezone.utc)
PAST = "2029-12-31T23:00:00Z"
FUTURE = "2030-06-01T00:00:00Z"


class FakeClock:
    """Controllable wall clock"""

    def __init__(self, start=START):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)

    def set(self, dt):
        self.current = dt


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class FakeGraph:
    """Scripted stand-in for GraphClient.

    `statuses` is consumed one per poll; the last entry repeats. Exception
    instances in `statuses` or `create_errors` are raised instead.
    """

    def __init__(self, statuses=("FINISHED",), create_errors=()):
        self.statuses = list(statuses)
        self.create_errors = list(create_errors)
        self.created = []
        self.status_calls = 0
        self.published = []

    def create_container(self, image_url, caption=""):
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.created.append((image_url, caption))
        return f"c{len(self.created)}"

    def container_status(self, creation_id):
        self.status_calls += 1
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item, None

    def publish_container(self, creation_id):
        self.published.append(creation_id)
        return f"m-{creation_id}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, clock):
    """Both store implementations must honour the same contract"""
    if request.param == "memory":
        yield MemoryStorage(clock=clock)
    else:
        db = Storage(":memory:", clock=clock)
        yield db
        db.close()
