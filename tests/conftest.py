import pytest

from agency_finance.database import SQLiteRepository


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class RecordingNotifier:
    def __init__(self):
        self.items = []

    def notify(self, title, description="", variant="default"):
        self.items.append((title, description, variant))

    def titles(self):
        return [title for title, _, _ in self.items]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def repository(tmp_path):
    repo = SQLiteRepository(tmp_path / "finance.db")
    repo.initialise_schema()
    yield repo
    repo.close()
