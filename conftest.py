from datetime import datetime, timedelta, timezone

import pytest

from school_library.config import PolicyConfig
from school_library.database import LibraryDatabase
from school_library.library import Library
from school_library.services.notifications import NotificationDispatcher

START = datetime(2025, 9, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable time source; call it to read the current time."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current += timedelta(**delta)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path, request):
    # A fresh database file for every test
    db_file = str(tmp_path / "test.db")
    store = LibraryDatabase(db_file)
    yield store
    store.close()


@pytest.fixture
def events():
    return []


@pytest.fixture
def lib(db, clock, events):
    notifier = NotificationDispatcher([lambda event, loan: events.append((event, loan.id))])
    library = Library(store=db, config=PolicyConfig(), now=clock, notifier=notifier)
    yield library
    library.close()


@pytest.fixture
def make_book(lib):
    def factory(title="Things Fall Apart", **overrides):
        fields = {
            "author": "Chinua Achebe",
            "total_copies": 1,
            "max_borrow_days": 14,
            "daily_fine_amount": "0.50",
            "max_fine_amount": "50",
            "category": "Literature",
        }
        fields.update(overrides)
        return lib.create_book(title, **fields)

    return factory
