"""
Pytest configuration and fixtures for trip chat service tests.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from decimal import Decimal
from typing import Dict, List
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.database import Base
from app.models.chat import ChatMessage  # noqa: F401
from app.models.expenses import Expense  # noqa: F401
from app.models.profiles import Profile
from app.models.settlements import DebtPayment  # noqa: F401
from app.realtime.config import RealtimeSettings
from app.realtime.local_channel import LocalBroker
from app.services.chat_session import ChatSession


class FakeTimer:
    """threading.Timer stand-in that only runs when fire() is called"""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    @property
    def pending(self):
        return self.started and not self.cancelled and not self.fired

    def fire(self):
        if not self.pending:
            return
        self.fired = True
        self.function(*self.args, **self.kwargs)


class TimerFactory:

    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    def pending(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if timer.pending]

    def fire_pending(self) -> None:
        for timer in self.pending():
            timer.fire()


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session in a test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def profiles(db) -> Dict[str, str]:
    """Three trip members: alice, bob and carol"""
    members = {
        "alice": Profile(id="user-alice", username="alice", full_name="Alice Archer"),
        "bob": Profile(id="user-bob", username="bob", full_name="Bob Baker"),
        "carol": Profile(id="user-carol", username="carol"),
    }
    db.add_all(members.values())
    db.commit()
    return {name: profile.id for name, profile in members.items()}


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def broker():
    return LocalBroker()


@pytest.fixture
def settings():
    return RealtimeSettings(
        transport="local",
        max_reconnect_attempts=5,
        reconnect_base_delay_ms=1000,
        typing_timeout_seconds=3.0
    )


@pytest.fixture
def open_session(session_factory, broker, timers, settings):
    """Open ChatSessions on the in-process broker; all are closed after the test"""
    sessions = []

    def _open(user_id: str, trip_id: str = "trip-1") -> ChatSession:
        session = ChatSession.open(
            trip_id,
            user_id=user_id,
            session_factory=session_factory,
            channel_factory=broker.channel,
            settings=settings,
            timer_factory=timers
        )
        sessions.append(session)
        return session

    yield _open

    for session in sessions:
        session.close()


def assert_settles(balances: Dict[str, Decimal], settlements: List[Dict]) -> None:
    """Every balance is cleared by the given settlements (within a cent)"""
    totals: Dict[str, Decimal] = {}
    for settlement in settlements:
        totals[settlement["from"]] = totals.get(settlement["from"], Decimal("0")) - settlement["amount"]
        totals[settlement["to"]] = totals.get(settlement["to"], Decimal("0")) + settlement["amount"]

    for user, initial_balance in balances.items():
        final_balance = initial_balance - totals.get(user, Decimal("0"))
        assert abs(final_balance) <= Decimal("0.01"), \
            f"User {user} not settled: initial={initial_balance}, final={final_balance}"


@pytest.fixture
def verify_settlements():
    return assert_settles
