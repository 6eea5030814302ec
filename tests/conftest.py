import asyncio
from datetime import datetime, timedelta
from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient

from app.config import settings
from app.dependencies import get_negotiation_engine
from app.main import app
from app.negotiations.engine import NegotiationEngine
from app.negotiations.errors import (
    AdvisorUnavailable,
    BookingFailed,
    ConcurrencyConflict,
    DeliveryFailed,
    NotFound,
)
from app.negotiations.models import AdvisorDraft, Negotiation, NegotiationStatus, ResponseKind

T0 = datetime(2026, 10, 19, 12, 0, 0)


# --- Test doubles for the engine's collaborators ---


class InMemoryNegotiationStore:
    """Same contract as NegotiationStore, with an atomic compare-and-set.

    Every successful write is also kept in `snapshots` so tests can check
    the history of a record across versions.
    """

    def __init__(self):
        self.records: dict[str, Negotiation] = {}
        self.snapshots: list[Negotiation] = []

    async def get(self, negotiation_id):
        await asyncio.sleep(0)  # yield, like a real round trip
        if negotiation_id not in self.records:
            raise NotFound(f"Negotiation {negotiation_id} not found")
        return self.records[negotiation_id].model_copy(deep=True)

    async def insert(self, negotiation):
        record = negotiation.model_copy(update={"version": 1}, deep=True)
        self.records[record.negotiation_id] = record
        self.snapshots.append(record)
        return record.model_copy(deep=True)

    async def put_if_version(self, negotiation, expected_version):
        await asyncio.sleep(0)
        current = self.records.get(negotiation.negotiation_id)
        if current is None or current.version != expected_version:
            raise ConcurrencyConflict("version mismatch", negotiation=current)
        record = negotiation.model_copy(update={"version": expected_version + 1}, deep=True)
        self.records[record.negotiation_id] = record
        self.snapshots.append(record)
        return record.model_copy(deep=True)

    async def scan(self, statuses=None, expires_before=None, limit=500):
        found = [
            r.model_copy(deep=True)
            for r in self.records.values()
            if (statuses is None or r.status in statuses)
            and (expires_before is None or r.expires_at < expires_before)
        ]
        return found[:limit]


class FakeAdvisor:
    def __init__(self):
        self.amount = 2100.0
        self.message = "We can haul this load for a fair rate."
        self.action = ResponseKind.COUNTER
        self.fail = False
        self.delay = 0.0
        self.contexts = []

    async def draft(self, context):
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise AdvisorUnavailable("model timed out")
        return AdvisorDraft(message=self.message, amount=self.amount, action=self.action)


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, negotiation, message, amount):
        if self.fail:
            raise DeliveryFailed("webhook returned 502")
        self.sent.append((negotiation.negotiation_id, message, amount))
        return f"DLV-{len(self.sent)}"


class FakeBookingInitiator:
    def __init__(self):
        self.calls = []
        self.fail = False
        self.delay = 0.0

    async def create_booking(self, negotiation_id, load_id, driver_id, final_rate):
        self.calls.append((negotiation_id, load_id, driver_id, final_rate))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise BookingFailed("bookings collection unavailable")
        return f"BK-{len(self.calls)}"


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# --- Fixtures ---


@pytest.fixture
def api_key():
    return settings.API_KEY


@pytest.fixture
def store():
    return InMemoryNegotiationStore()


@pytest.fixture
def advisor():
    return FakeAdvisor()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def booking():
    return FakeBookingInitiator()


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def engine(store, advisor, notifier, booking, clock):
    return NegotiationEngine(
        store=store,
        advisor=advisor,
        notifier=notifier,
        booking_initiator=booking,
        clock=clock,
        default_max_rounds=3,
        floor_tolerance_percent=10,
        default_ttl=timedelta(hours=24),
        booking_lease=timedelta(minutes=2),
    )


@pytest.fixture
def sample_negotiation():
    """An OFFER_SENT record at version 2, as it looks after a successful start."""
    return Negotiation(
        negotiation_id="NEG-test0001",
        load_id="LD-001",
        driver_id="DRV-001",
        broker_email="dispatch@acme-logistics.com",
        status=NegotiationStatus.OFFER_SENT,
        target_rate=2000.0,
        floor_rate=1800.0,
        current_offer=2100.0,
        round=0,
        max_rounds=3,
        expires_at=T0 + timedelta(hours=24),
        offer_history=[
            {
                "actor": "agent",
                "amount": 2100.0,
                "message": "Opening offer",
                "round": 0,
                "timestamp": T0,
            }
        ],
        created_at=T0,
        updated_at=T0,
        version=2,
    )


@pytest.fixture
async def client(api_key, engine):
    """HTTP client wired to an engine backed by the in-memory doubles."""
    app.dependency_overrides[get_negotiation_engine] = lambda: engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.headers["X-API-Key"] = api_key
        yield ac
    app.dependency_overrides.clear()


def _history_prefix(earlier: Optional[Negotiation], later: Negotiation) -> bool:
    if earlier is None:
        return True
    return later.offer_history[: len(earlier.offer_history)] == earlier.offer_history


@pytest.fixture
def history_is_prefix():
    return _history_prefix
