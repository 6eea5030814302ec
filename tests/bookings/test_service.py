from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from app.bookings.models import Booking
from app.bookings.service import MongoBookingInitiator, render_rate_confirmation
from app.negotiations.errors import BookingFailed


def _make_mock_db(load_matched=1):
    """Mock MongoDB with bookings, documents and loads collections."""
    mock_db = MagicMock()
    mock_db.bookings.update_one = AsyncMock()
    mock_db.documents.update_one = AsyncMock()
    mock_db.loads.update_one = AsyncMock(return_value=MagicMock(matched_count=load_matched))
    return mock_db


async def test_create_booking_writes_booking_document_and_load():
    mock_db = _make_mock_db()
    with patch("app.bookings.service.get_database", return_value=mock_db):
        booking_id = await MongoBookingInitiator().create_booking("NEG-test0001", "LD-001", "DRV-001", 1850.0)

    assert booking_id.startswith("BK-")

    query, update = mock_db.bookings.update_one.await_args.args
    assert query == {"negotiation_id": "NEG-test0001"}
    assert update["$setOnInsert"]["booking_id"] == booking_id
    assert update["$setOnInsert"]["final_rate"] == 1850.0
    assert mock_db.bookings.update_one.await_args.kwargs == {"upsert": True}

    _, doc_update = mock_db.documents.update_one.await_args.args
    document = doc_update["$setOnInsert"]
    assert document["booking_id"] == booking_id
    assert document["doc_type"] == "rate_confirmation"
    assert "Agreed Rate: $1,850.00" in document["content"]

    load_query, load_update = mock_db.loads.update_one.await_args.args
    assert load_query == {"load_id": "LD-001", "status": {"$in": ["available", "in_negotiation"]}}
    assert load_update == {"$set": {"status": "booked"}}


async def test_create_booking_is_idempotent_per_negotiation():
    mock_db = _make_mock_db()
    with patch("app.bookings.service.get_database", return_value=mock_db):
        initiator = MongoBookingInitiator()
        first = await initiator.create_booking("NEG-test0001", "LD-001", "DRV-001", 1850.0)
        second = await initiator.create_booking("NEG-test0001", "LD-001", "DRV-001", 1850.0)
        other = await initiator.create_booking("NEG-test0002", "LD-002", "DRV-001", 1850.0)

    assert first == second
    assert other != first


async def test_create_booking_when_load_already_booked():
    """The booking still completes; the load status is left as it was."""
    mock_db = _make_mock_db(load_matched=0)
    with patch("app.bookings.service.get_database", return_value=mock_db):
        booking_id = await MongoBookingInitiator().create_booking("NEG-test0001", "LD-001", "DRV-001", 1850.0)
    assert booking_id.startswith("BK-")


async def test_create_booking_database_error_is_booking_failed():
    mock_db = _make_mock_db()
    mock_db.bookings.update_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no servers"))
    with patch("app.bookings.service.get_database", return_value=mock_db):
        with pytest.raises(BookingFailed):
            await MongoBookingInitiator().create_booking("NEG-test0001", "LD-001", "DRV-001", 1850.0)
    mock_db.loads.update_one.assert_not_awaited()


def test_rate_confirmation_text():
    booking = Booking(
        booking_id="BK-0123456789abcdef",
        negotiation_id="NEG-test0001",
        load_id="LD-001",
        driver_id="DRV-001",
        final_rate=2150.5,
        booked_at=datetime(2026, 10, 19, 12, 30),
        rate_con_doc_id="DOC-0123456789abcdef",
    )
    text = render_rate_confirmation(booking)
    assert text.startswith("RATE CONFIRMATION")
    assert "Confirmation Number: BK-0123456789abcdef" in text
    assert "Date: 2026-10-19 12:30 UTC" in text
    assert "Agreed Rate: $2,150.50" in text
    assert "Driver ID: DRV-001" in text
