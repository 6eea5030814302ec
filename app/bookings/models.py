from datetime import datetime
from typing import Protocol

from pydantic import BaseModel


class Booking(BaseModel):
    """A confirmed booking created from an accepted negotiation.

    One per negotiation: negotiation_id is unique in the bookings collection.
    """

    booking_id: str  # e.g. "BK-9c1e..."
    negotiation_id: str
    load_id: str
    driver_id: str
    final_rate: float
    status: str = "confirmed"  # "confirmed", "in_transit" or "delivered"
    booked_at: datetime
    rate_con_doc_id: str


class BookingDocument(BaseModel):
    """Generated paperwork for a booking. Only rate confirmations are produced here."""

    doc_id: str
    booking_id: str
    load_id: str
    driver_id: str
    doc_type: str = "rate_confirmation"
    content: str
    created_at: datetime


class BookingInitiator(Protocol):
    async def create_booking(
        self, negotiation_id: str, load_id: str, driver_id: str, final_rate: float
    ) -> str: ...
