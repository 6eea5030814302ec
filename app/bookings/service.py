"""Booking initiator: turns an accepted negotiation into a confirmed booking.

Ids are derived from the negotiation id and every write is an upsert, so
calling create_booking() again for the same negotiation (a retry after a
partial failure) finishes the job without creating a second booking.
"""

import logging
import uuid
from datetime import UTC, datetime

from pymongo.errors import PyMongoError

from app.bookings.models import Booking, BookingDocument
from app.database import get_database
from app.negotiations.errors import BookingFailed

logger = logging.getLogger(__name__)

# Namespace for deterministic booking/document ids
_BOOKING_NAMESPACE = uuid.UUID("6f1d3c2e-5a7b-4e8f-9a0b-1c2d3e4f5a6b")


def _derived_id(prefix: str, negotiation_id: str) -> str:
    return f"{prefix}-{uuid.uuid5(_BOOKING_NAMESPACE, f'{prefix}:{negotiation_id}').hex[:16]}"


def render_rate_confirmation(booking: Booking) -> str:
    """Plain-text rate confirmation for the booking."""
    return f"""
RATE CONFIRMATION

Confirmation Number: {booking.booking_id}
Date: {booking.booked_at.strftime("%Y-%m-%d %H:%M UTC")}

LOAD DETAILS
Load ID: {booking.load_id}
Negotiation ID: {booking.negotiation_id}

RATE INFORMATION
Agreed Rate: ${booking.final_rate:,.2f}

DRIVER INFORMATION
Driver ID: {booking.driver_id}

This rate confirmation serves as a binding agreement between the carrier and broker
for the transportation services described above.
""".strip()


class MongoBookingInitiator:
    async def create_booking(
        self, negotiation_id: str, load_id: str, driver_id: str, final_rate: float
    ) -> str:
        db = get_database()
        now = datetime.now(UTC).replace(tzinfo=None)
        booking = Booking(
            booking_id=_derived_id("BK", negotiation_id),
            negotiation_id=negotiation_id,
            load_id=load_id,
            driver_id=driver_id,
            final_rate=final_rate,
            booked_at=now,
            rate_con_doc_id=_derived_id("DOC", negotiation_id),
        )
        document = BookingDocument(
            doc_id=booking.rate_con_doc_id,
            booking_id=booking.booking_id,
            load_id=load_id,
            driver_id=driver_id,
            content=render_rate_confirmation(booking),
            created_at=now,
        )

        try:
            await db.bookings.update_one(
                {"negotiation_id": negotiation_id},
                {"$setOnInsert": booking.model_dump()},
                upsert=True,
            )
            await db.documents.update_one(
                {"doc_id": document.doc_id},
                {"$setOnInsert": document.model_dump()},
                upsert=True,
            )
            # Only an available (or in-negotiation) load can be booked.
            load_result = await db.loads.update_one(
                {"load_id": load_id, "status": {"$in": ["available", "in_negotiation"]}},
                {"$set": {"status": "booked"}},
            )
        except PyMongoError as exc:
            logger.exception(
                "booking.create.failed",
                extra={"event": "booking.create.failed", "negotiation_id": negotiation_id},
            )
            raise BookingFailed(f"Failed to create booking: {exc}") from exc

        if load_result.matched_count == 0:
            logger.warning(
                "booking.load_not_available",
                extra={
                    "event": "booking.load_not_available",
                    "negotiation_id": negotiation_id,
                    "load_id": load_id,
                },
            )

        logger.info(
            "booking.created",
            extra={
                "event": "booking.created",
                "negotiation_id": negotiation_id,
                "booking_id": booking.booking_id,
                "final_rate": final_rate,
            },
        )
        return booking.booking_id
