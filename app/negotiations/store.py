"""MongoDB persistence for negotiation records with optimistic concurrency.

Every mutation is a replace_one filtered on both negotiation_id and the
version the caller read. If another writer got there first the filter
matches nothing, and the write is reported as a ConcurrencyConflict instead
of silently overwriting. The stored version is bumped in the same write.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from app.database import get_database
from app.negotiations.errors import ConcurrencyConflict, NotFound
from app.negotiations.models import Negotiation, NegotiationStatus

logger = logging.getLogger(__name__)


class NegotiationStore:
    """Keyed store over the `negotiations` collection."""

    def _collection(self):
        return get_database().negotiations

    async def get(self, negotiation_id: str) -> Negotiation:
        doc = await self._collection().find_one({"negotiation_id": negotiation_id}, {"_id": 0})
        if not doc:
            raise NotFound(f"Negotiation {negotiation_id} not found")
        return Negotiation(**doc)

    async def insert(self, negotiation: Negotiation) -> Negotiation:
        record = negotiation.model_copy(update={"version": 1})
        await self._collection().insert_one(record.model_dump(mode="python"))
        return record

    async def put_if_version(self, negotiation: Negotiation, expected_version: int) -> Negotiation:
        """Write `negotiation` only if the stored version is still `expected_version`.

        Returns the record as stored (version = expected_version + 1). Raises
        ConcurrencyConflict carrying the current stored record otherwise.
        """
        record = negotiation.model_copy(update={"version": expected_version + 1})
        result = await self._collection().replace_one(
            {"negotiation_id": negotiation.negotiation_id, "version": expected_version},
            record.model_dump(mode="python"),
        )
        if result.matched_count == 0:
            current = await self._current_or_none(negotiation.negotiation_id)
            logger.info(
                "negotiation.write_conflict",
                extra={
                    "event": "negotiation.write_conflict",
                    "negotiation_id": negotiation.negotiation_id,
                    "expected_version": expected_version,
                    "stored_version": current.version if current else None,
                },
            )
            raise ConcurrencyConflict(
                f"Negotiation {negotiation.negotiation_id} changed since version {expected_version}",
                negotiation=current,
            )
        return record

    async def scan(
        self,
        statuses: Optional[Iterable[NegotiationStatus]] = None,
        expires_before: Optional[datetime] = None,
        limit: int = 500,
    ) -> list[Negotiation]:
        """Find records by status and/or deadline. Used by the expiry sweep."""
        query: dict = {}
        if statuses is not None:
            query["status"] = {"$in": [s.value for s in statuses]}
        if expires_before is not None:
            query["expires_at"] = {"$lt": expires_before}

        cursor = self._collection().find(query, {"_id": 0}).sort("expires_at", 1)
        docs = await cursor.to_list(length=limit)
        return [Negotiation(**doc) for doc in docs]

    async def _current_or_none(self, negotiation_id: str) -> Optional[Negotiation]:
        try:
            return await self.get(negotiation_id)
        except NotFound:
            return None


async def ensure_indexes() -> None:
    """Unique key on negotiation_id plus the index the expiry sweep scans."""
    collection = get_database().negotiations
    await collection.create_index("negotiation_id", unique=True)
    await collection.create_index([("status", 1), ("expires_at", 1)])
