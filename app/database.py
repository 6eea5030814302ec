"""MongoDB connection lifecycle management.

Uses a module-level singleton client. Call connect_db() at app startup
(via the FastAPI lifespan, or directly from a script) before using
get_database(). Collections: negotiations, bookings, documents, loads.

Datetimes are stored and returned as naive UTC (tz_aware=False), which is
what the negotiation engine compares deadlines against.
"""

from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.config import settings

client: Optional[AsyncIOMotorClient] = None


def get_database() -> AsyncIOMotorDatabase:
    if client is None:
        raise RuntimeError("Database client is not initialized. Call connect_db() first.")
    return client[settings.DATABASE_NAME]


async def connect_db(uri: Optional[str] = None) -> None:
    global client
    client = AsyncIOMotorClient(uri or settings.MONGODB_URI, tz_aware=False)


async def disconnect_db() -> None:
    global client
    if client:
        client.close()
        client = None
