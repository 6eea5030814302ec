import hmac
from functools import lru_cache

from fastapi import Header, HTTPException

from app.bookings.service import MongoBookingInitiator
from app.config import settings
from app.negotiations.advisor import ClaudeStrategyAdvisor
from app.negotiations.engine import NegotiationEngine
from app.negotiations.notifier import WebhookNotifier
from app.negotiations.store import NegotiationStore


async def verify_api_key(x_api_key: str = Header(...)) -> str:
    if not hmac.compare_digest(x_api_key, settings.API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


@lru_cache
def get_negotiation_engine() -> NegotiationEngine:
    """One engine per process. It holds no negotiation state, only its collaborators."""
    return NegotiationEngine(
        store=NegotiationStore(),
        advisor=ClaudeStrategyAdvisor(),
        notifier=WebhookNotifier(),
        booking_initiator=MongoBookingInitiator(),
        call_timeout=settings.ENGINE_CALL_TIMEOUT_SECONDS,
    )
