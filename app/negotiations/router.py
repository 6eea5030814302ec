from datetime import timedelta

from fastapi import APIRouter, Depends
from starlette.status import HTTP_201_CREATED

from app.dependencies import get_negotiation_engine, verify_api_key
from app.negotiations.engine import NegotiationEngine
from app.negotiations.models import (
    BrokerResponseRequest,
    ErrorResponse,
    ExpirySweepResult,
    Negotiation,
    RetryRequest,
    StartNegotiationRequest,
)

# All routes under /api/negotiations require a valid API key in the X-API-Key header.
# Engine errors are turned into JSON error bodies by the handler in app.main.
router = APIRouter(
    prefix="/api/negotiations",
    tags=["negotiations"],
    dependencies=[Depends(verify_api_key)],
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


@router.post("", response_model=Negotiation, status_code=HTTP_201_CREATED)
async def start(
    request: StartNegotiationRequest,
    engine: NegotiationEngine = Depends(get_negotiation_engine),
):
    """Start negotiating a load on behalf of a driver.

    Drafts the opening offer with the strategy advisor and emails it to the
    broker before returning. If either step fails the response is 503 and
    the body carries the INITIATED record to retry from.
    """
    return await engine.start_negotiation(
        load_id=request.load_id,
        driver_id=request.driver_id,
        target_rate=request.target_rate,
        floor_rate=request.floor_rate,
        max_rounds=request.max_rounds,
        ttl=timedelta(hours=request.ttl_hours) if request.ttl_hours else None,
        broker_email=request.broker_email,
        strategy=request.strategy,
    )


@router.post("/expire", response_model=ExpirySweepResult)
async def expire(engine: NegotiationEngine = Depends(get_negotiation_engine)):
    """Expire every open negotiation past its deadline. Meant for a scheduler; safe to re-run."""
    return await engine.expire_stale_negotiations()


@router.get("/{negotiation_id}", response_model=Negotiation)
async def get_negotiation(
    negotiation_id: str,
    engine: NegotiationEngine = Depends(get_negotiation_engine),
):
    """Current status, rates and the full offer history."""
    return await engine.get_negotiation(negotiation_id)


@router.post("/{negotiation_id}/broker-response", response_model=Negotiation)
async def broker_response(
    negotiation_id: str,
    request: BrokerResponseRequest,
    engine: NegotiationEngine = Depends(get_negotiation_engine),
):
    """Apply a broker's accept / counter / reject.

    Called by the inbound email automation. A 409 with error
    "concurrency_conflict" means the negotiation moved on since
    expected_version: re-read it before deciding whether to resend.
    """
    return await engine.record_broker_response(
        negotiation_id,
        request.kind,
        amount=request.amount,
        message=request.message,
        expected_version=request.expected_version,
    )


@router.post("/{negotiation_id}/retry-opening", response_model=Negotiation)
async def retry_opening(
    negotiation_id: str,
    request: RetryRequest,
    engine: NegotiationEngine = Depends(get_negotiation_engine),
):
    """Retry drafting and sending the opening offer for a negotiation stuck at INITIATED."""
    return await engine.retry_opening_offer(negotiation_id, request.expected_version)


@router.post("/{negotiation_id}/retry-booking", response_model=Negotiation)
async def retry_booking(
    negotiation_id: str,
    engine: NegotiationEngine = Depends(get_negotiation_engine),
):
    """Finish the booking for an accepted negotiation whose booking step failed."""
    return await engine.retry_booking(negotiation_id)
