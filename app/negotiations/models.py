from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class NegotiationStatus(str, Enum):
    INITIATED = "INITIATED"
    OFFER_SENT = "OFFER_SENT"
    COUNTERED = "COUNTERED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset(
    {NegotiationStatus.ACCEPTED, NegotiationStatus.REJECTED, NegotiationStatus.EXPIRED}
)
ACTIVE_STATUSES = frozenset(set(NegotiationStatus) - TERMINAL_STATUSES)


class Actor(str, Enum):
    AGENT = "agent"  # the carrier-side agent, negotiating for the driver
    BROKER = "broker"


class ResponseKind(str, Enum):
    ACCEPT = "accept"
    COUNTER = "counter"
    REJECT = "reject"


class Strategy(str, Enum):
    """Tone the advisor should take when drafting. Never changes the policy."""

    AGGRESSIVE = "aggressive"
    MODERATE = "moderate"
    CONSERVATIVE = "conservative"


class OfferEvent(BaseModel):
    """One entry of the audit trail. Also the context fed to the advisor."""

    actor: Actor
    amount: Optional[float] = None  # None for a bare accept/reject message
    message: str = ""
    round: int
    timestamp: datetime


class Negotiation(BaseModel):
    """The persisted negotiation record (database document shape and API response shape)."""

    negotiation_id: str  # e.g. "NEG-3f2a9c..."
    load_id: str
    driver_id: str
    broker_email: Optional[str] = None
    strategy: Strategy = Strategy.MODERATE
    status: NegotiationStatus = NegotiationStatus.INITIATED
    target_rate: float = Field(..., ge=0)  # what the driver wants, USD
    floor_rate: float = Field(..., ge=0)  # lowest rate the engine will ever accept or offer
    current_offer: Optional[float] = None  # latest agent offer
    counter_offer: Optional[float] = None  # latest broker counter
    final_rate: Optional[float] = None  # agreed rate, set on ACCEPTED
    round: int = Field(0, ge=0)
    max_rounds: int = Field(..., ge=1)
    expires_at: datetime
    booking_triggered: bool = False
    booking_id: Optional[str] = None
    booking_attempts: int = 0  # initiator calls claimed so far
    booking_attempted_at: Optional[datetime] = None  # set while an initiator call is in flight
    offer_history: list[OfferEvent] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Strategy advisor contract
# ---------------------------------------------------------------------------


class AdvisorContext(BaseModel):
    negotiation_id: str
    load_id: str
    strategy: Strategy
    offer_history: list[OfferEvent]
    target_rate: float
    round: int
    max_rounds: int
    broker_counter: Optional[float] = None  # None when drafting the opening offer


class AdvisorDraft(BaseModel):
    """What the advisor proposes. Untrusted: the engine re-checks every field."""

    message: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    action: ResponseKind = ResponseKind.COUNTER  # advisory hint only


# ---------------------------------------------------------------------------
# API request / response models
# ---------------------------------------------------------------------------


class StartNegotiationRequest(BaseModel):
    """Request body for starting a negotiation on behalf of a driver.

    floor_rate, max_rounds and ttl_hours fall back to the configured
    defaults when omitted.
    """

    load_id: str = Field(..., min_length=1)
    driver_id: str = Field(..., min_length=1)
    target_rate: float = Field(..., ge=0)
    floor_rate: Optional[float] = Field(None, ge=0)
    max_rounds: Optional[int] = Field(None, ge=1)
    ttl_hours: Optional[float] = Field(None, gt=0)
    broker_email: Optional[str] = None
    strategy: Strategy = Strategy.MODERATE

    @model_validator(mode="after")
    def _floor_not_above_target(self):
        if self.floor_rate is not None and self.floor_rate > self.target_rate:
            raise ValueError("floor_rate must not exceed target_rate")
        return self


class BrokerResponseRequest(BaseModel):
    """A broker's reply, as relayed by the inbound email automation.

    expected_version is the record version the caller last saw; the write is
    rejected with 409 if the negotiation moved on in the meantime.
    """

    kind: ResponseKind
    amount: Optional[float] = Field(None, ge=0)  # parsed from message when omitted
    message: Optional[str] = None
    expected_version: int = Field(..., ge=1)


class RetryRequest(BaseModel):
    expected_version: int = Field(..., ge=1)


class ExpirySweepResult(BaseModel):
    expired: list[str]
    conflicts: list[str]
    truncated: bool = False  # batch limit hit; more overdue records may be waiting


class ErrorResponse(BaseModel):
    detail: str
    error: str
    negotiation: Optional[Negotiation] = None
