"""Negotiation lifecycle: the transition table and its guards.

    INITIATED -> OFFER_SENT -> {COUNTERED <-> OFFER_SENT} -> {ACCEPTED | REJECTED | EXPIRED}

ACCEPTED, REJECTED and EXPIRED are terminal. An event with no matching row
for the current status (or whose guard fails) raises InvalidTransition and
changes nothing; this is what stops a stale or duplicate broker callback from
touching an already-resolved negotiation.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from app.negotiations.errors import InvalidTransition
from app.negotiations.models import ACTIVE_STATUSES, NegotiationStatus


class Event(str, Enum):
    OPENING_OFFER_SENT = "opening_offer_sent"
    BROKER_ACCEPT = "broker_accept"
    BROKER_COUNTER = "broker_counter"
    BROKER_REJECT = "broker_reject"
    ENGINE_ACCEPT = "engine_accept"
    ENGINE_COUNTER = "engine_counter"
    ENGINE_WALK_AWAY = "engine_walk_away"
    DEADLINE_PASSED = "deadline_passed"


@dataclass(frozen=True)
class GuardContext:
    """Everything a guard may look at. Built fresh for each event."""

    now: datetime
    expires_at: datetime
    round: int
    max_rounds: int
    floor_rate: float
    amount: Optional[float] = None
    delivered: bool = False  # notifier confirmed the send


@dataclass(frozen=True)
class Transition:
    source: NegotiationStatus
    event: Event
    target: NegotiationStatus
    guard: Callable[[GuardContext], bool]
    requires: str  # human-readable guard, used in error messages


def _always(ctx: GuardContext) -> bool:
    return True


def _delivered(ctx: GuardContext) -> bool:
    return ctx.delivered


def _deadline_passed(ctx: GuardContext) -> bool:
    return ctx.now > ctx.expires_at


def _amount_present(ctx: GuardContext) -> bool:
    return ctx.amount is not None and ctx.amount >= 0


def _at_or_above_floor(ctx: GuardContext) -> bool:
    return ctx.amount is not None and ctx.amount >= ctx.floor_rate


def _rounds_left(ctx: GuardContext) -> bool:
    return ctx.round < ctx.max_rounds


def _walk_away_allowed(ctx: GuardContext) -> bool:
    return ctx.round >= ctx.max_rounds or (ctx.amount is not None and ctx.amount < ctx.floor_rate)


S = NegotiationStatus

TRANSITIONS: tuple[Transition, ...] = (
    Transition(S.INITIATED, Event.OPENING_OFFER_SENT, S.OFFER_SENT, _delivered, "offer drafted and delivered"),
    Transition(S.OFFER_SENT, Event.BROKER_ACCEPT, S.ACCEPTED, _always, "-"),
    Transition(S.OFFER_SENT, Event.BROKER_COUNTER, S.COUNTERED, _amount_present, "amount present and non-negative"),
    Transition(S.OFFER_SENT, Event.BROKER_REJECT, S.REJECTED, _always, "-"),
    Transition(S.COUNTERED, Event.ENGINE_ACCEPT, S.ACCEPTED, _at_or_above_floor, "counter >= floor rate"),
    Transition(S.COUNTERED, Event.ENGINE_COUNTER, S.OFFER_SENT, _rounds_left, "round < max rounds"),
    Transition(S.COUNTERED, Event.ENGINE_WALK_AWAY, S.REJECTED, _walk_away_allowed, "round >= max rounds or counter below floor"),
) + tuple(
    Transition(status, Event.DEADLINE_PASSED, S.EXPIRED, _deadline_passed, "now > expires_at")
    for status in sorted(ACTIVE_STATUSES, key=lambda s: s.value)
)


def next_status(status: NegotiationStatus, event: Event, ctx: GuardContext) -> NegotiationStatus:
    """Return the status `event` leads to from `status`, or raise InvalidTransition."""
    rows = [t for t in TRANSITIONS if t.source == status and t.event == event]
    if not rows:
        raise InvalidTransition(f"Event '{event.value}' is not valid in status {status.value}")
    for row in rows:
        if row.guard(ctx):
            return row.target
    raise InvalidTransition(
        f"Event '{event.value}' rejected in status {status.value}: requires {rows[0].requires}"
    )


def allowed_events(status: NegotiationStatus) -> set[Event]:
    return {t.event for t in TRANSITIONS if t.source == status}
