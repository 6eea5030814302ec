"""Negotiation engine: runs one negotiation's lifecycle from opening offer to booking.

The engine is stateless between calls. Each operation reads the record,
does any external work (advisor draft, broker notification), and only then
persists the resulting transition with a version-conditional write. Nothing
is held locked across external calls, so a concurrent transition shows up as
a ConcurrencyConflict at write time instead of being clobbered. Because the
state-advancing write always comes last, an advisor or notifier failure
leaves the stored record exactly as it was and the caller can simply retry.
"""

import asyncio
import logging
import math
import uuid
from datetime import UTC, datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar, Union

from app.bookings.models import BookingInitiator
from app.config import settings
from app.negotiations.advisor import StrategyAdvisor
from app.negotiations.errors import (
    AdvisorUnavailable,
    BookingFailed,
    ConcurrencyConflict,
    DeliveryFailed,
    InvalidTransition,
    NegotiationError,
    ValidationError,
)
from app.negotiations.models import (
    ACTIVE_STATUSES,
    Actor,
    AdvisorContext,
    AdvisorDraft,
    ExpirySweepResult,
    Negotiation,
    NegotiationStatus,
    OfferEvent,
    ResponseKind,
    Strategy,
)
from app.negotiations.notifier import Notifier
from app.negotiations.policy import (
    Action,
    acceptance_message,
    apply_floor,
    decide_on_counter,
    default_floor_rate,
    parse_counter_offer,
    walk_away_message,
)
from app.negotiations.state_machine import Event, GuardContext, next_status
from app.negotiations.store import NegotiationStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    # Naive UTC, matching what MongoDB hands back.
    return datetime.now(UTC).replace(tzinfo=None)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _new_negotiation_id() -> str:
    return f"NEG-{uuid.uuid4().hex[:20]}"


def _valid_amount(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) and value >= 0


class NegotiationEngine:
    def __init__(
        self,
        store: NegotiationStore,
        advisor: StrategyAdvisor,
        notifier: Notifier,
        booking_initiator: BookingInitiator,
        clock: Callable[[], datetime] = utcnow,
        call_timeout: Optional[float] = None,
        default_max_rounds: Optional[int] = None,
        floor_tolerance_percent: Optional[float] = None,
        default_ttl: Optional[timedelta] = None,
        booking_lease: Optional[timedelta] = None,
        sweep_batch_size: Optional[int] = None,
    ):
        self.store = store
        self.advisor = advisor
        self.notifier = notifier
        self.booking_initiator = booking_initiator
        self.clock = clock
        self.call_timeout = call_timeout
        self.default_max_rounds = default_max_rounds or settings.DEFAULT_MAX_ROUNDS
        self.floor_tolerance_percent = (
            floor_tolerance_percent
            if floor_tolerance_percent is not None
            else settings.FLOOR_TOLERANCE_PERCENT
        )
        self.default_ttl = default_ttl or timedelta(hours=settings.NEGOTIATION_TTL_HOURS)
        self.booking_lease = booking_lease or timedelta(seconds=settings.BOOKING_LEASE_SECONDS)
        self.sweep_batch_size = sweep_batch_size or settings.EXPIRY_SWEEP_BATCH_SIZE

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start_negotiation(
        self,
        load_id: str,
        driver_id: str,
        target_rate: float,
        floor_rate: Optional[float] = None,
        max_rounds: Optional[int] = None,
        ttl: Optional[timedelta] = None,
        broker_email: Optional[str] = None,
        strategy: Union[Strategy, str] = Strategy.MODERATE,
    ) -> Negotiation:
        """Create the record and drive it to OFFER_SENT.

        If drafting or sending the opening offer fails, the record stays at
        INITIATED (returned on the raised error) and retry_opening_offer()
        picks it up from there.
        """
        if not load_id or not driver_id:
            raise ValidationError("load_id and driver_id are required")
        if not _valid_amount(target_rate):
            raise ValidationError("target_rate must be a non-negative number")
        if floor_rate is None:
            floor_rate = default_floor_rate(target_rate, self.floor_tolerance_percent)
        if not _valid_amount(floor_rate):
            raise ValidationError("floor_rate must be a non-negative number")
        if floor_rate > target_rate:
            raise ValidationError("floor_rate must not exceed target_rate")
        max_rounds = self.default_max_rounds if max_rounds is None else max_rounds
        if not isinstance(max_rounds, int) or max_rounds < 1:
            raise ValidationError("max_rounds must be a positive integer")
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= timedelta(0):
            raise ValidationError("ttl must be positive")
        try:
            strategy = Strategy(strategy)
        except ValueError as exc:
            raise ValidationError(f"Unknown strategy '{strategy}'") from exc

        now = self._now()
        record = await self.store.insert(
            Negotiation(
                negotiation_id=_new_negotiation_id(),
                load_id=load_id,
                driver_id=driver_id,
                broker_email=broker_email,
                strategy=strategy,
                target_rate=float(target_rate),
                floor_rate=float(floor_rate),
                max_rounds=max_rounds,
                expires_at=now + ttl,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "negotiation.started",
            extra={
                "event": "negotiation.started",
                "negotiation_id": record.negotiation_id,
                "load_id": load_id,
                "driver_id": driver_id,
                "target_rate": record.target_rate,
                "floor_rate": record.floor_rate,
                "max_rounds": max_rounds,
            },
        )
        return await self._send_opening_offer(record)

    async def retry_opening_offer(self, negotiation_id: str, expected_version: int) -> Negotiation:
        """Re-drive INITIATED -> OFFER_SENT after a failed start."""
        record = await self._load(negotiation_id, expected_version)
        if record.status != NegotiationStatus.INITIATED:
            raise InvalidTransition(
                f"Opening offer already handled (status {record.status.value})", negotiation=record
            )
        await self._expire_if_overdue(record)
        return await self._send_opening_offer(record)

    async def record_broker_response(
        self,
        negotiation_id: str,
        kind: Union[ResponseKind, str],
        amount: Optional[float] = None,
        message: Optional[str] = None,
        *,
        expected_version: int,
    ) -> Negotiation:
        """Apply a broker accept/counter/reject to the negotiation.

        Raises ConcurrencyConflict if the record is no longer at
        expected_version; the caller must re-read before resending.
        """
        try:
            kind = ResponseKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown response kind '{kind}'") from exc
        if amount is not None and not _valid_amount(amount):
            raise ValidationError("amount must be a non-negative number")
        if kind == ResponseKind.COUNTER and amount is None:
            amount = parse_counter_offer(message)
            if amount is None:
                raise ValidationError(
                    "Could not parse a counter-offer from the broker message; provide amount"
                )

        record = await self._load(negotiation_id, expected_version)
        await self._expire_if_overdue(record)

        now = self._now()
        round_no = record.round + 1
        ctx = self._guard(record, now, round_no=round_no, amount=amount)

        if kind == ResponseKind.ACCEPT:
            status = self._transition(record, Event.BROKER_ACCEPT, ctx)
            broker_event = OfferEvent(
                actor=Actor.BROKER, amount=record.current_offer, message=message or "",
                round=round_no, timestamp=now,
            )
            accepted = record.model_copy(
                update={
                    "status": status,
                    "round": round_no,
                    "final_rate": record.current_offer,
                    "booking_triggered": True,
                    "booking_attempts": 1,
                    "booking_attempted_at": now,
                    "offer_history": [*record.offer_history, broker_event],
                    "updated_at": now,
                }
            )
            persisted = await self._persist(accepted, record.version, "negotiation.broker_accepted")
            return await self._trigger_booking(persisted)

        if kind == ResponseKind.REJECT:
            status = self._transition(record, Event.BROKER_REJECT, ctx)
            broker_event = OfferEvent(
                actor=Actor.BROKER, amount=amount, message=message or "",
                round=round_no, timestamp=now,
            )
            rejected = record.model_copy(
                update={
                    "status": status,
                    "round": round_no,
                    "offer_history": [*record.offer_history, broker_event],
                    "updated_at": now,
                }
            )
            return await self._persist(rejected, record.version, "negotiation.broker_rejected")

        return await self._handle_counter(record, amount, message or "", now)

    async def get_negotiation(self, negotiation_id: str) -> Negotiation:
        return await self.store.get(negotiation_id)

    async def expire_stale_negotiations(self, now: Optional[datetime] = None) -> ExpirySweepResult:
        """Move every non-terminal negotiation past its deadline to EXPIRED.

        Safe to run repeatedly and alongside live broker responses: records
        that change under the sweep are reported as conflicts and left alone.
        At most sweep_batch_size records are handled per call; `truncated`
        tells the caller to run it again.
        """
        now = _naive_utc(now) if now is not None else self._now()
        candidates = await self.store.scan(
            statuses=ACTIVE_STATUSES, expires_before=now, limit=self.sweep_batch_size
        )
        truncated = len(candidates) >= self.sweep_batch_size

        expired: list[str] = []
        conflicts: list[str] = []
        for record in candidates:
            try:
                await self._expire(record, now)
            except ConcurrencyConflict:
                conflicts.append(record.negotiation_id)
            except InvalidTransition:
                continue
            else:
                expired.append(record.negotiation_id)

        logger.info(
            "negotiation.expiry_sweep",
            extra={
                "event": "negotiation.expiry_sweep",
                "scanned": len(candidates),
                "expired": len(expired),
                "conflicts": len(conflicts),
                "truncated": truncated,
            },
        )
        return ExpirySweepResult(expired=expired, conflicts=conflicts, truncated=truncated)

    async def retry_booking(self, negotiation_id: str) -> Negotiation:
        """Finish a booking whose initiator call failed after ACCEPTED was written.

        The retry is claimed with a conditional write before the initiator is
        called, so of two concurrent retries only one reaches the initiator;
        the other gets ConcurrencyConflict. An attempt still inside its lease
        is assumed to be in flight and is not retried.
        """
        record = await self.store.get(negotiation_id)
        if record.status != NegotiationStatus.ACCEPTED or not record.booking_triggered:
            raise InvalidTransition(
                f"Negotiation is not awaiting a booking (status {record.status.value})",
                negotiation=record,
            )
        if record.booking_id:
            return record

        now = self._now()
        if record.booking_attempted_at is not None and now - record.booking_attempted_at < self.booking_lease:
            raise InvalidTransition(
                f"Booking attempt in progress since {record.booking_attempted_at.isoformat()}",
                negotiation=record,
            )
        claimed = record.model_copy(
            update={
                "booking_attempts": record.booking_attempts + 1,
                "booking_attempted_at": now,
                "updated_at": now,
            }
        )
        claimed = await self._persist(claimed, record.version, "negotiation.booking_claimed")
        return await self._trigger_booking(claimed)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _send_opening_offer(self, record: Negotiation) -> Negotiation:
        draft = await self._draft(record, broker_counter=None)
        amount = apply_floor(draft.amount, record.floor_rate)
        if amount != draft.amount:
            self._log_floor_veto(record, draft.amount, amount)

        await self._external(
            self.notifier.send(record, draft.message, amount), DeliveryFailed, "notifier", record
        )

        now = self._now()
        status = self._transition(record, Event.OPENING_OFFER_SENT, self._guard(record, now, delivered=True))
        event = OfferEvent(
            actor=Actor.AGENT, amount=amount, message=draft.message, round=record.round, timestamp=now
        )
        sent = record.model_copy(
            update={
                "status": status,
                "current_offer": amount,
                "offer_history": [*record.offer_history, event],
                "updated_at": now,
            }
        )
        return await self._persist(sent, record.version, "negotiation.offer_sent")

    async def _handle_counter(
        self, record: Negotiation, counter: float, message: str, now: datetime
    ) -> Negotiation:
        round_no = record.round + 1
        ctx = self._guard(record, now, round_no=round_no, amount=counter)
        countered_status = self._transition(record, Event.BROKER_COUNTER, ctx)

        # COUNTERED lives only in memory: the broker's counter and the engine's
        # answer are persisted together in one write below.
        working = record.model_copy(
            update={
                "status": countered_status,
                "round": round_no,
                "counter_offer": counter,
                "offer_history": [
                    *record.offer_history,
                    OfferEvent(actor=Actor.BROKER, amount=counter, message=message, round=round_no, timestamp=now),
                ],
                "updated_at": now,
            }
        )

        decision = decide_on_counter(counter, record.target_rate, record.floor_rate, round_no, record.max_rounds)
        logger.info(
            "negotiation.decision",
            extra={
                "event": "negotiation.decision",
                "negotiation_id": record.negotiation_id,
                "counter": counter,
                "round": round_no,
                "action": decision.action.value,
                "reason": decision.reason,
            },
        )

        if decision.action == Action.ACCEPT:
            final_status = self._transition(record, Event.ENGINE_ACCEPT, ctx, source=working.status)
            reply = acceptance_message(record.load_id, counter)
            await self._external(
                self.notifier.send(working, reply, counter), DeliveryFailed, "notifier", record
            )
            accepted = self._with_agent_reply(
                working, final_status, reply, counter, now,
                final_rate=counter, booking_triggered=True,
                booking_attempts=1, booking_attempted_at=now,
            )
            persisted = await self._persist(accepted, record.version, "negotiation.engine_accepted")
            return await self._trigger_booking(persisted)

        if decision.action == Action.WALK_AWAY:
            final_status = self._transition(record, Event.ENGINE_WALK_AWAY, ctx, source=working.status)
            reply = walk_away_message(record.load_id, counter)
            await self._external(
                self.notifier.send(working, reply, None), DeliveryFailed, "notifier", record
            )
            walked = self._with_agent_reply(working, final_status, reply, None, now)
            return await self._persist(walked, record.version, "negotiation.walked_away")

        final_status = self._transition(record, Event.ENGINE_COUNTER, ctx, source=working.status)
        draft = await self._draft(working, broker_counter=counter, last_consistent=record)
        if draft.action != ResponseKind.COUNTER:
            logger.info(
                "negotiation.advisor_hint_overridden",
                extra={
                    "event": "negotiation.advisor_hint_overridden",
                    "negotiation_id": record.negotiation_id,
                    "hint": draft.action.value,
                    "decision": decision.action.value,
                },
            )
        amount = apply_floor(draft.amount, record.floor_rate, broker_counter=counter)
        if amount != draft.amount:
            self._log_floor_veto(record, draft.amount, amount)

        await self._external(
            self.notifier.send(working, draft.message, amount), DeliveryFailed, "notifier", record
        )
        countered = self._with_agent_reply(
            working, final_status, draft.message, amount, now, current_offer=amount
        )
        return await self._persist(countered, record.version, "negotiation.countered")

    async def _expire(self, record: Negotiation, now: datetime) -> Negotiation:
        status = self._transition(record, Event.DEADLINE_PASSED, self._guard(record, now))
        expired = record.model_copy(update={"status": status, "updated_at": now})
        return await self._persist(expired, record.version, "negotiation.expired")

    async def _expire_if_overdue(self, record: Negotiation) -> None:
        """A late event on an overdue negotiation expires it instead of being applied."""
        now = self._now()
        if record.is_terminal or now <= record.expires_at:
            return
        expired = await self._expire(record, now)
        raise InvalidTransition(
            f"Negotiation expired at {record.expires_at.isoformat()}", negotiation=expired
        )

    async def _trigger_booking(self, record: Negotiation) -> Negotiation:
        """Invoke the booking initiator for a record whose booking claim we own."""
        try:
            booking_id = await self._external(
                self.booking_initiator.create_booking(
                    record.negotiation_id, record.load_id, record.driver_id, record.final_rate
                ),
                BookingFailed,
                "booking",
                record,
            )
        except BookingFailed as exc:
            exc.negotiation = await self._release_booking_claim(record)
            raise
        booked = record.model_copy(
            update={"booking_id": booking_id, "booking_attempted_at": None, "updated_at": self._now()}
        )
        return await self._persist(booked, record.version, "negotiation.booked")

    async def _release_booking_claim(self, record: Negotiation) -> Negotiation:
        """Clear the in-flight marker after a failed attempt so retry_booking can claim it."""
        released = record.model_copy(update={"booking_attempted_at": None, "updated_at": self._now()})
        try:
            return await self._persist(released, record.version, "negotiation.booking_released")
        except ConcurrencyConflict as exc:
            return exc.negotiation or record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, negotiation_id: str, expected_version: int) -> Negotiation:
        record = await self.store.get(negotiation_id)
        if record.version != expected_version:
            raise ConcurrencyConflict(
                f"Negotiation {negotiation_id} is at version {record.version}, "
                f"not {expected_version}; re-read and retry",
                negotiation=record,
            )
        return record

    async def _persist(self, record: Negotiation, expected_version: int, event: str) -> Negotiation:
        try:
            stored = await self.store.put_if_version(record, expected_version)
        except ConcurrencyConflict:
            logger.warning(
                "negotiation.conflict",
                extra={
                    "event": "negotiation.conflict",
                    "negotiation_id": record.negotiation_id,
                    "attempted": event,
                    "expected_version": expected_version,
                },
            )
            raise
        logger.info(
            event,
            extra={
                "event": event,
                "negotiation_id": stored.negotiation_id,
                "status": stored.status.value,
                "round": stored.round,
                "version": stored.version,
            },
        )
        return stored

    async def _draft(
        self,
        record: Negotiation,
        broker_counter: Optional[float],
        last_consistent: Optional[Negotiation] = None,
    ) -> AdvisorDraft:
        context = AdvisorContext(
            negotiation_id=record.negotiation_id,
            load_id=record.load_id,
            strategy=record.strategy,
            offer_history=record.offer_history,
            target_rate=record.target_rate,
            round=record.round,
            max_rounds=record.max_rounds,
            broker_counter=broker_counter,
        )
        return await self._external(
            self.advisor.draft(context), AdvisorUnavailable, "advisor", last_consistent or record
        )

    async def _external(
        self,
        call: Awaitable[T],
        error_cls: type[NegotiationError],
        name: str,
        record: Negotiation,
    ) -> T:
        """Await an external call, bounded by call_timeout.

        Failures come back as `error_cls` carrying `record`, the last state
        that was actually persisted.
        """
        try:
            return await asyncio.wait_for(call, self.call_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "negotiation.external_timeout",
                extra={
                    "event": "negotiation.external_timeout",
                    "negotiation_id": record.negotiation_id,
                    "dependency": name,
                    "timeout": self.call_timeout,
                },
            )
            raise error_cls(f"{name} call timed out after {self.call_timeout}s", negotiation=record) from exc
        except error_cls as exc:
            exc.negotiation = record
            raise

    def _guard(
        self,
        record: Negotiation,
        now: datetime,
        round_no: Optional[int] = None,
        amount: Optional[float] = None,
        delivered: bool = False,
    ) -> GuardContext:
        return GuardContext(
            now=now,
            expires_at=record.expires_at,
            round=record.round if round_no is None else round_no,
            max_rounds=record.max_rounds,
            floor_rate=record.floor_rate,
            amount=amount,
            delivered=delivered,
        )

    @staticmethod
    def _with_agent_reply(
        working: Negotiation,
        status: NegotiationStatus,
        message: str,
        amount: Optional[float],
        now: datetime,
        **fields,
    ) -> Negotiation:
        reply = OfferEvent(actor=Actor.AGENT, amount=amount, message=message, round=working.round, timestamp=now)
        return working.model_copy(
            update={"status": status, "offer_history": [*working.offer_history, reply], **fields}
        )

    @staticmethod
    def _transition(
        record: Negotiation,
        event: Event,
        ctx: GuardContext,
        source: Optional[NegotiationStatus] = None,
    ) -> NegotiationStatus:
        """next_status() from `source` (default: the record's status); errors carry the record."""
        try:
            return next_status(source or record.status, event, ctx)
        except InvalidTransition as exc:
            exc.negotiation = record
            raise

    @staticmethod
    def _log_floor_veto(record: Negotiation, proposed: float, substituted: float) -> None:
        logger.warning(
            "negotiation.floor_veto",
            extra={
                "event": "negotiation.floor_veto",
                "negotiation_id": record.negotiation_id,
                "proposed": proposed,
                "substituted": substituted,
                "floor_rate": record.floor_rate,
            },
        )

    def _now(self) -> datetime:
        return _naive_utc(self.clock())
