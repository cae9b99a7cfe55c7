"""Booking session state machine.

Every command and every timeout for a session runs under that session's
lock, loads the latest committed snapshot, applies one transition and
persists it before any timer is armed. Seats are released whenever a
session leaves its active phases without a confirmed order.
"""

import asyncio
import secrets
import string
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional, Set

import redis.asyncio as redis

from .catalog import FlightCatalog
from .clock import Clock, TimerService
from .config import Settings
from .domain import (
    FAILURE_EXPLANATIONS,
    BookingSession,
    FailureReason,
    Flight,
    Order,
    PaymentAttempt,
    PaymentOutcome,
    Phase,
    Seat,
)
from .exceptions import (
    InvalidFormat,
    InvalidTransition,
    NoSeatsHeld,
    PaymentInProgress,
    RetryBudgetExhausted,
    SeatCaptureFailed,
    SeatConflict,
    SessionTerminal,
)
from .inventory import SeatInventory
from .logger_config import logger
from .payments import PaymentAttemptTracker
from .store import SessionStore


ORDER_ID_ALPHABET = string.ascii_uppercase + string.digits

TIMEOUT_TRANSITIONS = {
    Phase.SEAT_HOLD: (Phase.EXPIRED, FailureReason.SEAT_HOLD_TIMEOUT),
    Phase.REVIEW: (Phase.EXPIRED, FailureReason.REVIEW_TIMEOUT),
    Phase.PAYMENT: (Phase.FAILED, FailureReason.PAYMENT_TIMEOUT),
}


@dataclass
class SessionSnapshot:
    session_id: str
    flight: Flight
    phase: Phase
    phase_entered_at: datetime
    deadline: Optional[datetime]
    remaining_seconds: Optional[float]
    held_seats: List[Seat]
    seat_total: int
    total_price: int
    attempt_count: int
    max_attempts: int
    attempts_remaining: int
    attempts: List[PaymentAttempt]
    payment_pending: bool
    order_id: Optional[str]
    failure_reason: Optional[FailureReason]
    failure_message: Optional[str]


@dataclass
class PaymentResult:
    outcome: PaymentOutcome
    session: SessionSnapshot


class SessionLocks:
    """One asyncio lock per session id, dropped once nobody waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if not self._users[session_id]:
                del self._users[session_id]
                del self._locks[session_id]

    def __len__(self) -> int:
        return len(self._locks)


class BookingEngine:
    def __init__(
        self,
        catalog: FlightCatalog,
        inventory: SeatInventory,
        store: SessionStore,
        tracker: PaymentAttemptTracker,
        timers: TimerService,
        clock: Clock,
        settings: Settings,
    ):
        self._catalog = catalog
        self._inventory = inventory
        self._store = store
        self._tracker = tracker
        self._timers = timers
        self._clock = clock
        self._settings = settings
        self._locks = SessionLocks()
        self._background: Set[asyncio.Task] = set()
        timers.set_handler(self.handle_timeout)

    # -- queries -----------------------------------------------------------

    def snapshot(self, booking: BookingSession) -> SessionSnapshot:
        flight = self._catalog.get_flight(booking.flight_id)
        seats = self._catalog.get_seats(booking.flight_id, booking.held_seats)
        total_price = self._catalog.total_price(booking.flight_id, booking.held_seats)
        return SessionSnapshot(
            session_id=booking.id,
            flight=flight,
            phase=booking.phase,
            phase_entered_at=booking.phase_entered_at,
            deadline=None if booking.is_terminal else booking.deadline,
            remaining_seconds=booking.remaining_seconds(self._clock.now()),
            held_seats=seats,
            seat_total=total_price - flight.price,
            total_price=total_price,
            attempt_count=booking.attempt_count,
            max_attempts=self._tracker.max_attempts,
            attempts_remaining=self._tracker.attempts_remaining(booking),
            attempts=list(booking.attempts),
            payment_pending=booking.pending_attempt is not None,
            order_id=booking.order_id,
            failure_reason=booking.failure_reason,
            failure_message=FAILURE_EXPLANATIONS.get(booking.failure_reason) if booking.failure_reason else None,
        )

    async def get_session(self, session_id: str) -> SessionSnapshot:
        return self.snapshot(await self._store.load(session_id))

    async def get_order(self, order_id: str) -> Order:
        return await self._store.load_order(order_id)

    # -- commands ----------------------------------------------------------

    @asynccontextmanager
    async def _command(self, session_id: str, command: str, *phases: Phase) -> AsyncIterator[BookingSession]:
        async with self._locks.hold(session_id):
            booking = await self._store.load(session_id)
            if booking.is_terminal:
                logger.info(f"session {session_id}: rejected '{command}', already {booking.phase.value}")
                raise SessionTerminal(session_id, booking.phase.value)
            if phases and booking.phase not in phases:
                logger.info(f"session {session_id}: rejected '{command}' in {booking.phase.value}")
                raise InvalidTransition(command, booking.phase.value)
            yield booking

    async def create_session(self, flight_id: str) -> SessionSnapshot:
        self._catalog.get_flight(flight_id)
        now = self._clock.now()
        booking = BookingSession(
            id=uuid.uuid4().hex,
            flight_id=flight_id,
            phase=Phase.CREATED,
            phase_entered_at=now,
            created_at=now,
        )
        # selecting the flight opens seat selection; the hold timer starts with the first seat
        booking.enter(Phase.SEAT_HOLD, now)
        await self._store.save(booking)
        logger.info(f"session {booking.id}: created for flight {flight_id}")
        return self.snapshot(booking)

    async def hold_seats(self, session_id: str, seat_ids: List[str]) -> SessionSnapshot:
        async with self._command(session_id, "hold seats", Phase.SEAT_HOLD) as booking:
            requested = list(dict.fromkeys(seat_ids))
            new = [s for s in requested if s not in booking.held_seats]
            if not new:
                return self.snapshot(booking)

            deadline = self._seat_hold_deadline()
            ttl = self._hold_ttl(deadline)
            result = await self._inventory.hold(booking.flight_id, requested, booking.id, ttl)
            if not result.success:
                raise SeatConflict(result.unavailable)

            others = [s for s in booking.held_seats if s not in requested]
            lost = await self._inventory.refresh(booking.flight_id, booking.id, others, ttl)
            if lost:
                logger.warning(f"session {session_id}: holds on {lost} disappeared, dropping them")
            booking.held_seats = [s for s in booking.held_seats if s not in lost] + new
            booking.deadline = deadline
            try:
                await self._store.save(booking)
            except Exception:
                await self._compensate(booking.flight_id, booking.id, new)
                raise
            self._timers.arm(booking.id, deadline)
            logger.info(f"session {session_id}: holding {booking.held_seats} until {deadline.isoformat()}")
            return self.snapshot(booking)

    async def release_seats(self, session_id: str, seat_ids: List[str]) -> SessionSnapshot:
        async with self._command(session_id, "release seats", Phase.SEAT_HOLD) as booking:
            to_release = [s for s in dict.fromkeys(seat_ids) if s in booking.held_seats]
            if not to_release:
                return self.snapshot(booking)

            await self._compensate(booking.flight_id, booking.id, to_release)
            booking.held_seats = [s for s in booking.held_seats if s not in to_release]
            deadline = self._seat_hold_deadline()
            lost = await self._inventory.refresh(booking.flight_id, booking.id, booking.held_seats,
                                                 self._hold_ttl(deadline))
            booking.held_seats = [s for s in booking.held_seats if s not in lost]
            booking.deadline = deadline
            await self._store.save(booking)
            self._timers.arm(booking.id, deadline)
            logger.info(f"session {session_id}: released {to_release}")
            return self.snapshot(booking)

    async def confirm_seats(self, session_id: str) -> SessionSnapshot:
        async with self._command(session_id, "confirm seats", Phase.SEAT_HOLD) as booking:
            if not booking.held_seats:
                raise NoSeatsHeld(session_id)

            now = self._clock.now()
            if self._settings.REVIEW_DEADLINE_MODE == "continuous" and booking.deadline is not None:
                deadline = booking.deadline
            else:
                deadline = now + timedelta(seconds=self._settings.REVIEW_TIMEOUT_SECONDS)

            lost = await self._inventory.refresh(booking.flight_id, booking.id, booking.held_seats,
                                                 self._hold_ttl(deadline))
            if lost:
                booking.held_seats = [s for s in booking.held_seats if s not in lost]
                await self._store.save(booking)
                raise SeatConflict(lost)

            booking.enter(Phase.REVIEW, now, deadline)
            await self._store.save(booking)
            self._timers.arm(booking.id, deadline)
            logger.info(f"session {session_id}: review until {deadline.isoformat()}")
            return self.snapshot(booking)

    async def back_to_seats(self, session_id: str) -> SessionSnapshot:
        async with self._command(session_id, "go back to seat selection", Phase.REVIEW) as booking:
            released = list(booking.held_seats)
            await self._compensate(booking.flight_id, booking.id, released)
            booking.held_seats = []
            deadline = self._seat_hold_deadline()
            booking.enter(Phase.SEAT_HOLD, self._clock.now(), deadline)
            await self._store.save(booking)
            self._timers.arm(booking.id, deadline)
            logger.info(f"session {session_id}: back to seat selection, released {released}")
            return self.snapshot(booking)

    async def confirm_review(self, session_id: str) -> SessionSnapshot:
        async with self._command(session_id, "confirm the order review", Phase.REVIEW) as booking:
            now = self._clock.now()
            deadline = now + timedelta(seconds=self._settings.PAYMENT_VALIDATION_TIMEOUT_SECONDS)
            lost = await self._inventory.refresh(booking.flight_id, booking.id, booking.held_seats,
                                                 self._payment_hold_ttl())
            if lost:
                logger.error(f"session {session_id}: holds on {lost} lost before payment")
                await self._finish(booking, Phase.FAILED, FailureReason.HOLD_LOST)
                return self.snapshot(booking)

            booking.enter(Phase.PAYMENT, now, deadline)
            await self._store.save(booking)
            self._timers.arm(booking.id, deadline)
            logger.info(f"session {session_id}: awaiting payment until {deadline.isoformat()}")
            return self.snapshot(booking)

    async def submit_payment_code(self, session_id: str, code: str) -> PaymentResult:
        async with self._command(session_id, "submit a payment code", Phase.PAYMENT) as booking:
            if booking.pending_attempt is not None:
                raise PaymentInProgress(booking.pending_attempt)
            rejected = self._tracker.prepare(booking, code)
            if rejected is PaymentOutcome.INVALID_FORMAT:
                raise InvalidFormat(self._tracker.code_length)
            if rejected is PaymentOutcome.EXHAUSTED:
                raise RetryBudgetExhausted(self._tracker.max_attempts)
            attempt = booking.pending_attempt
            await self._store.save(booking)
            logger.info(f"session {session_id}: dispatching payment attempt {attempt}")

        # the gateway call runs unlocked so the validation timer can still fire
        try:
            outcome = await self._tracker.dispatch(code)
        except Exception:
            logger.exception(f"session {session_id}: payment attempt {attempt} crashed, counting it as declined")
            outcome = PaymentOutcome.DECLINED

        async with self._locks.hold(session_id):
            booking = await self._store.load(session_id)
            if booking.phase is not Phase.PAYMENT or booking.pending_attempt != attempt:
                logger.warning(
                    f"session {session_id}: discarding late {outcome.value} result for attempt {attempt}, "
                    f"session is {booking.phase.value}"
                )
                return PaymentResult(outcome=PaymentOutcome.TIMED_OUT, session=self.snapshot(booking))

            self._tracker.record(booking, attempt, outcome)
            if outcome is PaymentOutcome.APPROVED:
                booking = await self._confirm(booking)
            elif self._tracker.is_exhausted(booking):
                logger.info(f"session {session_id}: attempt {attempt} declined, retry budget exhausted")
                await self._finish(booking, Phase.FAILED, FailureReason.RETRY_BUDGET_EXHAUSTED)
            else:
                deadline = self._clock.now() + timedelta(seconds=self._settings.PAYMENT_VALIDATION_TIMEOUT_SECONDS)
                await self._inventory.refresh(booking.flight_id, booking.id, booking.held_seats,
                                              self._payment_hold_ttl())
                booking.deadline = deadline
                await self._store.save(booking)
                self._timers.arm(booking.id, deadline)
                logger.info(
                    f"session {session_id}: attempt {attempt} declined, "
                    f"{self._tracker.attempts_remaining(booking)} left"
                )
            return PaymentResult(outcome=outcome, session=self.snapshot(booking))

    async def cancel_session(self, session_id: str) -> SessionSnapshot:
        async with self._command(session_id, "cancel") as booking:
            await self._finish(booking, Phase.FAILED, FailureReason.CANCELLED)
            logger.info(f"session {session_id}: cancelled by client")
            return self.snapshot(booking)

    # -- timeouts and recovery ----------------------------------------------

    async def handle_timeout(self, session_id: str, deadline: datetime) -> None:
        async with self._locks.hold(session_id):
            booking = await self._store.get(session_id)
            if booking is None or booking.is_terminal:
                return
            if booking.deadline is None or abs((booking.deadline - deadline).total_seconds()) > 0.001:
                logger.debug(f"session {session_id}: ignoring superseded timer for {deadline.isoformat()}")
                return
            if self._clock.now() < booking.deadline:
                self._timers.arm(session_id, booking.deadline)
                return

            phase, reason = TIMEOUT_TRANSITIONS[booking.phase]
            logger.info(f"session {session_id}: {booking.phase.value} timed out")
            await self._finish(booking, phase, reason)

    async def recover(self) -> int:
        """Re-arm timers for every active session after a restart.

        Overdue sessions time out right away. An attempt that was at the
        gateway when the process stopped is recorded as timed out and still
        counts against the budget.
        """
        recovered = 0
        for active in await self._store.list_active():
            async with self._locks.hold(active.id):
                booking = await self._store.get(active.id)
                if booking is None or booking.is_terminal:
                    continue
                if booking.pending_attempt is not None:
                    self._tracker.record(booking, booking.pending_attempt, PaymentOutcome.TIMED_OUT)
                    if self._tracker.is_exhausted(booking):
                        await self._finish(booking, Phase.FAILED, FailureReason.RETRY_BUDGET_EXHAUSTED)
                        continue
                    await self._store.save(booking)
                if booking.deadline is not None:
                    self._timers.arm(booking.id, booking.deadline)
                recovered += 1
        logger.info(f"recovered {recovered} active booking sessions")
        return recovered

    async def shutdown(self) -> None:
        await self._timers.shutdown()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # -- internals ---------------------------------------------------------

    def _seat_hold_deadline(self) -> datetime:
        return self._clock.now() + timedelta(seconds=self._settings.SEAT_HOLD_TIMEOUT_SECONDS)

    def _hold_ttl(self, deadline: datetime) -> float:
        remaining = (deadline - self._clock.now()).total_seconds()
        return max(remaining, 0.0) + self._settings.HOLD_GRACE_SECONDS

    def _payment_hold_ttl(self) -> float:
        return (
            self._settings.PAYMENT_VALIDATION_TIMEOUT_SECONDS
            + self._settings.GATEWAY_CALL_TIMEOUT_SECONDS
            + self._settings.HOLD_GRACE_SECONDS
        )

    def _new_order_id(self) -> str:
        prefix = self._settings.ORDER_ID_PREFIX
        size = max(self._settings.ORDER_ID_LENGTH - len(prefix), 4)
        return prefix + "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(size))

    async def _confirm(self, booking: BookingSession) -> BookingSession:
        """Capture the seats and record the order.

        The validation timer stays armed until the order is committed, so a
        failed commit still ends in a terminal phase with the seats released.
        """
        order_id = self._new_order_id()
        try:
            await self._inventory.capture(booking.flight_id, booking.id, booking.held_seats, order_id)
        except SeatCaptureFailed as e:
            logger.error(f"session {booking.id}: payment approved but capture failed: {e.message}")
            await self._finish(booking, Phase.FAILED, FailureReason.HOLD_LOST)
            return booking

        captured = list(booking.held_seats)
        now = self._clock.now()
        order = Order(
            id=order_id,
            session_id=booking.id,
            flight_id=booking.flight_id,
            seats=tuple(self._catalog.get_seats(booking.flight_id, captured)),
            total_price=self._catalog.total_price(booking.flight_id, captured),
            created_at=now,
        )
        booking.order_id = order_id
        booking.enter(Phase.CONFIRMED, now)
        try:
            await self._store.save_with_order(booking, order)
        except Exception:
            logger.exception(f"session {booking.id}: recording order {order_id} failed, undoing the capture")
            try:
                await self._inventory.revert_capture(booking.flight_id, booking.id, captured, order_id,
                                                     self._payment_hold_ttl())
            except redis.RedisError as e:
                logger.error(f"session {booking.id}: could not revert seats sold to order {order_id}: {e}")
            # on a second failure the armed validation timer fails the session
            current = await self._store.load(booking.id)
            if current.pending_attempt is not None:
                self._tracker.record(current, current.pending_attempt, PaymentOutcome.APPROVED)
            await self._finish(current, Phase.FAILED, FailureReason.CONFIRMATION_FAILED)
            return current

        self._timers.cancel_session(booking.id)
        logger.info(f"session {booking.id}: confirmed as order {order_id}, total {order.total_price}")
        return booking

    async def _finish(self, booking: BookingSession, phase: Phase, reason: FailureReason) -> None:
        """Move to a terminal failure phase, then release the seats."""
        self._timers.cancel_session(booking.id)
        if booking.pending_attempt is not None:
            self._tracker.record(booking, booking.pending_attempt, PaymentOutcome.TIMED_OUT)
        released = list(booking.held_seats)
        booking.held_seats = []
        booking.failure_reason = reason
        booking.enter(phase, self._clock.now())
        await self._store.save(booking)
        logger.info(f"session {booking.id}: {phase.value} ({reason.value})")
        await self._compensate(booking.flight_id, booking.id, released)

    async def _compensate(self, flight_id: str, session_id: str, seat_ids: List[str]) -> bool:
        if not seat_ids:
            return True
        retries = self._settings.COMPENSATION_MAX_RETRIES
        for attempt in range(1, retries + 1):
            try:
                await self._inventory.release(flight_id, session_id, seat_ids)
                return True
            except redis.RedisError as e:
                logger.error(f"session {session_id}: releasing {seat_ids} failed (attempt {attempt}/{retries}): {e}")
                if attempt < retries:
                    await asyncio.sleep(self._settings.COMPENSATION_BACKOFF_SECONDS * 2 ** (attempt - 1))

        logger.error(f"session {session_id}: handing release of {seat_ids} to background retries")
        task = asyncio.create_task(self._compensate_until_done(flight_id, session_id, seat_ids))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return False

    async def _compensate_until_done(self, flight_id: str, session_id: str, seat_ids: List[str]) -> None:
        delay = self._settings.COMPENSATION_BACKOFF_SECONDS
        while True:
            await asyncio.sleep(delay)
            try:
                await self._inventory.release(flight_id, session_id, seat_ids)
            except redis.RedisError as e:
                logger.error(f"session {session_id}: background release of {seat_ids} failed: {e}")
                delay = min(delay * 2, 60.0)
                continue
            logger.info(f"session {session_id}: background release of {seat_ids} succeeded")
            return
