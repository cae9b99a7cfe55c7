"""Durable storage for booking sessions and confirmed orders."""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .domain import TERMINAL_PHASES, BookingSession, FailureReason, Order, PaymentAttempt, Phase, Seat
from .exceptions import OrderNotFound, SessionNotFound, StaleSession


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # some drivers (sqlite) hand back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_domain(row: models.BookingSessionRecord) -> BookingSession:
    return BookingSession(
        id=row.id,
        flight_id=row.flight_id,
        phase=Phase(row.phase),
        phase_entered_at=_aware(row.phase_entered_at),
        created_at=_aware(row.created_at),
        deadline=_aware(row.deadline),
        held_seats=list(row.held_seats or []),
        attempt_count=row.attempt_count,
        attempts=[PaymentAttempt.from_dict(a) for a in row.attempts or []],
        pending_attempt=row.pending_attempt,
        order_id=row.order_id,
        failure_reason=FailureReason(row.failure_reason) if row.failure_reason else None,
        version=row.version,
    )


def _columns(booking: BookingSession) -> dict:
    return {
        "flight_id": booking.flight_id,
        "phase": booking.phase.value,
        "phase_entered_at": booking.phase_entered_at,
        "deadline": booking.deadline,
        "held_seats": list(booking.held_seats),
        "attempt_count": booking.attempt_count,
        "attempts": [a.to_dict() for a in booking.attempts],
        "pending_attempt": booking.pending_attempt,
        "order_id": booking.order_id,
        "failure_reason": booking.failure_reason.value if booking.failure_reason else None,
        "created_at": booking.created_at,
    }


def _order_to_domain(row: models.OrderRecord) -> Order:
    return Order(
        id=row.id,
        session_id=row.session_id,
        flight_id=row.flight_id,
        seats=tuple(
            Seat(id=s["id"], flight_id=row.flight_id, row=s["row"], column=s["column"],
                 seat_class=s["seat_class"], price=s["price"])
            for s in row.seats
        ),
        total_price=row.total_price,
        created_at=_aware(row.created_at),
    )


class SessionStore:
    """Keyed session snapshots with optimistic versioning.

    Every save is a single transaction that only succeeds if the stored
    version still matches the version the caller loaded.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def get(self, session_id: str) -> Optional[BookingSession]:
        async with self._sessionmaker() as session:
            row = await session.get(models.BookingSessionRecord, session_id)
            return _to_domain(row) if row is not None else None

    async def load(self, session_id: str) -> BookingSession:
        booking = await self.get(session_id)
        if booking is None:
            raise SessionNotFound(session_id)
        return booking

    async def _write(self, session: AsyncSession, booking: BookingSession) -> None:
        if booking.version == 0:
            session.add(models.BookingSessionRecord(id=booking.id, version=1, **_columns(booking)))
            try:
                await session.flush()
            except IntegrityError:
                raise StaleSession(booking.id, booking.version) from None
            return

        result = await session.execute(
            update(models.BookingSessionRecord)
            .where(
                models.BookingSessionRecord.id == booking.id,
                models.BookingSessionRecord.version == booking.version,
            )
            .values(version=booking.version + 1, **_columns(booking))
        )
        if result.rowcount != 1:
            raise StaleSession(booking.id, booking.version)

    async def save(self, booking: BookingSession) -> BookingSession:
        async with self._sessionmaker() as session:
            async with session.begin():
                await self._write(session, booking)
        booking.version += 1
        return booking

    async def save_with_order(self, booking: BookingSession, order: Order) -> BookingSession:
        async with self._sessionmaker() as session:
            async with session.begin():
                await self._write(session, booking)
                session.add(models.OrderRecord(
                    id=order.id,
                    session_id=order.session_id,
                    flight_id=order.flight_id,
                    seats=[
                        {"id": s.id, "row": s.row, "column": s.column, "seat_class": s.seat_class, "price": s.price}
                        for s in order.seats
                    ],
                    total_price=order.total_price,
                    status="confirmed",
                    created_at=order.created_at,
                ))
        booking.version += 1
        return booking

    async def delete(self, session_id: str) -> None:
        async with self._sessionmaker() as session:
            async with session.begin():
                await session.execute(
                    delete(models.BookingSessionRecord).where(models.BookingSessionRecord.id == session_id)
                )

    async def list_active(self) -> List[BookingSession]:
        terminal = [p.value for p in TERMINAL_PHASES]
        async with self._sessionmaker() as session:
            rows = (await session.execute(
                select(models.BookingSessionRecord).where(models.BookingSessionRecord.phase.not_in(terminal))
            )).scalars().all()
            return [_to_domain(row) for row in rows]

    async def load_order(self, order_id: str) -> Order:
        async with self._sessionmaker() as session:
            row = await session.get(models.OrderRecord, order_id)
            if row is None:
                raise OrderNotFound(order_id)
            return _order_to_domain(row)
