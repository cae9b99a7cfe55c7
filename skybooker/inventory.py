"""Seat inventory kept in Redis, one key per seat.

A seat key is absent while the seat is free, ``hold:<session id>`` (with a
TTL) while held, and ``sold:<order id>`` once captured. Every mutation is a
WATCH/MULTI compare-and-set over exactly the seat keys it touches, so two
sessions can never both hold a seat and unrelated bookings never serialize
on each other.
"""

import random
from typing import Iterable, List, Optional, Sequence, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError

from .catalog import FlightCatalog
from .domain import HoldResult, Seat, SeatState, SeatStatus
from .events import EventPublisher
from .exceptions import SeatCaptureFailed
from .logger_config import logger


HOLD_PREFIX = "hold:"
SOLD_PREFIX = "sold:"


def _unique(seat_ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(seat_ids))


def _ttl_ms(ttl: float) -> int:
    return max(1, int(ttl * 1000))


class SeatInventory:
    def __init__(self, redis_client: redis.Redis, catalog: FlightCatalog,
                 events: Optional[EventPublisher] = None, key_prefix: str = ""):
        self._redis = redis_client
        self._catalog = catalog
        self._events = events
        self._prefix = key_prefix

    def _key(self, flight_id: str, seat_id: str) -> str:
        return f"{self._prefix}seat:{flight_id}:{seat_id}"

    @staticmethod
    def _hold_value(session_id: str) -> str:
        return f"{HOLD_PREFIX}{session_id}"

    async def _publish(self, event_type: str, flight_id: str, seat_ids: Sequence[str], **extra) -> None:
        if self._events is not None and seat_ids:
            await self._events.publish({"type": event_type, "flight_id": flight_id, "seats": list(seat_ids), **extra})

    async def _read(self, flight_id: str) -> List[Tuple[Seat, Optional[str]]]:
        seats = self._catalog.seats(flight_id)
        if not seats:
            return []
        values = await self._redis.mget([self._key(flight_id, s.id) for s in seats])
        return list(zip(seats, values))

    async def seat_map(self, flight_id: str) -> List[SeatState]:
        states = []
        for seat, value in await self._read(flight_id):
            if value is None:
                states.append(SeatState(seat=seat, status=SeatStatus.FREE))
            elif value.startswith(HOLD_PREFIX):
                states.append(SeatState(seat=seat, status=SeatStatus.HELD, holder=value[len(HOLD_PREFIX):]))
            else:
                states.append(SeatState(seat=seat, status=SeatStatus.SOLD, holder=value[len(SOLD_PREFIX):]))
        return states

    async def list_available(self, flight_id: str) -> List[Seat]:
        return [seat for seat, value in await self._read(flight_id) if value is None]

    async def held_by(self, flight_id: str, session_id: str) -> List[str]:
        mine = self._hold_value(session_id)
        return [seat.id for seat, value in await self._read(flight_id) if value == mine]

    async def hold(self, flight_id: str, seat_ids: Iterable[str], session_id: str, ttl: float) -> HoldResult:
        """Hold every requested seat for the session, or none of them.

        Seats already held by the same session count as available and get
        their expiry refreshed.
        """
        seat_ids = _unique(seat_ids)
        self._catalog.get_seats(flight_id, seat_ids)
        if not seat_ids:
            return HoldResult()

        mine = self._hold_value(session_id)
        keys = [self._key(flight_id, seat_id) for seat_id in seat_ids]
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*keys)
                    values = await pipe.mget(keys)
                    unavailable = [s for s, v in zip(seat_ids, values) if v is not None and v != mine]
                    if unavailable:
                        await pipe.unwatch()
                        logger.info(f"session {session_id} hold conflict on {flight_id}: {unavailable}")
                        return HoldResult(unavailable=tuple(unavailable))
                    pipe.multi()
                    for key in keys:
                        pipe.set(key, mine, px=_ttl_ms(ttl))
                    await pipe.execute()
                    break
                except WatchError:
                    logger.debug(f"hold contention on {flight_id} {seat_ids}, retrying")
                    continue

        await self._publish("seat_held", flight_id, seat_ids, holder=session_id)
        return HoldResult(held=tuple(seat_ids))

    async def release(self, flight_id: str, session_id: str, seat_ids: Iterable[str]) -> List[str]:
        """Free the seats this session holds; anything else is left alone."""
        seat_ids = _unique(seat_ids)
        if not seat_ids:
            return []

        mine = self._hold_value(session_id)
        keys = [self._key(flight_id, seat_id) for seat_id in seat_ids]
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*keys)
                    values = await pipe.mget(keys)
                    owned = [(s, k) for s, k, v in zip(seat_ids, keys, values) if v == mine]
                    if not owned:
                        await pipe.unwatch()
                        return []
                    pipe.multi()
                    for _, key in owned:
                        pipe.delete(key)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        released = [s for s, _ in owned]
        await self._publish("seat_released", flight_id, released)
        return released

    async def capture(self, flight_id: str, session_id: str, seat_ids: Iterable[str], order_id: str) -> List[str]:
        seat_ids = _unique(seat_ids)
        mine = self._hold_value(session_id)
        keys = [self._key(flight_id, seat_id) for seat_id in seat_ids]
        if not keys:
            raise SeatCaptureFailed([])
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*keys)
                    values = await pipe.mget(keys)
                    lost = [s for s, v in zip(seat_ids, values) if v != mine]
                    if lost:
                        await pipe.unwatch()
                        raise SeatCaptureFailed(lost)
                    pipe.multi()
                    for key in keys:
                        pipe.set(key, f"{SOLD_PREFIX}{order_id}")
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        await self._publish("seat_sold", flight_id, seat_ids, order_id=order_id)
        return seat_ids

    async def revert_capture(self, flight_id: str, session_id: str, seat_ids: Iterable[str],
                             order_id: str, ttl: float) -> List[str]:
        """Turn seats sold to an unrecorded order back into holds of the session."""
        seat_ids = _unique(seat_ids)
        sold = f"{SOLD_PREFIX}{order_id}"
        keys = [self._key(flight_id, seat_id) for seat_id in seat_ids]
        if not keys:
            return []
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*keys)
                    values = await pipe.mget(keys)
                    reverted = [(s, k) for s, k, v in zip(seat_ids, keys, values) if v == sold]
                    if not reverted:
                        await pipe.unwatch()
                        return []
                    pipe.multi()
                    for _, key in reverted:
                        pipe.set(key, self._hold_value(session_id), px=_ttl_ms(ttl))
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        logger.warning(f"order {order_id} reverted: {[s for s, _ in reverted]} held by {session_id} again")
        return [s for s, _ in reverted]

    async def refresh(self, flight_id: str, session_id: str, seat_ids: Iterable[str], ttl: float) -> List[str]:
        """Extend the expiry of held seats; returns the seats that are no longer held."""
        seat_ids = _unique(seat_ids)
        if not seat_ids:
            return []

        mine = self._hold_value(session_id)
        keys = [self._key(flight_id, seat_id) for seat_id in seat_ids]
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*keys)
                    values = await pipe.mget(keys)
                    lost = [s for s, v in zip(seat_ids, values) if v != mine]
                    pipe.multi()
                    for key, value in zip(keys, values):
                        if value == mine:
                            pipe.pexpire(key, _ttl_ms(ttl))
                    await pipe.execute()
                    return lost
                except WatchError:
                    continue

    async def seed_occupancy(self, flight_id: str, rate: float, seed: int) -> int:
        """Mark a random share of seats as sold to pre-existing bookings."""
        rng = random.Random(f"{seed}:{flight_id}")
        taken = 0
        for seat in self._catalog.seats(flight_id):
            if rng.random() < rate:
                if await self._redis.set(self._key(flight_id, seat.id), f"{SOLD_PREFIX}preassigned", nx=True):
                    taken += 1
        return taken
