"""Flight catalog: immutable flights and their seat layouts."""

from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .config import Settings
from .domain import Flight, Seat
from .exceptions import FlightNotFound, SeatNotFound
from .logger_config import logger


DEMO_FLIGHTS = [
    Flight(
        id="FL001",
        flight_number="SK-301",
        departure="New York (JFK)",
        arrival="London (LHR)",
        departure_time="14:30",
        arrival_time="02:45+1",
        price=599,
        airline="SkyBooker Airlines",
    ),
    Flight(
        id="FL002",
        flight_number="SK-425",
        departure="New York (JFK)",
        arrival="London (LHR)",
        departure_time="18:00",
        arrival_time="06:15+1",
        price=499,
        airline="SkyBooker Airlines",
    ),
]


def generate_seat_records(flight_id: str, settings: Settings) -> List[models.SeatRecord]:
    seats = []
    for row in range(1, settings.SEAT_ROWS + 1):
        for column in settings.SEAT_COLUMNS:
            seats.append(models.SeatRecord(
                flight_id=flight_id,
                seat_code=f"{row}{column}",
                seat_row=row,
                seat_column=column,
                seat_class=settings.seat_class_for_row(row),
            ))
    return seats


class FlightCatalog:
    """Read-mostly catalog loaded once from the database.

    Seat prices are derived from the seat class through the configured
    price table, never stored.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], settings: Settings):
        self._sessionmaker = sessionmaker
        self._settings = settings
        self._flights: Dict[str, Flight] = {}
        self._seats: Dict[str, Dict[str, Seat]] = {}

    async def seed_demo_data(self, flights: Optional[List[Flight]] = None) -> bool:
        """Insert the demo flights and seat maps if the catalog is empty."""
        flights = DEMO_FLIGHTS if flights is None else flights
        async with self._sessionmaker() as session:
            async with session.begin():
                existing = await session.scalar(select(func.count()).select_from(models.FlightRecord))
                if existing:
                    return False
                for flight in flights:
                    session.add(models.FlightRecord(
                        id=flight.id,
                        flight_number=flight.flight_number,
                        departure=flight.departure,
                        arrival=flight.arrival,
                        departure_time=flight.departure_time,
                        arrival_time=flight.arrival_time,
                        price=flight.price,
                        airline=flight.airline,
                    ))
                await session.flush()
                for flight in flights:
                    session.add_all(generate_seat_records(flight.id, self._settings))
        logger.info(f"seeded {len(flights)} demo flights")
        return True

    async def load(self) -> None:
        async with self._sessionmaker() as session:
            flight_rows = (await session.execute(
                select(models.FlightRecord).order_by(models.FlightRecord.id)
            )).scalars().all()
            seat_rows = (await session.execute(
                select(models.SeatRecord).order_by(models.SeatRecord.seat_row, models.SeatRecord.seat_column)
            )).scalars().all()

        self._flights = {
            f.id: Flight(
                id=f.id,
                flight_number=f.flight_number,
                departure=f.departure,
                arrival=f.arrival,
                departure_time=f.departure_time,
                arrival_time=f.arrival_time,
                price=f.price,
                airline=f.airline,
            )
            for f in flight_rows
        }
        self._seats = {flight_id: {} for flight_id in self._flights}
        for s in seat_rows:
            self._seats.setdefault(s.flight_id, {})[s.seat_code] = Seat(
                id=s.seat_code,
                flight_id=s.flight_id,
                row=s.seat_row,
                column=s.seat_column,
                seat_class=s.seat_class,
                price=self._settings.seat_price(s.seat_class),
            )
        logger.info(f"catalog loaded: {len(self._flights)} flights, {len(seat_rows)} seats")

    def list_flights(self) -> List[Flight]:
        return list(self._flights.values())

    def get_flight(self, flight_id: str) -> Flight:
        try:
            return self._flights[flight_id]
        except KeyError:
            raise FlightNotFound(flight_id) from None

    def seats(self, flight_id: str) -> List[Seat]:
        self.get_flight(flight_id)
        return list(self._seats.get(flight_id, {}).values())

    def get_seats(self, flight_id: str, seat_ids: List[str]) -> List[Seat]:
        """Resolve seat ids in request order; unknown ids raise SeatNotFound."""
        self.get_flight(flight_id)
        layout = self._seats.get(flight_id, {})
        missing = [seat_id for seat_id in seat_ids if seat_id not in layout]
        if missing:
            raise SeatNotFound(flight_id, missing)
        return [layout[seat_id] for seat_id in seat_ids]

    def total_price(self, flight_id: str, seat_ids: List[str]) -> int:
        flight = self.get_flight(flight_id)
        return flight.price + sum(seat.price for seat in self.get_seats(flight_id, seat_ids))
