from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import declarative_base


Base = declarative_base()


class FlightRecord(Base):
    __tablename__ = "flights"
    id = Column(String, primary_key=True)
    flight_number = Column(String, nullable=False)
    departure = Column(String, nullable=False)
    arrival = Column(String, nullable=False)
    departure_time = Column(String, nullable=False)
    arrival_time = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    airline = Column(String, nullable=False)


class SeatRecord(Base):
    __tablename__ = "seats"
    id = Column(Integer, primary_key=True)
    flight_id = Column(String, ForeignKey("flights.id", ondelete="CASCADE"), nullable=False)
    seat_code = Column(String, nullable=False)
    seat_row = Column(Integer, nullable=False)
    seat_column = Column(String, nullable=False)
    seat_class = Column(String, default="economy", nullable=False)
    __table_args__ = (UniqueConstraint("flight_id", "seat_code", name="uix_flight_seat"),)


class BookingSessionRecord(Base):
    __tablename__ = "booking_sessions"
    id = Column(String, primary_key=True)
    flight_id = Column(String, ForeignKey("flights.id"), nullable=False)
    phase = Column(String, nullable=False, index=True)
    phase_entered_at = Column(DateTime(timezone=True), nullable=False)
    deadline = Column(DateTime(timezone=True), nullable=True)
    held_seats = Column(JSON, nullable=False, default=list)
    attempt_count = Column(Integer, nullable=False, default=0)
    attempts = Column(JSON, nullable=False, default=list)
    pending_attempt = Column(Integer, nullable=True)
    order_id = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class OrderRecord(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("booking_sessions.id"), unique=True, nullable=False)
    flight_id = Column(String, ForeignKey("flights.id"), nullable=False)
    seats = Column(JSON, nullable=False)  # [{"id", "row", "column", "seat_class", "price"}]
    total_price = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="confirmed")
    created_at = Column(DateTime(timezone=True), nullable=False)
