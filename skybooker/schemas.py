from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .domain import FailureReason, PaymentOutcome, Phase, SeatStatus


class FlightOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    flight_number: str
    departure: str
    arrival: str
    departure_time: str
    arrival_time: str
    price: int
    airline: str


class SeatOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    row: int
    column: str
    seat_class: str
    price: int


class SeatMapEntry(SeatOut):
    status: SeatStatus
    is_available: bool


class AttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attempt: int
    outcome: PaymentOutcome
    timestamp: datetime


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: str
    flight: FlightOut
    phase: Phase
    phase_entered_at: datetime
    deadline: Optional[datetime]
    remaining_seconds: Optional[float]
    held_seats: List[SeatOut]
    seat_total: int
    total_price: int
    attempt_count: int
    max_attempts: int
    attempts_remaining: int
    attempts: List[AttemptOut]
    payment_pending: bool
    order_id: Optional[str]
    failure_reason: Optional[FailureReason]
    failure_message: Optional[str]


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    outcome: PaymentOutcome
    session: SessionOut


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    flight_id: str
    seats: List[SeatOut]
    total_price: int
    created_at: datetime


class CreateSessionIn(BaseModel):
    flight_id: str


class SeatsIn(BaseModel):
    seat_ids: List[str] = Field(min_length=1)


class PaymentIn(BaseModel):
    # format is checked by the engine so malformed codes map to invalid_format
    code: str


class ErrorOut(BaseModel):
    error: str
    message: str
    details: dict = {}
