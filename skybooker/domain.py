from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple


class Phase(str, Enum):
    CREATED = "created"
    SEAT_HOLD = "seat_hold"
    REVIEW = "review"
    PAYMENT = "payment"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({Phase.CONFIRMED, Phase.FAILED, Phase.EXPIRED})


class FailureReason(str, Enum):
    SEAT_HOLD_TIMEOUT = "seat_hold_timeout"
    REVIEW_TIMEOUT = "review_timeout"
    PAYMENT_TIMEOUT = "payment_timeout"
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"
    HOLD_LOST = "hold_lost"
    CANCELLED = "cancelled"
    CONFIRMATION_FAILED = "confirmation_failed"


FAILURE_EXPLANATIONS = {
    FailureReason.SEAT_HOLD_TIMEOUT: "Your seat reservation timed out before the seats were confirmed.",
    FailureReason.REVIEW_TIMEOUT: "The order review window closed before the order was confirmed.",
    FailureReason.PAYMENT_TIMEOUT: "The payment code was not validated within the time limit.",
    FailureReason.RETRY_BUDGET_EXHAUSTED: "Maximum payment attempts exceeded. The order has been cancelled.",
    FailureReason.HOLD_LOST: "Your seats were released before payment completed.",
    FailureReason.CANCELLED: "The booking was cancelled.",
    FailureReason.CONFIRMATION_FAILED: "The payment was approved but the order could not be recorded. Your seats were released.",
}


class PaymentOutcome(str, Enum):
    APPROVED = "approved"
    DECLINED = "declined"
    INVALID_FORMAT = "invalid_format"
    EXHAUSTED = "exhausted"
    TIMED_OUT = "timed_out"


class SeatStatus(str, Enum):
    FREE = "free"
    HELD = "held"
    SOLD = "sold"


@dataclass(frozen=True)
class Flight:
    id: str
    flight_number: str
    departure: str
    arrival: str
    departure_time: str
    arrival_time: str
    price: int
    airline: str


@dataclass(frozen=True)
class Seat:
    id: str
    flight_id: str
    row: int
    column: str
    seat_class: str
    price: int


@dataclass(frozen=True)
class SeatState:
    seat: Seat
    status: SeatStatus
    holder: Optional[str] = None


@dataclass(frozen=True)
class HoldResult:
    held: Tuple[str, ...] = ()
    unavailable: Tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return not self.unavailable


@dataclass
class PaymentAttempt:
    attempt: int
    outcome: PaymentOutcome
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentAttempt":
        return cls(
            attempt=data["attempt"],
            outcome=PaymentOutcome(data["outcome"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class BookingSession:
    """The aggregate owned by the booking engine.

    ``deadline`` is absolute; remaining time is always derived from it.
    ``pending_attempt`` is set while a payment code is out at the gateway.
    """

    id: str
    flight_id: str
    phase: Phase
    phase_entered_at: datetime
    created_at: datetime
    deadline: Optional[datetime] = None
    held_seats: List[str] = field(default_factory=list)
    attempt_count: int = 0
    attempts: List[PaymentAttempt] = field(default_factory=list)
    pending_attempt: Optional[int] = None
    order_id: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def enter(self, phase: Phase, now: datetime, deadline: Optional[datetime] = None) -> None:
        self.phase = phase
        self.phase_entered_at = now
        self.deadline = deadline

    def remaining_seconds(self, now: datetime) -> Optional[float]:
        if self.deadline is None or self.is_terminal:
            return None
        return max(0.0, (self.deadline - now).total_seconds())


@dataclass(frozen=True)
class Order:
    id: str
    session_id: str
    flight_id: str
    seats: Tuple[Seat, ...]
    total_price: int
    created_at: datetime
