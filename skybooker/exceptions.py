"""Error taxonomy shared by the engine and the HTTP layer."""

from typing import Any, Dict, Iterable, Optional


class DomainError(Exception):
    """Base domain error with a stable code, message and status code."""

    code = "domain_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFoundError(DomainError):
    code = "not_found"
    status_code = 404


class FlightNotFound(NotFoundError):
    code = "flight_not_found"

    def __init__(self, flight_id: str):
        super().__init__(f"flight {flight_id} not found", {"flight_id": flight_id})


class SessionNotFound(NotFoundError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"session {session_id} not found", {"session_id": session_id})


class SeatNotFound(NotFoundError):
    code = "seat_not_found"

    def __init__(self, flight_id: str, seat_ids: Iterable[str]):
        seat_ids = sorted(seat_ids)
        super().__init__(
            f"unknown seats on flight {flight_id}: {', '.join(seat_ids)}",
            {"flight_id": flight_id, "seat_ids": seat_ids},
        )


class OrderNotFound(NotFoundError):
    code = "order_not_found"

    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} not found", {"order_id": order_id})


class SeatConflict(DomainError):
    code = "seat_conflict"
    status_code = 409

    def __init__(self, unavailable: Iterable[str]):
        self.unavailable = sorted(unavailable)
        super().__init__(
            f"seats not available: {', '.join(self.unavailable)}",
            {"unavailable": self.unavailable},
        )


class InvalidFormat(DomainError):
    code = "invalid_format"
    status_code = 422

    def __init__(self, code_length: int):
        super().__init__(
            f"payment code must be exactly {code_length} digits",
            {"code_length": code_length},
        )


class RetryBudgetExhausted(DomainError):
    code = "retry_budget_exhausted"
    status_code = 409

    def __init__(self, max_attempts: int):
        super().__init__(
            f"maximum payment attempts ({max_attempts}) exceeded",
            {"max_attempts": max_attempts},
        )


class SessionTerminal(DomainError):
    code = "session_terminal"
    status_code = 409

    def __init__(self, session_id: str, phase: str):
        super().__init__(
            f"session {session_id} is already {phase}",
            {"session_id": session_id, "phase": phase},
        )


class InvalidTransition(DomainError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, command: str, phase: str):
        super().__init__(
            f"cannot {command} while session is in {phase}",
            {"command": command, "phase": phase},
        )


class NoSeatsHeld(DomainError):
    code = "no_seats_held"
    status_code = 409

    def __init__(self, session_id: str):
        super().__init__("select at least one seat before continuing", {"session_id": session_id})


class PaymentInProgress(DomainError):
    code = "payment_in_progress"
    status_code = 409

    def __init__(self, attempt: int):
        super().__init__(f"payment attempt {attempt} is still being validated", {"attempt": attempt})


class SeatCaptureFailed(DomainError):
    code = "seat_capture_failed"
    status_code = 409

    def __init__(self, seat_ids: Iterable[str]):
        seat_ids = sorted(seat_ids)
        super().__init__(
            f"seats no longer held by this session: {', '.join(seat_ids)}",
            {"seat_ids": seat_ids},
        )


class StaleSession(DomainError):
    code = "stale_session"
    status_code = 409

    def __init__(self, session_id: str, version: int):
        super().__init__(
            f"session {session_id} was modified concurrently",
            {"session_id": session_id, "version": version},
        )


class GatewayError(Exception):
    """Raised by payment gateways when a code cannot be validated."""
