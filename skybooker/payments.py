import asyncio
from typing import Optional

from .clock import Clock
from .domain import BookingSession, PaymentAttempt, PaymentOutcome
from .exceptions import GatewayError
from .gateway import PaymentGateway
from .logger_config import logger


class PaymentAttemptTracker:
    """Counts and records payment attempts for a session.

    Malformed codes are rejected before counting; only attempts actually
    dispatched to the gateway consume the retry budget. The attempt state
    lives on the session aggregate, so callers serialize through the
    session lock.
    """

    def __init__(self, gateway: PaymentGateway, clock: Clock, max_attempts: int = 3,
                 code_length: int = 5, call_timeout: Optional[float] = None):
        self.gateway = gateway
        self.max_attempts = max_attempts
        self.code_length = code_length
        self._clock = clock
        self._call_timeout = call_timeout

    def is_valid_code(self, code: str) -> bool:
        return isinstance(code, str) and len(code) == self.code_length and code.isascii() and code.isdigit()

    def attempts_remaining(self, session: BookingSession) -> int:
        return max(0, self.max_attempts - session.attempt_count)

    def is_exhausted(self, session: BookingSession) -> bool:
        return session.attempt_count >= self.max_attempts

    def prepare(self, session: BookingSession, code: str) -> Optional[PaymentOutcome]:
        """Count a new attempt, or return the outcome that prevents one."""
        if not self.is_valid_code(code):
            return PaymentOutcome.INVALID_FORMAT
        if self.is_exhausted(session):
            return PaymentOutcome.EXHAUSTED
        session.attempt_count += 1
        session.pending_attempt = session.attempt_count
        return None

    async def dispatch(self, code: str) -> PaymentOutcome:
        try:
            if self._call_timeout:
                approved = await asyncio.wait_for(self.gateway.authorize(code), self._call_timeout)
            else:
                approved = await self.gateway.authorize(code)
        except asyncio.TimeoutError:
            logger.warning(f"payment gateway did not answer within {self._call_timeout}s, treating as declined")
            return PaymentOutcome.DECLINED
        except GatewayError as e:
            logger.warning(f"payment gateway error, treating as declined: {e}")
            return PaymentOutcome.DECLINED
        return PaymentOutcome.APPROVED if approved else PaymentOutcome.DECLINED

    def record(self, session: BookingSession, attempt: int, outcome: PaymentOutcome) -> PaymentAttempt:
        entry = PaymentAttempt(attempt=attempt, outcome=outcome, timestamp=self._clock.now())
        session.attempts.append(entry)
        if session.pending_attempt == attempt:
            session.pending_attempt = None
        return entry

    async def attempt(self, session: BookingSession, code: str) -> PaymentOutcome:
        rejected = self.prepare(session, code)
        if rejected is not None:
            return rejected
        number = session.pending_attempt
        outcome = await self.dispatch(code)
        self.record(session, number, outcome)
        return outcome
