"""Payment gateways.

Anything with an ``authorize(code)`` coroutine returning True (approved) or
False (declined) can be plugged into the payment tracker. Gateways raise
``GatewayError`` when they cannot give an answer.
"""

import asyncio
import random
from typing import Optional, Protocol

from .logger_config import logger


class PaymentGateway(Protocol):
    async def authorize(self, code: str) -> bool: ...


class SimulatedGateway:
    """Approves codes after a fixed delay, declining a configurable share."""

    def __init__(self, latency: float = 2.0, failure_rate: float = 0.15, rng: Optional[random.Random] = None):
        self.latency = latency
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()

    async def authorize(self, code: str) -> bool:
        await asyncio.sleep(self.latency)
        approved = self._rng.random() >= self.failure_rate
        logger.debug(f"simulated gateway {'approved' if approved else 'declined'} a code")
        return approved
