import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable, List

from skybooker.clock import Clock


class RecordingPublisher:
    def __init__(self):
        self.events: List[dict] = []

    async def publish(self, event: dict) -> None:
        self.events.append(event)


class ScriptedGateway:
    """Answers from a fixed script, then keeps repeating the last answer."""

    def __init__(self, answers: Iterable[bool], latency: float = 0.0):
        self.answers: List[bool] = list(answers)
        if not self.answers:
            raise ValueError("ScriptedGateway needs at least one answer")
        self.latency = latency
        self.calls: List[str] = []

    async def authorize(self, code: str) -> bool:
        self.calls.append(code)
        if self.latency:
            await asyncio.sleep(self.latency)
        index = min(len(self.calls), len(self.answers)) - 1
        return self.answers[index]


class ShiftedClock(Clock):
    """Real time moved by a fixed offset."""

    def __init__(self, offset: timedelta = timedelta(0)):
        self.offset = offset

    def now(self) -> datetime:
        return datetime.now(timezone.utc) + self.offset
