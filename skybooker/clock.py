"""Wall-clock access and per-session timeout scheduling."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from .logger_config import logger


TimeoutHandler = Callable[[str, datetime], Awaitable[None]]


class Clock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


MAX_RETRY_DELAY = 60.0


@dataclass(eq=False)
class TimerHandle:
    session_id: str
    deadline: datetime
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    failures: int = 0

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()


class TimerService:
    """Schedules one timeout per session.

    When a timer elapses the handler is called with the session id and the
    deadline the timer was armed for, so the receiver can tell a current
    timer from a superseded one. If the handler raises, the same deadline
    is delivered again after ``retry_delay`` seconds (doubling each time)
    unless the session has been re-armed or cancelled meanwhile.
    """

    def __init__(self, clock: Clock, handler: Optional[TimeoutHandler] = None, retry_delay: float = 1.0):
        self._clock = clock
        self._handler = handler
        self._retry_delay = retry_delay
        self._timers: Dict[str, TimerHandle] = {}

    def set_handler(self, handler: TimeoutHandler) -> None:
        self._handler = handler

    def arm(self, session_id: str, deadline: datetime) -> TimerHandle:
        self.cancel_session(session_id)
        handle = TimerHandle(session_id=session_id, deadline=deadline)
        handle.task = asyncio.get_running_loop().create_task(self._fire(handle))
        self._timers[session_id] = handle
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
        if self._timers.get(handle.session_id) is handle:
            del self._timers[handle.session_id]

    def cancel_session(self, session_id: str) -> None:
        handle = self._timers.get(session_id)
        if handle is not None:
            self.cancel(handle)

    def get(self, session_id: str) -> Optional[TimerHandle]:
        return self._timers.get(session_id)

    def active_count(self) -> int:
        return sum(1 for handle in self._timers.values() if handle.active)

    async def shutdown(self) -> None:
        handles = list(self._timers.values())
        for handle in handles:
            self.cancel(handle)
        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _retry(self, failed: TimerHandle) -> None:
        if failed.session_id in self._timers:
            return
        handle = TimerHandle(session_id=failed.session_id, deadline=failed.deadline, failures=failed.failures + 1)
        delay = min(self._retry_delay * 2 ** (handle.failures - 1), MAX_RETRY_DELAY)
        logger.warning(f"retrying timeout for session {handle.session_id} in {delay:.2f}s (failure {handle.failures})")
        handle.task = asyncio.get_running_loop().create_task(self._fire(handle, delay))
        self._timers[handle.session_id] = handle

    async def _fire(self, handle: TimerHandle, delay: Optional[float] = None) -> None:
        if delay is None:
            delay = (handle.deadline - self._clock.now()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        # the handler may re-arm this session, so drop the entry first
        if self._timers.get(handle.session_id) is handle:
            del self._timers[handle.session_id]
        if self._handler is None:
            logger.warning(f"timer for session {handle.session_id} fired with no handler")
            return
        try:
            await self._handler(handle.session_id, handle.deadline)
        except Exception:
            logger.exception(f"timeout handling failed for session {handle.session_id}")
            self._retry(handle)
