"""
Timeout Guard

Races a pending awaitable against a deadline. The guard only abandons the
*wait*: the underlying operation keeps running and is never cancelled.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Optional

logger = logging.getLogger(__name__)


@dataclass
class RaceOutcome:
    """Result of TimeoutGuard.race"""
    timed_out: bool
    value: Any = None


def _retrieve_abandoned(future: asyncio.Future):
    # Marks a late failure as retrieved
    if not future.cancelled() and future.exception() is not None:
        logger.debug(f"Abandoned operation failed: {future.exception()}")


class TimeoutGuard:
    """Deadline for a single wait"""

    def __init__(self, duration_ms: int, label: str = "operation"):
        self.duration_ms = duration_ms
        self.label = label
        self.fired = False
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        """True while the deadline timer is armed"""
        return self._timer is not None

    def cancel(self):
        """Clear the deadline timer"""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def race(self, operation: Awaitable) -> RaceOutcome:
        """Wait for operation or the deadline, whichever comes first

        Re-raises the operation's own exception if it fails before the deadline.
        """
        loop = asyncio.get_running_loop()
        op_future = asyncio.ensure_future(operation)
        deadline = loop.create_future()

        def on_deadline():
            self._timer = None
            self.fired = True
            if not deadline.done():
                deadline.set_result(None)

        self.fired = False
        self._timer = loop.call_later(self.duration_ms / 1000, on_deadline)

        try:
            await asyncio.wait({op_future, deadline}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.cancel()
            if not deadline.done():
                deadline.cancel()

        if op_future.done():
            return RaceOutcome(timed_out=False, value=op_future.result())

        logger.warning(f"[TimeoutGuard] {self.label} exceeded {self.duration_ms}ms")
        op_future.add_done_callback(_retrieve_abandoned)
        return RaceOutcome(timed_out=True)
