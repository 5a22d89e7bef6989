"""
Result events and the per-request listener registry.

A ResultEvent is emitted by the cluster's callback once a computation
completes. The event bus delivers each event at least once; the registry
turns that into exactly-once delivery per request offset:

- register(offset) before the request is submitted
- deliver(event) routes by offset; the first delivery wins, repeats are dropped
- release(offset) once the result is observed or the wait times out;
  later deliveries for that offset are ignored

All methods must be called from the event loop thread.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResultEvent:
    """
    Completion event for one computation.

    Attributes:
        name: Event channel name (e.g. "SpinEvent")
        computation_offset: Offset of the request that produced it
        ciphertext: Encrypted result block
        nonce: Nonce the result was encrypted under
    """
    name: str
    computation_offset: int
    ciphertext: bytes
    nonce: bytes


class PendingResult:
    """Awaitable slot for one request's result event."""

    def __init__(self, offset: int, loop: asyncio.AbstractEventLoop):
        self.offset = offset
        self.future: asyncio.Future = loop.create_future()
        self.deliveries = 0

    def resolve(self, event: ResultEvent) -> bool:
        """Set the result. Returns False for a duplicate delivery."""
        self.deliveries += 1
        if self.future.done():
            return False
        self.future.set_result(event)
        return True

    async def wait(self, timeout: Optional[float] = None) -> ResultEvent:
        return await asyncio.wait_for(asyncio.shield(self.future), timeout)


class ListenerRegistry:
    """Concurrent registry of pending results keyed by request offset."""

    def __init__(self) -> None:
        self._pending: dict[int, PendingResult] = {}
        self.ignored = 0
        self.duplicates = 0

    def register(self, offset: int) -> PendingResult:
        """
        Register interest in the event for offset.

        Raises:
            ValueError: If offset is already outstanding
        """
        if offset in self._pending:
            raise ValueError(f"Offset {offset} already has a registered listener")
        pending = PendingResult(offset, asyncio.get_running_loop())
        self._pending[offset] = pending
        return pending

    def deliver(self, event: ResultEvent) -> None:
        pending = self._pending.get(event.computation_offset)
        if pending is None:
            self.ignored += 1
            logger.debug(f"Ignoring {event.name} for unregistered offset {event.computation_offset}")
            return
        if not pending.resolve(event):
            self.duplicates += 1
            logger.debug(f"Dropping duplicate {event.name} for offset {event.computation_offset}")

    def release(self, offset: int) -> None:
        pending = self._pending.pop(offset, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    def is_registered(self, offset: int) -> bool:
        return offset in self._pending

    def __len__(self) -> int:
        return len(self._pending)
