"""Per-stream delivery queue.

Decouples the order in which the transport hands us publications from the
rate at which the consumer can process them. Entries are delivered strictly
FIFO, one at a time: the drain task awaits the consumer callback before
popping the next entry.

The capacity is a *soft* watermark. ``push`` never blocks and never rejects
an entry; the watermark is only consulted by the backpressure controller to
ask the producer to slow down.

Example:
    >>> queue = DeliveryQueue(on_tx, name="data", capacity=20000)
    >>> queue.push(tx)          # returns immediately
    >>> queue.size()            # entries waiting (excludes the one in flight)
    >>> await queue.close()     # stop draining, drop what is left
"""

import asyncio
from collections import deque
from typing import Any, Callable, Generic, TypeVar

from .telemetry import OTelLogger
from .utils import get_short_error_info, invoke_callback

T = TypeVar("T")


class DeliveryQueue(Generic[T]):
    """Unbounded FIFO with a soft capacity and an asyncio drain task.

    Args:
        consumer: Plain or coroutine function invoked once per entry.
        name: Used in log lines.
        capacity: Soft watermark reported by :meth:`capacity`.
        on_failure: Called with ``(entry, exception)`` when the consumer
            raises. The entry is discarded and draining continues.
        logger: Logger for drain diagnostics.

    All methods must be called from the thread running the event loop the
    drain task lives on.
    """

    def __init__(
        self,
        consumer: Callable[[T], Any],
        name: str,
        logger: OTelLogger,
        capacity: int = 20000,
        on_failure: Callable[[T, Exception], None] | None = None,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._consumer = consumer
        self._name = name
        self._capacity = capacity
        self._on_failure = on_failure
        self._logger = logger

        self._buffer: deque[T] = deque()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self._delivered = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def delivered(self) -> int:
        """Entries handed to the consumer so far, failed ones included."""
        return self._delivered

    def push(self, entry: T) -> None:
        """Append ``entry``; never blocks, never fails because of capacity."""
        if self._closed:
            self._logger.debug(f"Queue {self._name} closed, dropping entry")
            return
        self._buffer.append(entry)
        self._idle.clear()
        self._wakeup.set()
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(
                self._drain(), name=f"rxjunglebus-drain-{self._name}"
            )

    def size(self) -> int:
        """Entries waiting for delivery. O(1)."""
        return len(self._buffer)

    def capacity(self) -> int:
        return self._capacity

    def is_over_capacity(self) -> bool:
        return len(self._buffer) > self._capacity

    def clear(self) -> list[T]:
        """Drop every waiting entry and return them."""
        items = list(self._buffer)
        self._buffer.clear()
        return items

    async def join(self) -> None:
        """Wait until every entry pushed so far has been handed over."""
        if self._closed:
            return
        await self._idle.wait()

    async def close(self) -> None:
        """Stop the drain task and drop pending entries. Idempotent."""
        if self._closed:
            return
        self._closed = True
        dropped = self.clear()
        self._idle.set()
        if dropped:
            self._logger.warning(
                f"Queue {self._name} closed with {len(dropped)} undelivered entries"
            )
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _drain(self) -> None:
        while not self._closed:
            if not self._buffer:
                self._wakeup.clear()
                self._idle.set()
                await self._wakeup.wait()
                continue

            entry = self._buffer.popleft()
            self._delivered += 1
            try:
                await invoke_callback(self._consumer, entry)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(
                    f"Consumer failed on queue {self._name}: {get_short_error_info(e)}"
                )
                if self._on_failure is not None:
                    self._on_failure(entry, e)
