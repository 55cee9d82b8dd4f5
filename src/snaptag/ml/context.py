"""Consumer execution contexts.

Every owner-facing notification is handed to a ``ConsumerContext`` as a
message and runs on whichever single thread drains that context, never on
an inference worker.
"""

from __future__ import annotations

import queue
import threading
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable


class ConsumerContext(Protocol):
    """A serial context that runs callbacks in submission order."""

    def call_soon(self, callback: Callable[..., object], *args: object) -> None:
        """Schedule ``callback(*args)``. Safe to call from any thread."""
        ...


class EventLoopContext:
    """Runs callbacks on an asyncio event loop's thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def call_soon(self, callback: Callable[..., object], *args: object) -> None:
        self._loop.call_soon_threadsafe(callback, *args)


class SerialQueueContext:
    """A FIFO message channel drained by the thread that owns it.

    A UI-style main loop calls ``run_pending`` between frames, or hands its
    thread over entirely with ``run_until_closed``.
    """

    _CLOSE = object()

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue[tuple[object, tuple[object, ...]]] = queue.SimpleQueue()
        self._thread_id: int | None = None

    @property
    def thread_id(self) -> int | None:
        """Identifier of the thread that last drained this context."""
        return self._thread_id

    def call_soon(self, callback: Callable[..., object], *args: object) -> None:
        self._queue.put((callback, args))

    def run_pending(self, timeout: float | None = None) -> int:
        """Run queued callbacks on the calling thread.

        Args:
            timeout: If given, wait up to this many seconds for the first
                callback when the queue is empty.

        Returns:
            Number of callbacks run.
        """
        self._thread_id = threading.get_ident()
        ran = 0
        block = timeout is not None
        while True:
            try:
                callback, args = self._queue.get(block=block, timeout=timeout)
            except queue.Empty:
                return ran
            block = False
            if callback is self._CLOSE:
                # Leave the sentinel for run_until_closed.
                self._queue.put((callback, args))
                return ran
            callback(*args)  # type: ignore[operator]
            ran += 1

    def run_until_closed(self) -> None:
        """Run callbacks on the calling thread until ``close`` is called."""
        self._thread_id = threading.get_ident()
        while True:
            callback, args = self._queue.get()
            if callback is self._CLOSE:
                return
            callback(*args)  # type: ignore[operator]

    def close(self) -> None:
        self._queue.put((self._CLOSE, ()))
