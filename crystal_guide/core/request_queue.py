"""
Serialized dispatch of provider calls.

A single worker task consumes queued calls in FIFO order, so at most one
call is in flight at any time, with a short pause between calls to avoid
bursts against a rate-limited endpoint.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

Thunk = Callable[[], Awaitable[Any]]


class RequestQueue:
    """Single-consumer FIFO queue of deferred calls."""

    def __init__(self, pause: float = 0.1):
        """Initialize the queue.

        Args:
            pause: Seconds to wait after each call before starting the next
        """
        self.pause = pause
        self._queue: "asyncio.Queue[Tuple[Thunk, asyncio.Future]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        """Number of queued calls not yet started."""
        return self._queue.qsize()

    async def enqueue(self, thunk: Thunk) -> Any:
        """Queue ``thunk`` and wait for its result.

        The returned value (or raised exception) is the thunk's own. If the
        caller stops waiting, the thunk still runs to completion.
        """
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((thunk, future))
        self._ensure_worker()
        return await future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            thunk, future = await self._queue.get()
            try:
                result = await thunk()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.error("Queued call failed: %s", e)
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

            await asyncio.sleep(self.pause)

    async def aclose(self) -> None:
        """Stop the worker. Calls still queued are cancelled."""
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()
            self._queue.task_done()
