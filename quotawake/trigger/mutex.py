"""FIFO serialization of account mutations (switch / remove / import / revoke).

Each ``run()`` enqueues its operation and waits for it.  A single drain task
runs queued operations one at a time; an operation's exception is delivered to
its own caller and the queue moves on.  If the drain task itself is cancelled,
every queued caller is cancelled with it.  Not reentrant: awaiting ``run()`` from
inside a queued operation deadlocks.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AccountMutex:
    def __init__(self) -> None:
        self._queue: deque[tuple[str, Callable[[], Awaitable[Any]], asyncio.Future[Any]]] = deque()
        self._worker: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = "account operation") -> T:
        """Queue ``operation`` behind every previously queued one and return its result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._queue.append((name, operation, future))
        if not self.busy:
            self._worker = loop.create_task(self._drain())
            self._worker.add_done_callback(self._worker_done)
        return await future

    async def _drain(self) -> None:
        while self._queue:
            name, operation, future = self._queue.popleft()
            if future.cancelled():
                logger.debug("Skipping cancelled %s", name)
                continue
            try:
                result = await operation()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                task = asyncio.current_task()
                if task is not None and task.cancelling():
                    raise
                logger.warning("%s was cancelled", name)
            except BaseException as e:
                logger.warning("%s failed: %s", name, e)
                if not future.done():
                    future.set_exception(e)
                if not isinstance(e, Exception):
                    raise
            else:
                if not future.done():
                    future.set_result(result)

    def _worker_done(self, task: asyncio.Task[None]) -> None:
        if task is not self._worker or (not task.cancelled() and task.exception() is None):
            return
        while self._queue:
            name, _, future = self._queue.popleft()
            if not future.done():
                logger.debug("Cancelling queued %s", name)
                future.cancel()
