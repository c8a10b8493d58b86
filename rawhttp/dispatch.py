"""
Concurrency policies for accepted connections.

The accept loop only ever calls ``submit(conn)``; whether that lands in a
fixed worker pool or a fresh task per connection is decided here.
"""

import abc
import asyncio
import logging
from typing import Awaitable, Callable, List, Set

from .config import DispatchPolicy

logger = logging.getLogger(__name__)

Handle = Callable[[object], Awaitable[None]]

# Marker telling a worker to exit once the queue is closed.
_STOP = object()


class DispatcherClosed(RuntimeError):
    """submit() was called after close()."""


class Dispatcher(abc.ABC):
    """Hands connections to ``handle`` and waits for them on close()."""

    def __init__(self, handle: Handle):
        self.handle = handle
        self.closed = False

    def start(self) -> None:
        pass

    @abc.abstractmethod
    async def submit(self, conn) -> None:
        """Take ownership of ``conn``; may block while the policy is saturated."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Refuse further connections and wait until in-flight ones finish."""

    async def _run(self, conn) -> None:
        try:
            await self.handle(conn)
        except Exception as e:
            logger.error(f"Unhandled error in connection handler: {e}")


class WorkerPool(Dispatcher):
    """
    A fixed number of long-lived workers pulling from one shared queue.

    Each worker handles one connection at a time, so at most ``size``
    connections are in flight. The queue holds a single pending hand-off;
    when every worker is busy submit() blocks, and with it the accept loop.
    """

    def __init__(self, handle: Handle, size: int):
        super().__init__(handle)
        if size < 1:
            raise ValueError("worker pool needs at least one worker")
        self.size = size
        # One slot: put() waits for a free worker, so a saturated pool stalls
        # the accept loop and the OS backlog absorbs the rest
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self.workers: List[asyncio.Task] = []
        self.busy = 0

    def start(self) -> None:
        for worker_id in range(self.size):
            task = asyncio.ensure_future(self._worker(worker_id))
            self.workers.append(task)
        logger.info(f"Started {self.size} workers")

    @property
    def live_workers(self) -> int:
        return sum(1 for task in self.workers if not task.done())

    async def _worker(self, worker_id: int) -> None:
        while True:
            conn = await self.queue.get()
            if conn is _STOP:
                logger.debug(f"Worker {worker_id} exiting")
                return
            self.busy += 1
            try:
                await self._run(conn)
            finally:
                self.busy -= 1

    async def submit(self, conn) -> None:
        if self.closed:
            raise DispatcherClosed("worker pool is closed")
        await self.queue.put(conn)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # workers take stop markers only after draining queued connections
        for _ in self.workers:
            await self.queue.put(_STOP)
        await asyncio.gather(*self.workers)
        logger.info("All workers stopped")


class SpawnPerConnection(Dispatcher):
    """One independent task per connection, no upper bound."""

    def __init__(self, handle: Handle):
        super().__init__(handle)
        self.tasks: Set[asyncio.Task] = set()

    @property
    def busy(self) -> int:
        return len(self.tasks)

    async def submit(self, conn) -> None:
        if self.closed:
            raise DispatcherClosed("dispatcher is closed")
        task = asyncio.ensure_future(self._run(conn))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def close(self) -> None:
        self.closed = True
        if self.tasks:
            logger.info(f"Waiting for {len(self.tasks)} in-flight connections")
            await asyncio.gather(*list(self.tasks))


def make_dispatcher(policy: DispatchPolicy, handle: Handle, size: int) -> Dispatcher:
    if policy is DispatchPolicy.POOL:
        return WorkerPool(handle, size)
    return SpawnPerConnection(handle)
