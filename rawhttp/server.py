"""
Accept loop and lifecycle controller.

    NEW --serve()--> RUNNING --signal--> SHUTTING_DOWN --workers joined--> STOPPED

While RUNNING the loop accepts connections on a raw listening socket and
hands each one to the dispatcher. A SIGINT/SIGTERM cancels the pending
accept, the listening socket is closed, the dispatcher stops taking work and
every connection already accepted is finished before serve() returns.
"""

import asyncio
import enum
import functools
import logging
import signal
import socket
from typing import Optional, Tuple

from .config import ServerConfig
from .connection import Connection, Service, handle_connection
from .dispatch import Dispatcher, make_dispatcher

try:
    import uvloop  # libuv-based event loop, faster than asyncio's default
except ImportError:
    uvloop = None

logger = logging.getLogger(__name__)


class ServerState(enum.Enum):
    NEW = "new"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Server:
    """
    Owns the listening socket, the dispatcher and the shutdown sequence.

    Args:
        config: listener, concurrency and lifecycle settings
        service: what decoded requests are dispatched to
    """

    def __init__(self, config: ServerConfig, service: Service):
        self.config = config
        self.service = service
        self.state = ServerState.NEW
        self.listener: Optional[socket.socket] = None
        self.dispatcher: Optional[Dispatcher] = None
        self._accept_task: Optional[asyncio.Future] = None
        self._signals = []

    # ========================================================================
    # STARTUP
    # ========================================================================

    def bind(self) -> Tuple[str, int]:
        """
        Create the listening socket. An OSError here is a startup failure.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        # Rebind right after a restart, while old connections sit in TIME_WAIT
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.config.host, self.config.port))
            # Clients beyond the busy workers and the hand-off slot wait here
            sock.listen(self.config.backlog)
            # Required by loop.sock_accept()
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise

        self.listener = sock
        logger.info(f"Listening on {self.config.host}:{self.address[1]}")
        return self.address

    @property
    def address(self) -> Tuple[str, int]:
        return self.listener.getsockname()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows loops and non-main threads cannot take signal handlers
                logger.warning(f"Cannot install handler for {sig.name}")

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        while self._signals:
            loop.remove_signal_handler(self._signals.pop())

    # ========================================================================
    # MAIN LOOP
    # ========================================================================

    async def serve(self) -> None:
        """Run until shutdown is requested and every accepted connection is done."""
        if self.listener is None:
            self.bind()

        loop = asyncio.get_running_loop()
        handle = functools.partial(
            handle_connection,
            service=self.service,
            buffer_size=self.config.recv_buffer_size,
        )
        self.dispatcher = make_dispatcher(self.config.dispatch, handle, self.config.workers)
        self.dispatcher.start()

        if self.config.handle_signals:
            self._install_signal_handlers(loop)

        self.state = ServerState.RUNNING
        logger.info(f"Starting the {self.service.name} ({self.config.dispatch.value} dispatch)...")

        try:
            await self._accept_loop(loop)
        finally:
            self.state = ServerState.SHUTTING_DOWN
            self._remove_signal_handlers(loop)
            self.listener.close()
            logger.info("Shutting down the server...")

            await self.dispatcher.close()
            await self.service.aclose()

            self.state = ServerState.STOPPED
            logger.info("Server stopped")

    async def _accept_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        while self.state is ServerState.RUNNING:
            self._accept_task = asyncio.ensure_future(loop.sock_accept(self.listener))
            try:
                client, address = await self._accept_task
            except asyncio.CancelledError:
                if self.state is ServerState.RUNNING:
                    raise
                break
            except OSError as e:
                if self.state is not ServerState.RUNNING:
                    break
                # retried immediately, without backoff
                logger.warning(f"failed to accept client! reason: {e}")
                continue
            finally:
                self._accept_task = None

            logger.debug(f"Accepted connection from {address}")
            await self.dispatcher.submit(Connection(client, address))

    def request_shutdown(self, sig: Optional[signal.Signals] = None) -> None:
        """
        Stop accepting connections. Safe to call more than once.

        This is what the SIGINT/SIGTERM handler runs.
        """
        if self.state is not ServerState.RUNNING:
            return

        if sig is not None:
            logger.info(f"Received signal {signal.Signals(sig).name}, shutting down...")
        else:
            logger.info("Shutdown requested")

        self.state = ServerState.SHUTTING_DOWN
        if self._accept_task is not None:
            self._accept_task.cancel()


def run(server: Server) -> None:
    """Run ``server`` to completion on uvloop when available, asyncio otherwise."""
    if server.config.use_uvloop and uvloop is not None:
        uvloop.run(server.serve())
    else:
        asyncio.run(server.serve())
