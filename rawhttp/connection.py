"""
Connection handling: one accepted socket, one request, one response.
"""

import abc
import asyncio
import logging
import socket
import time
from typing import Optional, Tuple

from .errors import EndOfStream, MalformedRequest
from .protocol import Request, Response, read_request, write_response

logger = logging.getLogger(__name__)


class Connection:
    """
    An accepted client socket driven through the running event loop.

    Args:
        sock: the accepted socket; switched to non-blocking mode here
        address: peer address as returned by accept()
        timeout: optional deadline in seconds for each recv/send call
    """

    def __init__(self, sock: socket.socket, address: Tuple = ("", 0), timeout: Optional[float] = None):
        self.sock = sock
        self.address = address
        self.timeout = timeout
        self.loop = asyncio.get_running_loop()

        sock.setblocking(False)
        # Disable Nagle; the response head and body go out as separate sends
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass  # not a TCP socket

    @property
    def peer(self) -> str:
        if isinstance(self.address, tuple) and len(self.address) >= 2:
            return f"{self.address[0]}:{self.address[1]}"
        return str(self.address)

    async def recv(self, size: int) -> bytes:
        return await asyncio.wait_for(self.loop.sock_recv(self.sock, size), self.timeout)

    async def sendall(self, data: bytes) -> None:
        await asyncio.wait_for(self.loop.sock_sendall(self.sock, data), self.timeout)

    def close(self) -> None:
        self.sock.close()


class Service(abc.ABC):
    """What a connection dispatches its decoded request to."""

    name = "service"

    @abc.abstractmethod
    async def respond(self, request: Request) -> Response:
        """Build the response for a decoded request."""

    def reject(self, error: MalformedRequest) -> Optional[Response]:
        """Response for an undecodable request, or None to just hang up."""
        return None

    async def aclose(self) -> None:
        pass


async def handle_connection(conn, service: Service, buffer_size: int = 16 * 1024) -> None:
    """
    Decode one request, dispatch it, write the response, close the connection.

    The connection is closed unconditionally, whatever happens in between.
    """
    start_time = time.time()
    request = None
    response = None
    method, path = "-", "-"

    try:
        try:
            request = await read_request(conn, buffer_size)
        except EndOfStream:
            return
        except MalformedRequest as e:
            logger.warning(f"Malformed request from {_peer(conn)}: {e.reason}")
            response = service.reject(e)
            if response is None:
                return
        else:
            method, path = request.raw_method, request.raw_path
            response = await service.respond(request)

        size = await write_response(conn, response)
        duration_ms = (time.time() - start_time) * 1000
        logger.info(f"{method} {path} {response.status} {_format_size(size)} {duration_ms:.1f}ms")

    except Exception as e:
        logger.error(f"Error handling connection from {_peer(conn)}: {e}")
    finally:
        if response is not None:
            try:
                await response.aclose()
            except Exception as e:
                logger.warning(f"Failed to release response body: {e}")
        if request is not None:
            request.close()
        conn.close()


def _peer(conn) -> str:
    return getattr(conn, "peer", "unknown peer")


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    elif size < 1024 * 1024:
        return f"{size/1024:.1f}KB"
    return f"{size/(1024*1024):.1f}MB"
