"""
HTTP/1.1 codec working directly on a connection.

Decoding feeds raw bytes to the httptools parser and collects its callbacks
into an immutable Request. Encoding writes a status line, headers and body
back on the same connection. Neither side closes the connection.
"""

import enum
import tempfile
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import AsyncIterator, Awaitable, BinaryIO, Callable, List, Optional, Tuple, Union
from urllib.parse import unquote

import httptools
import httpx

from .config import MAX_FORM_MEMORY
from .errors import DEFAULT_VERSION, EndOfStream, MalformedRequest


# ============================================================================
# DATA MODEL
# ============================================================================

class Method(enum.Enum):
    GET = "GET"
    POST = "POST"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, raw: str) -> "Method":
        if raw == "GET":
            return cls.GET
        if raw == "POST":
            return cls.POST
        return cls.OTHER


@dataclass(frozen=True)
class Request:
    """
    One parsed request.

    ``raw_path`` is the path exactly as sent (no query string), ``path`` is
    the same path URL-decoded. ``body`` is a spooled temporary file holding
    the request body, or None when the request had none.
    """

    method: Method
    raw_method: str
    target: str
    path: str
    raw_path: str
    version: str
    headers: httpx.Headers
    body: Optional[BinaryIO] = None

    @property
    def host(self) -> str:
        return self.headers.get("host", "")

    def close(self) -> None:
        if self.body is not None:
            self.body.close()


Body = Union[bytes, AsyncIterator[bytes]]


@dataclass
class Response:
    """
    A response waiting to be written.

    ``body`` is either bytes or an async iterator of chunks. ``length`` is
    the size of a streamed body when it is known up front. ``closer``
    releases whatever the streamed body reads from (an open file, an
    upstream response).
    """

    status: int
    version: str = DEFAULT_VERSION
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: Body = b""
    reason: Optional[str] = None
    length: Optional[int] = None
    closer: Optional[Callable[[], Awaitable[None]]] = None

    @classmethod
    def text(cls, status: int, version: str = DEFAULT_VERSION, message: Optional[str] = None) -> "Response":
        """Plain text response; the body defaults to the status text plus a newline."""
        if message is None:
            message = reason_phrase(status) + "\n"
        return cls(
            status=status,
            version=version,
            headers=httpx.Headers({"Content-Type": "text/plain"}),
            body=message.encode("utf-8"),
        )

    async def aclose(self) -> None:
        if self.closer is not None:
            closer, self.closer = self.closer, None
            await closer()


def reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Unknown"


# ============================================================================
# DECODING
# ============================================================================

class _RequestCollector:
    """Target for the httptools parser callbacks of a single request."""

    def __init__(self, memory_limit: int):
        self.url = b""
        self.headers: List[Tuple[bytes, bytes]] = []
        self.body: Optional[BinaryIO] = None
        self.headers_complete = False
        self.message_complete = False
        self._memory_limit = memory_limit

    # httptools may hand the URL over in several pieces
    def on_url(self, url: bytes):
        self.url += url

    def on_header(self, name: bytes, value: bytes):
        self.headers.append((name, value))

    def on_headers_complete(self):
        self.headers_complete = True

    def on_body(self, body: bytes):
        if self.body is None:
            self.body = tempfile.SpooledTemporaryFile(max_size=self._memory_limit)
        self.body.write(body)

    def on_message_complete(self):
        self.message_complete = True


def _version(parser: httptools.HttpRequestParser, collector: _RequestCollector) -> str:
    if not collector.headers_complete:
        return DEFAULT_VERSION
    return f"HTTP/{parser.get_http_version()}"


def _split_target(target: bytes) -> bytes:
    """Return the path part of a request target, without query or fragment."""
    if target.startswith(b"/"):
        return target.split(b"?", 1)[0].split(b"#", 1)[0]
    try:
        url = httptools.parse_url(target)
    except httptools.HttpParserInvalidURLError:
        # authority-form (CONNECT) or asterisk-form
        return target
    return url.path or b"/"


async def read_request(conn, buffer_size: int = 16 * 1024, memory_limit: int = MAX_FORM_MEMORY) -> Request:
    """
    Read one request from ``conn``.

    Args:
        conn: anything with an async ``recv(size)`` returning b"" at EOF
        buffer_size: bytes requested per recv call
        memory_limit: body bytes kept in memory before spilling to disk

    Raises:
        EndOfStream: the peer closed before sending anything
        MalformedRequest: the peer closed mid-request or sent garbage
    """
    collector = _RequestCollector(memory_limit)
    parser = httptools.HttpRequestParser(collector)
    received = 0

    try:
        while not collector.message_complete:
            data = await conn.recv(buffer_size)
            if not data:
                if not received:
                    raise EndOfStream("connection closed before any data")
                raise MalformedRequest("connection closed mid-request", _version(parser, collector))
            received += len(data)

            try:
                parser.feed_data(data)
            except httptools.HttpParserUpgrade:
                # CONNECT and Upgrade requests stop the parser after headers
                if not collector.headers_complete:
                    raise MalformedRequest("incomplete upgrade request", _version(parser, collector))
                break
            except httptools.HttpParserError as e:
                raise MalformedRequest(f"unparsable request: {e}", _version(parser, collector))
    except BaseException:
        if collector.body is not None:
            collector.body.close()
        raise

    if collector.body is not None:
        collector.body.seek(0)

    raw_method = parser.get_method().decode("latin-1")
    raw_path = _split_target(collector.url).decode("latin-1")

    return Request(
        method=Method.parse(raw_method),
        raw_method=raw_method,
        target=collector.url.decode("latin-1"),
        path=unquote(raw_path, encoding="utf-8", errors="replace"),
        raw_path=raw_path,
        version=_version(parser, collector),
        headers=httpx.Headers(collector.headers),
        body=collector.body,
    )


# ============================================================================
# ENCODING
# ============================================================================

async def write_response(conn, response: Response) -> int:
    """
    Write ``response`` to ``conn`` and return the number of bytes sent.

    Content-Type is always present and ``Connection: close`` is always set,
    since every connection serves exactly one exchange.
    """
    reason = response.reason if response.reason is not None else reason_phrase(response.status)
    headers = httpx.Headers(response.headers)

    if "content-type" not in headers:
        headers["Content-Type"] = "application/octet-stream"
    if "transfer-encoding" in headers:
        del headers["transfer-encoding"]

    if isinstance(response.body, bytes):
        headers["Content-Length"] = str(len(response.body))
    elif response.length is not None:
        headers["Content-Length"] = str(response.length)
    headers["Connection"] = "close"

    head = bytearray(f"{response.version} {response.status} {reason}\r\n".encode("latin-1"))
    for name, value in headers.raw:
        head.extend(name + b": " + value + b"\r\n")
    head.extend(b"\r\n")

    if isinstance(response.body, bytes):
        payload = bytes(head) + response.body
        await conn.sendall(payload)
        return len(payload)

    await conn.sendall(bytes(head))
    sent = len(head)
    async for chunk in response.body:
        if chunk:
            await conn.sendall(chunk)
            sent += len(chunk)
    return sent
