"""Shared helpers: an in-memory connection and tiny HTTP message builders."""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

BOUNDARY = "----rawhttp-test-boundary"


class MockConnection:
    """
    Stands in for an accepted socket: replays ``incoming`` and records
    everything written to it.
    """

    def __init__(self, incoming: bytes = b"", peer: str = "127.0.0.1:50000"):
        self.incoming = incoming
        self.written = bytearray()
        self.closed = False
        self.peer = peer

    async def recv(self, size: int) -> bytes:
        chunk, self.incoming = self.incoming[:size], self.incoming[size:]
        return chunk

    async def sendall(self, data: bytes) -> None:
        self.written.extend(data)

    def close(self) -> None:
        self.closed = True


@dataclass
class ParsedResponse:
    version: str
    status: int
    reason: str
    headers: Dict[str, str]
    body: bytes


def parse_response(data: bytes) -> ParsedResponse:
    head, _, body = bytes(data).partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    version, status, reason = lines[0].split(" ", 2)
    headers = {}
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()
    return ParsedResponse(version, int(status), reason, headers, body)


def get_request(path: str, version: str = "HTTP/1.1", host: str = "localhost", extra: str = "") -> bytes:
    return f"GET {path} {version}\r\nHost: {host}\r\n{extra}\r\n".encode("latin-1")


def multipart_body(filename: Optional[str], content: bytes, field: str = "file") -> Tuple[bytes, str]:
    disposition = f'form-data; name="{field}"'
    if filename is not None:
        disposition += f'; filename="{filename}"'
    body = (
        f"--{BOUNDARY}\r\n"
        f"Content-Disposition: {disposition}\r\n"
        f"Content-Type: application/octet-stream\r\n"
        f"\r\n"
    ).encode("utf-8") + content + f"\r\n--{BOUNDARY}--\r\n".encode("utf-8")
    return body, f"multipart/form-data; boundary={BOUNDARY}"


def post_request(body: bytes, content_type: str, path: str = "/", version: str = "HTTP/1.1") -> bytes:
    head = (
        f"POST {path} {version}\r\n"
        f"Host: localhost\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"\r\n"
    )
    return head.encode("latin-1") + body


def upload_request(filename: Optional[str], content: bytes, field: str = "file") -> bytes:
    body, content_type = multipart_body(filename, content, field)
    return post_request(body, content_type)
