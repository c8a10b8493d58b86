"""
Tests for the request decoder and the response encoder.
"""

import pytest
import httpx

from rawhttp.errors import EndOfStream, MalformedRequest
from rawhttp.protocol import Method, Response, read_request, reason_phrase, write_response
from tests.helpers import MockConnection, get_request, parse_response


# ============================================================================
# DECODING
# ============================================================================

@pytest.mark.asyncio
async def test_reads_get_request():
    """Method, decoded path, version and headers come out of a plain GET."""
    conn = MockConnection(get_request("/dir/a%20b.txt?x=1", extra="X-Trace: one\r\nX-Trace: two\r\n"))

    request = await read_request(conn)

    assert request.method is Method.GET
    assert request.raw_method == "GET"
    assert request.target == "/dir/a%20b.txt?x=1"
    assert request.raw_path == "/dir/a%20b.txt"
    assert request.path == "/dir/a b.txt"
    assert request.version == "HTTP/1.1"
    assert request.host == "localhost"
    assert request.headers.get_list("x-trace") == ["one", "two"]
    assert request.body is None


@pytest.mark.asyncio
async def test_reads_request_delivered_in_small_pieces():
    """The parser copes with the request arriving a few bytes at a time."""
    conn = MockConnection(get_request("/some/long/path/file.html", extra="Accept: */*\r\n"))

    request = await read_request(conn, buffer_size=3)

    assert request.path == "/some/long/path/file.html"
    assert request.headers["accept"] == "*/*"


@pytest.mark.asyncio
async def test_keeps_http10_version():
    request = await read_request(MockConnection(get_request("/a.txt", version="HTTP/1.0")))
    assert request.version == "HTTP/1.0"


@pytest.mark.asyncio
async def test_reads_body_into_stream():
    raw = b"POST / HTTP/1.1\r\nHost: localhost\r\nContent-Length: 5\r\n\r\nhello"

    request = await read_request(MockConnection(raw))

    assert request.method is Method.POST
    assert request.body.read() == b"hello"
    request.close()


@pytest.mark.asyncio
async def test_other_methods_map_to_other():
    request = await read_request(MockConnection(b"DELETE /a.txt HTTP/1.1\r\nHost: x\r\n\r\n"))

    assert request.method is Method.OTHER
    assert request.raw_method == "DELETE"


def test_method_parse():
    assert Method.parse("GET") is Method.GET
    assert Method.parse("POST") is Method.POST
    assert Method.parse("PUT") is Method.OTHER
    assert Method.parse("get") is Method.OTHER


@pytest.mark.asyncio
async def test_empty_connection_is_end_of_stream():
    with pytest.raises(EndOfStream):
        await read_request(MockConnection(b""))


@pytest.mark.asyncio
async def test_garbage_is_malformed():
    with pytest.raises(MalformedRequest) as info:
        await read_request(MockConnection(b"\x00\x01\x02 not http at all\r\n\r\n"))

    assert info.value.version == "HTTP/1.1"


@pytest.mark.asyncio
async def test_closed_mid_headers_is_malformed():
    with pytest.raises(MalformedRequest):
        await read_request(MockConnection(b"GET /a.txt HTTP/1.1\r\nHost: local"))


@pytest.mark.asyncio
async def test_closed_mid_body_keeps_version():
    """Once the headers are in, the error still knows the request's version."""
    raw = b"POST / HTTP/1.0\r\nContent-Length: 10\r\n\r\nabc"

    with pytest.raises(MalformedRequest) as info:
        await read_request(MockConnection(raw))

    assert info.value.version == "HTTP/1.0"


# ============================================================================
# ENCODING
# ============================================================================

def test_reason_phrase():
    assert reason_phrase(200) == "OK"
    assert reason_phrase(409) == "Conflict"
    assert reason_phrase(502) == "Bad Gateway"
    assert reason_phrase(799) == "Unknown"


@pytest.mark.asyncio
async def test_writes_text_response():
    conn = MockConnection()

    sent = await write_response(conn, Response.text(404, "HTTP/1.0"))

    assert sent == len(conn.written)
    assert conn.written.startswith(b"HTTP/1.0 404 Not Found\r\n")
    response = parse_response(conn.written)
    assert response.headers["content-type"] == "text/plain"
    assert response.headers["content-length"] == "10"
    assert response.headers["connection"] == "close"
    assert response.body == b"Not Found\n"
    assert not conn.closed


@pytest.mark.asyncio
async def test_writes_streamed_body():
    async def chunks():
        yield b"first,"
        yield b""
        yield b"second"

    conn = MockConnection()
    response = Response(status=200, body=chunks(), length=12)

    await write_response(conn, response)

    parsed = parse_response(conn.written)
    assert parsed.status == 200
    assert parsed.headers["content-length"] == "12"
    assert parsed.headers["content-type"] == "application/octet-stream"
    assert parsed.body == b"first,second"


@pytest.mark.asyncio
async def test_relay_headers_and_reason_are_kept():
    """Custom reason, repeated headers and original casing survive; chunked framing does not."""
    headers = httpx.Headers([
        ("Set-Cookie", "a=1"),
        ("Set-Cookie", "b=2"),
        ("X-Upstream", "yes"),
        ("Transfer-Encoding", "chunked"),
        ("Content-Type", "text/html"),
    ])
    conn = MockConnection()

    await write_response(conn, Response(status=299, headers=headers, body=b"ok", reason="Fine Thanks"))

    raw = bytes(conn.written)
    assert raw.startswith(b"HTTP/1.1 299 Fine Thanks\r\n")
    assert raw.count(b"Set-Cookie: ") == 2
    assert b"X-Upstream: yes\r\n" in raw
    assert b"Transfer-Encoding" not in raw
    assert parse_response(raw).body == b"ok"


@pytest.mark.asyncio
async def test_aclose_runs_closer_once():
    calls = []

    async def closer():
        calls.append(1)

    response = Response(status=200, closer=closer)
    await response.aclose()
    await response.aclose()

    assert calls == [1]
