"""
Single-method reverse proxy.

GET requests are forwarded to ``http://<Host header><path>`` with every
inbound header copied; the upstream status, headers and body come back
unchanged. Anything else is 501, any forwarding failure is 502.
"""

import logging
from typing import Optional

import httpx

from .config import ProxyConfig
from .connection import Service
from .errors import MalformedRequest
from .protocol import Method, Request, Response

logger = logging.getLogger(__name__)

# Framing headers of the inbound message; no body is forwarded.
_NOT_FORWARDED = ("content-length", "transfer-encoding", "trailer")

# Hop-by-hop headers of the upstream message; the relayed body is
# delimited by Content-Length or by closing the connection.
_NOT_RELAYED = ("transfer-encoding", "connection", "keep-alive")

# Defaults httpx adds to every request; only inbound headers go upstream, so
# no Accept-Encoding unless the client sent one.
_CLIENT_DEFAULTS = ("accept", "accept-encoding", "connection", "user-agent")


def upstream_url(request: Request) -> str:
    return f"http://{request.host}{request.raw_path}"


def forward_headers(request: Request) -> httpx.Headers:
    headers = httpx.Headers(request.headers)
    for name in _NOT_FORWARDED:
        if name in headers:
            del headers[name]
    return headers


async def _relay_chunks(upstream: httpx.Response):
    async for chunk in upstream.aiter_raw():
        yield chunk


class ProxyService(Service):
    """
    Args:
        client: shared upstream client; created from ``config`` when omitted.
            Its default request headers are removed.
        config: upstream client settings
    """

    name = "proxy"

    def __init__(self, client: Optional[httpx.AsyncClient] = None, config: ProxyConfig = ProxyConfig()):
        if client is None:
            client = httpx.AsyncClient(
                timeout=config.upstream_timeout,
                follow_redirects=config.follow_redirects,
            )
        for name in _CLIENT_DEFAULTS:
            if name in client.headers:
                del client.headers[name]
        self.client = client

    async def respond(self, request: Request) -> Response:
        if request.method is not Method.GET:
            return Response.text(501, request.version)

        try:
            upstream = await self.forward(request)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"failed to forward request to {request.host!r}: {e}")
            return Response.text(502, request.version)

        headers = httpx.Headers(upstream.headers)
        for name in _NOT_RELAYED:
            if name in headers:
                del headers[name]

        return Response(
            status=upstream.status_code,
            version=upstream.http_version,
            headers=headers,
            body=_relay_chunks(upstream),
            reason=upstream.reason_phrase,
            length=_content_length(upstream),
            closer=upstream.aclose,
        )

    async def forward(self, request: Request) -> httpx.Response:
        """Issue the upstream GET; the caller must close the returned response."""
        outbound = self.client.build_request(
            "GET",
            upstream_url(request),
            headers=forward_headers(request),
        )
        return await self.client.send(outbound, stream=True)

    def reject(self, error: MalformedRequest) -> Optional[Response]:
        logger.error(f"failed to read client request: {error.reason}")
        return None

    async def aclose(self) -> None:
        await self.client.aclose()


def _content_length(upstream: httpx.Response) -> Optional[int]:
    value = upstream.headers.get("content-length")
    if value is None or not value.isdigit():
        return None
    return int(value)
