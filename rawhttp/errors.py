"""Exceptions raised by the codec, the handlers and at startup."""

DEFAULT_VERSION = "HTTP/1.1"


class RawHTTPError(Exception):
    """Base class for everything this package raises on purpose."""


class EndOfStream(RawHTTPError):
    """The peer closed the connection before sending a single byte."""


class MalformedRequest(RawHTTPError):
    """
    The request could not be decoded.

    ``version`` is whatever protocol version the parser saw before failing,
    so the error response can still echo it.
    """

    def __init__(self, reason: str, version: str = DEFAULT_VERSION):
        super().__init__(reason)
        self.reason = reason
        self.version = version


class FormError(RawHTTPError):
    """Missing or malformed multipart form, or a missing ``file`` field."""


class StorageRootError(RawHTTPError):
    """The storage directory does not exist or is not a directory."""
