"""
Method handlers of the file server.

Each handler takes the parsed request and the storage root and returns a
Response; none of them touches the connection. Outcomes are terminal, there
are no retries anywhere:

    GET   -> 200 file bytes | 400 bad extension | 404 missing/unreadable
    POST  -> 200 stored | 400 bad form/field/extension | 409 exists | 500 I/O
    other -> 501
"""

import asyncio
import logging
import stat
import tempfile
from dataclasses import dataclass
from typing import BinaryIO, Optional

import aiofiles
import aiofiles.os
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from .config import CHUNK_SIZE, MAX_FORM_MEMORY
from .connection import Service
from .errors import FormError, MalformedRequest
from .protocol import Method, Request, Response
from .storage import StorageRoot, content_type, is_allowed

logger = logging.getLogger(__name__)

UPLOAD_OK = "File uploaded successfully\n"


# ============================================================================
# MULTIPART FORMS
# ============================================================================

@dataclass
class UploadedFile:
    filename: str
    stream: BinaryIO


class _FormCollector:
    """
    Collects python-multipart parser callbacks, keeping only the first part
    whose name matches ``field_name`` and which carries a filename.
    """

    def __init__(self, field_name: str, memory_limit: int):
        self.field_name = field_name.encode("utf-8")
        self.memory_limit = memory_limit
        self.upload: Optional[UploadedFile] = None
        self.ended = False
        self._target: Optional[BinaryIO] = None
        self._headers = {}
        self._field = b""
        self._value = b""

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_end": self.on_end,
        }

    def on_part_begin(self):
        self._headers = {}
        self._field = b""
        self._value = b""

    def on_header_field(self, data: bytes, start: int, end: int):
        self._field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int):
        self._value += data[start:end]

    def on_header_end(self):
        self._headers[self._field.lower()] = self._value
        self._field = b""
        self._value = b""

    def on_headers_finished(self):
        disposition, params = parse_options_header(self._headers.get(b"content-disposition"))
        filename = params.get(b"filename")
        if (
            self.upload is None
            and disposition == b"form-data"
            and params.get(b"name") == self.field_name
            and filename
        ):
            self._target = tempfile.SpooledTemporaryFile(max_size=self.memory_limit)
            name = filename.decode("utf-8", errors="replace").rsplit("/", 1)[-1]
            self.upload = UploadedFile(filename=name, stream=self._target)

    def on_part_data(self, data: bytes, start: int, end: int):
        if self._target is not None:
            self._target.write(data[start:end])

    def on_part_end(self):
        self._target = None

    def on_end(self):
        self.ended = True

    def discard(self):
        if self.upload is not None:
            self.upload.stream.close()
            self.upload = None


def parse_upload(request: Request, field_name: str = "file", memory_limit: int = MAX_FORM_MEMORY) -> UploadedFile:
    """
    Pull the uploaded file named ``field_name`` out of a multipart/form-data body.

    Part data past ``memory_limit`` bytes spills to a temporary file.
    Blocking; run it in an executor.

    Raises:
        FormError: not a multipart body, malformed body, or no such file field
    """
    ctype, params = parse_options_header(request.headers.get("content-type"))
    if ctype != b"multipart/form-data":
        raise FormError("request is not multipart/form-data")
    boundary = params.get(b"boundary")
    if not boundary:
        raise FormError("missing multipart boundary")
    if request.body is None:
        raise FormError("empty request body")

    collector = _FormCollector(field_name, memory_limit)
    parser = MultipartParser(boundary, collector.callbacks())
    try:
        while True:
            chunk = request.body.read(CHUNK_SIZE)
            if not chunk:
                break
            parser.write(chunk)
        parser.finalize()
    except MultipartParseError as e:
        collector.discard()
        raise FormError(f"malformed multipart body: {e}")

    if not collector.ended:
        collector.discard()
        raise FormError("multipart body ended before the closing boundary")
    if collector.upload is None:
        raise FormError(f"no file in form field '{field_name}'")

    collector.upload.stream.seek(0)
    return collector.upload


# ============================================================================
# HANDLERS
# ============================================================================

def bad_request(version: str) -> Response:
    return Response.text(400, version)


def not_implemented(request: Request) -> Response:
    return Response.text(501, request.version)


async def _read_chunks(handle):
    while True:
        chunk = await handle.read(CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


async def serve_file(request: Request, root: StorageRoot) -> Response:
    """
    GET: stream the file at ``root + request.path``.

    Every failure to stat or open the file is a 404, never a 500.
    """
    if not is_allowed(request.path):
        return bad_request(request.version)

    path = root.resolve(request.path)
    if path is None:
        return bad_request(request.version)

    try:
        info = await aiofiles.os.stat(path)
        if not stat.S_ISREG(info.st_mode):
            return Response.text(404, request.version)
        handle = await aiofiles.open(path, "rb")
    except OSError as e:
        logger.debug(f"Cannot open {path}: {e}")
        return Response.text(404, request.version)

    response = Response(
        status=200,
        version=request.version,
        body=_read_chunks(handle),
        length=info.st_size,
        closer=handle.close,
    )
    response.headers["Content-Type"] = content_type(path)
    return response


async def accept_upload(request: Request, root: StorageRoot) -> Response:
    """
    POST: store the multipart field ``file`` under the storage root.

    An existing file is never overwritten. The file is created exclusively,
    so an upload that loses the race between the existence check and the
    create gets a 500 rather than clobbering the winner. A copy that fails
    partway leaves the partial file in place.
    """
    loop = asyncio.get_running_loop()
    try:
        upload = await loop.run_in_executor(None, parse_upload, request)
    except FormError as e:
        logger.info(f"Rejected upload: {e}")
        return bad_request(request.version)

    try:
        return await _store(upload, root, request.version)
    finally:
        upload.stream.close()


async def _store(upload: UploadedFile, root: StorageRoot, version: str) -> Response:
    if not is_allowed(upload.filename):
        return bad_request(version)

    destination = root.resolve(upload.filename)
    if destination is None:
        return bad_request(version)

    if await aiofiles.os.path.exists(destination):
        return Response.text(409, version)

    loop = asyncio.get_running_loop()
    try:
        async with aiofiles.open(destination, "xb") as out:
            while True:
                # the spooled form may have spilled to disk; read off the loop
                chunk = await loop.run_in_executor(None, upload.stream.read, CHUNK_SIZE)
                if not chunk:
                    break
                await out.write(chunk)
    except OSError as e:
        logger.error(f"Failed to store {destination}: {e}")
        return Response.text(500, version)

    logger.info(f"Stored {destination}")
    return Response.text(200, version, UPLOAD_OK)


# ============================================================================
# SERVICE
# ============================================================================

class FileServer(Service):
    """File-storage service: GET serves, POST uploads, anything else is 501."""

    name = "fileserver"

    def __init__(self, root: StorageRoot):
        self.root = root

    async def respond(self, request: Request) -> Response:
        if request.method is Method.GET:
            return await serve_file(request, self.root)
        if request.method is Method.POST:
            return await accept_upload(request, self.root)
        return not_implemented(request)

    def reject(self, error: MalformedRequest) -> Optional[Response]:
        return bad_request(error.version)
