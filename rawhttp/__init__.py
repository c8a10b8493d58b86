"""
Socket-level HTTP/1.1 services on asyncio: a file-storage server and a
GET-only reverse proxy sharing one accept loop, dispatcher and codec.
"""

from .config import DispatchPolicy, ProxyConfig, ServerConfig
from .connection import Connection, Service, handle_connection
from .dispatch import SpawnPerConnection, WorkerPool, make_dispatcher
from .handlers import FileServer
from .protocol import Method, Request, Response, read_request, write_response
from .proxy import ProxyService
from .server import Server, ServerState
from .storage import StorageRoot

__version__ = "0.1.0"
