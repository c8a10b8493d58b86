"""
Configuration for the file server and the proxy.

Both services share one ServerConfig; the proxy adds a few knobs of its own.
All values are fixed at startup and passed explicitly to whoever needs them.
"""

import enum
from dataclasses import dataclass
from typing import Optional


# ============================================================================
# CONSTANTS
# ============================================================================

# Number of long-lived workers in the fixed pool. Not runtime-tunable.
MAX_WORKERS = 10

# Multipart form data beyond this many bytes spills from memory to disk.
MAX_FORM_MEMORY = 32 << 20

# Chunk size used when streaming file and upstream bodies to the client.
CHUNK_SIZE = 64 * 1024


class DispatchPolicy(enum.Enum):
    """How accepted connections are handed to handlers."""

    POOL = "pool"    # fixed worker pool, bounded concurrency
    SPAWN = "spawn"  # one task per connection, unbounded concurrency


@dataclass(frozen=True)
class ServerConfig:
    """
    Listener and lifecycle settings shared by both services.
    """

    # Network settings
    host: str = "0.0.0.0"
    port: int = 8080
    backlog: int = 128     # pending connections the OS keeps while workers are busy

    # Concurrency
    workers: int = MAX_WORKERS  # pool size; ignored by the spawn policy
    dispatch: DispatchPolicy = DispatchPolicy.POOL

    # Buffer sizes
    recv_buffer_size: int = 16 * 1024  # bytes per sock_recv() while reading a request

    # Lifecycle
    handle_signals: bool = True  # install SIGINT/SIGTERM handlers in serve()
    use_uvloop: bool = True      # falls back to asyncio when uvloop is not installed

    # Logging
    log_level: str = "INFO"  # INFO, DEBUG, WARNING, ERROR, CRITICAL


@dataclass(frozen=True)
class ProxyConfig:
    """Settings for the upstream HTTP client used by the proxy."""

    upstream_timeout: Optional[float] = None  # None waits forever
    follow_redirects: bool = False
