"""
Command-line entry points.

    rawhttp-fileserver <port> [save_path]
    rawhttp-proxy <port>
"""

import argparse
import logging
import sys
from typing import List, Optional

from .config import MAX_WORKERS, DispatchPolicy, ProxyConfig, ServerConfig
from .connection import Service
from .errors import StorageRootError
from .handlers import FileServer
from .proxy import ProxyService
from .server import Server, run
from .storage import StorageRoot

logger = logging.getLogger("rawhttp")


def _port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}")
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def _parser(prog: str, description: str, default_dispatch: DispatchPolicy) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument("port", type=_port, help="TCP port to listen on")
    parser.add_argument("--host", default="0.0.0.0", help="address to bind (default: %(default)s)")
    parser.add_argument(
        "--dispatch",
        choices=[policy.value for policy in DispatchPolicy],
        default=default_dispatch.value,
        help=f"'pool' serves with {MAX_WORKERS} fixed workers, 'spawn' starts a task "
             "per connection (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    return parser


def _setup_logging(role: str, level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format=f'%(asctime)s - {role} - %(levelname)s - %(message)s',
    )


def _serve(config: ServerConfig, service: Service) -> int:
    server = Server(config, service)
    try:
        server.bind()
    except OSError as e:
        logger.critical(f"Cannot listen on {config.host}:{config.port}: {e}")
        return 1

    run(server)
    return 0


def fileserver_main(argv: Optional[List[str]] = None) -> int:
    parser = _parser("rawhttp-fileserver", "Store uploads and serve files from a directory.", DispatchPolicy.POOL)
    parser.add_argument("save_path", nargs="?", default="./", help="storage directory (default: %(default)s)")
    args = parser.parse_args(argv)

    _setup_logging("FileServer", args.log_level)

    try:
        root = StorageRoot.open(args.save_path)
    except StorageRootError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logger.info(f"Save files to {root.path}")

    config = ServerConfig(
        host=args.host,
        port=args.port,
        dispatch=DispatchPolicy(args.dispatch),
        log_level=args.log_level,
    )
    return _serve(config, FileServer(root))


def proxy_main(argv: Optional[List[str]] = None) -> int:
    parser = _parser("rawhttp-proxy", "Relay GET requests to the host named in the Host header.", DispatchPolicy.SPAWN)
    args = parser.parse_args(argv)

    _setup_logging("Proxy", args.log_level)

    config = ServerConfig(
        host=args.host,
        port=args.port,
        dispatch=DispatchPolicy(args.dispatch),
        log_level=args.log_level,
    )
    return _serve(config, ProxyService(config=ProxyConfig()))
