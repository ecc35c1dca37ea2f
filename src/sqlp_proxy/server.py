"""
SQLP Proxy Server

asyncio TCP listener: every accepted connection gets its own SQLProxyProtocol
handler and is closed once its request has been answered.

Run with:
    python -m sqlp_proxy.server --port 5555
"""

import argparse
import asyncio
import itertools
import sys
from typing import List, Optional

import structlog

from .config import VALID_LOG_FORMATS, ProxyConfig
from .logging_config import configure_logging
from .protocol import SQLProxyProtocol
from .sql_executor import StatementExecutor
from .store import StoreConnector

logger = structlog.get_logger()


class SQLProxyServer:
    """Accepts connections and hands each one to a fresh protocol handler"""

    def __init__(self, config: Optional[ProxyConfig] = None,
                 connector: Optional[StoreConnector] = None):
        self.config = config or ProxyConfig()
        self.executor = StatementExecutor(connector, max_workers=self.config.max_workers)
        self.server: Optional[asyncio.AbstractServer] = None
        self.ready = asyncio.Event()
        self.active_connections = set()
        self._connection_counter = itertools.count(1)

    @property
    def port(self) -> Optional[int]:
        """Port actually bound (useful when configured with port 0)"""
        if not self.server or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def start(self):
        """Bind the listener and serve until cancelled or stopped"""
        self.server = await asyncio.start_server(
            self.handle_client,
            self.config.host,
            self.config.port,
            limit=self.config.line_limit,
        )

        logger.info("SQLP proxy server started",
                    host=self.config.host,
                    port=self.port,
                    max_workers=self.config.max_workers)
        self.ready.set()

        async with self.server:
            await self.server.serve_forever()

    async def stop(self):
        """Stop accepting connections and release the executor"""
        if self.server:
            self.server.close()
            await self.server.wait_closed()
        self.executor.shutdown()
        logger.info("SQLP proxy server stopped")

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        connection_id = f"conn_{next(self._connection_counter)}"
        peer = writer.get_extra_info('peername')
        self.active_connections.add(connection_id)

        logger.info("Connection accepted", connection_id=connection_id, peer=str(peer))

        protocol = SQLProxyProtocol(reader, writer, self.executor, connection_id)
        try:
            await protocol.message_loop()
        except Exception as e:
            # one broken connection must never take the listener down
            logger.error("Connection handler failed", connection_id=connection_id, error=str(e))
        finally:
            await protocol.close()
            self.active_connections.discard(connection_id)
            logger.info("Connection closed",
                        connection_id=connection_id,
                        requests_handled=protocol.requests_handled,
                        discarded_lines=protocol.discarded_lines)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SQLP line-protocol SQL proxy")
    parser.add_argument("--host", help="Listen address (env: SQLP_HOST)")
    parser.add_argument("--port", type=int, help="Listen port (env: SQLP_PORT)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-format", choices=VALID_LOG_FORMATS,
                        help="Log renderer (env: SQLP_LOG_FORMAT)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ProxyConfig:
    config = ProxyConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.debug:
        config.log_level = "DEBUG"
    if args.log_format:
        config.log_format = args.log_format
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Invalid configuration: {error}", file=sys.stderr)
        return 2

    configure_logging(config.log_level, config.log_format)
    server = SQLProxyServer(config)

    async def _run():
        try:
            await server.start()
        finally:
            await server.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
