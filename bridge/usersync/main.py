"""
usersync server - main entry point.

This module starts the usersync server with all components:
- HTTP API (uvicorn + FastAPI)
- Update-request subscriber loop (bus -> pipeline)
- Replication adapter loop (users.* -> pipeline -> republish)

Usage:
    python -m bridge.usersync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Streams exist before any consumer starts
    - Shutdown stops intake first, drains in-flight messages, then closes
      the bus and the store

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
import uvicorn

from .api import create_app
from .api.auth import StubTokenVerifier
from .bus import MessageBus, create_bus
from .config import ServerConfig
from .pipeline import EventPublisher, MutationPipeline, UpdateRequestSubscriber
from .replication import IdentityResolver, ReplicationProtocol, ReplicationSyncAdapter
from .store import SqliteStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("nats").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """usersync server orchestrator.

    Manages the lifecycle of all server components:
    - Store and bus connections
    - Bus streams
    - Consumer loops (subscriber, replication adapter)
    - HTTP server

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: SqliteStore | None = None
        self.bus: MessageBus | None = None
        self.pipeline: MutationPipeline | None = None
        self.subscriber: UpdateRequestSubscriber | None = None
        self.adapter: ReplicationSyncAdapter | None = None
        self.protocol: ReplicationProtocol | None = None
        self.http_server: uvicorn.Server | None = None
        self._http_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the server and run until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting usersync server")
        self.config.log_config()
        self._running = True

        try:
            self.store = SqliteStore(
                db_path=self.config.storage.db_path,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )
            await self.store.initialize()

            self.bus = create_bus(self.config)
            await self.bus.connect()
            logger.info("Bus connected", extra={"backend": self.config.bus_backend.value})

            subjects = self.config.subjects
            await self.bus.ensure_stream(subjects.update_stream, [subjects.update_request])
            await self.bus.ensure_stream(subjects.broadcast_stream, [subjects.broadcast])

            publisher = EventPublisher(self.bus, subjects)
            self.pipeline = MutationPipeline(self.store, publisher, self.config.pipeline)

            self.subscriber = UpdateRequestSubscriber(
                self.bus, self.pipeline, subjects, self.config.consumer
            )
            await self.subscriber.start()

            self.adapter = ReplicationSyncAdapter(
                self.bus,
                self.pipeline,
                IdentityResolver(self.store),
                subjects,
                self.config.consumer,
                self.config.pipeline,
                origin=f"{self.config.nats.client_name}-replication",
            )
            await self.adapter.start()

            self.protocol = ReplicationProtocol(self.store, self.adapter)

            app = create_app(
                self.pipeline,
                self.protocol,
                verifier=StubTokenVerifier(),
                config=self.config,
            )
            self.http_server = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=self.config.http.host,
                    port=self.config.http.port,
                    log_config=None,
                )
            )
            self._http_task = asyncio.create_task(self.http_server.serve())

            logger.info(
                "usersync server started successfully",
                extra={"http_bind": f"{self.config.http.host}:{self.config.http.port}"},
            )

            # Wait for shutdown signal (or the HTTP server exiting on its own)
            shutdown_wait = asyncio.create_task(self._shutdown_event.wait())
            await asyncio.wait(
                [shutdown_wait, self._http_task], return_when=asyncio.FIRST_COMPLETED
            )
            shutdown_wait.cancel()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping usersync server")
        drain_timeout = self.config.consumer.drain_timeout_seconds

        if self.http_server and self._http_task:
            self.http_server.should_exit = True
            await asyncio.gather(self._http_task, return_exceptions=True)

        if self.subscriber:
            await self.subscriber.stop(timeout=drain_timeout)

        if self.adapter:
            await self.adapter.stop(timeout=drain_timeout)

        if self.bus:
            await self.bus.close()

        if self.store:
            await self.store.close()

        self._running = False
        logger.info("usersync server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
