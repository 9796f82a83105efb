"""
Vault Server - Main entry point.

This module starts the vault server with all components:
- Shard router (one SQLite database per configured shard)
- Action publisher (Kafka or in-memory) and the redelivery task
- Service layer
- HTTP API

Usage:
    python -m backend.vault_server.main

Configuration is entirely via environment variables.
See config.py for all available settings. The system administrator is
bootstrapped when VAULT_ADMIN_PASSWORD_HASH (SHA-256 hex) is set, with the
email from VAULT_ADMIN_EMAIL.

Invariants:
    - Every shard database has its schema before the HTTP API accepts requests
    - The publisher is connected before the HTTP API accepts requests
    - Shutdown stops the HTTP API and background tasks first, then the
      publisher, then the pools

How to change safely:
    - Add new components to start() and, in reverse order, to stop()
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .broker import ActionPublisher, create_publisher
from .config import VaultConfig
from .service import VaultService
from .session.store import InMemorySessionStore
from .storage import ShardRouter

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_EMAIL = "admin@localhost"


def setup_logging(config: VaultConfig) -> None:
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
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """Vault server orchestrator.

    Attributes:
        config: Server configuration
        router: Shard router
        publisher: Action publisher
        vault: Service layer

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running until request_shutdown()
        >>> await server.stop()
    """

    def __init__(self, config: VaultConfig | None = None) -> None:
        self.config = config or VaultConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.router: ShardRouter | None = None
        self.publisher: ActionPublisher | None = None
        self.vault: VaultService | None = None
        self._runner: web.AppRunner | None = None
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting vault server")
        self.config.log_config()

        try:
            Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

            self.router = ShardRouter(self.config.shards, self.config.storage, self.config.pool)
            self.router.initialize()
            logger.info(
                "Shard schemas initialized",
                extra={"databases": len(self.config.shards.databases())},
            )

            self.publisher = create_publisher(self.config)
            await self.publisher.connect()
            logger.info("Action publisher connected")

            self.vault = VaultService(self.router, self.publisher, self.config)
            await self._bootstrap()

            retry_task = asyncio.create_task(self._redeliver_actions())
            self._tasks.append(retry_task)

            sessions = InMemorySessionStore()
            app = create_http_app(self.vault, sessions, self.config.http)
            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()
            logger.info(
                "HTTP server running",
                extra={"host": self.config.http.host, "port": self.config.http.port},
            )

            self._running = True
            logger.info("Vault server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def _bootstrap(self) -> None:
        admin_hash = os.getenv("VAULT_ADMIN_PASSWORD_HASH", "")
        if not admin_hash:
            logger.info("VAULT_ADMIN_PASSWORD_HASH not set, skipping bootstrap")
            return
        admin_email = os.getenv("VAULT_ADMIN_EMAIL", DEFAULT_ADMIN_EMAIL)
        report = await self.vault.system.bootstrap(admin_email, admin_hash)
        if not report.changed:
            logger.info("System entities already present")

    async def _redeliver_actions(self) -> None:
        interval = self.config.kafka.retry_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.vault.system.republish_actions()
            except Exception:
                logger.exception("Action redelivery pass failed")

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping vault server")

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.publisher:
            await self.publisher.close()

        if self.router:
            self.router.close()

        self._running = False
        logger.info("Vault server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = VaultConfig.from_env()
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
