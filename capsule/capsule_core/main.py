"""
Capsule Core - runtime assembly and entry point.

This module wires the core to its reference collaborators:
- SQLite row store (authorization boundary)
- In-memory change feed, fed by the row store's own inserts
- In-memory auth provider holding the acting principal
- Configured object store (S3 or in-memory)

Usage:
    python -m capsule.capsule_core.main --user alice groups

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The row store schema exists before the controller starts
    - The object store is connected before the first upload or resolution
    - stop() releases the engine, the feed and the S3 client
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import json_log_formatter

from .config import CapsuleConfig
from .gate import Clock, SystemClock
from .models import Principal
from .session import SessionContext, SessionController
from .stores import (
    InMemoryAuthProvider,
    InMemoryChangeFeed,
    S3ObjectStore,
    SqliteRowStore,
    create_object_store,
)

logger = logging.getLogger(__name__)


def setup_logging(config: CapsuleConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Capsule configuration
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
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class Runtime:
    """Assembled core for one acting principal.

    Attributes:
        config: Capsule configuration
        feed: Change feed shared by the row store and the sync engine
        auth: Auth provider holding the principal
        rows: SQLite row store
        objects: Media object store
        controller: Session controller

    Example:
        >>> runtime = Runtime(Principal("alice"))
        >>> await runtime.start()
        >>> await runtime.controller.create_group("Birthday", "2027-01-01T00:00")
        >>> await runtime.stop()
    """

    def __init__(
        self,
        principal: Optional[Principal] = None,
        config: Optional[CapsuleConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config or CapsuleConfig.from_env()
        self.clock = clock or SystemClock()
        self.feed = InMemoryChangeFeed()
        self.auth = InMemoryAuthProvider(principal)
        self.rows = SqliteRowStore(
            self.config.storage.db_path,
            clock=self.clock,
            feed=self.feed,
            busy_timeout_ms=self.config.storage.busy_timeout_ms,
            wal_mode=self.config.storage.wal_mode,
        )
        self.objects = create_object_store(self.config, clock=self.clock)
        self.controller = SessionController(
            SessionContext(
                auth=self.auth,
                rows=self.rows,
                objects=self.objects,
                feed=self.feed,
                clock=self.clock,
                media=self.config.media,
            )
        )
        self._running = False

    async def start(self) -> None:
        """Prepare storage, connect the object store and start the session."""
        if self._running:
            logger.warning("Runtime already running")
            return

        self.config.log_config()
        try:
            Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)
            await self.rows.initialize()
            if isinstance(self.objects, S3ObjectStore):
                await self.objects.connect()
            await self.controller.start()
        except Exception as e:
            logger.error(f"Runtime startup failed: {e}", exc_info=True)
            await self._release()
            raise

        self._running = True
        logger.info("Capsule runtime started")

    async def stop(self) -> None:
        """Stop the session and release resources."""
        if not self._running:
            return
        await self._release()
        self._running = False
        logger.info("Capsule runtime stopped")

    async def _release(self) -> None:
        await self.controller.stop()
        self.feed.clear()
        if isinstance(self.objects, S3ObjectStore):
            await self.objects.close()

    async def __aenter__(self) -> Runtime:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()


def main() -> None:
    """Main entry point."""
    from .tools.cli import main as cli_main

    sys.exit(cli_main(sys.argv[1:]))


if __name__ == "__main__":
    main()
