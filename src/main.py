"""
Main entry point for the OpenSearch template operator.

This module wires the database, event recording, reconciler plugins and the
HTTP API together and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import get_config
from controller import Controller
from db import DatabaseManager
from events import EventBus, EventRecorder
from plugins.registry import get_registry, register_builtin_plugins
from plugins.inputs.base import InputPlugin

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing OpenSearch template operator")

        register_builtin_plugins()
        registry = get_registry()

        # Initialize database
        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        self.event_bus = EventBus()
        recorder = EventRecorder(self.db, self.event_bus)

        self.controller = Controller(
            db_manager=self.db,
            registry=registry,
            config=self.config.controller,
            opensearch_config=self.config.opensearch,
            recorder=recorder,
        )

        api_config = self.config.api
        for plugin_name in registry.list_input_plugins():
            plugin_config = registry.get_input_plugin_config(plugin_name)
            if plugin_name == "http":
                plugin_config.update(
                    {
                        "host": api_config.host,
                        "port": api_config.port,
                        "log_level": api_config.log_level.lower(),
                    }
                )

            plugin = await registry.get_input_plugin(plugin_name, plugin_config)
            plugin.set_db_manager(self.db)
            plugin.set_event_bus(self.event_bus)
            self.input_plugins.append(plugin)
            logger.info(f"Initialized input plugin: {plugin_name}")

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting OpenSearch template operator")

        # Start controller and all input plugins concurrently
        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        logger.info("Stopping OpenSearch template operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.db:
            await self.db.close()

        logger.info("OpenSearch template operator stopped")


async def main():
    """Main entry point."""
    configure_logging(get_config().api.log_level)
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
