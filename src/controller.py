"""
Operator Controller - Runs the reconciler plugin loops.

Similar to a Kubernetes controller manager: every registered reconciler
plugin gets its own continuous loop, sharing one ReconcilerContext.
"""

import asyncio
import logging
from typing import List, Optional

from config import ControllerConfig, OpenSearchConfig
from db import DatabaseManager
from events import EventRecorder
from plugins import get_registry
from plugins.reconcilers.base import ReconcilerContext, ReconcilerPlugin
from plugins.registry import PluginRegistry

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that starts and stops reconciler plugin loops.

    Reconcilers find due resources themselves; the controller only owns
    their lifecycle and the shutdown signal.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: Optional[PluginRegistry] = None,
        config: Optional[ControllerConfig] = None,
        opensearch_config: Optional[OpenSearchConfig] = None,
        recorder: Optional[EventRecorder] = None,
    ):
        self.db = db_manager
        self.registry = registry or get_registry()
        self.config = config or ControllerConfig()
        self.opensearch_config = opensearch_config or OpenSearchConfig()
        self.recorder = recorder or EventRecorder(db_manager)
        self.running = False

        self._shutdown_event = asyncio.Event()
        self._reconciler_tasks: List[asyncio.Task] = []

    async def start(self):
        """Start all reconciler plugins and wait for them to finish."""
        logger.info("Starting Operator Controller")
        self.running = True
        self._shutdown_event.clear()

        await self._start_reconcilers()

        try:
            await asyncio.gather(*self._reconciler_tasks)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller and all reconciler plugins gracefully."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self._shutdown_event.set()

        await self._stop_reconcilers()

    def _build_context(self) -> ReconcilerContext:
        return ReconcilerContext(
            db=self.db,
            recorder=self.recorder,
            shutdown_event=self._shutdown_event,
            config=self.config,
            opensearch_config=self.opensearch_config,
        )

    async def _start_reconcilers(self) -> None:
        """Start all registered reconciler plugin loops."""
        reconciler_ctx = self._build_context()

        for reconciler_name in self.registry.list_reconciler_plugins():
            reconciler = self.registry.get_reconciler_plugin(reconciler_name)
            task = asyncio.create_task(self._run_reconciler(reconciler, reconciler_ctx))
            self._reconciler_tasks.append(task)
            logger.info(f"Started reconciler plugin: {reconciler_name}")

    async def _run_reconciler(
        self, reconciler: ReconcilerPlugin, ctx: ReconcilerContext
    ) -> None:
        """Run a reconciler plugin, catching exceptions."""
        try:
            await reconciler.start(ctx)
        except Exception as e:
            logger.error(
                f"Reconciler plugin '{reconciler.name}' crashed: {e}",
                exc_info=True,
            )

    async def _stop_reconcilers(self) -> None:
        """Stop all running reconciler plugins."""
        for reconciler_name in self.registry.list_reconciler_plugins():
            try:
                reconciler = self.registry.get_reconciler_plugin(reconciler_name)
                await reconciler.stop()
                logger.info(f"Stopped reconciler plugin: {reconciler_name}")
            except Exception as e:
                logger.error(f"Error stopping reconciler '{reconciler_name}': {e}")

        # Cancel any remaining reconciler tasks
        for task in self._reconciler_tasks:
            if not task.done():
                task.cancel()
        self._reconciler_tasks.clear()
