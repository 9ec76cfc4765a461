"""
Component template reconciler plugin.

Runs the reconciliation loop for OpensearchComponentTemplate resources:
picks up resources whose next reconcile time has passed, reconciles them
concurrently and schedules the next pass from each result. Resources marked
for deletion are torn down and released from this plugin's finalizer.
"""

import asyncio
import logging
from typing import List, Optional

from gateway import create_client_for_cluster
from models import COMPONENT_TEMPLATE_KIND, ComponentTemplate
from plugins.reconcilers.base import (
    ReconcileResult,
    ReconcilerContext,
    ReconcilerPlugin,
)
from plugins.reconcilers.component_template.reconciler import (
    ClientFactory,
    ComponentTemplateReconciler,
)

logger = logging.getLogger(__name__)

FINALIZER = "component_templates"


class ComponentTemplateReconcilerPlugin(ReconcilerPlugin):
    """Reconciles OpensearchComponentTemplate resources."""

    def __init__(self, client_factory: ClientFactory = create_client_for_cluster):
        self._client_factory = client_factory
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._running = False

    @property
    def name(self) -> str:
        return FINALIZER

    @property
    def resource_types(self) -> List[str]:
        return [COMPONENT_TEMPLATE_KIND]

    async def start(self, ctx: ReconcilerContext) -> None:
        self._running = True
        self._semaphore = asyncio.Semaphore(ctx.config.max_concurrent_reconciles)
        logger.info("Component template reconciler started")

        while self._running and not ctx.shutdown_event.is_set():
            try:
                await self.run_once(ctx)
            except Exception as e:
                logger.error(f"Error in component template loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    ctx.shutdown_event.wait(), timeout=ctx.config.reconcile_interval
                )
            except asyncio.TimeoutError:
                pass

        logger.info("Component template reconciler stopped")

    async def run_once(self, ctx: ReconcilerContext) -> int:
        """
        Process one batch of due resources.

        Returns:
            Number of resources processed
        """
        purged = await ctx.purge_deleted_clusters()
        if purged:
            logger.info(f"Purged {purged} deleted opensearch clusters")

        resources = await ctx.get_resources_needing_reconciliation(
            limit=ctx.config.max_concurrent_reconciles * 2
        )
        if not resources:
            return 0

        logger.info(f"Found {len(resources)} component templates needing reconciliation")
        results = await asyncio.gather(
            *(self._process(resource, ctx) for resource in resources),
            return_exceptions=True,
        )
        for resource, result in zip(resources, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Error processing {resource.namespace}/{resource.name}: {result}",
                    exc_info=result,
                )
        return len(resources)

    async def _process(self, resource: ComponentTemplate, ctx: ReconcilerContext):
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(ctx.config.max_concurrent_reconciles)

        async with self._semaphore:
            if resource.is_deleting:
                await self._finalize_resource(resource, ctx)
                return

            try:
                result = await self.reconcile(resource, ctx)
            except Exception as e:
                logger.error(f"Error reconciling {resource.name}: {e}", exc_info=True)
                await ctx.requeue_after_failure(resource.id)
                return

            await self._schedule(resource, result, ctx)

    async def _schedule(
        self,
        resource: ComponentTemplate,
        result: ReconcileResult,
        ctx: ReconcilerContext,
    ) -> None:
        if not result.success:
            logger.error(f"Failed to reconcile {resource.name}: {result.message}")
            await ctx.requeue_after_failure(resource.id)
        elif result.requeue and result.requeue_after is not None:
            await ctx.schedule_reconcile(resource.id, result.requeue_after)
        else:
            await ctx.schedule_reconcile(resource.id, ctx.config.resync_interval)

    async def _finalize_resource(
        self, resource: ComponentTemplate, ctx: ReconcilerContext
    ) -> None:
        if FINALIZER in resource.finalizers:
            try:
                await self.finalize(resource, ctx)
            except Exception as e:
                logger.error(f"Failed to delete component template {resource.name}: {e}")
                await ctx.requeue_after_failure(resource.id)
                return
            await ctx.remove_finalizer(resource.id, FINALIZER)

        remaining = await ctx.get_finalizers(resource.id)
        if not remaining:
            await ctx.hard_delete_resource(resource.id)
            logger.info(f"Deleted component template resource {resource.name}")
        else:
            logger.info(f"Finalizer removed for {resource.name}, waiting on: {remaining}")
            await ctx.schedule_reconcile(resource.id, ctx.config.resync_interval)

    async def reconcile(
        self, resource: ComponentTemplate, ctx: ReconcilerContext
    ) -> ReconcileResult:
        reconciler = ComponentTemplateReconciler(
            ctx, resource, client_factory=self._client_factory
        )
        return await reconciler.reconcile()

    async def finalize(
        self, resource: ComponentTemplate, ctx: ReconcilerContext
    ) -> None:
        reconciler = ComponentTemplateReconciler(
            ctx, resource, client_factory=self._client_factory
        )
        await reconciler.delete()

    async def stop(self) -> None:
        self._running = False
