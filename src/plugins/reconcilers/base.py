"""
Reconciler Plugin Base - Abstract interface for reconciler plugins.

Reconciler plugins own the reconciliation logic for one or more resource
types and run their own continuous reconciliation loops. The operator hands
each of them a ReconcilerContext for reading resources, resolving clusters,
writing status and recording events.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from config import ControllerConfig, OpenSearchConfig
from db import ConflictError, DatabaseManager, ResourceNotFoundError
from events import EventRecorder, EventType
from models import ComponentTemplate, OpenSearchCluster

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ReconcileResult:
    """
    Result from a reconciler's reconcile() call.

    ``success=False`` asks the scheduler for its generic backoff. Otherwise
    ``requeue_after`` (seconds) says when to look at the resource again.
    ``outcome`` is the reconciler-specific outcome that produced the result.
    """

    success: bool = False
    message: str = ""
    requeue: bool = False
    requeue_after: Optional[float] = None
    outcome: Optional[Any] = None


@dataclass(frozen=True)
class Backoff:
    """Retry schedule for optimistic-concurrency conflicts."""

    steps: int = 5
    duration: float = 0.01  # seconds
    factor: float = 1.0
    jitter: float = 0.1


DEFAULT_RETRY = Backoff()


async def retry_on_conflict(
    backoff: Backoff, fn: Callable[[], Awaitable[T]]
) -> T:
    """
    Run fn, re-running it while it raises ConflictError.

    fn must redo its whole read-modify-write on every call.

    Raises:
        ConflictError: The last conflict, once backoff.steps attempts are used
    """
    delay = backoff.duration
    for attempt in range(1, backoff.steps + 1):
        try:
            return await fn()
        except ConflictError as e:
            if attempt == backoff.steps:
                raise
            logger.debug(f"Conflict on attempt {attempt}, retrying: {e.message}")
            await asyncio.sleep(delay * (1 + random.random() * backoff.jitter))
            delay *= backoff.factor
    raise RuntimeError("retry_on_conflict needs at least one step")


class ReconcilerContext:
    """
    Context provided to reconciler plugins by the operator.

    Gives reconcilers access to the resource store, status reporting,
    cluster lookup and the event recorder.
    """

    def __init__(
        self,
        db: DatabaseManager,
        recorder: EventRecorder,
        shutdown_event: asyncio.Event,
        config: Optional[ControllerConfig] = None,
        opensearch_config: Optional[OpenSearchConfig] = None,
        status_retry: Backoff = DEFAULT_RETRY,
    ):
        self.db = db
        self.recorder = recorder
        self.shutdown_event = shutdown_event
        self.config = config or ControllerConfig()
        self.opensearch_config = opensearch_config or OpenSearchConfig()
        self.status_retry = status_retry

    async def get_resources_needing_reconciliation(
        self, limit: int = 10
    ) -> List[ComponentTemplate]:
        return await self.db.get_component_templates_needing_reconciliation(
            limit=limit
        )

    async def fetch_cluster(
        self, namespace: str, name: str
    ) -> Optional[OpenSearchCluster]:
        """
        Resolve the cluster a resource refers to.

        Returns:
            The cluster, or None if it does not exist. Lookup failures raise.
        """
        return await self.db.get_cluster(namespace, name)

    async def update_status(
        self,
        resource: ComponentTemplate,
        mutate: Callable[[ComponentTemplate], None],
    ) -> ComponentTemplate:
        """
        Apply mutate to the latest copy of resource and persist its status.

        The read-modify-write is retried on conflicting writes, so mutate
        must only depend on the object it is given.

        Returns:
            The freshly persisted resource.

        Raises:
            ConflictError: If every retry conflicted
            ResourceNotFoundError: If the resource no longer exists
        """

        async def attempt() -> ComponentTemplate:
            latest = await self.db.get_component_template(
                resource.namespace, resource.name
            )
            if latest is None:
                raise ResourceNotFoundError(
                    f"Component template {resource.namespace}/{resource.name} not found"
                )
            mutate(latest)
            return await self.db.update_component_template_status(latest)

        return await retry_on_conflict(self.status_retry, attempt)

    async def event(
        self,
        resource: ComponentTemplate,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        await self.recorder.event(resource, event_type, reason, message)

    async def schedule_reconcile(self, resource_id: int, delay_seconds: float) -> None:
        await self.db.schedule_reconcile(resource_id, delay_seconds)

    async def requeue_after_failure(self, resource_id: int) -> None:
        await self.db.requeue_after_failure(
            resource_id,
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )

    async def remove_finalizer(self, resource_id: int, finalizer: str) -> None:
        await self.db.remove_finalizer(resource_id, finalizer)

    async def get_finalizers(self, resource_id: int) -> List[str]:
        return await self.db.get_finalizers(resource_id)

    async def hard_delete_resource(self, resource_id: int) -> bool:
        """Permanently delete a resource (only if marked deleted and no finalizers)."""
        return await self.db.hard_delete_component_template(resource_id)

    async def purge_deleted_clusters(self) -> int:
        return await self.db.purge_deleted_clusters()


class ReconcilerPlugin(ABC):
    """
    Abstract base class for reconciler plugins.

    Reconciler plugins own the reconciliation logic for one or more
    resource types. They run their own continuous reconciliation loop,
    reading from the resource store and reporting status back.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler, also used as its finalizer."""
        pass

    @property
    @abstractmethod
    def resource_types(self) -> List[str]:
        """Resource type names this reconciler handles."""
        pass

    @abstractmethod
    async def start(self, ctx: ReconcilerContext) -> None:
        """
        Start the reconciliation loop.

        The loop should run until ctx.shutdown_event is set.
        """
        pass

    @abstractmethod
    async def reconcile(
        self, resource: ComponentTemplate, ctx: ReconcilerContext
    ) -> ReconcileResult:
        """
        Reconcile a single resource.

        Compare desired state against actual state and take action.

        Returns:
            ReconcileResult telling the scheduler when to come back.
        """
        pass

    @abstractmethod
    async def finalize(
        self, resource: ComponentTemplate, ctx: ReconcilerContext
    ) -> None:
        """
        Clean up after a resource that is being deleted.

        Raises on failure; the resource keeps its finalizer until this
        completes.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Graceful shutdown. Clean up any resources."""
        pass
