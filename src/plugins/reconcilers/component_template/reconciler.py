"""
Component Template Reconciler - Drives one OpensearchComponentTemplate toward
its declared state.

A ComponentTemplateReconciler is built per invocation. reconcile() walks the
checks in order and stops at the first one that decides the outcome; the
outcome is then mapped to a state and requeue directive through TRANSITIONS
and written to the resource status once. delete() is the teardown run before
the resource's finalizer is removed.

Whether the remote template pre-existed is determined once and pinned in the
status together with the remote name. A pre-existing template is never
created, updated or deleted.
"""

import logging
from enum import Enum
from typing import Callable, Dict, NamedTuple, Optional

from gateway import (
    OpenSearchClusterClient,
    component_template_exists,
    create_client_for_cluster,
    create_or_update_component_template,
    delete_component_template,
    should_update_component_template,
    translate_component_template_to_request,
)
from events import EventType
from models import ComponentTemplate, Existence, OpenSearchCluster, TemplateState
from plugins.reconcilers.base import ReconcileResult, ReconcilerContext

logger = logging.getLogger(__name__)

# Event reason codes
OPENSEARCH_ERROR = "OpensearchError"
OPENSEARCH_PENDING = "OpensearchPending"
OPENSEARCH_REF_MISMATCH = "OpensearchRefMismatch"
OPENSEARCH_API_ERROR = "OpensearchAPIError"
OPENSEARCH_API_UPDATED = "OpensearchAPIUpdated"
STATUS_UPDATE_ERROR = "StatusUpdateError"
NAME_MISMATCH = "OpensearchComponentTemplateNameMismatch"
EXISTENCE_RECORDED = "ExistenceRecorded"

TEMPLATE_EXISTS_REASON = (
    "component template already exists in OpenSearch; not modifying"
)


class Outcome(Enum):
    """How a single reconcile invocation ended."""

    WAITING = "waiting"
    ADOPTED = "adopted"
    IN_SYNC = "in_sync"
    UPDATED = "updated"
    FAILED = "failed"
    UPDATE_FAILED = "update_failed"
    # Existence determined without persisting status
    RECORDED = "recorded"


class Requeue(Enum):
    NONE = "none"
    PENDING = "pending"
    IN_SYNC = "in_sync"


class Transition(NamedTuple):
    state: Optional[TemplateState]
    success: bool
    requeue: Requeue


TRANSITIONS: Dict[Outcome, Transition] = {
    Outcome.WAITING: Transition(TemplateState.PENDING, True, Requeue.PENDING),
    Outcome.ADOPTED: Transition(TemplateState.IGNORED, True, Requeue.NONE),
    Outcome.IN_SYNC: Transition(TemplateState.CREATED, True, Requeue.IN_SYNC),
    Outcome.UPDATED: Transition(TemplateState.CREATED, True, Requeue.IN_SYNC),
    Outcome.FAILED: Transition(TemplateState.ERROR, False, Requeue.NONE),
    Outcome.UPDATE_FAILED: Transition(TemplateState.ERROR, False, Requeue.IN_SYNC),
    Outcome.RECORDED: Transition(None, True, Requeue.NONE),
}

ClientFactory = Callable[..., OpenSearchClusterClient]


class ComponentTemplateReconciler:
    """Reconciles a single component template resource."""

    def __init__(
        self,
        ctx: ReconcilerContext,
        instance: ComponentTemplate,
        update_status: bool = True,
        client_factory: ClientFactory = create_client_for_cluster,
    ):
        self.ctx = ctx
        self.instance = instance
        self.update_status = update_status
        self.client_factory = client_factory
        self.cluster: Optional[OpenSearchCluster] = None
        self.client: Optional[OpenSearchClusterClient] = None
        self.reason = ""

    async def reconcile(self) -> ReconcileResult:
        """
        Run one reconciliation pass.

        Returns:
            ReconcileResult whose requeue_after is the pending interval while
            waiting on the cluster and the in-sync interval in steady state.
        """
        try:
            outcome = await self._reconcile()
        finally:
            await self._close_client()

        transition = TRANSITIONS[outcome]
        if self.update_status and outcome is not Outcome.RECORDED:
            await self._write_final_status(transition.state)

        return self._result(outcome, transition)

    async def delete(self) -> None:
        """
        Remove the remote template if this resource owns it.

        Raises:
            Exception: Any lookup, client or API failure; the caller keeps
                the finalizer and retries later
        """
        existence = self.instance.status.existing_component_template
        if existence is Existence.UNKNOWN:
            return
        if existence is Existence.TRUE:
            logger.info(
                f"component template {self.instance.name} was pre-existing; "
                f"not deleting"
            )
            return

        cluster = await self.ctx.fetch_cluster(
            self.instance.namespace, self.instance.cluster_name
        )
        if cluster is None or cluster.is_deleting:
            return

        name = self.instance.status.component_template_name or self._template_name()
        client = self.client_factory(cluster, self.ctx.opensearch_config)
        try:
            if not await component_template_exists(client, name):
                logger.debug(f"component template {name} already deleted from opensearch")
                return
            await delete_component_template(client, name)
            logger.info(f"Deleted component template {name} from opensearch")
        finally:
            await client.close()

    async def _reconcile(self) -> Outcome:
        instance = self.instance

        try:
            self.cluster = await self.ctx.fetch_cluster(
                instance.namespace, instance.cluster_name
            )
        except Exception as e:
            logger.error(f"failed to fetch opensearch cluster: {e}")
            return await self._fail(OPENSEARCH_ERROR, "error fetching opensearch cluster")

        if self.cluster is None:
            logger.info("opensearch cluster does not exist, requeueing")
            return await self._wait("waiting for opensearch cluster to exist")

        # Cluster ref is immutable once pinned
        managed_cluster = instance.status.managed_cluster
        if managed_cluster is not None:
            if managed_cluster != self.cluster.uid:
                return await self._fail(
                    OPENSEARCH_REF_MISMATCH,
                    "cannot change the cluster a component template refers to",
                )
        elif self.update_status:
            uid = self.cluster.uid

            def pin_cluster(latest: ComponentTemplate) -> None:
                latest.status.managed_cluster = uid

            if not await self._persist(pin_cluster):
                return Outcome.FAILED

        if not self.cluster.is_ready:
            logger.info("opensearch cluster is not running, requeueing")
            return await self._wait("waiting for opensearch cluster status to be running")

        try:
            self.client = self.client_factory(self.cluster, self.ctx.opensearch_config)
        except Exception as e:
            logger.error(f"error creating opensearch client: {e}")
            return await self._fail(OPENSEARCH_ERROR, "error creating opensearch client")

        template_name = self._template_name()

        # Never touch templates that existed before this resource did
        if self.instance.status.existing_component_template is Existence.UNKNOWN:
            try:
                exists = await component_template_exists(self.client, template_name)
            except Exception as e:
                return await self._api_error(
                    "failed to get component template status from OpenSearch API", e
                )

            if not self.update_status:
                await self.ctx.event(
                    self.instance,
                    EventType.NORMAL,
                    EXISTENCE_RECORDED,
                    f"exists is {str(exists).lower()}",
                )
                return Outcome.RECORDED

            def pin_existence(latest: ComponentTemplate) -> None:
                latest.status.existing_component_template = Existence.from_bool(exists)
                latest.status.component_template_name = template_name

            if not await self._persist(pin_existence):
                return Outcome.FAILED

        if self.instance.status.existing_component_template is Existence.TRUE:
            self.reason = TEMPLATE_EXISTS_REASON
            return Outcome.ADOPTED

        pinned_name = self.instance.status.component_template_name
        if pinned_name and pinned_name != template_name:
            return await self._fail(NAME_MISMATCH, "cannot change the component template name")

        desired = translate_component_template_to_request(self.instance.spec)

        try:
            should_update = await should_update_component_template(
                self.client, template_name, desired
            )
        except Exception as e:
            return await self._api_error(
                "failed to get component template status from OpenSearch API", e
            )

        if not should_update:
            logger.debug(f"component template {self.instance.name} is in sync")
            return Outcome.IN_SYNC

        try:
            await create_or_update_component_template(self.client, template_name, desired)
        except Exception as e:
            await self._api_error(
                "failed to update component template with OpenSearch API", e
            )
            return Outcome.UPDATE_FAILED

        await self.ctx.event(
            self.instance,
            EventType.NORMAL,
            OPENSEARCH_API_UPDATED,
            "component template updated in opensearch",
        )
        return Outcome.UPDATED

    def _template_name(self) -> str:
        return self.instance.template_name

    async def _wait(self, reason: str) -> Outcome:
        self.reason = reason
        await self.ctx.event(self.instance, EventType.NORMAL, OPENSEARCH_PENDING, reason)
        return Outcome.WAITING

    async def _fail(self, code: str, reason: str) -> Outcome:
        self.reason = reason
        await self.ctx.event(self.instance, EventType.WARNING, code, reason)
        return Outcome.FAILED

    async def _api_error(self, reason: str, error: Exception) -> Outcome:
        logger.error(f"{reason}: {error}")
        return await self._fail(OPENSEARCH_API_ERROR, reason)

    async def _persist(self, mutate: Callable[[ComponentTemplate], None]) -> bool:
        """Apply a status mutation under conflict retry; False on failure."""
        try:
            self.instance = await self.ctx.update_status(self.instance, mutate)
        except Exception as e:
            await self._fail(STATUS_UPDATE_ERROR, f"failed to update status: {e}")
            return False
        return True

    async def _write_final_status(self, state: Optional[TemplateState]) -> None:
        reason = self.reason

        def apply(latest: ComponentTemplate) -> None:
            latest.status.reason = reason
            if state is not None:
                latest.status.state = state

        try:
            self.instance = await self.ctx.update_status(self.instance, apply)
        except Exception as e:
            logger.error(f"failed to update status of {self.instance.name}: {e}")

    async def _close_client(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None

    def _result(self, outcome: Outcome, transition: Transition) -> ReconcileResult:
        requeue_after = None
        if transition.requeue is Requeue.PENDING:
            requeue_after = self.ctx.config.pending_requeue_interval
        elif transition.requeue is Requeue.IN_SYNC:
            requeue_after = self.ctx.config.in_sync_requeue_interval

        return ReconcileResult(
            success=transition.success,
            message=self.reason,
            requeue=requeue_after is not None,
            requeue_after=requeue_after,
            outcome=outcome,
        )
