"""Unit tests for the component template reconciler plugin loop."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import ControllerConfig
from conftest import make_template
from models import COMPONENT_TEMPLATE_KIND
from plugins.reconcilers.base import ReconcilerContext, ReconcileResult
from plugins.reconcilers.component_template import (
    FINALIZER,
    ComponentTemplateReconcilerPlugin,
    Outcome,
)


@pytest.fixture
def mock_db():
    db = AsyncMock()
    db.get_component_templates_needing_reconciliation = AsyncMock(return_value=[])
    db.purge_deleted_clusters = AsyncMock(return_value=0)
    db.schedule_reconcile = AsyncMock()
    db.requeue_after_failure = AsyncMock()
    db.remove_finalizer = AsyncMock()
    db.get_finalizers = AsyncMock(return_value=[])
    db.hard_delete_component_template = AsyncMock(return_value=True)
    return db


@pytest.fixture
def ctx(mock_db):
    return ReconcilerContext(
        db=mock_db,
        recorder=AsyncMock(),
        shutdown_event=asyncio.Event(),
        config=ControllerConfig(reconcile_interval=1, max_concurrent_reconciles=2),
    )


@pytest.fixture
def plugin():
    return ComponentTemplateReconcilerPlugin(client_factory=MagicMock())


def deleting_template(finalizers=None):
    return make_template(
        finalizers=[FINALIZER] if finalizers is None else finalizers,
        deletion_timestamp=datetime.now(timezone.utc),
    )


class TestPluginIdentity:
    def test_name_is_finalizer(self, plugin):
        assert plugin.name == FINALIZER == "component_templates"

    def test_resource_types(self, plugin):
        assert plugin.resource_types == [COMPONENT_TEMPLATE_KIND]


@pytest.mark.asyncio
class TestScheduling:
    """Tests for turning reconcile results into the next reconcile time."""

    async def test_requeue_after_is_honored(self, plugin, ctx, mock_db):
        template = make_template()
        result = ReconcileResult(success=True, requeue=True, requeue_after=10)

        with patch.object(plugin, "reconcile", AsyncMock(return_value=result)):
            await plugin._process(template, ctx)

        mock_db.schedule_reconcile.assert_called_once_with(template.id, 10)
        mock_db.requeue_after_failure.assert_not_called()

    async def test_success_without_requeue_uses_resync(self, plugin, ctx, mock_db):
        template = make_template()
        result = ReconcileResult(success=True, outcome=Outcome.ADOPTED)

        with patch.object(plugin, "reconcile", AsyncMock(return_value=result)):
            await plugin._process(template, ctx)

        mock_db.schedule_reconcile.assert_called_once_with(
            template.id, ctx.config.resync_interval
        )

    async def test_failure_backs_off(self, plugin, ctx, mock_db):
        template = make_template()
        result = ReconcileResult(success=False, message="error creating opensearch client")

        with patch.object(plugin, "reconcile", AsyncMock(return_value=result)):
            await plugin._process(template, ctx)

        mock_db.requeue_after_failure.assert_called_once()
        assert mock_db.requeue_after_failure.call_args.args[0] == template.id
        mock_db.schedule_reconcile.assert_not_called()

    async def test_update_failure_backs_off(self, plugin, ctx, mock_db):
        template = make_template()
        result = ReconcileResult(
            success=False, requeue=True, requeue_after=30, outcome=Outcome.UPDATE_FAILED
        )

        with patch.object(plugin, "reconcile", AsyncMock(return_value=result)):
            await plugin._process(template, ctx)

        mock_db.requeue_after_failure.assert_called_once()
        mock_db.schedule_reconcile.assert_not_called()

    async def test_reconcile_exception_backs_off(self, plugin, ctx, mock_db):
        template = make_template()

        with patch.object(
            plugin, "reconcile", AsyncMock(side_effect=RuntimeError("unexpected"))
        ):
            await plugin._process(template, ctx)

        mock_db.requeue_after_failure.assert_called_once()

    async def test_run_once_processes_due_resources(self, plugin, ctx, mock_db):
        templates = [make_template(id=1), make_template(name="other", id=2)]
        mock_db.get_component_templates_needing_reconciliation.return_value = templates
        result = ReconcileResult(success=True, requeue=True, requeue_after=30)

        with patch.object(plugin, "reconcile", AsyncMock(return_value=result)) as rec:
            processed = await plugin.run_once(ctx)

        assert processed == 2
        assert rec.call_count == 2
        mock_db.get_component_templates_needing_reconciliation.assert_called_once_with(
            limit=4
        )
        mock_db.purge_deleted_clusters.assert_called_once()
        assert mock_db.schedule_reconcile.call_count == 2

    async def test_run_once_with_nothing_due(self, plugin, ctx, mock_db):
        with patch.object(plugin, "reconcile", AsyncMock()) as rec:
            processed = await plugin.run_once(ctx)

        assert processed == 0
        rec.assert_not_called()

    async def test_run_once_isolates_failures(self, plugin, ctx, mock_db):
        templates = [make_template(id=1), make_template(name="other", id=2)]
        mock_db.get_component_templates_needing_reconciliation.return_value = templates
        mock_db.schedule_reconcile.side_effect = [RuntimeError("db down"), None]
        result = ReconcileResult(success=True, requeue=True, requeue_after=30)

        with patch.object(plugin, "reconcile", AsyncMock(return_value=result)):
            processed = await plugin.run_once(ctx)

        assert processed == 2
        assert mock_db.schedule_reconcile.call_count == 2

    async def test_start_stops_on_shutdown(self, plugin, ctx):
        with patch.object(plugin, "run_once", AsyncMock(return_value=0)) as run_once:
            task = asyncio.create_task(plugin.start(ctx))
            await asyncio.sleep(0.05)
            ctx.shutdown_event.set()
            await asyncio.wait_for(task, timeout=2)

        run_once.assert_called_once_with(ctx)

    async def test_start_survives_run_once_errors(self, plugin, ctx):
        calls = 0

        async def flaky(c):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("db down")
            ctx.shutdown_event.set()
            return 0

        ctx.config.reconcile_interval = 0
        with patch.object(plugin, "run_once", side_effect=flaky):
            await asyncio.wait_for(plugin.start(ctx), timeout=2)

        assert calls == 2

    async def test_stop(self, plugin):
        plugin._running = True
        await plugin.stop()
        assert plugin._running is False

    async def test_reconcile_uses_client_factory(self, ctx, mock_db):
        mock_db.get_cluster = AsyncMock(return_value=None)
        mock_db.get_component_template = AsyncMock(return_value=make_template())
        mock_db.update_component_template_status = AsyncMock(
            side_effect=lambda t: t
        )
        factory = MagicMock()
        plugin = ComponentTemplateReconcilerPlugin(client_factory=factory)

        result = await plugin.reconcile(make_template(), ctx)

        assert result.outcome is Outcome.WAITING
        assert result.requeue_after == ctx.config.pending_requeue_interval
        factory.assert_not_called()


@pytest.mark.asyncio
class TestFinalization:
    """Tests for deletion handling and finalizer release."""

    async def test_finalizes_and_hard_deletes(self, plugin, ctx, mock_db):
        template = deleting_template()

        with patch.object(plugin, "finalize", AsyncMock()) as finalize:
            await plugin._process(template, ctx)

        finalize.assert_called_once_with(template, ctx)
        mock_db.remove_finalizer.assert_called_once_with(template.id, FINALIZER)
        mock_db.hard_delete_component_template.assert_called_once_with(template.id)

    async def test_teardown_failure_keeps_finalizer(self, plugin, ctx, mock_db):
        template = deleting_template()

        with patch.object(
            plugin, "finalize", AsyncMock(side_effect=RuntimeError("cluster down"))
        ):
            await plugin._process(template, ctx)

        mock_db.remove_finalizer.assert_not_called()
        mock_db.hard_delete_component_template.assert_not_called()
        mock_db.requeue_after_failure.assert_called_once()

    async def test_other_finalizers_block_hard_delete(self, plugin, ctx, mock_db):
        template = deleting_template([FINALIZER, "backup"])
        mock_db.get_finalizers.return_value = ["backup"]

        with patch.object(plugin, "finalize", AsyncMock()):
            await plugin._process(template, ctx)

        mock_db.remove_finalizer.assert_called_once_with(template.id, FINALIZER)
        mock_db.hard_delete_component_template.assert_not_called()
        mock_db.schedule_reconcile.assert_called_once_with(
            template.id, ctx.config.resync_interval
        )

    async def test_without_own_finalizer_skips_teardown(self, plugin, ctx, mock_db):
        template = deleting_template([])

        with patch.object(plugin, "finalize", AsyncMock()) as finalize:
            await plugin._process(template, ctx)

        finalize.assert_not_called()
        mock_db.remove_finalizer.assert_not_called()
        mock_db.hard_delete_component_template.assert_called_once_with(template.id)

    async def test_deleting_resource_is_not_reconciled(self, plugin, ctx):
        template = deleting_template()

        with patch.object(plugin, "finalize", AsyncMock()), patch.object(
            plugin, "reconcile", AsyncMock()
        ) as reconcile:
            await plugin._process(template, ctx)

        reconcile.assert_not_called()

    async def test_finalize_runs_teardown(self, ctx, mock_db):
        # Never reconciled, so teardown has nothing to remove
        factory = MagicMock()
        plugin = ComponentTemplateReconcilerPlugin(client_factory=factory)
        mock_db.get_cluster = AsyncMock()

        await plugin.finalize(deleting_template(), ctx)

        mock_db.get_cluster.assert_not_called()
        factory.assert_not_called()
