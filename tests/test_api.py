"""Unit tests for the HTTP input plugin REST API."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import make_cluster, make_template
from db import ConflictError, ResourceNotFoundError
from models import ClusterPhase
from plugins.inputs.http import HTTPInputPlugin
from plugins.reconcilers.component_template import ComponentTemplateReconcilerPlugin
from plugins.registry import get_registry, reset_registry

BASE = "/api/v1/namespaces/default"

VALID_SPEC = {
    "opensearchCluster": {"name": "logs"},
    "template": {"settings": {"number_of_shards": 1}},
}


@pytest.fixture(autouse=True)
def fresh_registry():
    reset_registry()
    get_registry().register_reconciler_plugin(ComponentTemplateReconcilerPlugin)
    yield
    reset_registry()


@pytest.fixture
def mock_db():
    return AsyncMock()


@pytest.fixture
def plugin(mock_db):
    plugin = HTTPInputPlugin()
    asyncio.run(plugin.initialize({"host": "127.0.0.1", "port": 8080}))
    plugin.set_db_manager(mock_db)
    return plugin


@pytest.fixture
def client(plugin):
    return TestClient(plugin.app)


class TestPluginBasics:
    def test_identity(self):
        plugin = HTTPInputPlugin()
        assert plugin.name == "http"
        assert plugin.version == "1.0.0"

    def test_initialize_reads_config(self, plugin):
        assert plugin.host == "127.0.0.1"
        assert plugin.port == 8080
        assert plugin.log_level == "info"

    def test_load_config_from_env(self, monkeypatch):
        monkeypatch.setenv("API_PORT", "9001")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        cfg = HTTPInputPlugin.load_config_from_env()

        assert cfg["port"] == 9001
        assert cfg["log_level"] == "debug"

    def test_health_check_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "service": "opensearch-template-operator",
        }

    def test_health_check_not_running(self, plugin):
        is_healthy, _ = asyncio.run(plugin.health_check())
        assert is_healthy is False

    def test_database_unavailable(self, plugin):
        plugin.set_db_manager(None)
        client = TestClient(plugin.app)

        response = client.get(f"{BASE}/componenttemplates")

        assert response.status_code == 503


class TestClusterEndpoints:
    def test_register_cluster(self, client, mock_db):
        mock_db.create_cluster.return_value = make_cluster(phase=ClusterPhase.PENDING)

        response = client.post(
            f"{BASE}/opensearchclusters",
            json={
                "name": "logs",
                "http_endpoint": "https://logs.default:9200",
                "username": "admin",
                "password": "secret",
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["phase"] == "PENDING"
        assert "password" not in body
        kwargs = mock_db.create_cluster.call_args.kwargs
        assert kwargs["namespace"] == "default"
        assert kwargs["phase"] is ClusterPhase.PENDING

    def test_register_cluster_invalid_name(self, client, mock_db):
        response = client.post(
            f"{BASE}/opensearchclusters",
            json={"name": "Logs_Cluster", "http_endpoint": "https://x:9200"},
        )

        assert response.status_code == 422
        mock_db.create_cluster.assert_not_called()

    def test_register_duplicate_cluster(self, client, mock_db):
        mock_db.create_cluster.side_effect = Exception(
            "duplicate key value violates unique constraint"
        )

        response = client.post(
            f"{BASE}/opensearchclusters",
            json={"name": "logs", "http_endpoint": "https://x:9200"},
        )

        assert response.status_code == 409

    def test_get_cluster_not_found(self, client, mock_db):
        mock_db.get_cluster.return_value = None

        assert client.get(f"{BASE}/opensearchclusters/logs").status_code == 404

    def test_update_cluster_status(self, client, mock_db):
        mock_db.update_cluster_phase.return_value = True
        mock_db.get_cluster.return_value = make_cluster()

        response = client.put(
            f"{BASE}/opensearchclusters/logs/status", json={"phase": "RUNNING"}
        )

        assert response.status_code == 200
        assert response.json()["phase"] == "RUNNING"
        mock_db.update_cluster_phase.assert_called_once_with(
            "default", "logs", ClusterPhase.RUNNING
        )

    def test_update_unknown_cluster_status(self, client, mock_db):
        mock_db.update_cluster_phase.return_value = False

        response = client.put(
            f"{BASE}/opensearchclusters/logs/status", json={"phase": "RUNNING"}
        )

        assert response.status_code == 404

    def test_delete_cluster(self, client, mock_db):
        mock_db.mark_cluster_deleted.return_value = True

        assert client.delete(f"{BASE}/opensearchclusters/logs").status_code == 202


class TestComponentTemplateEndpoints:
    def test_create(self, client, mock_db):
        mock_db.create_component_template.return_value = make_template(
            spec=VALID_SPEC, finalizers=["component_templates"]
        )

        response = client.post(
            f"{BASE}/componenttemplates",
            json={"name": "logs-settings", "spec": VALID_SPEC},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["kind"] == "OpensearchComponentTemplate"
        assert body["status"]["existing_component_template"] is None
        mock_db.create_component_template.assert_called_once_with(
            namespace="default",
            name="logs-settings",
            spec=VALID_SPEC,
            finalizers=["component_templates"],
        )

    def test_create_invalid_spec(self, client, mock_db):
        response = client.post(
            f"{BASE}/componenttemplates",
            json={"name": "logs-settings", "spec": {"template": {}}},
        )

        assert response.status_code == 400
        assert response.json()["detail"].startswith("Spec validation failed")
        mock_db.create_component_template.assert_not_called()

    def test_create_without_reconciler(self, client, mock_db):
        reset_registry()

        response = client.post(
            f"{BASE}/componenttemplates",
            json={"name": "logs-settings", "spec": VALID_SPEC},
        )

        assert response.status_code == 400
        assert "No reconciler plugin registered" in response.json()["detail"]

    def test_create_invalid_namespace(self, client):
        response = client.post(
            "/api/v1/namespaces/Bad_NS/componenttemplates",
            json={"name": "logs-settings", "spec": VALID_SPEC},
        )

        assert response.status_code == 400

    def test_create_duplicate(self, client, mock_db):
        mock_db.create_component_template.side_effect = Exception(
            "unique constraint violated"
        )

        response = client.post(
            f"{BASE}/componenttemplates",
            json={"name": "logs-settings", "spec": VALID_SPEC},
        )

        assert response.status_code == 409

    def test_list_with_state_filter(self, client, mock_db):
        mock_db.list_component_templates.return_value = [make_template()]

        response = client.get(f"{BASE}/componenttemplates?state=CREATED&limit=5")

        assert response.status_code == 200
        assert len(response.json()) == 1
        mock_db.list_component_templates.assert_called_once_with(
            "default", state="CREATED", limit=5
        )

    def test_get_not_found(self, client, mock_db):
        mock_db.get_component_template.return_value = None

        response = client.get(f"{BASE}/componenttemplates/missing")

        assert response.status_code == 404

    def test_update(self, client, mock_db):
        mock_db.get_component_template.return_value = make_template()
        mock_db.update_component_template_spec.return_value = make_template(
            generation=2
        )

        response = client.put(
            f"{BASE}/componenttemplates/logs-settings",
            json={"spec": VALID_SPEC, "resource_version": 1},
        )

        assert response.status_code == 200
        assert response.json()["generation"] == 2
        mock_db.update_component_template_spec.assert_called_once_with(
            "default", "logs-settings", VALID_SPEC, resource_version=1
        )

    def test_update_conflict(self, client, mock_db):
        mock_db.get_component_template.return_value = make_template()
        mock_db.update_component_template_spec.side_effect = ConflictError("stale")

        response = client.put(
            f"{BASE}/componenttemplates/logs-settings",
            json={"spec": VALID_SPEC, "resource_version": 1},
        )

        assert response.status_code == 409
        assert response.json()["detail"] == "stale"

    def test_update_vanished(self, client, mock_db):
        mock_db.get_component_template.return_value = make_template()
        mock_db.update_component_template_spec.side_effect = ResourceNotFoundError(
            "gone"
        )

        response = client.put(
            f"{BASE}/componenttemplates/logs-settings", json={"spec": VALID_SPEC}
        )

        assert response.status_code == 404

    def test_update_while_deleting(self, client, mock_db):
        mock_db.get_component_template.return_value = make_template(
            deletion_timestamp=datetime.now(timezone.utc)
        )

        response = client.put(
            f"{BASE}/componenttemplates/logs-settings", json={"spec": VALID_SPEC}
        )

        assert response.status_code == 409
        mock_db.update_component_template_spec.assert_not_called()

    def test_update_invalid_spec(self, client, mock_db):
        response = client.put(
            f"{BASE}/componenttemplates/logs-settings",
            json={"spec": {"opensearchCluster": {"name": "logs"}}},
        )

        assert response.status_code == 400
        mock_db.get_component_template.assert_not_called()

    def test_delete_with_finalizer(self, client, mock_db):
        mock_db.mark_component_template_deleted.return_value = make_template(
            finalizers=["component_templates"]
        )

        response = client.delete(f"{BASE}/componenttemplates/logs-settings")

        assert response.status_code == 202
        assert response.json()["message"] == "Component template marked for deletion"
        mock_db.hard_delete_component_template.assert_not_called()

    def test_delete_without_finalizers(self, client, mock_db):
        mock_db.mark_component_template_deleted.return_value = make_template(
            id=5, finalizers=[]
        )

        response = client.delete(f"{BASE}/componenttemplates/logs-settings")

        assert response.status_code == 202
        assert response.json()["message"] == "Component template deleted"
        mock_db.hard_delete_component_template.assert_called_once_with(5)

    def test_delete_not_found(self, client, mock_db):
        mock_db.mark_component_template_deleted.return_value = None

        response = client.delete(f"{BASE}/componenttemplates/missing")

        assert response.status_code == 404

    def test_trigger_reconciliation(self, client, mock_db):
        mock_db.mark_for_reconciliation.return_value = True

        response = client.post(f"{BASE}/componenttemplates/logs-settings/reconcile")

        assert response.status_code == 202
        mock_db.mark_for_reconciliation.assert_called_once_with(
            "default", "logs-settings"
        )

    def test_trigger_reconciliation_not_found(self, client, mock_db):
        mock_db.mark_for_reconciliation.return_value = False

        response = client.post(f"{BASE}/componenttemplates/missing/reconcile")

        assert response.status_code == 404

    def test_list_events(self, client, mock_db):
        mock_db.get_component_template.return_value = make_template(id=3)
        mock_db.list_events.return_value = [
            {
                "id": 1,
                "resource_id": 3,
                "event_type": "Normal",
                "reason": "OpensearchAPIUpdated",
                "message": "component template updated in opensearch",
                "created_at": datetime(2024, 1, 15, tzinfo=timezone.utc),
            }
        ]

        response = client.get(f"{BASE}/componenttemplates/logs-settings/events")

        assert response.status_code == 200
        assert response.json()[0]["reason"] == "OpensearchAPIUpdated"
        mock_db.list_events.assert_called_once_with(3, limit=50)


class TestEventStream:
    def test_stream_without_event_bus(self, client):
        response = client.get("/api/v1/events")

        assert response.status_code == 503
