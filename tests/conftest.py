"""Pytest configuration and fixtures."""

import asyncio
import copy
from unittest.mock import AsyncMock, MagicMock

import pytest

from db import ConflictError
from events import EventRecorder
from models import (
    ClusterPhase,
    ComponentTemplate,
    ComponentTemplateStatus,
    OpenSearchCluster,
)
from plugins.reconcilers.base import Backoff, ReconcilerContext

CLUSTER_UID = "6f1c2d1e-0000-4000-8000-000000000001"


class MockRecord:
    """Mock that behaves like asyncpg.Record."""

    def __init__(self, data):
        self._data = data

    def __iter__(self):
        return iter(self._data.items())

    def keys(self):
        return self._data.keys()

    def get(self, key, default=None):
        return self._data.get(key, default)

    def __getitem__(self, key):
        return self._data[key]


class FakeTemplateStore:
    """
    In-memory stand-in for the DatabaseManager's template and cluster reads.

    Status writes follow the same optimistic-concurrency contract as the
    real store: they only succeed against the current resource_version.
    """

    def __init__(self, template: ComponentTemplate, cluster=None):
        self.template = copy.deepcopy(template)
        self.get_cluster = AsyncMock(return_value=cluster)
        self.status_writes = 0
        self.forced_conflicts = 0

    async def get_component_template(self, namespace, name):
        if self.template is None:
            return None
        return copy.deepcopy(self.template)

    async def update_component_template_status(self, template):
        if self.forced_conflicts:
            self.forced_conflicts -= 1
            raise ConflictError("resource version changed")
        if template.resource_version != self.template.resource_version:
            raise ConflictError("resource version changed")
        template.resource_version += 1
        self.template = copy.deepcopy(template)
        self.status_writes += 1
        return template

    def edit_spec(self, **changes):
        """Simulate a user edit, bumping generation and resource_version."""
        self.template.spec.update(changes)
        self.template.generation += 1
        self.template.resource_version += 1


def make_template(
    name: str = "logs-settings",
    spec=None,
    status=None,
    **kwargs,
) -> ComponentTemplate:
    if spec is None:
        spec = {
            "opensearchCluster": {"name": "logs"},
            "template": {
                "settings": {"number_of_shards": 1},
                "mappings": {"properties": {"message": {"type": "text"}}},
            },
            "version": 1,
        }
    return ComponentTemplate(
        id=kwargs.pop("id", 1),
        uid=kwargs.pop("uid", "a9d2d5c8-0000-4000-8000-000000000002"),
        namespace=kwargs.pop("namespace", "default"),
        name=name,
        spec=spec,
        status=status or ComponentTemplateStatus(),
        **kwargs,
    )


def make_cluster(
    phase: ClusterPhase = ClusterPhase.RUNNING, **kwargs
) -> OpenSearchCluster:
    return OpenSearchCluster(
        id=kwargs.pop("id", 1),
        uid=kwargs.pop("uid", CLUSTER_UID),
        namespace=kwargs.pop("namespace", "default"),
        name=kwargs.pop("name", "logs"),
        http_endpoint=kwargs.pop("http_endpoint", "https://logs.default:9200"),
        phase=phase,
        **kwargs,
    )


def make_client(exists: bool = False, remote=None) -> MagicMock:
    """Create a mock OpenSearchClusterClient."""
    client = MagicMock()
    client.component_template_exists = AsyncMock(return_value=exists)
    client.get_component_template = AsyncMock(return_value=remote)
    client.put_component_template = AsyncMock()
    client.delete_component_template = AsyncMock()
    client.close = AsyncMock()
    return client


def make_context(db, recorder=None) -> ReconcilerContext:
    return ReconcilerContext(
        db=db,
        recorder=recorder or AsyncMock(spec=EventRecorder),
        shutdown_event=asyncio.Event(),
        status_retry=Backoff(duration=0),
    )


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def sample_template_row():
    """Sample component_templates row as returned by asyncpg."""
    return {
        "id": 1,
        "uid": "a9d2d5c8-0000-4000-8000-000000000002",
        "namespace": "default",
        "name": "logs-settings",
        "spec": '{"opensearchCluster": {"name": "logs"}, "template": {}}',
        "generation": 2,
        "resource_version": 7,
        "finalizers": '["component_templates"]',
        "deletion_timestamp": None,
        "state": "CREATED",
        "reason": "",
        "managed_cluster": CLUSTER_UID,
        "existing_component_template": False,
        "component_template_name": "logs-settings",
        "retry_count": 0,
        "last_reconcile_time": None,
        "next_reconcile_time": None,
        "created_at": None,
        "updated_at": None,
    }


@pytest.fixture
def sample_cluster_row():
    """Sample opensearch_clusters row as returned by asyncpg."""
    return {
        "id": 1,
        "uid": CLUSTER_UID,
        "namespace": "default",
        "name": "logs",
        "http_endpoint": "https://logs.default:9200",
        "username": "admin",
        "password": "admin",
        "verify_ssl": None,
        "phase": "RUNNING",
        "deletion_timestamp": None,
        "created_at": None,
        "updated_at": None,
    }
