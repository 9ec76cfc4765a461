"""
Resource Models - Declarative component templates and their owning clusters.

These are the typed views of rows stored by the DatabaseManager. The
reconciler only ever reads clusters; component template status is written
back through the optimistic-concurrency status update protocol.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

COMPONENT_TEMPLATE_KIND = "OpensearchComponentTemplate"


class ClusterPhase(Enum):
    """Readiness phase of an OpenSearch cluster."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    FAILED = "FAILED"


class TemplateState(Enum):
    """Phase of a component template as reported in its status."""

    PENDING = "PENDING"
    CREATED = "CREATED"
    IGNORED = "IGNORED"
    ERROR = "ERROR"


class Existence(Enum):
    """
    Whether the remote template existed before this resource adopted it.

    Determined once, on the first existence check, and never recomputed.
    """

    UNKNOWN = "unknown"
    TRUE = "true"
    FALSE = "false"

    @classmethod
    def from_bool(cls, value: Optional[bool]) -> "Existence":
        if value is None:
            return cls.UNKNOWN
        return cls.TRUE if value else cls.FALSE

    def to_bool(self) -> Optional[bool]:
        if self is Existence.UNKNOWN:
            return None
        return self is Existence.TRUE


@dataclass
class OpenSearchCluster:
    """An OpenSearch cluster that component templates can be applied to."""

    id: int
    uid: str
    namespace: str
    name: str
    http_endpoint: str
    phase: ClusterPhase = ClusterPhase.PENDING
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    verify_ssl: Optional[bool] = None
    deletion_timestamp: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        return self.phase is ClusterPhase.RUNNING

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OpenSearchCluster":
        return cls(
            id=data["id"],
            uid=data["uid"],
            namespace=data["namespace"],
            name=data["name"],
            http_endpoint=data.get("http_endpoint") or "",
            phase=ClusterPhase(data.get("phase") or ClusterPhase.PENDING.value),
            username=data.get("username"),
            password=data.get("password"),
            verify_ssl=data.get("verify_ssl"),
            deletion_timestamp=data.get("deletion_timestamp"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class ComponentTemplateStatus:
    """Observed state of a component template, owned by the reconciler."""

    state: Optional[TemplateState] = None
    reason: str = ""
    managed_cluster: Optional[str] = None
    existing_component_template: Existence = Existence.UNKNOWN
    component_template_name: str = ""


@dataclass
class ComponentTemplate:
    """
    Declarative OpensearchComponentTemplate resource.

    The spec is kept in its declared (camelCase) form:

        {
            "opensearchCluster": {"name": "logs"},
            "name": "logs-settings",          # optional remote name override
            "template": {"settings": ..., "mappings": ..., "aliases": ...},
            "version": 1,
            "allowAutoCreate": true,
            "_meta": {...}
        }
    """

    id: int
    uid: str
    namespace: str
    name: str
    spec: Dict[str, Any]
    status: ComponentTemplateStatus = field(default_factory=ComponentTemplateStatus)
    generation: int = 1
    resource_version: int = 1
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    retry_count: int = 0
    last_reconcile_time: Optional[datetime] = None
    next_reconcile_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def cluster_name(self) -> str:
        return (self.spec.get("opensearchCluster") or {}).get("name", "")

    @property
    def template_name(self) -> str:
        """Remote template name: the spec override if set, else the resource name."""
        return self.spec.get("name") or self.name

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComponentTemplate":
        state = data.get("state")
        return cls(
            id=data["id"],
            uid=data["uid"],
            namespace=data["namespace"],
            name=data["name"],
            spec=data.get("spec") or {},
            status=ComponentTemplateStatus(
                state=TemplateState(state) if state else None,
                reason=data.get("reason") or "",
                managed_cluster=data.get("managed_cluster"),
                existing_component_template=Existence.from_bool(
                    data.get("existing_component_template")
                ),
                component_template_name=data.get("component_template_name") or "",
            ),
            generation=data.get("generation", 1),
            resource_version=data.get("resource_version", 1),
            finalizers=data.get("finalizers") or [],
            deletion_timestamp=data.get("deletion_timestamp"),
            retry_count=data.get("retry_count", 0),
            last_reconcile_time=data.get("last_reconcile_time"),
            next_reconcile_time=data.get("next_reconcile_time"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
