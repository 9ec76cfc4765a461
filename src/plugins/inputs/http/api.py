"""
HTTP Input Plugin - REST API for declaring clusters and component templates.

This plugin provides a FastAPI-based REST API for registering OpenSearch
clusters and creating, updating and deleting OpensearchComponentTemplate
resources. It only writes to the resource store; the reconciler does the
rest.
"""

import asyncio
import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from db import ConflictError, ResourceNotFoundError
from events import AuditEvent, EventBus
from models import (
    COMPONENT_TEMPLATE_KIND,
    ClusterPhase,
    ComponentTemplate,
    OpenSearchCluster,
)
from plugins.inputs.base import InputPlugin, validate_resource_type
from validation import validate_component_template_spec

logger = logging.getLogger(__name__)

# Validation constants
# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_SPEC_SIZE = 1024 * 1024  # 1MB max for spec


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_json_size(
    value: Optional[Dict[str, Any]], field_name: str
) -> Optional[Dict[str, Any]]:
    """Validate that JSON data doesn't exceed size limits."""
    if value is not None:
        json_str = json.dumps(value)
        if len(json_str) > MAX_SPEC_SIZE:
            raise ValueError(
                f"{field_name} exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB"
            )
    return value


# Cluster models


class ClusterCreate(BaseModel):
    """Request model for registering an OpenSearch cluster."""

    name: str = Field(..., description="Cluster name", examples=["logs"])
    http_endpoint: str = Field(
        ..., description="Base URL of the cluster", examples=["https://logs:9200"]
    )
    username: Optional[str] = Field(None, description="Basic auth username")
    password: Optional[str] = Field(None, description="Basic auth password")
    verify_ssl: Optional[bool] = Field(
        None, description="Verify TLS certificates (defaults to operator setting)"
    )
    phase: ClusterPhase = Field(
        default=ClusterPhase.PENDING, description="Initial readiness phase"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")


class ClusterStatusUpdate(BaseModel):
    """Request model for reporting a cluster's readiness phase."""

    phase: ClusterPhase


class ClusterResponse(BaseModel):
    """Response model for a cluster. Credentials are never returned."""

    uid: str
    namespace: str
    name: str
    http_endpoint: str
    phase: str
    verify_ssl: Optional[bool] = None
    deletion_timestamp: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_cluster(cls, cluster: OpenSearchCluster) -> "ClusterResponse":
        return cls(
            uid=cluster.uid,
            namespace=cluster.namespace,
            name=cluster.name,
            http_endpoint=cluster.http_endpoint,
            phase=cluster.phase.value,
            verify_ssl=cluster.verify_ssl,
            deletion_timestamp=cluster.deletion_timestamp,
            created_at=cluster.created_at,
            updated_at=cluster.updated_at,
        )


# Component template models


class ComponentTemplateCreate(BaseModel):
    """Request model for creating a component template resource."""

    name: str = Field(..., description="Resource name", examples=["logs-settings"])
    spec: Dict[str, Any] = Field(..., description="Component template spec")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class ComponentTemplateUpdate(BaseModel):
    """Request model for replacing a component template's spec."""

    spec: Dict[str, Any] = Field(..., description="Updated spec")
    resource_version: Optional[int] = Field(
        None, description="Only update if the stored resource version matches"
    )

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class ComponentTemplateStatusResponse(BaseModel):
    state: Optional[str] = None
    reason: str = ""
    managed_cluster: Optional[str] = None
    existing_component_template: Optional[bool] = None
    component_template_name: str = ""


class ComponentTemplateResponse(BaseModel):
    """Response model for a component template resource."""

    kind: str = COMPONENT_TEMPLATE_KIND
    uid: str
    namespace: str
    name: str
    spec: Dict[str, Any]
    status: ComponentTemplateStatusResponse
    generation: int
    resource_version: int
    finalizers: List[str] = []
    deletion_timestamp: Optional[datetime] = None
    last_reconcile_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_template(cls, template: ComponentTemplate) -> "ComponentTemplateResponse":
        status = template.status
        return cls(
            uid=template.uid,
            namespace=template.namespace,
            name=template.name,
            spec=template.spec,
            status=ComponentTemplateStatusResponse(
                state=status.state.value if status.state else None,
                reason=status.reason,
                managed_cluster=status.managed_cluster,
                existing_component_template=status.existing_component_template.to_bool(),
                component_template_name=status.component_template_name,
            ),
            generation=template.generation,
            resource_version=template.resource_version,
            finalizers=template.finalizers,
            deletion_timestamp=template.deletion_timestamp,
            last_reconcile_time=template.last_reconcile_time,
            created_at=template.created_at,
            updated_at=template.updated_at,
        )


class EventResponse(BaseModel):
    """Response model for a recorded audit event."""

    id: int
    resource_id: int
    event_type: str
    reason: str
    message: str
    created_at: datetime


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for resource declaration.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.log_level: str = "info"
        self.server = None
        self._db_manager = None
        self._event_bus: Optional[EventBus] = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "log_level": os.getenv("LOG_LEVEL", "info").lower(),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)
        self.log_level = config.get("log_level", "info")

        self.app = FastAPI(
            title="OpenSearch Template Operator API",
            description="Declare OpenSearch clusters and component templates",
            version="1.0.0",
        )
        self._setup_routes()

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager) -> None:
        """Set the database manager instance."""
        self._db_manager = db_manager

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for streaming events."""
        self._event_bus = event_bus

    def _require_db(self):
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    def _stream(self, filter_fn) -> StreamingResponse:
        if not self._event_bus:
            raise HTTPException(
                status_code=503,
                detail="Event streaming not available",
            )
        event_bus = self._event_bus

        async def event_generator():
            subscriber_id, subscription = await event_bus.subscribe(filter_fn)
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                await event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Clusters: /api/v1/namespaces/{namespace}/opensearchclusters
        - Component templates: /api/v1/namespaces/{namespace}/componenttemplates
        - Reconciliation: POST .../componenttemplates/{name}/reconcile
        - Event history: GET .../componenttemplates/{name}/events
        - Event stream: GET /api/v1/events

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "opensearch-template-operator"}

        # ==================== Cluster Endpoints ====================

        @self.app.post(
            "/api/v1/namespaces/{namespace}/opensearchclusters",
            response_model=ClusterResponse,
            status_code=201,
        )
        async def create_cluster(namespace: str, cluster: ClusterCreate):
            """Register an OpenSearch cluster."""
            db = self._require_db()
            validate_path_name(namespace, "namespace")

            try:
                created = await db.create_cluster(
                    namespace=namespace,
                    name=cluster.name,
                    http_endpoint=cluster.http_endpoint,
                    username=cluster.username,
                    password=cluster.password,
                    verify_ssl=cluster.verify_ssl,
                    phase=cluster.phase,
                )
                return ClusterResponse.from_cluster(created)
            except Exception as e:
                if "unique constraint" in str(e).lower():
                    raise HTTPException(
                        status_code=409,
                        detail=f"Cluster {namespace}/{cluster.name} already exists",
                    )
                logger.error(f"Error creating cluster: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/namespaces/{namespace}/opensearchclusters",
            response_model=List[ClusterResponse],
        )
        async def list_clusters(namespace: str, limit: int = 100):
            """List clusters in a namespace."""
            db = self._require_db()

            try:
                clusters = await db.list_clusters(namespace, limit=limit)
                return [ClusterResponse.from_cluster(c) for c in clusters]
            except Exception as e:
                logger.error(f"Error listing clusters: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/namespaces/{namespace}/opensearchclusters/{name}",
            response_model=ClusterResponse,
        )
        async def get_cluster(namespace: str, name: str):
            """Get a cluster by name."""
            db = self._require_db()

            try:
                cluster = await db.get_cluster(namespace, name)
                if not cluster:
                    raise HTTPException(status_code=404, detail="Cluster not found")
                return ClusterResponse.from_cluster(cluster)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting cluster: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put(
            "/api/v1/namespaces/{namespace}/opensearchclusters/{name}/status",
            response_model=ClusterResponse,
        )
        async def update_cluster_status(
            namespace: str, name: str, update: ClusterStatusUpdate
        ):
            """Report a cluster's readiness phase."""
            db = self._require_db()

            try:
                if not await db.update_cluster_phase(namespace, name, update.phase):
                    raise HTTPException(status_code=404, detail="Cluster not found")
                cluster = await db.get_cluster(namespace, name)
                return ClusterResponse.from_cluster(cluster)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error updating cluster status: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete(
            "/api/v1/namespaces/{namespace}/opensearchclusters/{name}",
            status_code=202,
        )
        async def delete_cluster(namespace: str, name: str):
            """Mark a cluster for deletion."""
            db = self._require_db()

            try:
                if not await db.mark_cluster_deleted(namespace, name):
                    raise HTTPException(status_code=404, detail="Cluster not found")
                return {
                    "message": "Cluster marked for deletion",
                    "namespace": namespace,
                    "name": name,
                }
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error deleting cluster: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        # ==================== Component Template Endpoints ====================

        @self.app.post(
            "/api/v1/namespaces/{namespace}/componenttemplates",
            response_model=ComponentTemplateResponse,
            status_code=201,
        )
        async def create_component_template(
            namespace: str, template: ComponentTemplateCreate
        ):
            """Create a component template resource."""
            db = self._require_db()
            validate_path_name(namespace, "namespace")

            from plugins.registry import get_registry

            validation = validate_resource_type(COMPONENT_TEMPLATE_KIND)
            if not validation.is_valid:
                raise HTTPException(status_code=400, detail=validation.error_message)

            is_valid, error = validate_component_template_spec(template.spec)
            if not is_valid:
                raise HTTPException(
                    status_code=400,
                    detail=f"Spec validation failed: {error}",
                )

            reconciler = get_registry().get_reconciler_for_resource_type(
                COMPONENT_TEMPLATE_KIND
            )

            try:
                created = await db.create_component_template(
                    namespace=namespace,
                    name=template.name,
                    spec=template.spec,
                    finalizers=[reconciler.name],
                )
                return ComponentTemplateResponse.from_template(created)
            except Exception as e:
                if "unique constraint" in str(e).lower():
                    raise HTTPException(
                        status_code=409,
                        detail=f"Component template {namespace}/{template.name} "
                        f"already exists",
                    )
                logger.error(f"Error creating component template: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/namespaces/{namespace}/componenttemplates",
            response_model=List[ComponentTemplateResponse],
        )
        async def list_component_templates(
            namespace: str,
            state: Optional[str] = None,
            limit: int = 100,
        ):
            """List component templates with an optional state filter."""
            db = self._require_db()

            try:
                templates = await db.list_component_templates(
                    namespace, state=state, limit=limit
                )
                return [ComponentTemplateResponse.from_template(t) for t in templates]
            except Exception as e:
                logger.error(f"Error listing component templates: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/namespaces/{namespace}/componenttemplates/{name}",
            response_model=ComponentTemplateResponse,
        )
        async def get_component_template(namespace: str, name: str):
            """Get a component template by name."""
            db = self._require_db()

            try:
                template = await db.get_component_template(namespace, name)
                if not template:
                    raise HTTPException(
                        status_code=404, detail="Component template not found"
                    )
                return ComponentTemplateResponse.from_template(template)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting component template: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put(
            "/api/v1/namespaces/{namespace}/componenttemplates/{name}",
            response_model=ComponentTemplateResponse,
        )
        async def update_component_template(
            namespace: str, name: str, update: ComponentTemplateUpdate
        ):
            """Replace a component template's spec."""
            db = self._require_db()

            is_valid, error = validate_component_template_spec(update.spec)
            if not is_valid:
                raise HTTPException(
                    status_code=400,
                    detail=f"Spec validation failed: {error}",
                )

            try:
                current = await db.get_component_template(namespace, name)
                if not current:
                    raise HTTPException(
                        status_code=404, detail="Component template not found"
                    )
                if current.is_deleting:
                    raise HTTPException(
                        status_code=409,
                        detail="Component template is being deleted",
                    )

                updated = await db.update_component_template_spec(
                    namespace,
                    name,
                    update.spec,
                    resource_version=update.resource_version,
                )
                return ComponentTemplateResponse.from_template(updated)
            except HTTPException:
                raise
            except ResourceNotFoundError as e:
                raise HTTPException(status_code=404, detail=e.message)
            except ConflictError as e:
                raise HTTPException(status_code=409, detail=e.message)
            except Exception as e:
                logger.error(f"Error updating component template: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete(
            "/api/v1/namespaces/{namespace}/componenttemplates/{name}",
            status_code=202,
        )
        async def delete_component_template(namespace: str, name: str):
            """Mark a component template for deletion (triggers teardown)."""
            db = self._require_db()

            try:
                template = await db.mark_component_template_deleted(namespace, name)
                if not template:
                    raise HTTPException(
                        status_code=404, detail="Component template not found"
                    )

                # Nothing to wait on, so remove it right away
                if not template.finalizers:
                    await db.hard_delete_component_template(template.id)
                    return {
                        "message": "Component template deleted",
                        "namespace": namespace,
                        "name": name,
                    }

                return {
                    "message": "Component template marked for deletion",
                    "namespace": namespace,
                    "name": name,
                }
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error deleting component template: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.post(
            "/api/v1/namespaces/{namespace}/componenttemplates/{name}/reconcile",
            status_code=202,
        )
        async def trigger_reconciliation(namespace: str, name: str):
            """Manually trigger reconciliation for a component template."""
            db = self._require_db()

            try:
                if not await db.mark_for_reconciliation(namespace, name):
                    raise HTTPException(
                        status_code=404, detail="Component template not found"
                    )
                return {
                    "message": "Reconciliation triggered",
                    "namespace": namespace,
                    "name": name,
                }
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error triggering reconciliation: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/namespaces/{namespace}/componenttemplates/{name}/events",
            response_model=List[EventResponse],
        )
        async def list_component_template_events(
            namespace: str, name: str, limit: int = 50
        ):
            """Get the recorded audit events of a component template."""
            db = self._require_db()

            try:
                template = await db.get_component_template(namespace, name)
                if not template:
                    raise HTTPException(
                        status_code=404, detail="Component template not found"
                    )
                events = await db.list_events(template.id, limit=limit)
                return [EventResponse(**event) for event in events]
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error listing events: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_all_events(namespace: Optional[str] = None):
            """SSE stream of audit events.

            Optionally filter by namespace.
            """
            if namespace:
                ns = namespace

                def filter_fn(event: AuditEvent) -> bool:
                    return event.namespace == ns

            else:
                filter_fn = None

            return self._stream(filter_fn)

    async def start(self) -> None:
        """Start the HTTP server."""
        if not self.app:
            raise RuntimeError("App not initialized")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"


def validate_path_name(value: str, field_name: str) -> None:
    """Validate a path parameter name, raising a 400 on failure."""
    try:
        validate_name_format(value, field_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
