"""
Database Manager - PostgreSQL storage for clusters and component templates.

Stores the declarative resources, their status sub-record, scheduling
bookkeeping and audit events. Status writes are optimistic: every write
bumps resource_version and is conditioned on the version that was read.
"""

import asyncpg
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from migrate import run_migrations
from models import ClusterPhase, ComponentTemplate, OpenSearchCluster

logger = logging.getLogger(__name__)


class ConflictError(Exception):
    """Raised when a write loses an optimistic-concurrency race."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ResourceNotFoundError(Exception):
    """Raised when a resource that must exist is missing."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class DatabaseManager:
    """Manages PostgreSQL database operations for the operator."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    def _acquire(self):
        """Acquire a pooled connection, failing fast when not connected."""
        self._ensure_connected()
        return self.pool.acquire()

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Cluster Methods ====================

    async def create_cluster(
        self,
        namespace: str,
        name: str,
        http_endpoint: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        verify_ssl: Optional[bool] = None,
        phase: ClusterPhase = ClusterPhase.PENDING,
    ) -> OpenSearchCluster:
        """Register an OpenSearch cluster."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO opensearch_clusters (
                    uid, namespace, name, http_endpoint,
                    username, password, verify_ssl, phase
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING *
                """,
                str(uuid.uuid4()),
                namespace,
                name,
                http_endpoint,
                username,
                password,
                verify_ssl,
                phase.value,
            )
            logger.info(f"Registered OpenSearch cluster {namespace}/{name}")
            return OpenSearchCluster.from_dict(dict(row))

    async def get_cluster(
        self, namespace: str, name: str
    ) -> Optional[OpenSearchCluster]:
        """Get a cluster by namespace and name, including clusters being deleted."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM opensearch_clusters WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return OpenSearchCluster.from_dict(dict(row))

    async def list_clusters(
        self, namespace: str, limit: int = 100
    ) -> List[OpenSearchCluster]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM opensearch_clusters
                WHERE namespace = $1
                ORDER BY name
                LIMIT $2
                """,
                namespace,
                limit,
            )
            return [OpenSearchCluster.from_dict(dict(row)) for row in rows]

    async def update_cluster_phase(
        self, namespace: str, name: str, phase: ClusterPhase
    ) -> bool:
        """Set a cluster's readiness phase. Returns False if the cluster is unknown."""
        async with self._acquire() as conn:
            result = await conn.fetchval(
                """
                UPDATE opensearch_clusters
                SET phase = $1, updated_at = NOW()
                WHERE namespace = $2 AND name = $3
                RETURNING id
                """,
                phase.value,
                namespace,
                name,
            )
            return result is not None

    async def mark_cluster_deleted(self, namespace: str, name: str) -> bool:
        """Mark a cluster as being deleted (soft delete)."""
        async with self._acquire() as conn:
            result = await conn.fetchval(
                """
                UPDATE opensearch_clusters
                SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                RETURNING id
                """,
                namespace,
                name,
            )
            if result is not None:
                logger.info(f"Marked cluster {namespace}/{name} for deletion")
            return result is not None

    async def purge_deleted_clusters(self) -> int:
        """
        Remove clusters marked for deletion once no live component template
        references them.

        Returns:
            Number of clusters removed.
        """
        async with self._acquire() as conn:
            rows = await conn.fetch("""
                DELETE FROM opensearch_clusters c
                WHERE c.deletion_timestamp IS NOT NULL
                  AND NOT EXISTS (
                    SELECT 1 FROM component_templates t
                    WHERE t.namespace = c.namespace
                      AND t.spec->'opensearchCluster'->>'name' = c.name
                      AND t.finalizers != '[]'::jsonb
                  )
                RETURNING namespace, name
                """)
            for row in rows:
                logger.info(f"Purged cluster {row['namespace']}/{row['name']}")
            return len(rows)

    # ==================== Component Template Methods ====================

    async def create_component_template(
        self,
        namespace: str,
        name: str,
        spec: Dict[str, Any],
        finalizers: Optional[List[str]] = None,
    ) -> ComponentTemplate:
        """Create a component template resource, due for reconciliation now."""
        if finalizers is None:
            finalizers = []

        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO component_templates (
                    uid, namespace, name, spec, finalizers, next_reconcile_time
                )
                VALUES ($1, $2, $3, $4, $5, NOW())
                RETURNING *
                """,
                str(uuid.uuid4()),
                namespace,
                name,
                json.dumps(spec),
                json.dumps(finalizers),
            )
            logger.info(f"Created component template {namespace}/{name}")
            return self._to_component_template(row)

    async def get_component_template(
        self, namespace: str, name: str
    ) -> Optional[ComponentTemplate]:
        """Get the latest persisted copy of a component template."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM component_templates WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._to_component_template(row)

    async def list_component_templates(
        self, namespace: str, state: Optional[str] = None, limit: int = 100
    ) -> List[ComponentTemplate]:
        async with self._acquire() as conn:
            query = "SELECT * FROM component_templates WHERE namespace = $1"
            params: List[Any] = [namespace]

            if state:
                params.append(state)
                query += f" AND state = ${len(params)}"

            params.append(limit)
            query += f" ORDER BY name LIMIT ${len(params)}"

            rows = await conn.fetch(query, *params)
            return [self._to_component_template(row) for row in rows]

    async def update_component_template_spec(
        self,
        namespace: str,
        name: str,
        spec: Dict[str, Any],
        resource_version: Optional[int] = None,
    ) -> ComponentTemplate:
        """
        Replace a component template's spec.

        Bumps generation and resource_version and makes the resource due for
        reconciliation immediately.

        Args:
            namespace: Resource namespace
            name: Resource name
            spec: The new spec
            resource_version: If given, the write only succeeds when the
                stored resource_version still matches

        Raises:
            ResourceNotFoundError: If the resource does not exist
            ConflictError: If resource_version no longer matches
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE component_templates
                SET spec = $1,
                    generation = generation + 1,
                    resource_version = resource_version + 1,
                    retry_count = 0,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE namespace = $2
                  AND name = $3
                  AND ($4::integer IS NULL OR resource_version = $4)
                RETURNING *
                """,
                json.dumps(spec),
                namespace,
                name,
                resource_version,
            )
            if row:
                logger.info(
                    f"Updated component template {namespace}/{name} "
                    f"to generation {row['generation']}"
                )
                return self._to_component_template(row)

            exists = await conn.fetchval(
                "SELECT 1 FROM component_templates WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not exists:
                raise ResourceNotFoundError(
                    f"Component template {namespace}/{name} not found"
                )
            raise ConflictError(
                f"Component template {namespace}/{name} was modified concurrently "
                f"(expected resource version {resource_version})"
            )

    async def update_component_template_status(
        self, template: ComponentTemplate
    ) -> ComponentTemplate:
        """
        Persist the status sub-record of a component template.

        The write is conditioned on template.resource_version; on success the
        new version is stored back on the passed object.

        Raises:
            ConflictError: If the resource changed since it was read
        """
        status = template.status
        async with self._acquire() as conn:
            new_version = await conn.fetchval(
                """
                UPDATE component_templates
                SET state = $1,
                    reason = $2,
                    managed_cluster = $3,
                    existing_component_template = $4,
                    component_template_name = $5,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE id = $6 AND resource_version = $7
                RETURNING resource_version
                """,
                status.state.value if status.state else None,
                status.reason,
                status.managed_cluster,
                status.existing_component_template.to_bool(),
                status.component_template_name or None,
                template.id,
                template.resource_version,
            )
            if new_version is None:
                raise ConflictError(
                    f"Component template {template.namespace}/{template.name} "
                    f"changed since resource version {template.resource_version}"
                )
            template.resource_version = new_version
            return template

    async def mark_component_template_deleted(
        self, namespace: str, name: str
    ) -> Optional[ComponentTemplate]:
        """
        Mark a component template for deletion (soft delete).

        The resource stays visible until its finalizers are removed.

        Returns:
            The updated resource, or None if it does not exist
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE component_templates
                SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                    resource_version = resource_version + 1,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                RETURNING *
                """,
                namespace,
                name,
            )
            if not row:
                return None
            logger.info(f"Marked component template {namespace}/{name} for deletion")
            return self._to_component_template(row)

    async def get_component_templates_needing_reconciliation(
        self, limit: int = 10
    ) -> List[ComponentTemplate]:
        """
        Get component templates that are due for reconciliation.

        Deletions are served first, then the longest-waiting resources.
        """
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM component_templates
                WHERE next_reconcile_time <= NOW()
                ORDER BY
                    (deletion_timestamp IS NULL) ASC,
                    next_reconcile_time ASC
                LIMIT $1
                """,
                limit,
            )
            return [self._to_component_template(row) for row in rows]

    async def schedule_reconcile(self, resource_id: int, delay_seconds: float):
        """Record a completed reconciliation and schedule the next one."""
        async with self._acquire() as conn:
            await conn.execute(
                """
                UPDATE component_templates
                SET next_reconcile_time = NOW() + INTERVAL '1 second' * $1,
                    last_reconcile_time = NOW(),
                    retry_count = 0
                WHERE id = $2
                """,
                delay_seconds,
                resource_id,
            )

    async def requeue_after_failure(
        self,
        resource_id: int,
        base_delay: int = 5,
        max_delay: int = 1000,
        jitter_factor: float = 0.1,
    ):
        """
        Requeue a failed resource with exponential backoff and jitter.

        Args:
            resource_id: The resource ID
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            jitter_factor: Jitter factor ±X (0.1 = ±10%)
        """
        async with self._acquire() as conn:
            await conn.execute(
                """
                UPDATE component_templates
                SET next_reconcile_time = NOW() + (
                        INTERVAL '1 second' * LEAST(
                            $1 * POWER(2, LEAST(retry_count, 10)),
                            $2
                        ) * (1 + (random() * 2 - 1) * $3)
                    ),
                    last_reconcile_time = NOW(),
                    retry_count = retry_count + 1
                WHERE id = $4
                """,
                base_delay,
                max_delay,
                jitter_factor,
                resource_id,
            )

    async def mark_for_reconciliation(self, namespace: str, name: str) -> bool:
        """Manually trigger reconciliation for a component template."""
        async with self._acquire() as conn:
            result = await conn.fetchval(
                """
                UPDATE component_templates
                SET next_reconcile_time = NOW()
                WHERE namespace = $1 AND name = $2
                RETURNING id
                """,
                namespace,
                name,
            )
            return result is not None

    async def remove_finalizer(self, resource_id: int, finalizer: str) -> None:
        """
        Remove a finalizer from a component template.

        Args:
            resource_id: The resource ID
            finalizer: Finalizer name to remove
        """
        async with self._acquire() as conn:
            await conn.execute(
                """
                UPDATE component_templates
                SET finalizers = COALESCE(
                        (SELECT jsonb_agg(elem)
                         FROM jsonb_array_elements(finalizers) AS elem
                         WHERE elem #>> '{}' != $2),
                        '[]'::jsonb
                    ),
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE id = $1
                """,
                resource_id,
                finalizer,
            )

    async def get_finalizers(self, resource_id: int) -> List[str]:
        """Get the finalizers list for a resource, or [] if it is gone."""
        async with self._acquire() as conn:
            result = await conn.fetchval(
                "SELECT finalizers FROM component_templates WHERE id = $1",
                resource_id,
            )
            if result is None:
                return []
            return json.loads(result) if isinstance(result, str) else result

    async def hard_delete_component_template(self, resource_id: int) -> bool:
        """
        Permanently delete a component template.

        Only succeeds once the resource is marked for deletion and all
        finalizers have been removed.
        """
        async with self._acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM component_templates
                WHERE id = $1
                  AND deletion_timestamp IS NOT NULL
                  AND finalizers = '[]'::jsonb
                RETURNING id
                """,
                resource_id,
            )
            if result:
                logger.info(f"Hard-deleted component template {resource_id}")
                return True
            return False

    # ==================== Event Methods ====================

    async def record_event(
        self, resource_id: int, event_type: str, reason: str, message: str
    ) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO resource_events (resource_id, event_type, reason, message)
                VALUES ($1, $2, $3, $4)
                """,
                resource_id,
                event_type,
                reason,
                message,
            )

    async def list_events(
        self, resource_id: int, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Get the most recent audit events for a resource."""
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM resource_events
                WHERE resource_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2
                """,
                resource_id,
                limit,
            )
            return [dict(row) for row in rows]

    def _parse_component_template_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Convert a component template row to a dict with JSON fields parsed."""
        result = dict(row)
        spec = result.get("spec")
        result["spec"] = json.loads(spec) if isinstance(spec, str) else spec or {}
        finalizers = result.get("finalizers")
        result["finalizers"] = (
            json.loads(finalizers)
            if isinstance(finalizers, str)
            else finalizers or []
        )
        return result

    def _to_component_template(self, row: asyncpg.Record) -> ComponentTemplate:
        return ComponentTemplate.from_dict(self._parse_component_template_row(row))
