"""
PostgreSQL control-plane store.

Cluster records are kept as JSONB documents with the status mirrored into
its own column for filtering. Field updates merge into the document in a
single statement so concurrent writers of disjoint fields (lifecycle status
vs. health) never overwrite each other.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from cluster_manager.errors import ClusterNotFoundError
from cluster_manager.models.cluster import (
    Cluster,
    ClusterStatus,
    HealthSnapshot,
    ProvisioningStatus,
    utc_now,
)
from cluster_manager.store.base import CLUSTER_KEY_PREFIX, ControlPlaneStore

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
    "CREATE SEQUENCE IF NOT EXISTS cluster_key_seq",
    """
    CREATE TABLE IF NOT EXISTS clusters (
        id TEXT PRIMARY KEY,
        cluster_key TEXT UNIQUE NOT NULL,
        status TEXT NOT NULL,
        data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_clusters_status ON clusters (status)",
    """
    CREATE TABLE IF NOT EXISTS cluster_provisioning_status (
        cluster_id TEXT PRIMARY KEY REFERENCES clusters (id),
        data JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cluster_health_snapshots (
        id BIGSERIAL PRIMARY KEY,
        cluster_id TEXT NOT NULL REFERENCES clusters (id),
        status TEXT NOT NULL,
        checked_at TIMESTAMPTZ NOT NULL,
        data JSONB NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_health_snapshots_cluster_time
    ON cluster_health_snapshots (cluster_id, checked_at DESC)
    """,
]


def _load_json(value: Any) -> Dict[str, Any]:
    return json.loads(value) if isinstance(value, str) else dict(value)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Cannot serialize {type(value).__name__}")


class PostgresControlPlaneStore(ControlPlaneStore):
    """Control-plane store on PostgreSQL via asyncpg."""

    def __init__(self, dsn: str, pool_min_size: int = 2, pool_max_size: int = 10):
        """
        Initialize store.

        Args:
            dsn: PostgreSQL connection string
            pool_min_size: Minimum connection pool size
            pool_max_size: Maximum connection pool size
        """
        self.dsn = dsn
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self._pool: Optional[Any] = None

    async def connect(self) -> None:
        """Open the pool and create tables."""
        if self._pool:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.pool_min_size,
                max_size=self.pool_max_size,
                command_timeout=10,
            )
        except Exception as e:
            logger.error(f"Failed to connect to control-plane database: {e}")
            raise

        async with self._pool.acquire() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
        logger.info("Connected to control-plane database")

    async def disconnect(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Disconnected from control-plane database")

    async def ensure_connected(self) -> None:
        if not self._pool:
            await self.connect()
        if not self._pool:
            raise RuntimeError("Database connection not established")

    async def create_cluster(self, cluster: Cluster) -> Cluster:
        data = cluster.model_dump(mode="json")
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO clusters (id, cluster_key, status, data, created_at, updated_at)
                VALUES ($1, $2 || nextval('cluster_key_seq'), $3, $4::jsonb, $5, $5)
                RETURNING cluster_key
                """,
                cluster.id,
                CLUSTER_KEY_PREFIX,
                cluster.status.value,
                json.dumps(data),
                cluster.created_at,
            )
            key = row["cluster_key"]
            await conn.execute(
                "UPDATE clusters SET data = jsonb_set(data, '{cluster_key}', to_jsonb($2::text)) "
                "WHERE id = $1",
                cluster.id,
                key,
            )
        return cluster.model_copy(update={"cluster_key": key})

    async def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT data FROM clusters WHERE id = $1", cluster_id)
        return Cluster.model_validate(_load_json(row["data"])) if row else None

    async def list_clusters(self, status: Optional[ClusterStatus] = None) -> List[Cluster]:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            if status is None:
                rows = await conn.fetch("SELECT data FROM clusters ORDER BY created_at, id")
            else:
                rows = await conn.fetch(
                    "SELECT data FROM clusters WHERE status = $1 ORDER BY created_at, id",
                    status.value,
                )
        return [Cluster.model_validate(_load_json(r["data"])) for r in rows]

    async def update_cluster(
        self,
        cluster_id: str,
        changes: Dict[str, Any],
        expected_status: Optional[ClusterStatus] = None,
    ) -> Optional[Cluster]:
        now = utc_now()
        patch = dict(changes)
        patch["updated_at"] = now
        new_status = changes.get("status")
        if isinstance(new_status, ClusterStatus):
            new_status = new_status.value

        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE clusters
                SET data = data || $2::jsonb,
                    status = COALESCE($3, status),
                    updated_at = $4
                WHERE id = $1 AND ($5::text IS NULL OR status = $5)
                RETURNING data
                """,
                cluster_id,
                json.dumps(patch, default=_json_default),
                new_status,
                now,
                expected_status.value if expected_status else None,
            )
            if row is None:
                exists = await conn.fetchval("SELECT 1 FROM clusters WHERE id = $1", cluster_id)
                if not exists:
                    raise ClusterNotFoundError(cluster_id)
                return None
        return Cluster.model_validate(_load_json(row["data"]))

    async def save_provisioning_status(self, status: ProvisioningStatus) -> None:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO cluster_provisioning_status (cluster_id, data, updated_at)
                VALUES ($1, $2::jsonb, $3)
                ON CONFLICT (cluster_id) DO UPDATE
                SET data = EXCLUDED.data, updated_at = EXCLUDED.updated_at
                """,
                status.cluster_id,
                status.model_dump_json(),
                status.updated_at,
            )

    async def get_provisioning_status(self, cluster_id: str) -> Optional[ProvisioningStatus]:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT data FROM cluster_provisioning_status WHERE cluster_id = $1", cluster_id
            )
        return ProvisioningStatus.model_validate(_load_json(row["data"])) if row else None

    async def save_health_snapshot(self, snapshot: HealthSnapshot) -> None:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO cluster_health_snapshots (cluster_id, status, checked_at, data)
                VALUES ($1, $2, $3, $4::jsonb)
                """,
                snapshot.cluster_id,
                snapshot.status.value,
                snapshot.timestamp,
                snapshot.model_dump_json(),
            )

    async def get_latest_health_snapshot(self, cluster_id: str) -> Optional[HealthSnapshot]:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT data FROM cluster_health_snapshots
                WHERE cluster_id = $1
                ORDER BY checked_at DESC
                LIMIT 1
                """,
                cluster_id,
            )
        return HealthSnapshot.model_validate(_load_json(row["data"])) if row else None
