"""
Tests for the control-plane stores.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from cluster_manager.errors import ClusterNotFoundError
from cluster_manager.models.cluster import (
    Cluster,
    ClusterStatus,
    ClusterType,
    HealthSnapshot,
    HealthStatus,
    ProvisioningStatus,
)
from cluster_manager.store.file_store import FileControlPlaneStore
from cluster_manager.store.postgres import PostgresControlPlaneStore


def make_cluster(cluster_id: str, status: ClusterStatus = ClusterStatus.INITIALIZING) -> Cluster:
    return Cluster(
        id=cluster_id,
        cluster_key="",
        name=f"plant-{cluster_id}",
        cluster_type=ClusterType.ANALYTICS,
        region="us-east-1",
        node_count=2,
        cpu_per_node=8,
        memory_per_node="32GB",
        storage_per_node="1TB",
        status=status,
    )


class TestFileStore:
    """Test the JSON file store."""

    @pytest.mark.asyncio
    async def test_assigns_sequential_keys(self, store):
        first = await store.create_cluster(make_cluster("a"))
        second = await store.create_cluster(make_cluster("b"))
        assert first.cluster_key == "CLSTR-1"
        assert second.cluster_key == "CLSTR-2"

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        await store.create_cluster(make_cluster("a"))
        with pytest.raises(ValueError):
            await store.create_cluster(make_cluster("a"))

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, store):
        await store.create_cluster(make_cluster("a", ClusterStatus.ACTIVE))
        await store.create_cluster(make_cluster("b"))
        await store.create_cluster(make_cluster("c", ClusterStatus.ACTIVE))

        active = await store.list_clusters(ClusterStatus.ACTIVE)

        assert [c.id for c in active] == ["a", "c"]
        assert len(await store.list_clusters()) == 3

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, store):
        created = await store.create_cluster(make_cluster("a"))

        updated = await store.update_cluster(
            "a", {"status": ClusterStatus.PROVISIONING, "status_message": "Allocating"}
        )

        assert updated.status == ClusterStatus.PROVISIONING
        assert updated.status_message == "Allocating"
        assert updated.name == created.name
        assert updated.updated_at >= created.updated_at

    @pytest.mark.asyncio
    async def test_update_with_stale_expected_status(self, store):
        await store.create_cluster(make_cluster("a", ClusterStatus.TERMINATED))

        result = await store.update_cluster(
            "a", {"health_status": HealthStatus.HEALTHY}, expected_status=ClusterStatus.ACTIVE
        )

        assert result is None
        assert (await store.get_cluster("a")).health_status == HealthStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_update_unknown_cluster(self, store):
        with pytest.raises(ClusterNotFoundError):
            await store.update_cluster("missing", {"status_message": "x"})

    @pytest.mark.asyncio
    async def test_require_cluster(self, store):
        assert await store.get_cluster("missing") is None
        with pytest.raises(ClusterNotFoundError):
            await store.require_cluster("missing")

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path):
        path = tmp_path / "state" / "clusters.json"
        store = FileControlPlaneStore(path)
        await store.create_cluster(make_cluster("a"))
        await store.save_provisioning_status(
            ProvisioningStatus(
                cluster_id="a", status=ClusterStatus.PROVISIONING, stage="setup_storage", progress=25
            )
        )

        reopened = FileControlPlaneStore(path)
        await reopened.connect()

        assert (await reopened.get_cluster("a")).cluster_key == "CLSTR-1"
        status = await reopened.get_provisioning_status("a")
        assert status.stage == "setup_storage"
        assert status.progress == 25
        assert (await reopened.create_cluster(make_cluster("b"))).cluster_key == "CLSTR-2"
        assert not path.with_suffix(".tmp").exists()

    @pytest.mark.asyncio
    async def test_health_history_is_capped(self, tmp_path):
        store = FileControlPlaneStore(tmp_path / "state.json", health_history=3)
        await store.create_cluster(make_cluster("a", ClusterStatus.ACTIVE))
        for minute in range(5):
            await store.save_health_snapshot(
                HealthSnapshot(
                    cluster_id="a",
                    status=HealthStatus.HEALTHY if minute < 4 else HealthStatus.CRITICAL,
                    timestamp=datetime(2024, 3, 1, 12, minute, tzinfo=timezone.utc),
                )
            )

        latest = await store.get_latest_health_snapshot("a")

        assert latest.status == HealthStatus.CRITICAL
        assert len(store._health["a"]) == 3


@pytest.fixture
def pg():
    """Postgres store over a mocked asyncpg pool."""
    conn = AsyncMock()
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = False
    pool.close = AsyncMock()
    store = PostgresControlPlaneStore("postgresql://cm@localhost/cluster_manager")
    store._pool = pool
    return store, conn


class TestPostgresStore:
    """Test query shapes of the PostgreSQL store."""

    @pytest.mark.asyncio
    async def test_create_uses_key_sequence(self, pg):
        store, conn = pg
        conn.fetchrow.return_value = {"cluster_key": "CLSTR-42"}

        cluster = await store.create_cluster(make_cluster("a"))

        assert cluster.cluster_key == "CLSTR-42"
        sql, *args = conn.fetchrow.call_args.args
        assert "nextval('cluster_key_seq')" in sql
        assert args[1] == "CLSTR-"
        assert args[2] == "initializing"

    @pytest.mark.asyncio
    async def test_get_cluster(self, pg):
        store, conn = pg
        stored = make_cluster("a").model_copy(update={"cluster_key": "CLSTR-1"})
        conn.fetchrow.return_value = {"data": stored.model_dump_json()}

        cluster = await store.get_cluster("a")

        assert cluster.id == "a"
        assert cluster.cluster_key == "CLSTR-1"

    @pytest.mark.asyncio
    async def test_get_missing_cluster(self, pg):
        store, conn = pg
        conn.fetchrow.return_value = None
        assert await store.get_cluster("a") is None

    @pytest.mark.asyncio
    async def test_conditional_update_mismatch(self, pg):
        store, conn = pg
        conn.fetchrow.return_value = None
        conn.fetchval.return_value = 1

        result = await store.update_cluster(
            "a", {"health_status": HealthStatus.CRITICAL}, expected_status=ClusterStatus.ACTIVE
        )

        assert result is None
        args = conn.fetchrow.call_args.args
        patch = json.loads(args[2])
        assert patch["health_status"] == "critical"
        assert "updated_at" in patch
        assert args[3] is None
        assert args[5] == "active"

    @pytest.mark.asyncio
    async def test_update_missing_cluster(self, pg):
        store, conn = pg
        conn.fetchrow.return_value = None
        conn.fetchval.return_value = None

        with pytest.raises(ClusterNotFoundError):
            await store.update_cluster("a", {"status": ClusterStatus.ACTIVE})

    @pytest.mark.asyncio
    async def test_update_status_column(self, pg):
        store, conn = pg
        updated = make_cluster("a", ClusterStatus.ACTIVE)
        conn.fetchrow.return_value = {"data": updated.model_dump_json()}

        result = await store.update_cluster("a", {"status": ClusterStatus.ACTIVE})

        assert result.status == ClusterStatus.ACTIVE
        assert conn.fetchrow.call_args.args[3] == "active"

    @pytest.mark.asyncio
    async def test_disconnect_closes_pool(self, pg):
        store, _ = pg
        pool = store._pool
        await store.disconnect()
        pool.close.assert_awaited_once()
        assert store._pool is None
