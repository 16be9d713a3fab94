"""
Schema registry.

Materializes the telemetry tables and downsampling views on a cluster.
"""

import logging
from typing import Dict, List, Optional

from cluster_manager.clickhouse.client import ClickHouseClient
from cluster_manager.schema.downsampling import DownsamplingMaintainer
from cluster_manager.schema.tables import TABLES, TableSpec, create_object

logger = logging.getLogger(__name__)


class SchemaRegistry:
    """Declared telemetry schema for one cluster."""

    def __init__(
        self,
        tables: Optional[Dict[str, TableSpec]] = None,
        maintainer: Optional[DownsamplingMaintainer] = None,
        storage_policy: Optional[str] = "tiered",
        tiered_storage: bool = True,
    ):
        """
        Initialize registry.

        Args:
            tables: Table declarations, defaults to the three telemetry tables
            maintainer: Downsampling maintainer for the views
            storage_policy: Storage policy with warm/cold/archive volumes
            tiered_storage: Emit TTL volume moves
        """
        self.tables = tables if tables is not None else dict(TABLES)
        self.maintainer = maintainer or DownsamplingMaintainer()
        self.storage_policy = storage_policy
        self.tiered_storage = tiered_storage

    @property
    def object_names(self) -> List[str]:
        return list(self.tables) + [view.name for view in self.maintainer.views]

    async def materialize(self, client: ClickHouseClient) -> List[str]:
        """
        Create tables, then views. Safe to run repeatedly.

        Returns:
            Names of objects created by this call

        Raises:
            SchemaError: Creation failed for a reason other than "already exists"
            ConnectivityError: Cluster unreachable
        """
        created = []
        for spec in self.tables.values():
            statement = spec.create_statement(self.storage_policy, self.tiered_storage)
            if await create_object(client, spec.name, statement):
                created.append(spec.name)

        created.extend(await self.maintainer.materialize(client, self.storage_policy))
        logger.info(
            f"Schema materialized on {client.host}: "
            f"{len(created)} created, {len(self.object_names) - len(created)} already present"
        )
        return created

    async def missing_objects(self, client: ClickHouseClient) -> List[str]:
        """Declared tables and views absent from the cluster's current database."""
        rows = await client.query(
            "SELECT name FROM system.tables "
            "WHERE database = currentDatabase() AND name IN {names:Array(String)}",
            {"names": self.object_names},
        )
        present = {row["name"] for row in rows}
        return [name for name in self.object_names if name not in present]
