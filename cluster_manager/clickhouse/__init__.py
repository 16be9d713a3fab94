"""ClickHouse access: HTTP client and shared connection registry."""

from cluster_manager.clickhouse.client import ClickHouseClient, format_datetime
from cluster_manager.clickhouse.connection import (
    ConnectionConfig,
    ConnectionRegistry,
    config_for_cluster,
    parse_connection_string,
)

__all__ = [
    "ClickHouseClient",
    "ConnectionConfig",
    "ConnectionRegistry",
    "config_for_cluster",
    "format_datetime",
    "parse_connection_string",
]
