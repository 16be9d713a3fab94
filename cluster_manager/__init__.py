"""
Cluster manager for manufacturing telemetry on ClickHouse.

Provisions and tracks ClickHouse clusters, lays down the tiered telemetry
schema, and serves ingestion and resolution-aware queries against them.
"""

__version__ = "0.3.0"
