"""
Advisory estimates: provisioning duration and monthly cost.

Neither value gates anything; they feed the ETA field and the cost shown
on the cluster record.
"""

from datetime import datetime, timedelta
from typing import Optional

from cluster_manager.models.cluster import ClusterCreateRequest, ClusterType, parse_size_gb, utc_now

HOURS_PER_MONTH = 24 * 30

# USD rates
CPU_HOUR_RATE = 0.05
MEMORY_GB_HOUR_RATE = 0.01
HOT_GB_MONTH_RATE = 0.30
WARM_GB_MONTH_RATE = 0.15
COLD_GB_MONTH_RATE = 0.05


def estimate_provisioning_seconds(
    node_count: int,
    cluster_type: ClusterType,
    base_seconds: float = 5.0,
    per_node_seconds: float = 0.5,
    production_multiplier: float = 1.5,
) -> float:
    """Expected provisioning time; production clusters take longer."""
    multiplier = production_multiplier if cluster_type == ClusterType.PRODUCTION else 1.0
    return (base_seconds + node_count * per_node_seconds) * multiplier


def estimated_completion(seconds: float, start: Optional[datetime] = None) -> datetime:
    return (start or utc_now()) + timedelta(seconds=seconds)


def estimate_monthly_cost(request: ClusterCreateRequest) -> float:
    """
    Monthly cost in USD: compute and memory by the hour, storage tiers by
    the GB-month. Rounded to cents.
    """
    nodes = request.node_count
    compute = nodes * request.cpu_per_node * CPU_HOUR_RATE * HOURS_PER_MONTH
    memory = nodes * parse_size_gb(request.memory_per_node) * MEMORY_GB_HOUR_RATE * HOURS_PER_MONTH
    storage = (
        parse_size_gb(request.hot_tier_size) * HOT_GB_MONTH_RATE
        + parse_size_gb(request.warm_tier_size) * WARM_GB_MONTH_RATE
        + parse_size_gb(request.cold_tier_size) * COLD_GB_MONTH_RATE
    )
    return round(compute + memory + storage, 2)
