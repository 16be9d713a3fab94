"""
Cluster control-plane models.

These models define the cluster record, creation and scaling requests,
provisioning status and health snapshots persisted by the control-plane
store and exposed through the REST API.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Optional

from pydantic import AfterValidator, BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================


class ClusterStatus(str, Enum):
    """Cluster lifecycle states."""

    INITIALIZING = "initializing"
    PROVISIONING = "provisioning"
    CONFIGURING = "configuring"
    TESTING = "testing"
    ACTIVE = "active"
    ERROR = "error"
    TERMINATED = "terminated"


class ClusterType(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"
    ANALYTICS = "analytics"


class HealthStatus(str, Enum):
    """Cluster health verdict. WARNING is reserved for graduated checks."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


# ============================================================================
# SIZING
# ============================================================================

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(GB|TB|G|T)?\s*$", re.IGNORECASE)


def parse_size_gb(size: str) -> float:
    """
    Convert a size string such as "16GB" or "2TB" to gigabytes.

    A bare number is taken as gigabytes.
    """
    match = _SIZE_RE.match(size or "")
    if not match:
        raise ValueError(f"Invalid size: {size!r}")
    amount = float(match.group(1))
    unit = (match.group(2) or "GB").upper()
    return amount * 1024 if unit.startswith("T") else amount


def _validate_size(value: str) -> str:
    parse_size_gb(value)
    return value.strip().upper()


SizeString = Annotated[str, AfterValidator(_validate_size)]


# ============================================================================
# REQUESTS
# ============================================================================


class Credentials(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=8)


class ClusterCreateRequest(BaseModel):
    """Cluster creation request accepted by the lifecycle manager."""

    cluster_id: Optional[str] = Field(None, description="Caller-chosen id; generated if omitted")
    name: str = Field(min_length=1, max_length=128, description="Human-readable cluster name")
    cluster_type: ClusterType = ClusterType.DEVELOPMENT
    region: str = Field(default="us-east-1", min_length=1)
    node_count: int = Field(default=1, ge=1, le=64)
    cpu_per_node: int = Field(default=4, ge=1, le=256)
    memory_per_node: SizeString = Field(default="16GB", description="Memory per node, e.g. 16GB")
    storage_per_node: SizeString = Field(default="500GB", description="Storage per node, e.g. 500GB")
    hot_tier_size: SizeString = "100GB"
    warm_tier_size: SizeString = "500GB"
    cold_tier_size: SizeString = "2TB"
    archive_enabled: bool = True
    admin_credentials: Optional[Credentials] = None
    readonly_credentials: Optional[Credentials] = None


class ScaleRequest(BaseModel):
    node_count: int = Field(ge=1, le=64, description="Requested node count")


# ============================================================================
# CLUSTER RECORD
# ============================================================================


class Cluster(BaseModel):
    """
    Persisted cluster record.

    Status and health fields are owned by the lifecycle manager and health
    monitor; sizing fields are fixed by the requester at creation time.
    Terminated clusters are retained, never deleted.
    """

    id: str
    cluster_key: str = Field(description="Display key, e.g. CLSTR-3")
    name: str
    cluster_type: ClusterType
    region: str
    node_count: int = Field(ge=1)
    cpu_per_node: int = Field(ge=1)
    memory_per_node: str
    storage_per_node: str
    hot_tier_size: str = "100GB"
    warm_tier_size: str = "500GB"
    cold_tier_size: str = "2TB"
    archive_enabled: bool = True

    status: ClusterStatus = ClusterStatus.INITIALIZING
    status_message: str = ""
    error_details: Optional[str] = None
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check: Optional[datetime] = None

    connection_string: Optional[str] = None
    admin_username: str = ""
    admin_password_encrypted: str = ""
    readonly_username: str = ""
    readonly_password_encrypted: str = ""

    estimated_monthly_cost: float = 0.0
    actual_monthly_cost: float = 0.0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def effective_health(self) -> HealthStatus:
        """Health verdict, or UNKNOWN if no check has ever been recorded."""
        if self.last_health_check is None:
            return HealthStatus.UNKNOWN
        return self.health_status

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view without credentials."""
        data = self.model_dump(
            mode="json",
            exclude={"admin_password_encrypted", "readonly_password_encrypted"},
        )
        data["health_status"] = self.effective_health.value
        return data


# ============================================================================
# PROVISIONING AND HEALTH
# ============================================================================


class ProvisioningStatus(BaseModel):
    """Last known provisioning progress for one cluster."""

    cluster_id: str
    status: ClusterStatus
    stage: Optional[str] = Field(None, description="Name of the stage last entered")
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    estimated_completion: Optional[datetime] = None
    error_details: Optional[str] = None
    target_node_count: Optional[int] = Field(None, description="Requested size while scaling")
    updated_at: datetime = Field(default_factory=utc_now)


class HealthChecks(BaseModel):
    connectivity: bool = False
    query_performance: bool = False
    storage_health: bool = False
    replication_status: bool = False

    @property
    def all_passed(self) -> bool:
        return all(
            [self.connectivity, self.query_performance, self.storage_health, self.replication_status]
        )


class HealthMetrics(BaseModel):
    sensor_readings_count: int = 0
    quality_measurements_count: int = 0
    production_events_count: int = 0
    total_bytes_on_disk: int = 0
    probe_duration_ms: float = 0.0


class HealthSnapshot(BaseModel):
    """Result of one health probe."""

    cluster_id: str
    status: HealthStatus
    timestamp: datetime = Field(default_factory=utc_now)
    checks: HealthChecks = Field(default_factory=HealthChecks)
    metrics: Optional[HealthMetrics] = None
    error: Optional[str] = None
