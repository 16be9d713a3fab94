"""
Configuration for the cluster manager.

Loaded from YAML; secrets and the control-plane DSN can be supplied through
the environment instead of the file.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field

from cluster_manager.clickhouse.client import DEFAULT_SETTINGS

logger = logging.getLogger(__name__)

DSN_ENV = "CLUSTER_MANAGER_DSN"


class APIConfig(BaseModel):
    """REST API server."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=8900, gt=0, lt=65536)


class ControlPlaneConfig(BaseModel):
    """Where cluster metadata is persisted."""

    backend: Literal["file", "postgres"] = "file"
    state_file: str = "/var/lib/cluster-manager/state.json"
    dsn: Optional[str] = Field(None, description="PostgreSQL DSN for the postgres backend")
    pool_min_size: int = Field(default=2, ge=1)
    pool_max_size: int = Field(default=10, ge=1)
    health_history: int = Field(default=100, ge=1, description="Snapshots kept per cluster (file)")


class ClickHouseConfig(BaseModel):
    """Defaults for connections to managed clusters."""

    connect_timeout: float = Field(default=5.0, gt=0)
    query_timeout: float = Field(default=60.0, gt=0)
    storage_policy: Optional[str] = Field(
        default="tiered", description="Policy defining warm/cold/archive volumes"
    )
    tiered_storage: bool = Field(default=True, description="Emit TTL ... TO VOLUME rules")
    settings: Dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_SETTINGS))


class ProvisioningConfig(BaseModel):
    """Provisioning backend and stage pacing."""

    backend: Literal["simulated"] = "simulated"
    simulated_endpoint: str = Field(
        default="clickhouse://localhost:8123/default",
        description="Endpoint handed to simulated clusters",
    )
    time_scale: float = Field(default=1.0, ge=0, description="Multiplier on simulated stage delays")
    jitter: float = Field(default=0.25, ge=0, lt=1)
    base_seconds: float = Field(default=5.0, ge=0)
    per_node_seconds: float = Field(default=0.5, ge=0)
    production_multiplier: float = Field(default=1.5, ge=1)
    max_stage_retries: int = Field(default=3, ge=0)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)


class HealthConfig(BaseModel):
    """Health monitor loop."""

    enabled: bool = True
    interval_seconds: float = Field(default=60.0, gt=0)
    probe_timeout_seconds: float = Field(default=10.0, gt=0)


class IngestionConfig(BaseModel):
    chunk_size: int = Field(default=10000, ge=1)


class LoggingConfig(BaseModel):
    log_dir: str = "/var/log/cluster-manager"
    console_level: str = "INFO"
    file_level: str = "DEBUG"
    use_json: bool = False


class ClusterManagerConfig(BaseModel):
    """Complete cluster manager configuration."""

    api: APIConfig = Field(default_factory=APIConfig)
    control_plane: ControlPlaneConfig = Field(default_factory=ControlPlaneConfig)
    clickhouse: ClickHouseConfig = Field(default_factory=ClickHouseConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ClusterManagerConfig":
        """
        Load configuration from YAML, then apply environment overrides.

        A missing file yields the defaults.
        """
        config_path = Path(path)
        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            config = cls.model_validate(data)
            logger.info(f"Loaded configuration from {config_path}")
        else:
            logger.warning(f"Config file {config_path} not found, using defaults")
            config = cls()
        config.apply_environment()
        return config

    def apply_environment(self) -> None:
        dsn = os.getenv(DSN_ENV)
        if dsn:
            self.control_plane.dsn = dsn
            self.control_plane.backend = "postgres"

    def save(self, path: Union[str, Path]) -> None:
        """Write configuration as YAML."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
