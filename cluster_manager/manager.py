"""
Cluster manager service.

Composition root: builds the control-plane store, connection registry,
lifecycle manager, health monitor and telemetry service from configuration,
and runs them alongside the REST API.
"""

import asyncio
import logging
import signal
import time
from datetime import datetime, timezone
from typing import Any, Optional, Set

import uvicorn
from fastapi import FastAPI, Request

from cluster_manager import __version__
from cluster_manager.api.routes import create_cluster_routes
from cluster_manager.clickhouse.connection import ConnectionRegistry
from cluster_manager.config.settings import ClusterManagerConfig
from cluster_manager.crypto import CredentialEncryption
from cluster_manager.health.monitor import HealthMonitor
from cluster_manager.lifecycle.backends import ProvisioningBackend, SimulatedProvisioningBackend
from cluster_manager.lifecycle.manager import LifecycleManager
from cluster_manager.logging_config import API_ACCESS_LOGGER
from cluster_manager.schema.registry import SchemaRegistry
from cluster_manager.store.base import ControlPlaneStore
from cluster_manager.store.file_store import FileControlPlaneStore
from cluster_manager.store.postgres import PostgresControlPlaneStore
from cluster_manager.telemetry.service import TelemetryDataService

logger = logging.getLogger(__name__)
access_logger = logging.getLogger(API_ACCESS_LOGGER)


def create_store(config: ClusterManagerConfig) -> ControlPlaneStore:
    cp = config.control_plane
    if cp.backend == "postgres":
        if not cp.dsn:
            raise ValueError("control_plane.dsn is required for the postgres backend")
        return PostgresControlPlaneStore(cp.dsn, cp.pool_min_size, cp.pool_max_size)
    return FileControlPlaneStore(cp.state_file, health_history=cp.health_history)


def create_backend(config: ClusterManagerConfig) -> ProvisioningBackend:
    prov = config.provisioning
    return SimulatedProvisioningBackend(
        prov.simulated_endpoint, time_scale=prov.time_scale, jitter=prov.jitter
    )


class ClusterManager:
    """
    Main cluster manager service.

    Components can be injected for tests; anything not given is built from
    the configuration.
    """

    def __init__(
        self,
        config: Optional[ClusterManagerConfig] = None,
        store: Optional[ControlPlaneStore] = None,
        registry: Optional[ConnectionRegistry] = None,
        backend: Optional[ProvisioningBackend] = None,
        encryption: Optional[CredentialEncryption] = None,
    ):
        self.config = config or ClusterManagerConfig()
        ch = self.config.clickhouse
        prov = self.config.provisioning

        self.store = store if store is not None else create_store(self.config)
        self.registry = registry if registry is not None else ConnectionRegistry(
            connect_timeout=ch.connect_timeout,
            query_timeout=ch.query_timeout,
            settings=ch.settings,
        )
        self.encryption = encryption if encryption is not None else CredentialEncryption()
        self.backend = backend if backend is not None else create_backend(self.config)
        self.schema_registry = SchemaRegistry(
            storage_policy=ch.storage_policy, tiered_storage=ch.tiered_storage
        )

        self.lifecycle = LifecycleManager(
            self.store,
            self.registry,
            self.schema_registry,
            self.backend,
            encryption=self.encryption,
            base_seconds=prov.base_seconds,
            per_node_seconds=prov.per_node_seconds,
            production_multiplier=prov.production_multiplier,
            max_stage_retries=prov.max_stage_retries,
            retry_backoff_seconds=prov.retry_backoff_seconds,
        )
        self.health = HealthMonitor(
            self.store,
            self.registry,
            encryption=self.encryption,
            interval_seconds=self.config.health.interval_seconds,
            probe_timeout_seconds=self.config.health.probe_timeout_seconds,
        )
        self.telemetry = TelemetryDataService(
            self.store,
            self.registry,
            encryption=self.encryption,
            chunk_size=self.config.ingestion.chunk_size,
        )

        self.app = self.create_app()
        self._running = False
        self._start_time: Optional[datetime] = None
        self._shutdown_event = asyncio.Event()
        self._background_tasks: Set[asyncio.Task] = set()

    def create_app(self) -> FastAPI:
        """FastAPI application serving the cluster routes."""
        app = FastAPI(title="Cluster Manager API", version=__version__)

        @app.middleware("http")
        async def access_log(request: Request, call_next: Any) -> Any:
            started = time.monotonic()
            response = await call_next(request)
            duration_ms = (time.monotonic() - started) * 1000
            access_logger.info(
                f"{request.method} {request.url.path} {response.status_code} {duration_ms:.1f}ms",
                extra={"duration_ms": duration_ms, "status": response.status_code},
            )
            return response

        app.include_router(create_cluster_routes(self))
        return app

    async def start(self) -> None:
        """Start all manager services."""
        logger.info("Starting cluster manager...")
        self._running = True
        self._start_time = datetime.now(timezone.utc)

        await self.store.connect()
        await self.lifecycle.resume_interrupted()

        if self.config.health.enabled:
            await self.health.start()

        if self.config.api.enabled:
            task = asyncio.create_task(self._start_api_server())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        logger.info("Cluster manager started successfully")

    async def _start_api_server(self) -> None:
        try:
            config = uvicorn.Config(
                self.app,
                host=self.config.api.host,
                port=self.config.api.port,
                log_level="info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.config.api.host}:{self.config.api.port}")
            await server.serve()
        except Exception as e:
            logger.error(f"Failed to start API server: {e}")

    async def stop(self) -> None:
        """Stop all manager services."""
        logger.info("Stopping cluster manager...")
        self._running = False

        await self.health.stop()
        await self.lifecycle.shutdown()

        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        await self.registry.release_all()
        await self.store.disconnect()
        self._shutdown_event.set()
        logger.info("Cluster manager stopped")

    async def run(self) -> None:
        """Run the manager until shutdown signal."""
        loop = asyncio.get_running_loop()

        def handle_signal() -> None:
            logger.info("Shutdown signal received")
            self._shutdown_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle_signal)

        try:
            await self.start()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def get_status(self) -> dict:
        """Get current manager status."""
        uptime_seconds = None
        if self._start_time:
            uptime_seconds = int((datetime.now(timezone.utc) - self._start_time).total_seconds())

        return {
            "running": self._running,
            "version": __version__,
            "uptime_seconds": uptime_seconds,
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "cached_connections": len(self.registry),
            "components": {
                "health_monitor": "running" if self.health.is_running else "stopped",
                "control_plane": self.config.control_plane.backend,
                "provisioning": self.config.provisioning.backend,
            },
            "health_monitor": self.health.get_stats(),
        }
