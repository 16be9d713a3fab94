"""
Cluster lifecycle manager.

Drives each cluster through the provisioning stages in its own background
task, persisting every transition to the control-plane store before the next
stage starts. Handles scaling and termination, and resumes drivers that were
interrupted by a process restart.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from cluster_manager.clickhouse.connection import ConnectionRegistry
from cluster_manager.crypto import CredentialEncryption, generate_credentials
from cluster_manager.errors import (
    ClusterStateError,
    ConnectivityError,
    InputError,
    InvalidTransitionError,
)
from cluster_manager.lifecycle import stages
from cluster_manager.lifecycle.backends import ProvisioningBackend
from cluster_manager.lifecycle.estimates import (
    estimate_monthly_cost,
    estimate_provisioning_seconds,
    estimated_completion,
)
from cluster_manager.lifecycle.stages import (
    PROVISIONING_STAGES,
    REBALANCE_STAGE,
    SCHEMA_STAGE,
    Stage,
    validate_transition,
)
from cluster_manager.logging_config import log_cluster_operation
from cluster_manager.models.cluster import (
    Cluster,
    ClusterCreateRequest,
    ClusterStatus,
    HealthStatus,
    ProvisioningStatus,
    utc_now,
)
from cluster_manager.schema.registry import SchemaRegistry
from cluster_manager.store.base import ControlPlaneStore
from cluster_manager.telemetry.service import cluster_connection_config
from cluster_manager.utils.log_sanitizer import mask_connection_string, sanitize_cluster_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCALE_STAGE_NAME = "scale"
IN_FLIGHT_STATUSES = (
    ClusterStatus.INITIALIZING,
    ClusterStatus.PROVISIONING,
    ClusterStatus.CONFIGURING,
    ClusterStatus.TESTING,
)


class LifecycleManager:
    """Owns cluster status transitions."""

    def __init__(
        self,
        store: ControlPlaneStore,
        registry: ConnectionRegistry,
        schema_registry: SchemaRegistry,
        backend: ProvisioningBackend,
        encryption: Optional[CredentialEncryption] = None,
        base_seconds: float = 5.0,
        per_node_seconds: float = 0.5,
        production_multiplier: float = 1.5,
        max_stage_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
    ):
        """
        Initialize lifecycle manager.

        Args:
            store: Control-plane store
            registry: Shared connection registry
            schema_registry: Schema materialized on activation
            backend: Provisioning backend
            encryption: Credential encryption; passwords are stored in clear without it
            base_seconds: Fixed part of the provisioning estimate
            per_node_seconds: Per-node part of the provisioning estimate
            production_multiplier: Estimate weight for production clusters
            max_stage_retries: Retries of a stage after a connectivity error
            retry_backoff_seconds: First retry delay, doubled per retry
        """
        self.store = store
        self.registry = registry
        self.schema_registry = schema_registry
        self.backend = backend
        self.encryption = encryption
        self.base_seconds = base_seconds
        self.per_node_seconds = per_node_seconds
        self.production_multiplier = production_multiplier
        self.max_stage_retries = max_stage_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_cluster(self, cluster_id: str) -> Cluster:
        return await self.store.require_cluster(cluster_id)

    async def list_clusters(self, status: Optional[ClusterStatus] = None) -> List[Cluster]:
        return await self.store.list_clusters(status)

    async def get_provisioning_status(self, cluster_id: str) -> Optional[ProvisioningStatus]:
        await self.store.require_cluster(cluster_id)
        return await self.store.get_provisioning_status(cluster_id)

    def is_running(self, cluster_id: str) -> bool:
        task = self._tasks.get(cluster_id)
        return task is not None and not task.done()

    async def wait_for(self, cluster_id: str, timeout: Optional[float] = None) -> None:
        """Wait until the cluster's driver (if any) finishes."""
        task = self._tasks.get(cluster_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _estimate_seconds(self, cluster: Cluster) -> float:
        return estimate_provisioning_seconds(
            cluster.node_count,
            cluster.cluster_type,
            self.base_seconds,
            self.per_node_seconds,
            self.production_multiplier,
        )

    def _encrypt(self, secret: str) -> str:
        return self.encryption.encrypt(secret) if self.encryption else secret

    async def create_cluster(
        self, request: ClusterCreateRequest
    ) -> Tuple[Cluster, ProvisioningStatus]:
        """
        Register a cluster and start provisioning it in the background.

        Raises:
            InputError: A cluster with the requested id already exists
        """
        cluster_id = request.cluster_id or str(uuid.uuid4())
        if await self.store.get_cluster(cluster_id) is not None:
            raise InputError(f"Cluster {cluster_id} already exists")

        admin_user, admin_password, readonly_user, readonly_password = generate_credentials(
            cluster_id
        )
        if request.admin_credentials:
            admin_user = request.admin_credentials.username
            admin_password = request.admin_credentials.password
        if request.readonly_credentials:
            readonly_user = request.readonly_credentials.username
            readonly_password = request.readonly_credentials.password

        cluster = Cluster(
            id=cluster_id,
            cluster_key="",
            name=request.name,
            cluster_type=request.cluster_type,
            region=request.region,
            node_count=request.node_count,
            cpu_per_node=request.cpu_per_node,
            memory_per_node=request.memory_per_node,
            storage_per_node=request.storage_per_node,
            hot_tier_size=request.hot_tier_size,
            warm_tier_size=request.warm_tier_size,
            cold_tier_size=request.cold_tier_size,
            archive_enabled=request.archive_enabled,
            status=ClusterStatus.INITIALIZING,
            status_message=stages.INITIALIZING_MESSAGE,
            admin_username=admin_user,
            admin_password_encrypted=self._encrypt(admin_password),
            readonly_username=readonly_user,
            readonly_password_encrypted=self._encrypt(readonly_password),
            estimated_monthly_cost=estimate_monthly_cost(request),
        )
        cluster = await self.store.create_cluster(cluster)

        status = ProvisioningStatus(
            cluster_id=cluster.id,
            status=ClusterStatus.INITIALIZING,
            progress=0,
            message=stages.INITIALIZING_MESSAGE,
            estimated_completion=estimated_completion(self._estimate_seconds(cluster)),
        )
        await self.store.save_provisioning_status(status)

        log_cluster_operation(
            "create",
            cluster.id,
            {
                "cluster_key": cluster.cluster_key,
                "type": cluster.cluster_type.value,
                "region": cluster.region,
                "nodes": cluster.node_count,
            },
        )
        self._start_driver(cluster.id, self._provision(cluster.id, 0))
        return cluster, status

    async def scale_cluster(self, cluster_id: str, node_count: int) -> ProvisioningStatus:
        """
        Resize an active cluster in the background.

        Raises:
            ClusterNotFoundError: Unknown cluster
            ClusterStateError: Cluster is not active
            InputError: node_count below 1
        """
        if node_count < 1:
            raise InputError("node_count must be at least 1")
        cluster = await self.store.require_cluster(cluster_id)
        if cluster.status != ClusterStatus.ACTIVE or self.is_running(cluster_id):
            raise ClusterStateError(cluster_id, cluster.status.value, "scale")

        await self._transition(
            cluster_id,
            ClusterStatus.CONFIGURING,
            f"Scaling cluster to {node_count} nodes...",
            stage=SCALE_STAGE_NAME,
            progress=0,
            target_node_count=node_count,
            eta=estimated_completion(self._stage_seconds(cluster) * 2),
        )
        log_cluster_operation(
            "scale", cluster_id, {"from_nodes": cluster.node_count, "to_nodes": node_count}
        )
        status = await self.store.get_provisioning_status(cluster_id)
        if status is None:
            raise ClusterStateError(cluster_id, ClusterStatus.CONFIGURING.value, "scale")
        self._start_driver(cluster_id, self._scale(cluster_id, node_count))
        return status

    async def terminate_cluster(self, cluster_id: str) -> Cluster:
        """
        Mark a cluster terminated. Idempotent.

        Stops any running driver, drops the cached connection and asks the
        backend to release resources. The record is kept.
        """
        cluster = await self.store.require_cluster(cluster_id)
        await self._cancel_driver(cluster_id)

        if cluster.status != ClusterStatus.TERMINATED:
            cluster = await self.store.update_cluster(
                cluster_id,
                {"status": ClusterStatus.TERMINATED, "status_message": stages.TERMINATED_MESSAGE},
            )
            previous = await self.store.get_provisioning_status(cluster_id)
            await self.store.save_provisioning_status(
                ProvisioningStatus(
                    cluster_id=cluster_id,
                    status=ClusterStatus.TERMINATED,
                    stage=previous.stage if previous else None,
                    progress=previous.progress if previous else 0,
                    message=stages.TERMINATED_MESSAGE,
                )
            )
            log_cluster_operation("terminate", cluster_id)

        await self._release_connection(cluster)
        try:
            await self.backend.release(cluster)
        except Exception as e:
            logger.error(f"Failed to release resources for {sanitize_cluster_id(cluster_id)}: {e}")
        return cluster

    async def resume_interrupted(self) -> List[str]:
        """
        Restart drivers for clusters persisted mid-transition.

        Provisioning resumes at the first stage not yet reached; an
        interrupted scale is run again.

        Returns:
            IDs of clusters whose driver was restarted
        """
        resumed = []
        for cluster in await self.store.list_clusters():
            if cluster.status not in IN_FLIGHT_STATUSES or self.is_running(cluster.id):
                continue
            status = await self.store.get_provisioning_status(cluster.id)
            if (
                cluster.status == ClusterStatus.CONFIGURING
                and status is not None
                and status.stage in (SCALE_STAGE_NAME, REBALANCE_STAGE.name)
                and status.target_node_count
            ):
                self._start_driver(cluster.id, self._scale(cluster.id, status.target_node_count))
            else:
                start = stages.resume_index(status.progress if status else 0)
                self._start_driver(cluster.id, self._provision(cluster.id, start))
            log_cluster_operation(
                "resume", cluster.id, {"status": cluster.status.value}, level="WARNING"
            )
            resumed.append(cluster.id)
        if resumed:
            logger.info(f"Resumed {len(resumed)} interrupted cluster drivers")
        return resumed

    async def shutdown(self) -> None:
        """Cancel running drivers. Their clusters resume on next start."""
        for cluster_id in list(self._tasks):
            await self._cancel_driver(cluster_id)

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    def _start_driver(self, cluster_id: str, coro: Awaitable[None]) -> None:
        if self.is_running(cluster_id):
            coro.close()  # type: ignore[attr-defined]
            raise ClusterStateError(cluster_id, "busy", "start a second driver for")

        task = asyncio.create_task(coro, name=f"lifecycle-{cluster_id}")
        self._tasks[cluster_id] = task

        def _discard(finished: asyncio.Task) -> None:
            if self._tasks.get(cluster_id) is finished:
                del self._tasks[cluster_id]

        task.add_done_callback(_discard)

    async def _cancel_driver(self, cluster_id: str) -> None:
        task = self._tasks.get(cluster_id)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Lifecycle driver for {cluster_id} ended with error: {e}")

    def _stage_seconds(self, cluster: Cluster) -> float:
        return self._estimate_seconds(cluster) / len(PROVISIONING_STAGES)

    async def _provision(self, cluster_id: str, start_index: int) -> None:
        current = "startup"
        try:
            cluster = await self.store.require_cluster(cluster_id)
            stage_seconds = self._stage_seconds(cluster)
            remaining = len(PROVISIONING_STAGES) - start_index
            if start_index > 0:
                logger.info(f"Resuming provisioning of {cluster_id} at stage {start_index + 1}")
                await self._update_eta(cluster_id, stage_seconds * remaining)

            for stage in PROVISIONING_STAGES[start_index:-1]:
                current = stage.name
                await self._with_retries(
                    cluster_id,
                    stage.name,
                    lambda s=stage: self.backend.run_stage(cluster, s, stage_seconds),
                )
                extra: Dict[str, Any] = {}
                if stage.name == "install_engine":
                    endpoint = await self.backend.connection_string(cluster)
                    extra["connection_string"] = endpoint
                    logger.info(f"Cluster {cluster_id} endpoint: {mask_connection_string(endpoint)}")
                await self._enter_stage(cluster_id, stage, extra)

            current = SCHEMA_STAGE.name
            if start_index < len(PROVISIONING_STAGES):
                await self._enter_stage(cluster_id, SCHEMA_STAGE)
            try:
                await self._with_retries(
                    cluster_id, SCHEMA_STAGE.name, lambda: self._initialize_schema(cluster_id)
                )
            except Exception as e:
                logger.error(f"Schema initialization failed for {cluster_id}: {e}")
                await self._fail(cluster_id, stages.SCHEMA_FAILED_MESSAGE, str(e))
                return

            await self._transition(
                cluster_id,
                ClusterStatus.ACTIVE,
                stages.READY_MESSAGE,
                stage=SCHEMA_STAGE.name,
                progress=100,
                extra={
                    "health_status": HealthStatus.HEALTHY,
                    "last_health_check": utc_now(),
                    "error_details": None,
                },
            )
            log_cluster_operation("activate", cluster_id)

        except asyncio.CancelledError:
            logger.info(f"Provisioning driver for {cluster_id} cancelled at {current}")
            raise
        except InvalidTransitionError as e:
            # Terminated or failed elsewhere while this driver ran
            logger.warning(f"Provisioning of {cluster_id} stopped: {e}")
        except Exception as e:
            logger.error(f"Provisioning of {cluster_id} failed at {current}: {e}")
            await self._fail(cluster_id, f"Provisioning failed at stage {current}", str(e))

    async def _scale(self, cluster_id: str, node_count: int) -> None:
        try:
            cluster = await self.store.require_cluster(cluster_id)
            await self._enter_stage(cluster_id, REBALANCE_STAGE, target_node_count=node_count)
            await self._with_retries(
                cluster_id,
                REBALANCE_STAGE.name,
                lambda: self.backend.rebalance(cluster, node_count, self._stage_seconds(cluster)),
            )
            await self._transition(
                cluster_id,
                ClusterStatus.ACTIVE,
                stages.SCALED_MESSAGE,
                stage=REBALANCE_STAGE.name,
                progress=100,
                extra={"node_count": node_count},
                target_node_count=node_count,
            )
            log_cluster_operation("scaled", cluster_id, {"nodes": node_count})

        except asyncio.CancelledError:
            logger.info(f"Scaling driver for {cluster_id} cancelled")
            raise
        except InvalidTransitionError as e:
            logger.warning(f"Scaling of {cluster_id} stopped: {e}")
        except Exception as e:
            logger.error(f"Scaling of {cluster_id} failed: {e}")
            await self._fail(cluster_id, "Cluster scaling failed", str(e))

    async def _with_retries(
        self, cluster_id: str, operation: str, func: Callable[[], Awaitable[T]]
    ) -> T:
        """Run func, retrying connectivity errors with exponential backoff."""
        attempt = 0
        while True:
            try:
                return await func()
            except ConnectivityError as e:
                if attempt >= self.max_stage_retries:
                    raise
                delay = self.retry_backoff_seconds * (2**attempt)
                attempt += 1
                logger.warning(
                    f"{operation} for {cluster_id} failed: {e}; "
                    f"retry {attempt}/{self.max_stage_retries} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def _initialize_schema(self, cluster_id: str) -> None:
        cluster = await self.store.require_cluster(cluster_id)
        if not cluster.connection_string:
            await self.store.update_cluster(
                cluster_id, {"connection_string": await self.backend.connection_string(cluster)}
            )
            cluster = await self.store.require_cluster(cluster_id)

        config = cluster_connection_config(cluster, self.encryption)
        client = await self.registry.acquire(config)
        try:
            created = await self.schema_registry.materialize(client)
        except ConnectivityError:
            await self.registry.release(*config.key)
            raise
        log_cluster_operation("schema", cluster_id, {"created": created})

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _enter_stage(
        self,
        cluster_id: str,
        stage: Stage,
        extra: Optional[Dict[str, Any]] = None,
        target_node_count: Optional[int] = None,
    ) -> Cluster:
        cluster = await self._transition(
            cluster_id,
            stage.status,
            stage.message,
            stage=stage.name,
            progress=stage.progress,
            extra=extra,
            target_node_count=target_node_count,
        )
        log_cluster_operation(
            "stage", cluster_id, {"stage": stage.name, "progress": stage.progress}
        )
        return cluster

    async def _transition(
        self,
        cluster_id: str,
        target: ClusterStatus,
        message: str,
        stage: Optional[str] = None,
        progress: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
        error_details: Optional[str] = None,
        target_node_count: Optional[int] = None,
        eta: Optional[Any] = None,
    ) -> Cluster:
        """
        Persist a validated status change and the matching provisioning status.

        Raises:
            InvalidTransitionError: Not allowed from the current status, or the
                status changed underneath this write
        """
        cluster = await self.store.require_cluster(cluster_id)
        validate_transition(cluster_id, cluster.status, target)

        changes: Dict[str, Any] = {"status": target, "status_message": message}
        if error_details is not None:
            changes["error_details"] = error_details
        changes.update(extra or {})

        updated = await self.store.update_cluster(
            cluster_id, changes, expected_status=cluster.status
        )
        if updated is None:
            latest = await self.store.require_cluster(cluster_id)
            raise InvalidTransitionError(cluster_id, latest.status.value, target.value)

        previous = await self.store.get_provisioning_status(cluster_id)
        await self.store.save_provisioning_status(
            ProvisioningStatus(
                cluster_id=cluster_id,
                status=target,
                stage=stage if stage is not None else (previous.stage if previous else None),
                progress=progress if progress is not None else (previous.progress if previous else 0),
                message=message,
                estimated_completion=eta or (previous.estimated_completion if previous else None),
                error_details=error_details,
                target_node_count=target_node_count,
            )
        )
        logger.info(f"Cluster {cluster_id}: {cluster.status.value} -> {target.value} ({message})")
        return updated

    async def _update_eta(self, cluster_id: str, seconds: float) -> None:
        previous = await self.store.get_provisioning_status(cluster_id)
        if previous is None:
            return
        await self.store.save_provisioning_status(
            previous.model_copy(
                update={"estimated_completion": estimated_completion(seconds), "updated_at": utc_now()}
            )
        )

    async def _fail(self, cluster_id: str, message: str, details: str) -> None:
        """Park the cluster in error. Never raises."""
        try:
            await self._transition(
                cluster_id, ClusterStatus.ERROR, message, error_details=details
            )
            log_cluster_operation("error", cluster_id, {"error": details}, level="ERROR")
        except InvalidTransitionError as e:
            logger.warning(f"Not moving {cluster_id} to error: {e}")
        except Exception as e:
            logger.error(f"Failed to record error state for {cluster_id}: {e}")

    async def _release_connection(self, cluster: Cluster) -> None:
        if not cluster.connection_string:
            return
        try:
            config = cluster_connection_config(cluster, self.encryption)
            await self.registry.release(*config.key)
        except Exception as e:
            logger.warning(f"Could not release connection for {cluster.id}: {e}")
