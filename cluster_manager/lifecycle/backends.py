"""
Provisioning backends.

A backend performs the infrastructure work behind each provisioning stage.
The lifecycle manager owns ordering, persistence and retries; a backend only
does (or simulates) the work and raises on failure.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Optional

from cluster_manager.lifecycle.stages import Stage
from cluster_manager.models.cluster import Cluster

logger = logging.getLogger(__name__)


class ProvisioningBackend(ABC):
    """Infrastructure provider for managed clusters."""

    @abstractmethod
    async def run_stage(self, cluster: Cluster, stage: Stage, stage_seconds: float) -> None:
        """
        Perform one provisioning stage.

        Args:
            cluster: Cluster being provisioned
            stage: Stage to perform
            stage_seconds: Advisory time budget for the stage

        Raises:
            ConnectivityError: Transient failure, the stage may be retried
        """

    @abstractmethod
    async def connection_string(self, cluster: Cluster) -> str:
        """Endpoint of the provisioned cluster."""

    @abstractmethod
    async def rebalance(self, cluster: Cluster, node_count: int, stage_seconds: float) -> None:
        """Resize the cluster to node_count and rebalance data."""

    @abstractmethod
    async def release(self, cluster: Cluster) -> None:
        """Release the cluster's infrastructure."""


class SimulatedProvisioningBackend(ProvisioningBackend):
    """
    Development backend.

    Stages only take time (the stage budget with +/-jitter, scaled by
    time_scale) and every cluster is served by one configured endpoint.
    """

    def __init__(
        self,
        endpoint: str,
        time_scale: float = 1.0,
        jitter: float = 0.25,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize simulated backend.

        Args:
            endpoint: Connection string handed to every cluster
            time_scale: Multiplier on stage delays (0 for tests)
            jitter: Relative timing variation per stage
            rng: Random source for jitter
        """
        self.endpoint = endpoint
        self.time_scale = time_scale
        self.jitter = jitter
        self.rng = rng or random.Random()

    def _delay(self, stage_seconds: float) -> float:
        factor = self.rng.uniform(1 - self.jitter, 1 + self.jitter)
        return max(stage_seconds * factor * self.time_scale, 0.0)

    async def run_stage(self, cluster: Cluster, stage: Stage, stage_seconds: float) -> None:
        await asyncio.sleep(self._delay(stage_seconds))
        logger.debug(f"Simulated {stage.name} for {cluster.id}")

    async def connection_string(self, cluster: Cluster) -> str:
        return self.endpoint

    async def rebalance(self, cluster: Cluster, node_count: int, stage_seconds: float) -> None:
        await asyncio.sleep(self._delay(stage_seconds))
        logger.debug(f"Simulated rebalance of {cluster.id} to {node_count} nodes")

    async def release(self, cluster: Cluster) -> None:
        logger.info(f"Simulated release of resources for {cluster.id}")
