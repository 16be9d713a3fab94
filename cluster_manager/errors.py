"""
Error taxonomy for the cluster manager.

Every error raised across component boundaries derives from
ClusterManagerError so API handlers can map them to responses.
"""

from typing import Optional


class ClusterManagerError(Exception):
    """Base class for all cluster manager errors."""


class ConnectivityError(ClusterManagerError):
    """Backing engine unreachable, timed out, or liveness probe failed."""

    def __init__(self, message: str, host: Optional[str] = None, port: Optional[int] = None):
        self.host = host
        self.port = port
        if host:
            message = f"{message} ({host}:{port})"
        super().__init__(message)


class ClickHouseError(ClusterManagerError):
    """The engine answered but rejected the statement."""

    # Engine error codes we react to
    TABLE_ALREADY_EXISTS = 57
    DATABASE_ALREADY_EXISTS = 82

    def __init__(self, message: str, code: Optional[int] = None, status_code: Optional[int] = None):
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    @property
    def already_exists(self) -> bool:
        """True when the engine reports the object already exists."""
        if self.code in (self.TABLE_ALREADY_EXISTS, self.DATABASE_ALREADY_EXISTS):
            return True
        return "already exists" in str(self).lower()


class SchemaError(ClusterManagerError):
    """Table or view creation failed for a reason other than 'already exists'."""

    def __init__(self, object_name: str, reason: str):
        self.object_name = object_name
        self.reason = reason
        super().__init__(f"Failed to create {object_name}: {reason}")


class InputError(ClusterManagerError):
    """Request rejected before any I/O."""


class PartialBatchError(ClusterManagerError):
    """
    A chunk write failed mid-ingestion.

    Chunks before failed_chunk_index remain committed; callers resume by
    passing failed_chunk_index as start_chunk.
    """

    def __init__(
        self,
        failed_chunk_index: int,
        records_in_chunk: int,
        chunks_committed: int,
        total_chunks: int,
        cause: Optional[BaseException] = None,
    ):
        self.failed_chunk_index = failed_chunk_index
        self.records_in_chunk = records_in_chunk
        self.chunks_committed = chunks_committed
        self.total_chunks = total_chunks
        self.cause = cause
        super().__init__(
            f"Chunk {failed_chunk_index + 1}/{total_chunks} "
            f"({records_in_chunk} records) failed: {cause}"
        )

    def to_dict(self) -> dict:
        return {
            "failed_chunk_index": self.failed_chunk_index,
            "records_in_chunk": self.records_in_chunk,
            "chunks_committed": self.chunks_committed,
            "total_chunks": self.total_chunks,
            "error": str(self.cause) if self.cause else None,
        }


class LifecycleError(ClusterManagerError):
    """Base class for cluster lifecycle failures."""


class ClusterNotFoundError(LifecycleError):
    def __init__(self, cluster_id: str):
        self.cluster_id = cluster_id
        super().__init__(f"Cluster {cluster_id} not found")


class ClusterStateError(LifecycleError):
    """Operation not allowed in the cluster's current status."""

    def __init__(self, cluster_id: str, status: str, operation: str):
        self.cluster_id = cluster_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} cluster {cluster_id} while {status}")


class ClusterNotActiveError(ClusterStateError):
    """Telemetry traffic against a cluster that is not active."""

    def __init__(self, cluster_id: str, status: str):
        super().__init__(cluster_id, status, "serve telemetry for")


class InvalidTransitionError(LifecycleError):
    def __init__(self, cluster_id: str, current: str, target: str):
        self.cluster_id = cluster_id
        self.current = current
        self.target = target
        super().__init__(f"Cluster {cluster_id}: invalid transition {current} -> {target}")
