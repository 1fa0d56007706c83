"""Core primitives for mdm-dispatcher."""

from .history import ExecutionHistoryStore
from .models import (
    CommandRequest,
    CommandResult,
    CommandStatus,
    DispatchJob,
    SubmissionAck,
)
from .pool import PoolClosedError, PoolSaturatedError, WorkerPool
from .protocols import (
    GatewayAccepted,
    GatewayClient,
    GatewayOutcome,
    GatewayRejected,
    GatewayTransportError,
)
from .retry import RetryPolicy

__all__ = [
    "CommandRequest",
    "CommandResult",
    "CommandStatus",
    "DispatchJob",
    "ExecutionHistoryStore",
    "GatewayAccepted",
    "GatewayClient",
    "GatewayOutcome",
    "GatewayRejected",
    "GatewayTransportError",
    "PoolClosedError",
    "PoolSaturatedError",
    "RetryPolicy",
    "SubmissionAck",
    "WorkerPool",
]
