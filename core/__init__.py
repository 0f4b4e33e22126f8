"""Core types and errors for the position lifecycle orchestrator."""

from core.errors import (
    OrchestratorError,
    ConfigurationError,
    InvalidAmount,
    WalletRequired,
    NotFound,
    PollFailure,
    ReconciliationTimeout,
    VerificationInconclusive,
    BridgeFailed,
    BridgeExpired,
    PriceUnavailable,
    RPCError,
)
from core.types import (
    BridgeJob,
    BridgeJobStatus,
    Position,
    Vault,
    Verification,
    WithdrawalRequest,
    WithdrawalStatus,
    WithdrawalType,
    LifecycleStage,
    PendingActivity,
    HealthMetric,
    MetricStatus,
    ReconciliationSummary,
)

__all__ = [
    "OrchestratorError",
    "ConfigurationError",
    "InvalidAmount",
    "WalletRequired",
    "NotFound",
    "PollFailure",
    "ReconciliationTimeout",
    "VerificationInconclusive",
    "BridgeFailed",
    "BridgeExpired",
    "PriceUnavailable",
    "RPCError",
    "BridgeJob",
    "BridgeJobStatus",
    "Position",
    "Vault",
    "Verification",
    "WithdrawalRequest",
    "WithdrawalStatus",
    "WithdrawalType",
    "LifecycleStage",
    "PendingActivity",
    "HealthMetric",
    "MetricStatus",
    "ReconciliationSummary",
]
