"""Error types for the position lifecycle orchestrator."""

from typing import Any, Optional


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""
    pass


class ConfigurationError(OrchestratorError):
    """Errors related to configuration."""
    pass


class InvalidAmount(OrchestratorError):
    """Amount is non-numeric or out of range."""
    pass


class WalletRequired(OrchestratorError):
    """Operation needs a wallet address and none was given."""
    pass


class NotFound(OrchestratorError):
    """Requested record does not exist."""
    pass


class PollFailure(OrchestratorError):
    """Transient failure while polling the bridge status endpoint."""

    def __init__(self, message: str, job_id: str = ""):
        self.job_id = job_id
        super().__init__(message)


class ReconciliationTimeout(OrchestratorError):
    """Reconciliation did not finish before the caller's deadline.

    ``last_known`` holds the previous known-good summary for the wallet, if any.
    """

    def __init__(self, wallet_address: str, timeout: float, last_known: Optional[Any] = None):
        self.wallet_address = wallet_address
        self.timeout = timeout
        self.last_known = last_known
        super().__init__(
            f"Reconciliation for {wallet_address[:16]} exceeded {timeout}s"
        )


class VerificationInconclusive(OrchestratorError):
    """On-chain read for one asset failed."""

    def __init__(self, message: str, asset: str = ""):
        self.asset = asset
        super().__init__(message)


class BridgeTerminalError(OrchestratorError):
    """Authoritative terminal failure reported by the bridge."""

    def __init__(self, job_id: str, message: str = ""):
        self.job_id = job_id
        super().__init__(message or f"Bridge job {job_id} ended unsuccessfully")


class BridgeFailed(BridgeTerminalError):
    pass


class BridgeExpired(BridgeTerminalError):
    pass


class PriceUnavailable(OrchestratorError):
    """Price source could not quote a symbol."""
    pass


class TrackerNotDismissible(OrchestratorError):
    """Tracker is in a non-terminal stage and cannot be dismissed."""
    pass


class CancellationRefused(OrchestratorError):
    """Deposit can no longer be cancelled (payment already broadcast)."""
    pass


class InvalidTransition(OrchestratorError):
    """Status change not allowed from the record's current state."""
    pass


class RPCError(OrchestratorError):
    """Errors from RPC calls."""
    def __init__(self, message: str, method: str = "", details: str = ""):
        self.method = method
        self.details = details
        super().__init__(f"RPC Error [{method}]: {message} - {details}")
