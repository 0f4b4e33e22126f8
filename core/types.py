"""Core types for the position lifecycle orchestrator."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, NewType, Optional, Tuple, Union

from core.errors import InvalidAmount

# Type aliases
WalletAddress = NewType("WalletAddress", str)  # EVM "0x..." or XRPL "r..." address
JobId = NewType("JobId", str)


class BridgeJobStatus(Enum):
    """Status reported by the bridge for one transfer attempt."""
    QUEUED = "queued"
    RESERVING = "reserving"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    MINTING = "minting"
    MINTED = "minted"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (BridgeJobStatus.MINTED, BridgeJobStatus.FAILED, BridgeJobStatus.EXPIRED)

    @property
    def is_failure(self) -> bool:
        return self in (BridgeJobStatus.FAILED, BridgeJobStatus.EXPIRED)


@dataclass
class BridgeJob:
    """One ledger -> smart-contract chain transfer attempt."""
    id: str
    wallet_address: str
    source_chain: str
    dest_chain: str
    amount_requested: Decimal  # ledger units
    amount_rounded: Decimal  # after lot-size normalization
    status: BridgeJobStatus
    created_at: datetime
    updated_at: datetime
    vault_id: Optional[str] = None
    source_tx_hash: Optional[str] = None
    dest_tx_hash: Optional[str] = None
    agent_reference: Optional[str] = None
    error_message: Optional[str] = None
    amount_shortfall: Optional[Decimal] = None
    cancelled_at: Optional[datetime] = None  # user abort, never reported by the bridge

    def __post_init__(self):
        if self.amount_rounded > self.amount_requested:
            raise InvalidAmount(
                f"Rounded amount {self.amount_rounded} exceeds requested {self.amount_requested}"
            )
        shortfall = self.amount_requested - self.amount_rounded
        if self.amount_shortfall is None:
            self.amount_shortfall = shortfall
        elif self.amount_shortfall != shortfall:
            raise InvalidAmount(
                f"Recorded shortfall {self.amount_shortfall} does not match {shortfall}"
            )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal or self.cancelled

    @property
    def cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def is_failure(self) -> bool:
        """Ended without minting, by the bridge or by the user."""
        return self.status.is_failure or self.cancelled

    @property
    def finished_at(self) -> datetime:
        return self.cancelled_at or self.updated_at

    def with_local_state(self, recorded: Optional["BridgeJob"]) -> "BridgeJob":
        """Carry over what only this service records when a bridge snapshot lacks it.

        The bridge does not know about user cancellation and may not echo the
        payment hash the wallet broadcast.
        """
        if recorded is None or recorded.id != self.id:
            return self
        return replace(
            self,
            cancelled_at=self.cancelled_at or recorded.cancelled_at,
            source_tx_hash=self.source_tx_hash or recorded.source_tx_hash,
        )


class Verification(Enum):
    """Outcome of comparing a recorded balance with the chain.

    NOT_APPLICABLE also covers reads that failed (verification inconclusive).
    """
    VERIFIED = "verified"
    MISMATCHED = "mismatched"
    NOT_APPLICABLE = "not_applicable"

    def as_flag(self) -> Optional[bool]:
        """Wire representation: True / False / None."""
        if self is Verification.VERIFIED:
            return True
        if self is Verification.MISMATCHED:
            return False
        return None


@dataclass
class Vault:
    """Vault metadata."""
    id: str
    name: str
    asset: str
    apy: Decimal
    address: Optional[str] = None
    verifiable: bool = False  # shares backed by the bridge-minted asset


class LifecycleStage(Enum):
    """Caller-facing coarse status shared by deposits and withdrawals."""
    # Deposit path
    SIGNING = "signing"
    AWAITING_PAYMENT = "awaiting_payment"
    BRIDGING = "bridging"
    MINTING = "minting"
    EARNING = "earning"
    FAILED = "failed"
    CANCELLED = "cancelled"
    # Withdrawal path
    CREATING = "creating"
    PROCESSING = "processing"
    SENDING = "sending"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES

    @property
    def is_failure(self) -> bool:
        return self in (LifecycleStage.FAILED, LifecycleStage.CANCELLED, LifecycleStage.ERROR)


DEPOSIT_PATH: Tuple[LifecycleStage, ...] = (
    LifecycleStage.SIGNING,
    LifecycleStage.AWAITING_PAYMENT,
    LifecycleStage.BRIDGING,
    LifecycleStage.MINTING,
    LifecycleStage.EARNING,
)

WITHDRAWAL_PATH: Tuple[LifecycleStage, ...] = (
    LifecycleStage.CREATING,
    LifecycleStage.PROCESSING,
    LifecycleStage.SENDING,
    LifecycleStage.COMPLETE,
)

TERMINAL_STAGES = frozenset({
    LifecycleStage.EARNING,
    LifecycleStage.FAILED,
    LifecycleStage.CANCELLED,
    LifecycleStage.COMPLETE,
    LifecycleStage.ERROR,
})


@dataclass
class Position:
    """A settled, vault-recorded stake."""
    id: str
    wallet_address: str
    vault_id: str
    amount: Decimal  # principal, vault-asset units
    rewards: Decimal
    status: str  # "active" | "withdrawn"
    created_at: datetime
    source_job_id: Optional[str] = None
    on_chain_balance: Optional[Decimal] = None
    balance_verified: Verification = Verification.NOT_APPLICABLE
    discrepancy: Optional[Decimal] = None  # recorded - on-chain, set when mismatched
    usd_value: Decimal = Decimal("0")
    rewards_usd: Decimal = Decimal("0")
    vault: Optional[Vault] = None

    def __post_init__(self):
        if self.balance_verified is Verification.MISMATCHED:
            if self.discrepancy is None or self.discrepancy == 0:
                raise ValueError(f"Position {self.id}: mismatch requires a non-zero discrepancy")
        elif self.discrepancy is not None:
            raise ValueError(
                f"Position {self.id}: discrepancy only allowed on mismatched positions"
            )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def lifecycle_stage(self) -> LifecycleStage:
        return LifecycleStage.EARNING if self.is_active else LifecycleStage.COMPLETE

    @property
    def progress(self) -> int:
        return 100

    def with_verification(
        self,
        verification: Verification,
        on_chain_balance: Optional[Decimal] = None,
        discrepancy: Optional[Decimal] = None,
    ) -> "Position":
        """Return a copy carrying the outcome of a reconciliation pass."""
        return replace(
            self,
            balance_verified=verification,
            on_chain_balance=on_chain_balance,
            discrepancy=discrepancy,
        )


class WithdrawalType(Enum):
    PARTIAL = "partial"
    FULL = "full"


class WithdrawalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WithdrawalStatus.REJECTED, WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED)


@dataclass
class WithdrawalRequest:
    """One redemption attempt."""
    id: str
    wallet_address: str
    vault_id: str
    type: WithdrawalType
    amount: Decimal
    asset: str
    status: WithdrawalStatus
    requested_at: datetime
    position_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    tx_hash: Optional[str] = None  # ledger payout transaction
    rejection_reason: Optional[str] = None
    error_message: Optional[str] = None

    def __post_init__(self):
        rejected = self.status is WithdrawalStatus.REJECTED
        if rejected != (self.rejection_reason is not None):
            raise ValueError(
                f"Withdrawal {self.id}: rejection_reason must be set iff status is rejected"
            )
        if self.tx_hash and self.status not in (WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED):
            raise ValueError(
                f"Withdrawal {self.id}: tx_hash not allowed in status {self.status.value}"
            )


class MetricStatus(Enum):
    SUCCESS = "success"
    PENDING = "pending"
    ERROR = "error"
    NEUTRAL = "neutral"


@dataclass
class HealthMetric:
    """One human-readable health line for an activity item."""
    label: str
    value: str
    status: MetricStatus
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None


@dataclass
class PendingActivity:
    """Read-time projection of a bridge job that has not produced a position yet."""
    id: str  # bridge job id
    wallet_address: str
    vault_id: Optional[str]
    amount: Decimal  # requested ledger amount
    amount_expected: Decimal  # lot-rounded amount to be minted
    lifecycle_stage: LifecycleStage
    progress: int
    bridge_status: BridgeJobStatus
    created_at: datetime
    usd_value: Decimal = Decimal("0")
    error_message: Optional[str] = None
    source_tx_hash: Optional[str] = None
    dest_tx_hash: Optional[str] = None
    metrics: List[HealthMetric] = field(default_factory=list)
    stale: bool = False
    delayed: bool = False
    kind: str = "bridge"


ActivityItem = Union[PendingActivity, Position]


@dataclass
class ReconciliationSummary:
    """Result of one reconciliation pass for a wallet."""
    wallet_address: str
    positions: List[Position]
    total_value: Decimal
    total_rewards: Decimal
    total_rewards_usd: Decimal
    on_chain_total_balance: Decimal
    on_chain_verified: bool
    total_db_balance: Decimal
    last_updated: datetime
    ledger_balance: Optional[Decimal] = None
    stale: bool = False
