"""Pydantic models for API requests and responses."""

from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field

from core.types import (
    BridgeJob,
    HealthMetric,
    PendingActivity,
    Position,
    ReconciliationSummary,
    Vault,
    WithdrawalRequest,
)
from deposit_tracker import DepositProgress
from units import LotRounding
from withdrawal_tracker import WithdrawalProgress


def _str(value) -> Optional[str]:
    return str(value) if value is not None else None


class QuoteRequest(BaseModel):
    """Request to preview lot rounding for a deposit."""
    amount: str


class QuoteResponse(BaseModel):
    requested_amount: str
    rounded_amount: str
    lots: int
    needs_rounding: bool
    shortfall: str  # stays in the user's ledger wallet

    @classmethod
    def from_rounding(cls, rounding: LotRounding) -> "QuoteResponse":
        return cls(
            requested_amount=str(rounding.requested_amount),
            rounded_amount=rounding.formatted(),
            lots=rounding.lots,
            needs_rounding=rounding.needs_rounding,
            shortfall=str(rounding.shortfall),
        )


class DepositRequest(BaseModel):
    """Request to start a deposit."""
    wallet_address: str
    amount: str
    vault_id: Optional[str] = None


class PaymentRequest(BaseModel):
    """Ledger payment broadcast by the user's wallet."""
    tx_hash: str


class BridgeJobModel(BaseModel):
    id: str
    wallet_address: str
    source_chain: str
    dest_chain: str
    amount_requested: str
    amount_rounded: str
    amount_shortfall: str
    status: str
    vault_id: Optional[str] = None
    source_tx_hash: Optional[str] = None
    dest_tx_hash: Optional[str] = None
    agent_reference: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str
    updated_at: str
    cancelled_at: Optional[str] = None

    @classmethod
    def from_job(cls, job: BridgeJob) -> "BridgeJobModel":
        return cls(
            id=job.id,
            wallet_address=job.wallet_address,
            source_chain=job.source_chain,
            dest_chain=job.dest_chain,
            amount_requested=str(job.amount_requested),
            amount_rounded=str(job.amount_rounded),
            amount_shortfall=str(job.amount_shortfall),
            status=job.status.value,
            vault_id=job.vault_id,
            source_tx_hash=job.source_tx_hash,
            dest_tx_hash=job.dest_tx_hash,
            agent_reference=job.agent_reference,
            error_message=job.error_message,
            created_at=job.created_at.isoformat(),
            updated_at=job.updated_at.isoformat(),
            cancelled_at=job.cancelled_at.isoformat() if job.cancelled_at else None,
        )


class DepositStatusResponse(BaseModel):
    """Bridge job plus the deposit stage derived from it."""
    job: BridgeJobModel
    stage: str
    progress: int
    delayed: bool
    stale: bool
    error_message: Optional[str] = None

    @classmethod
    def build(cls, job: BridgeJob, progress: DepositProgress) -> "DepositStatusResponse":
        return cls(
            job=BridgeJobModel.from_job(job),
            stage=progress.stage.value,
            progress=progress.progress,
            delayed=progress.delayed,
            stale=progress.stale,
            error_message=progress.error_message,
        )


class HealthMetricModel(BaseModel):
    label: str
    value: str
    status: str
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None

    @classmethod
    def from_metric(cls, metric: HealthMetric) -> "HealthMetricModel":
        return cls(
            label=metric.label,
            value=metric.value,
            status=metric.status.value,
            tx_hash=metric.tx_hash,
            explorer_url=metric.explorer_url,
        )


class VaultModel(BaseModel):
    id: str
    name: str
    asset: str
    apy: str
    address: Optional[str] = None

    @classmethod
    def from_vault(cls, vault: Vault) -> "VaultModel":
        return cls(id=vault.id, name=vault.name, asset=vault.asset, apy=str(vault.apy), address=vault.address)


class PositionModel(BaseModel):
    """Settled position with its latest verification."""
    kind: Literal["position"] = "position"
    id: str
    wallet_address: str
    vault_id: str
    vault: Optional[VaultModel] = None
    amount: str
    rewards: str
    status: str
    created_at: str
    source_job_id: Optional[str] = None
    on_chain_balance: Optional[str] = None
    balance_verified: Optional[bool] = None  # None: verification not applicable
    discrepancy: Optional[str] = None
    usd_value: str
    rewards_usd: str
    lifecycle_stage: str
    progress: int

    @classmethod
    def from_position(cls, position: Position) -> "PositionModel":
        return cls(
            id=position.id,
            wallet_address=position.wallet_address,
            vault_id=position.vault_id,
            vault=VaultModel.from_vault(position.vault) if position.vault else None,
            amount=str(position.amount),
            rewards=str(position.rewards),
            status=position.status,
            created_at=position.created_at.isoformat(),
            source_job_id=position.source_job_id,
            on_chain_balance=_str(position.on_chain_balance),
            balance_verified=position.balance_verified.as_flag(),
            discrepancy=_str(position.discrepancy),
            usd_value=str(position.usd_value),
            rewards_usd=str(position.rewards_usd),
            lifecycle_stage=position.lifecycle_stage.value,
            progress=position.progress,
        )


class PendingActivityModel(BaseModel):
    """In-flight bridge job shown next to settled positions."""
    kind: Literal["bridge"] = "bridge"
    id: str
    wallet_address: str
    vault_id: Optional[str] = None
    amount: str
    amount_expected: str
    lifecycle_stage: str
    progress: int
    bridge_status: str
    created_at: str
    usd_value: str
    error_message: Optional[str] = None
    source_tx_hash: Optional[str] = None
    dest_tx_hash: Optional[str] = None
    metrics: List[HealthMetricModel]
    stale: bool
    delayed: bool

    @classmethod
    def from_activity(cls, activity: PendingActivity) -> "PendingActivityModel":
        return cls(
            id=activity.id,
            wallet_address=activity.wallet_address,
            vault_id=activity.vault_id,
            amount=str(activity.amount),
            amount_expected=str(activity.amount_expected),
            lifecycle_stage=activity.lifecycle_stage.value,
            progress=activity.progress,
            bridge_status=activity.bridge_status.value,
            created_at=activity.created_at.isoformat(),
            usd_value=str(activity.usd_value),
            error_message=activity.error_message,
            source_tx_hash=activity.source_tx_hash,
            dest_tx_hash=activity.dest_tx_hash,
            metrics=[HealthMetricModel.from_metric(m) for m in activity.metrics],
            stale=activity.stale,
            delayed=activity.delayed,
        )


class PositionsResponse(BaseModel):
    """Reconciliation summary for a wallet."""
    wallet_address: str
    positions: List[PositionModel]
    total_value: str
    total_rewards: str
    total_rewards_usd: str
    on_chain_total_balance: str
    on_chain_verified: bool
    total_db_balance: str
    ledger_balance: Optional[str] = None
    last_updated: str
    stale: bool

    @classmethod
    def from_summary(cls, summary: ReconciliationSummary) -> "PositionsResponse":
        return cls(
            wallet_address=summary.wallet_address,
            positions=[PositionModel.from_position(p) for p in summary.positions],
            total_value=str(summary.total_value),
            total_rewards=str(summary.total_rewards),
            total_rewards_usd=str(summary.total_rewards_usd),
            on_chain_total_balance=str(summary.on_chain_total_balance),
            on_chain_verified=summary.on_chain_verified,
            total_db_balance=str(summary.total_db_balance),
            ledger_balance=_str(summary.ledger_balance),
            last_updated=summary.last_updated.isoformat(),
            stale=summary.stale,
        )


ActivityItemModel = Annotated[Union[PositionModel, PendingActivityModel], Field(discriminator="kind")]


class ActivityResponse(BaseModel):
    """Unified activity, most recent first."""
    wallet_address: str
    items: List[ActivityItemModel]
    stale: bool


class WithdrawalCreateRequest(BaseModel):
    """Request to withdraw from a position."""
    wallet_address: str
    amount: str
    position_id: Optional[str] = None
    vault_id: Optional[str] = None


class WithdrawalRejectRequest(BaseModel):
    reason: Optional[str] = None


class WithdrawalUpdateRequest(BaseModel):
    """Status change reported by withdrawal processing."""
    status: str  # "approved", "rejected", "processing", "completed", "failed"
    tx_hash: Optional[str] = None  # ledger payout, once broadcast
    rejection_reason: Optional[str] = None
    error_message: Optional[str] = None


class WithdrawalStatusModel(BaseModel):
    """Withdrawal request with its lifecycle stage."""
    id: str
    wallet_address: str
    vault_id: str
    position_id: Optional[str] = None
    type: str
    amount: str
    asset: str
    status: str  # "pending", "approved", "rejected", "processing", "completed", "failed"
    requested_at: str
    processed_at: Optional[str] = None
    tx_hash: Optional[str] = None
    rejection_reason: Optional[str] = None
    error_message: Optional[str] = None
    stage: str
    progress: int
    stale: bool

    @classmethod
    def build(cls, request: WithdrawalRequest, progress: WithdrawalProgress) -> "WithdrawalStatusModel":
        return cls(
            id=request.id,
            wallet_address=request.wallet_address,
            vault_id=request.vault_id,
            position_id=request.position_id,
            type=request.type.value,
            amount=str(request.amount),
            asset=request.asset,
            status=request.status.value,
            requested_at=request.requested_at.isoformat(),
            processed_at=request.processed_at.isoformat() if request.processed_at else None,
            tx_hash=request.tx_hash or progress.tx_hash,
            rejection_reason=request.rejection_reason,
            error_message=request.error_message or progress.error_message,
            stage=progress.stage.value,
            progress=progress.progress,
            stale=progress.stale,
        )


class HealthResponse(BaseModel):
    """API health check response."""
    status: str
    service: str
    version: str
