"""Unified activity view: settled positions interleaved with in-flight bridge jobs."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from core.errors import OrchestratorError, ReconciliationTimeout, WalletRequired
from core.types import (
    ActivityItem,
    BridgeJob,
    BridgeJobStatus,
    HealthMetric,
    MetricStatus,
    PendingActivity,
    Position,
    ReconciliationSummary,
)
from database import OrchestratorDatabase
from deposit_tracker import DEFAULT_DELAY_CEILING, DepositTracker
from reconciliation import PositionReconciliationService
from store import KIND_JOB, SnapshotStore, wallet_key

logger = logging.getLogger(__name__)

EXPLORERS: Dict[str, Dict[str, str]] = {
    "xrpl": {
        "mainnet": "https://livenet.xrpl.org/transactions/{}",
        "testnet": "https://testnet.xrpl.org/transactions/{}",
    },
    "flare": {
        "mainnet": "https://flarescan.com/tx/{}",
        "testnet": "https://coston2-explorer.flare.network/tx/{}",
    },
}

BRIDGE_STATUS_LABELS: Dict[BridgeJobStatus, str] = {
    BridgeJobStatus.QUEUED: "Queued",
    BridgeJobStatus.RESERVING: "Reserving Collateral",
    BridgeJobStatus.AWAITING_PAYMENT: "Awaiting Payment",
    BridgeJobStatus.PAID: "Payment Confirmed",
    BridgeJobStatus.MINTING: "Minting",
    BridgeJobStatus.MINTED: "Minted",
    BridgeJobStatus.FAILED: "Failed",
    BridgeJobStatus.EXPIRED: "Expired",
}

_PAID_OR_LATER = (
    BridgeJobStatus.PAID,
    BridgeJobStatus.MINTING,
    BridgeJobStatus.MINTED,
)


def explorer_url(chain: str, tx_hash: Optional[str], network: str = "testnet") -> Optional[str]:
    if not tx_hash:
        return None
    template = EXPLORERS.get(chain, {}).get(network)
    return template.format(tx_hash) if template else None


@dataclass
class ActivityView:
    """Ordered activity list plus the reconciliation it was built from."""
    wallet_address: str
    items: List[ActivityItem]
    summary: ReconciliationSummary
    stale: bool = False

    @property
    def pending(self) -> List[PendingActivity]:
        return [item for item in self.items if isinstance(item, PendingActivity)]

    @property
    def positions(self) -> List[Position]:
        return [item for item in self.items if isinstance(item, Position)]


class ActivityAggregator:
    """Merges reconciled positions with bridge jobs that have not settled yet.

    Positions are read before jobs, and a job is hidden as soon as a position
    naming it as ``source_job_id`` is present. A job that finished minting
    therefore stays visible as pending until its position shows up, and is
    never listed next to it.
    """

    def __init__(
        self,
        reconciliation: PositionReconciliationService,
        db: OrchestratorDatabase,
        store: SnapshotStore,
        network: str = "testnet",
        delay_ceiling: float = DEFAULT_DELAY_CEILING,
        failed_retention: timedelta = timedelta(hours=24),
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.reconciliation = reconciliation
        self.db = db
        self.store = store
        self.network = network
        self.delay_ceiling = delay_ceiling
        self.failed_retention = failed_retention
        self._clock = clock
        self._now = now
        self._trackers: Dict[str, DepositTracker] = {}

    async def build_view(self, wallet_address: str) -> List[ActivityItem]:
        """Ordered activity for a wallet, most recent first."""
        view = await self.build(wallet_address)
        return view.items

    async def build(self, wallet_address: str) -> ActivityView:
        """Build the full activity view.

        Raises:
            WalletRequired: If no address is given
            ReconciliationTimeout: If reconciliation timed out and nothing is cached
        """
        if not wallet_address or not wallet_address.strip():
            raise WalletRequired("Wallet address required")
        wallet = wallet_key(wallet_address)

        stale = False
        try:
            summary = await self.reconciliation.reconcile(wallet)
        except ReconciliationTimeout as e:
            if e.last_known is None:
                raise
            logger.warning(f"Serving last known positions for {wallet[:16]}")
            summary = e.last_known
            stale = True

        settled = {p.source_job_id for p in summary.positions if p.source_job_id}
        jobs = await self._load_jobs(wallet)
        price = await self._ledger_price()

        pending: List[PendingActivity] = []
        for job, job_stale in jobs:
            if job.id in settled:
                self._trackers.pop(job.id, None)
                continue
            if job.is_failure and self._now() - job.finished_at > self.failed_retention:
                self._trackers.pop(job.id, None)
                continue
            tracker = self.tracker_for(job)
            tracker.observe_job(job, stale=job_stale)
            pending.append(self._project(job, tracker, price))
            stale = stale or job_stale

        items: List[ActivityItem] = [*pending, *summary.positions]
        items.sort(key=lambda item: (item.created_at, isinstance(item, Position)), reverse=True)
        return ActivityView(wallet_address=wallet, items=items, summary=summary, stale=stale)

    def tracker(self, job_id: str) -> Optional[DepositTracker]:
        return self._trackers.get(job_id)

    def tracker_for(self, job: BridgeJob) -> DepositTracker:
        """Tracker shared by every view of a job, created on first use."""
        tracker = self._trackers.get(job.id)
        if tracker is None:
            idle_for = 0.0 if job.is_terminal else (self._now() - job.updated_at).total_seconds()
            tracker = DepositTracker.from_job(
                job, delay_ceiling=self.delay_ceiling, clock=self._clock, idle_for=idle_for,
            )
            self._trackers[job.id] = tracker
        return tracker

    async def _load_jobs(self, wallet: str) -> List[tuple]:
        """Recorded jobs overlaid with newer polled snapshots."""
        jobs: Dict[str, BridgeJob] = {job.id: job for job in await self.db.list_bridge_jobs(wallet)}
        stale: Dict[str, bool] = {}
        for snapshot in self.store.values(wallet, KIND_JOB):
            current = jobs.get(snapshot.value.id)
            job = snapshot.value.with_local_state(current)
            if current is None or job.updated_at >= current.updated_at:
                jobs[job.id] = job
            stale[job.id] = snapshot.stale
        return [(job, stale.get(job.id, False)) for job in jobs.values()]

    async def _ledger_price(self) -> Decimal:
        try:
            return await self.reconciliation.price_source.get_price("XRP")
        except OrchestratorError as e:
            logger.warning(f"XRP price unavailable for pending activity: {e}")
            return Decimal("0")

    def _project(self, job: BridgeJob, tracker: DepositTracker, price: Decimal) -> PendingActivity:
        return PendingActivity(
            id=job.id,
            wallet_address=job.wallet_address,
            vault_id=job.vault_id,
            amount=job.amount_requested,
            amount_expected=job.amount_rounded,
            lifecycle_stage=tracker.stage,
            progress=tracker.progress,
            bridge_status=job.status,
            created_at=job.created_at,
            usd_value=job.amount_rounded * price,
            error_message=tracker.error_message,
            source_tx_hash=job.source_tx_hash,
            dest_tx_hash=job.dest_tx_hash,
            metrics=self._metrics(job, tracker),
            stale=tracker.stale,
            delayed=tracker.delayed,
        )

    def _metrics(self, job: BridgeJob, tracker: DepositTracker) -> List[HealthMetric]:
        failed = tracker.stage.is_failure
        metrics = [
            HealthMetric(
                label="Status",
                value="Cancelled" if job.cancelled else BRIDGE_STATUS_LABELS[job.status],
                status=MetricStatus.ERROR if failed
                else MetricStatus.SUCCESS if job.status is BridgeJobStatus.MINTED
                else MetricStatus.PENDING,
            ),
            HealthMetric(
                label="XRPL Payment",
                value="Confirmed" if job.status in _PAID_OR_LATER
                else "Sent" if job.source_tx_hash else "Waiting",
                status=MetricStatus.SUCCESS if job.status in _PAID_OR_LATER
                else MetricStatus.PENDING if not failed else MetricStatus.NEUTRAL,
                tx_hash=job.source_tx_hash,
                explorer_url=explorer_url(job.source_chain, job.source_tx_hash, self.network),
            ),
        ]

        if job.agent_reference:
            metrics.append(HealthMetric(
                label="Bridge Reference",
                value=job.agent_reference,
                status=MetricStatus.NEUTRAL,
            ))

        metrics.append(HealthMetric(
            label="Flare Mint",
            value="Minted" if job.status is BridgeJobStatus.MINTED
            else "Minting" if job.status is BridgeJobStatus.MINTING else "Not started",
            status=MetricStatus.SUCCESS if job.status is BridgeJobStatus.MINTED
            else MetricStatus.PENDING if not failed else MetricStatus.NEUTRAL,
            tx_hash=job.dest_tx_hash,
            explorer_url=explorer_url(job.dest_chain, job.dest_tx_hash, self.network),
        ))

        if job.amount_shortfall:
            metrics.append(HealthMetric(
                label="Lot Rounding",
                value=f"{job.amount_shortfall} XRP not bridged (kept in wallet)",
                status=MetricStatus.NEUTRAL,
            ))

        if failed and tracker.error_message:
            metrics.append(HealthMetric(label="Error", value=tracker.error_message, status=MetricStatus.ERROR))
        if tracker.stale:
            metrics.append(HealthMetric(label="Data", value="May be out of date", status=MetricStatus.NEUTRAL))
        if tracker.delayed:
            metrics.append(HealthMetric(label="Settlement", value="Taking longer than usual", status=MetricStatus.PENDING))
        return metrics
