"""Deposit lifecycle: wallet signature -> ledger payment -> bridge mint -> vault shares."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from core.errors import BridgeExpired, BridgeFailed, BridgeTerminalError, CancellationRefused
from core.types import (
    DEPOSIT_PATH,
    BridgeJob,
    BridgeJobStatus,
    LifecycleStage,
    Position,
    Verification,
)

logger = logging.getLogger(__name__)

STAGE_PROGRESS: Dict[LifecycleStage, int] = {
    LifecycleStage.SIGNING: 5,
    LifecycleStage.AWAITING_PAYMENT: 20,
    LifecycleStage.BRIDGING: 45,
    LifecycleStage.MINTING: 70,
    LifecycleStage.EARNING: 100,
}

# Extra progress for sub-stage signals within a stage
PAYMENT_BROADCAST_BONUS = 10
PAID_BONUS = 10
MINTED_BONUS = 15

DEFAULT_DELAY_CEILING = 600.0  # seconds


@dataclass(frozen=True)
class DepositProgress:
    """Point-in-time view of a deposit tracker."""
    stage: LifecycleStage
    progress: int
    delayed: bool
    stale: bool
    job_id: Optional[str] = None
    error_message: Optional[str] = None


class DepositTracker:
    """Derives the deposit stage from the latest job, position and wallet events.

    The stage only moves forward along the deposit path; the failure stages
    are reachable from any non-terminal stage. Exceeding the delay ceiling
    raises ``delayed`` but never fails the deposit: only the bridge's own
    ``failed``/``expired`` status does that.
    """

    def __init__(
        self,
        wallet_address: str,
        delay_ceiling: float = DEFAULT_DELAY_CEILING,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.wallet_address = wallet_address
        self.delay_ceiling = delay_ceiling
        self._clock = clock

        self.stage = LifecycleStage.SIGNING
        self.progress = STAGE_PROGRESS[LifecycleStage.SIGNING]
        self.job: Optional[BridgeJob] = None
        self.position: Optional[Position] = None
        self.payment_broadcast = False
        self.payment_confirmed = False
        self.stale = False
        self.failure: Optional[BridgeTerminalError] = None
        self.cancel_reason: Optional[str] = None
        self._last_progress_at = clock()

    @classmethod
    def from_job(
        cls,
        job: BridgeJob,
        delay_ceiling: float = DEFAULT_DELAY_CEILING,
        clock: Callable[[], float] = time.monotonic,
        idle_for: float = 0.0,
    ) -> "DepositTracker":
        """Tracker for a job first seen after it was created.

        Args:
            idle_for: Seconds since the job last changed, so the delay ceiling
                counts from the bridge's own update rather than from now
        """
        tracker = cls(job.wallet_address, delay_ceiling=delay_ceiling, clock=clock)
        tracker.observe_job(job)
        if idle_for > 0:
            tracker._last_progress_at = min(tracker._last_progress_at, clock() - idle_for)
        return tracker

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    @property
    def delayed(self) -> bool:
        if self.is_terminal:
            return False
        return self._clock() - self._last_progress_at > self.delay_ceiling

    @property
    def error_message(self) -> Optional[str]:
        if self.failure is not None:
            return str(self.failure)
        return self.cancel_reason

    def snapshot(self) -> DepositProgress:
        return DepositProgress(
            stage=self.stage,
            progress=self.progress,
            delayed=self.delayed,
            stale=self.stale,
            job_id=self.job.id if self.job else None,
            error_message=self.error_message,
        )

    # Inputs

    def observe_payment_broadcast(self, tx_hash: Optional[str] = None) -> LifecycleStage:
        """The wallet signed and broadcast the ledger payment."""
        self.payment_broadcast = True
        if tx_hash:
            logger.info(f"Deposit payment broadcast: {tx_hash[:16]}...")
        return self._update()

    def observe_payment_confirmed(self) -> LifecycleStage:
        """The ledger payment reached a validated ledger."""
        self.payment_broadcast = True
        self.payment_confirmed = True
        return self._update()

    def observe_job(self, job: BridgeJob, stale: bool = False) -> LifecycleStage:
        """Feed the latest bridge job snapshot.

        Snapshots for a different job, or older than the one held, are ignored.
        """
        if self.job is not None:
            if job.id != self.job.id:
                logger.warning(f"Ignoring job {job.id}: tracker follows {self.job.id}")
                return self.stage
            if job.updated_at < self.job.updated_at:
                logger.debug(f"Ignoring out-of-order snapshot of job {job.id}")
                return self.stage

        self.job = job
        self.stale = stale
        if job.source_tx_hash:
            self.payment_broadcast = True
        if job.cancelled and not self.is_terminal:
            self.cancel_reason = self.cancel_reason or "Cancelled by user"
            self._enter(LifecycleStage.CANCELLED)
            return self.stage
        return self._update()

    def observe_position(self, position: Position) -> LifecycleStage:
        """Feed the settled position produced by this deposit."""
        if self.job and position.source_job_id and position.source_job_id != self.job.id:
            logger.warning(f"Ignoring position {position.id}: produced by another job")
            return self.stage
        self.position = position
        return self._update()

    def cancel(self, reason: str = "Cancelled by user") -> LifecycleStage:
        """User-initiated abort.

        Raises:
            CancellationRefused: Once the ledger payment has been broadcast
        """
        if self.is_terminal:
            return self.stage
        if self.payment_broadcast:
            raise CancellationRefused("Payment already broadcast; deposit can no longer be cancelled")
        self.cancel_reason = reason
        self._enter(LifecycleStage.CANCELLED)
        return self.stage

    # Derivation

    def _derive(self) -> LifecycleStage:
        job = self.job
        if job is not None and job.status.is_failure:
            return LifecycleStage.FAILED
        if self.position is not None:
            if self.position.balance_verified is Verification.MISMATCHED:
                return LifecycleStage.MINTING
            return LifecycleStage.EARNING
        if job is None:
            return LifecycleStage.SIGNING
        if job.status in (BridgeJobStatus.MINTING, BridgeJobStatus.MINTED):
            return LifecycleStage.MINTING
        if job.status in (BridgeJobStatus.AWAITING_PAYMENT, BridgeJobStatus.PAID):
            return LifecycleStage.BRIDGING
        if self.payment_confirmed:
            return LifecycleStage.BRIDGING
        return LifecycleStage.AWAITING_PAYMENT

    def _progress_for(self, stage: LifecycleStage) -> int:
        value = STAGE_PROGRESS[stage]
        status = self.job.status if self.job else None
        if stage is LifecycleStage.AWAITING_PAYMENT and self.payment_broadcast:
            value += PAYMENT_BROADCAST_BONUS
        elif stage is LifecycleStage.BRIDGING and (status is BridgeJobStatus.PAID or self.payment_confirmed):
            value += PAID_BONUS
        elif stage is LifecycleStage.MINTING and status is BridgeJobStatus.MINTED:
            value += MINTED_BONUS
        return value

    def _update(self) -> LifecycleStage:
        if self.is_terminal:
            return self.stage

        candidate = self._derive()
        if candidate is LifecycleStage.FAILED:
            job = self.job
            error_cls = BridgeExpired if job.status is BridgeJobStatus.EXPIRED else BridgeFailed
            default = "Bridge request expired" if error_cls is BridgeExpired else "Bridge request failed"
            self.failure = error_cls(job.id, job.error_message or default)
            self._enter(LifecycleStage.FAILED)
            return self.stage

        if DEPOSIT_PATH.index(candidate) > DEPOSIT_PATH.index(self.stage):
            self._enter(candidate)

        progress = self._progress_for(self.stage)
        if progress > self.progress:
            self.progress = progress
            self._last_progress_at = self._clock()
        return self.stage

    def _enter(self, stage: LifecycleStage) -> None:
        previous = self.stage
        self.stage = stage
        if not stage.is_failure:
            self.progress = max(self.progress, self._progress_for(stage))
        self._last_progress_at = self._clock()
        job_id = self.job.id if self.job else "-"
        logger.info(f"Deposit {job_id} for {self.wallet_address[:16]}: {previous.value} -> {stage.value}")
