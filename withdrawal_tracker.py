"""Withdrawal lifecycle: share redemption -> bridge redemption -> ledger payout."""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional

from core.errors import TrackerNotDismissible
from core.types import (
    WITHDRAWAL_PATH,
    LifecycleStage,
    WithdrawalRequest,
    WithdrawalStatus,
)
from ledger.node import LedgerTxStatus

logger = logging.getLogger(__name__)

STAGE_PROGRESS: Dict[LifecycleStage, int] = {
    LifecycleStage.CREATING: 10,
    LifecycleStage.PROCESSING: 40,
    LifecycleStage.SENDING: 70,
    LifecycleStage.COMPLETE: 100,
}

REDEMPTION_SUBMITTED_BONUS = 10

# Seconds without progress before a stage is reported stale
DEFAULT_STAGE_CEILINGS: Dict[LifecycleStage, float] = {
    LifecycleStage.CREATING: 120.0,
    LifecycleStage.PROCESSING: 300.0,
    LifecycleStage.SENDING: 900.0,
}


@dataclass(frozen=True)
class WithdrawalProgress:
    stage: LifecycleStage
    progress: int
    stale: bool
    withdrawal_id: Optional[str] = None
    tx_hash: Optional[str] = None
    final_amount: Optional[Decimal] = None
    error_message: Optional[str] = None
    dismissed: bool = False


class WithdrawalTracker:
    """Tracks one withdrawal from share burn to ledger payout.

    ``error`` is reachable from every non-terminal stage. Only terminal
    trackers can be dismissed, and dismissal never touches persisted records.
    """

    def __init__(
        self,
        request: WithdrawalRequest,
        stage_ceilings: Optional[Dict[LifecycleStage, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stage_ceilings = dict(DEFAULT_STAGE_CEILINGS)
        if stage_ceilings:
            self.stage_ceilings.update(stage_ceilings)
        self._clock = clock

        self.request = request
        self.stage = LifecycleStage.CREATING
        self.progress = STAGE_PROGRESS[LifecycleStage.CREATING]
        self.share_burn_confirmed = False
        self.redemption_submitted = False
        self.tx_hash: Optional[str] = None
        self.final_amount: Optional[Decimal] = None
        self.error_message: Optional[str] = None
        self.dismissed = False
        self._last_progress_at = clock()

        self.observe_request(request)

    @property
    def is_terminal(self) -> bool:
        return self.stage in (LifecycleStage.COMPLETE, LifecycleStage.ERROR)

    @property
    def stale(self) -> bool:
        """True when the current stage has not progressed within its ceiling."""
        if self.is_terminal:
            return False
        ceiling = self.stage_ceilings.get(self.stage)
        if ceiling is None:
            return False
        return self._clock() - self._last_progress_at > ceiling

    def snapshot(self) -> WithdrawalProgress:
        return WithdrawalProgress(
            stage=self.stage,
            progress=self.progress,
            stale=self.stale,
            withdrawal_id=self.request.id if self.request else None,
            tx_hash=self.tx_hash,
            final_amount=self.final_amount,
            error_message=self.error_message,
            dismissed=self.dismissed,
        )

    # Inputs

    def observe_request(self, request: WithdrawalRequest) -> LifecycleStage:
        """Feed the latest persisted withdrawal request."""
        if request.id != self.request.id:
            logger.warning(f"Ignoring withdrawal {request.id}: tracker follows {self.request.id}")
            return self.stage
        self.request = request
        status = request.status

        if status is WithdrawalStatus.REJECTED:
            return self._fail(request.rejection_reason)
        if status is WithdrawalStatus.FAILED:
            return self._fail(request.error_message or "Withdrawal failed")

        if status in (WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED):
            self.share_burn_confirmed = True
        if status in (WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED):
            self.redemption_submitted = True
        if request.tx_hash and request.tx_hash != self.tx_hash:
            self.tx_hash = request.tx_hash
            self._touch()

        if status is WithdrawalStatus.COMPLETED:
            self.final_amount = request.amount
            return self._advance(LifecycleStage.COMPLETE)
        if self.tx_hash:
            return self._advance(LifecycleStage.SENDING)
        if self.share_burn_confirmed:
            return self._advance(LifecycleStage.PROCESSING)
        return self.stage

    def observe_share_burn_confirmed(self) -> LifecycleStage:
        self.share_burn_confirmed = True
        return self._advance(LifecycleStage.PROCESSING)

    def observe_redemption_submitted(self) -> LifecycleStage:
        self.share_burn_confirmed = True
        self.redemption_submitted = True
        return self._advance(LifecycleStage.PROCESSING)

    def observe_payout_broadcast(self, tx_hash: str) -> LifecycleStage:
        self.tx_hash = tx_hash
        self._touch()
        return self._advance(LifecycleStage.SENDING)

    def observe_payout_status(self, status: LedgerTxStatus) -> LifecycleStage:
        """Feed the ledger finality of the payout transaction."""
        if status is LedgerTxStatus.VALIDATED:
            if self.final_amount is None:
                self.final_amount = self.request.amount
            return self._advance(LifecycleStage.COMPLETE)
        if status is LedgerTxStatus.FAILED:
            return self._fail("Ledger payout transaction failed")
        return self.stage

    def fail(self, message: str) -> LifecycleStage:
        return self._fail(message)

    def dismiss(self) -> None:
        """Clear UI-facing state of a finished tracker.

        Raises:
            TrackerNotDismissible: While funds may still be in flight
        """
        if not self.is_terminal:
            raise TrackerNotDismissible(
                f"Withdrawal {self.request.id} is {self.stage.value}; wait for it to finish"
            )
        self.dismissed = True
        self.error_message = None
        self.final_amount = None

    # Transitions

    def _touch(self) -> None:
        self._last_progress_at = self._clock()

    def _advance(self, target: LifecycleStage) -> LifecycleStage:
        if self.is_terminal:
            return self.stage
        if WITHDRAWAL_PATH.index(target) > WITHDRAWAL_PATH.index(self.stage):
            logger.info(f"Withdrawal {self.request.id}: {self.stage.value} -> {target.value}")
            self.stage = target
            self._touch()

        progress = STAGE_PROGRESS[self.stage]
        if self.stage is LifecycleStage.PROCESSING and self.redemption_submitted:
            progress += REDEMPTION_SUBMITTED_BONUS
        if progress > self.progress:
            self.progress = progress
            self._touch()
        return self.stage

    def _fail(self, message: Optional[str]) -> LifecycleStage:
        if self.is_terminal:
            return self.stage
        logger.info(f"Withdrawal {self.request.id}: {self.stage.value} -> error ({message})")
        self.stage = LifecycleStage.ERROR
        self.error_message = message
        self._touch()
        return self.stage
