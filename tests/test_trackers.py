"""Tests for the deposit and withdrawal stage trackers."""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from core.errors import BridgeExpired, BridgeFailed, CancellationRefused, TrackerNotDismissible
from core.types import (
    BridgeJobStatus,
    LifecycleStage,
    Verification,
    WithdrawalRequest,
    WithdrawalStatus,
    WithdrawalType,
)
from deposit_tracker import DepositTracker
from ledger.node import LedgerTxStatus
from withdrawal_tracker import WithdrawalTracker

from conftest import EVM_WALLET, T0, XRPL_WALLET, make_job, make_position


class FakeClock:

    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def job_at(seconds: int, status: BridgeJobStatus, **fields):
    return make_job(status=status, updated_at=T0 + timedelta(seconds=seconds), **fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def deposit(clock):
    return DepositTracker(EVM_WALLET, delay_ceiling=600.0, clock=clock)


class TestDepositTracker:

    def test_starts_at_signing(self, deposit):
        snapshot = deposit.snapshot()

        assert snapshot.stage is LifecycleStage.SIGNING
        assert snapshot.progress == 5
        assert snapshot.job_id is None

    def test_happy_path_progress_is_monotonic(self, deposit):
        steps = []

        deposit.observe_job(job_at(0, BridgeJobStatus.QUEUED))
        steps.append((deposit.stage, deposit.progress))
        deposit.observe_payment_broadcast("ABCDEF0123456789")
        steps.append((deposit.stage, deposit.progress))
        deposit.observe_job(job_at(10, BridgeJobStatus.AWAITING_PAYMENT, source_tx_hash="ABCDEF0123456789"))
        steps.append((deposit.stage, deposit.progress))
        deposit.observe_job(job_at(20, BridgeJobStatus.PAID, source_tx_hash="ABCDEF0123456789"))
        steps.append((deposit.stage, deposit.progress))
        deposit.observe_job(job_at(30, BridgeJobStatus.MINTING))
        steps.append((deposit.stage, deposit.progress))
        deposit.observe_job(job_at(40, BridgeJobStatus.MINTED, dest_tx_hash="0xmint"))
        steps.append((deposit.stage, deposit.progress))
        deposit.observe_position(make_position(
            "pos-job-1", "20.000000", source_job_id="job-1", balance_verified=Verification.VERIFIED,
        ))
        steps.append((deposit.stage, deposit.progress))

        assert steps == [
            (LifecycleStage.AWAITING_PAYMENT, 20),
            (LifecycleStage.AWAITING_PAYMENT, 30),
            (LifecycleStage.BRIDGING, 45),
            (LifecycleStage.BRIDGING, 55),
            (LifecycleStage.MINTING, 70),
            (LifecycleStage.MINTING, 85),
            (LifecycleStage.EARNING, 100),
        ]
        assert deposit.is_terminal

    def test_stage_never_moves_backwards(self, deposit):
        deposit.observe_job(job_at(30, BridgeJobStatus.MINTING))
        # Newer snapshot reporting an earlier status
        deposit.observe_job(job_at(40, BridgeJobStatus.AWAITING_PAYMENT))

        assert deposit.stage is LifecycleStage.MINTING
        assert deposit.progress == 70

    def test_out_of_order_snapshot_ignored(self, deposit):
        deposit.observe_job(job_at(30, BridgeJobStatus.PAID))
        deposit.observe_job(job_at(10, BridgeJobStatus.FAILED, error_message="late"))

        assert deposit.stage is LifecycleStage.BRIDGING
        assert deposit.job.status is BridgeJobStatus.PAID

    def test_other_job_ignored(self, deposit):
        deposit.observe_job(job_at(0, BridgeJobStatus.QUEUED))
        deposit.observe_job(make_job("job-2", status=BridgeJobStatus.MINTED, updated_at=T0 + timedelta(seconds=5)))

        assert deposit.job.id == "job-1"
        assert deposit.stage is LifecycleStage.AWAITING_PAYMENT

    def test_bridge_failure_is_terminal(self, deposit):
        deposit.observe_job(job_at(0, BridgeJobStatus.AWAITING_PAYMENT))
        deposit.observe_job(job_at(10, BridgeJobStatus.FAILED, error_message="Agent did not respond"))
        deposit.observe_job(job_at(20, BridgeJobStatus.MINTED))

        snapshot = deposit.snapshot()
        assert snapshot.stage is LifecycleStage.FAILED
        assert snapshot.error_message == "Agent did not respond"
        assert isinstance(deposit.failure, BridgeFailed)

    def test_expiry_has_default_message(self, deposit):
        deposit.observe_job(job_at(0, BridgeJobStatus.EXPIRED))

        assert deposit.stage is LifecycleStage.FAILED
        assert isinstance(deposit.failure, BridgeExpired)
        assert deposit.error_message == "Bridge request expired"

    def test_delay_ceiling_only_flags(self, deposit, clock):
        deposit.observe_job(job_at(0, BridgeJobStatus.PAID))
        clock.value = 599.0
        assert deposit.delayed is False

        clock.value = 601.0
        snapshot = deposit.snapshot()

        assert snapshot.delayed is True
        assert snapshot.stage is LifecycleStage.BRIDGING

    def test_progress_resets_delay(self, deposit, clock):
        deposit.observe_job(job_at(0, BridgeJobStatus.PAID))
        clock.value = 700.0
        assert deposit.delayed is True

        deposit.observe_job(job_at(700, BridgeJobStatus.MINTING))

        assert deposit.delayed is False

    def test_stale_flag_follows_latest_snapshot(self, deposit):
        deposit.observe_job(job_at(0, BridgeJobStatus.PAID), stale=True)
        assert deposit.snapshot().stale is True

        deposit.observe_job(job_at(10, BridgeJobStatus.PAID))
        assert deposit.snapshot().stale is False

    def test_mismatched_position_stays_minting(self, deposit):
        deposit.observe_job(job_at(0, BridgeJobStatus.MINTED))
        deposit.observe_position(make_position(
            source_job_id="job-1",
            balance_verified=Verification.MISMATCHED,
            discrepancy=Decimal("0.5"),
        ))

        assert deposit.stage is LifecycleStage.MINTING

    def test_position_from_other_job_ignored(self, deposit):
        deposit.observe_job(job_at(0, BridgeJobStatus.MINTED))
        deposit.observe_position(make_position(source_job_id="job-9"))

        assert deposit.stage is LifecycleStage.MINTING

    def test_cancel_before_broadcast(self, deposit):
        deposit.observe_job(job_at(0, BridgeJobStatus.QUEUED))

        assert deposit.cancel() is LifecycleStage.CANCELLED
        assert deposit.error_message == "Cancelled by user"

    def test_cancel_after_broadcast_refused(self, deposit):
        deposit.observe_job(job_at(0, BridgeJobStatus.QUEUED))
        deposit.observe_payment_broadcast("ABCDEF")

        with pytest.raises(CancellationRefused):
            deposit.cancel()
        assert deposit.stage is LifecycleStage.AWAITING_PAYMENT

    def test_from_job(self, clock):
        tracker = DepositTracker.from_job(job_at(0, BridgeJobStatus.MINTING), clock=clock)

        assert tracker.stage is LifecycleStage.MINTING
        assert tracker.snapshot().job_id == "job-1"

    def test_recorded_cancellation_is_terminal(self, deposit):
        deposit.observe_job(job_at(0, BridgeJobStatus.AWAITING_PAYMENT, cancelled_at=T0))
        deposit.observe_job(job_at(10, BridgeJobStatus.PAID))

        assert deposit.stage is LifecycleStage.CANCELLED
        assert deposit.error_message == "Cancelled by user"

    def test_from_job_counts_delay_from_job_age(self, clock):
        clock.value = 1000.0
        tracker = DepositTracker.from_job(
            job_at(0, BridgeJobStatus.PAID), delay_ceiling=600.0, clock=clock, idle_for=550.0,
        )
        assert tracker.delayed is False

        clock.value += 60
        assert tracker.delayed is True


def make_withdrawal(status: WithdrawalStatus = WithdrawalStatus.PENDING, **fields) -> WithdrawalRequest:
    values = dict(
        id="wd-1",
        wallet_address=EVM_WALLET,
        vault_id="vault-fxrp",
        type=WithdrawalType.PARTIAL,
        amount=Decimal("40"),
        asset="FXRP",
        status=status,
        requested_at=T0,
        position_id="pos-1",
    )
    values.update(fields)
    return WithdrawalRequest(**values)


@pytest.fixture
def withdrawal(clock):
    return WithdrawalTracker(make_withdrawal(), clock=clock)


class TestWithdrawalTracker:

    def test_happy_path(self, withdrawal):
        assert (withdrawal.stage, withdrawal.progress) == (LifecycleStage.CREATING, 10)

        withdrawal.observe_share_burn_confirmed()
        assert (withdrawal.stage, withdrawal.progress) == (LifecycleStage.PROCESSING, 40)

        withdrawal.observe_redemption_submitted()
        assert withdrawal.progress == 50

        withdrawal.observe_payout_broadcast("PAYOUT0001")
        assert (withdrawal.stage, withdrawal.progress) == (LifecycleStage.SENDING, 70)

        withdrawal.observe_payout_status(LedgerTxStatus.PENDING)
        assert withdrawal.stage is LifecycleStage.SENDING

        withdrawal.observe_payout_status(LedgerTxStatus.VALIDATED)
        snapshot = withdrawal.snapshot()
        assert snapshot.stage is LifecycleStage.COMPLETE
        assert snapshot.progress == 100
        assert snapshot.tx_hash == "PAYOUT0001"
        assert snapshot.final_amount == Decimal("40")

    def test_sending_past_ceiling_is_stale_not_failed(self, withdrawal, clock):
        withdrawal.observe_payout_broadcast("PAYOUT0001")
        clock.value = 901.0

        snapshot = withdrawal.snapshot()

        assert snapshot.stage is LifecycleStage.SENDING
        assert snapshot.stale is True

    def test_custom_ceiling(self, clock):
        tracker = WithdrawalTracker(
            make_withdrawal(),
            stage_ceilings={LifecycleStage.CREATING: 30.0},
            clock=clock,
        )
        clock.value = 31.0

        assert tracker.stale is True

    def test_observe_request_walks_statuses(self, withdrawal):
        request = make_withdrawal(WithdrawalStatus.APPROVED)
        assert withdrawal.observe_request(request) is LifecycleStage.PROCESSING

        request = replace(request, status=WithdrawalStatus.PROCESSING, tx_hash="PAYOUT0002")
        assert withdrawal.observe_request(request) is LifecycleStage.SENDING

        request = replace(request, status=WithdrawalStatus.COMPLETED)
        assert withdrawal.observe_request(request) is LifecycleStage.COMPLETE
        assert withdrawal.final_amount == Decimal("40")

    def test_rejection_reaches_error(self, withdrawal):
        withdrawal.observe_request(make_withdrawal(
            WithdrawalStatus.REJECTED, rejection_reason="Insufficient liquidity",
        ))

        assert withdrawal.stage is LifecycleStage.ERROR
        assert withdrawal.error_message == "Insufficient liquidity"

    def test_payout_failure_reaches_error(self, withdrawal):
        withdrawal.observe_payout_broadcast("PAYOUT0001")
        withdrawal.observe_payout_status(LedgerTxStatus.FAILED)

        assert withdrawal.stage is LifecycleStage.ERROR
        assert withdrawal.stale is False

    def test_dismiss_requires_terminal_stage(self, withdrawal):
        withdrawal.observe_share_burn_confirmed()

        with pytest.raises(TrackerNotDismissible):
            withdrawal.dismiss()

    def test_dismiss_clears_result(self, withdrawal):
        withdrawal.fail("Vault paused")
        withdrawal.dismiss()

        snapshot = withdrawal.snapshot()
        assert snapshot.dismissed is True
        assert snapshot.error_message is None
        assert snapshot.stage is LifecycleStage.ERROR

    def test_other_request_ignored(self, withdrawal):
        other = make_withdrawal(WithdrawalStatus.COMPLETED, id="wd-2", wallet_address=XRPL_WALLET)

        assert withdrawal.observe_request(other) is LifecycleStage.CREATING
