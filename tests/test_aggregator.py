"""Tests for the unified activity view."""

from datetime import timedelta
from decimal import Decimal

import pytest

from aggregator import ActivityAggregator, explorer_url
from core.errors import ReconciliationTimeout, WalletRequired
from core.types import BridgeJobStatus, LifecycleStage, PendingActivity, Position
from orchestrator import DEFAULT_VAULT_ID
from store import KIND_JOB

from conftest import EVM_WALLET, T0, make_job, make_position


@pytest.fixture
def aggregator(reconciliation, db, store, scheduler, wall_clock):
    return ActivityAggregator(
        reconciliation,
        db,
        store,
        network="testnet",
        delay_ceiling=600.0,
        failed_retention=timedelta(hours=24),
        clock=scheduler.now,
        now=wall_clock,
    )


def metric(item: PendingActivity, label: str):
    return next((m for m in item.metrics if m.label == label), None)


class TestOrdering:

    @pytest.mark.asyncio
    async def test_newer_position_sorts_before_older_pending(self, db, aggregator):
        await db.upsert_bridge_job(make_job("job-1", BridgeJobStatus.AWAITING_PAYMENT, created_at=T0))
        await db.upsert_position(make_position("pos-9", created_at=T0 + timedelta(hours=1)))

        items = await aggregator.build_view(EVM_WALLET)

        assert [item.id for item in items] == ["pos-9", "job-1"]
        assert isinstance(items[0], Position)
        assert isinstance(items[1], PendingActivity)

    @pytest.mark.asyncio
    async def test_newer_pending_sorts_first(self, db, aggregator):
        await db.upsert_position(make_position("pos-9", created_at=T0))
        await db.upsert_bridge_job(make_job("job-2", created_at=T0 + timedelta(minutes=5)))
        await db.upsert_bridge_job(make_job("job-1", created_at=T0 + timedelta(minutes=1)))

        items = await aggregator.build_view(EVM_WALLET)

        assert [item.id for item in items] == ["job-2", "job-1", "pos-9"]

    @pytest.mark.asyncio
    async def test_tie_puts_position_first(self, db, aggregator):
        await db.upsert_bridge_job(make_job("job-1", created_at=T0))
        await db.upsert_position(make_position("pos-9", created_at=T0))

        items = await aggregator.build_view(EVM_WALLET)

        assert [item.id for item in items] == ["pos-9", "job-1"]


class TestDeduplication:

    @pytest.mark.asyncio
    async def test_settled_job_hidden_behind_its_position(self, db, aggregator):
        await db.upsert_bridge_job(make_job("job-1", BridgeJobStatus.MINTED))
        await db.upsert_position(make_position("pos-job-1", "20", source_job_id="job-1"))

        view = await aggregator.build(EVM_WALLET)

        assert [item.id for item in view.items] == ["pos-job-1"]
        assert view.pending == []
        assert aggregator.tracker("job-1") is None

    @pytest.mark.asyncio
    async def test_minted_job_without_position_stays_pending(self, db, aggregator):
        await db.upsert_bridge_job(make_job("job-1", BridgeJobStatus.MINTED, dest_tx_hash="0xmint"))

        view = await aggregator.build(EVM_WALLET)

        item = view.pending[0]
        assert item.lifecycle_stage is LifecycleStage.MINTING
        assert item.progress == 85
        assert metric(item, "Flare Mint").explorer_url == "https://coston2-explorer.flare.network/tx/0xmint"

    @pytest.mark.asyncio
    async def test_newer_polled_snapshot_overrides_record(self, db, store, aggregator):
        await db.upsert_bridge_job(make_job("job-1", BridgeJobStatus.QUEUED))
        polled = make_job("job-1", BridgeJobStatus.PAID, updated_at=T0 + timedelta(seconds=30))
        store.put(EVM_WALLET, KIND_JOB, polled.id, polled, polled.updated_at)

        view = await aggregator.build(EVM_WALLET)

        assert len(view.pending) == 1
        assert view.pending[0].bridge_status is BridgeJobStatus.PAID
        assert view.pending[0].lifecycle_stage is LifecycleStage.BRIDGING

    @pytest.mark.asyncio
    async def test_stale_snapshot_marks_view(self, store, aggregator):
        job = make_job("job-1", BridgeJobStatus.AWAITING_PAYMENT)
        store.put(EVM_WALLET, KIND_JOB, job.id, job, job.updated_at)
        store.mark_stale(EVM_WALLET, KIND_JOB, job.id)

        view = await aggregator.build(EVM_WALLET)

        assert view.stale is True
        assert view.pending[0].stale is True
        assert metric(view.pending[0], "Data").value == "May be out of date"


class TestFailedJobs:

    @pytest.mark.asyncio
    async def test_recent_failure_is_shown(self, db, aggregator):
        await db.upsert_bridge_job(make_job(
            "job-1", BridgeJobStatus.FAILED, error_message="Collateral reservation expired",
        ))

        view = await aggregator.build(EVM_WALLET)

        item = view.pending[0]
        assert item.lifecycle_stage is LifecycleStage.FAILED
        assert item.error_message == "Collateral reservation expired"
        assert metric(item, "Error").value == "Collateral reservation expired"

    @pytest.mark.asyncio
    async def test_old_failure_is_hidden(self, db, aggregator):
        old = T0 - timedelta(hours=25)
        await db.upsert_bridge_job(make_job("job-1", BridgeJobStatus.EXPIRED, created_at=old))

        view = await aggregator.build(EVM_WALLET)

        assert view.items == []

    @pytest.mark.asyncio
    async def test_cancelled_job_shown_then_retired(self, db, wall_clock, aggregator):
        await db.upsert_bridge_job(make_job("job-1", BridgeJobStatus.AWAITING_PAYMENT, cancelled_at=T0))

        item = (await aggregator.build(EVM_WALLET)).pending[0]
        assert item.lifecycle_stage is LifecycleStage.CANCELLED
        assert metric(item, "Status").value == "Cancelled"
        assert item.delayed is False

        wall_clock.advance(25 * 3600)
        view = await aggregator.build(EVM_WALLET)

        assert view.items == []


class TestProjection:

    @pytest.mark.asyncio
    async def test_pending_item_fields(self, db, aggregator):
        await db.upsert_bridge_job(make_job(
            "job-1",
            BridgeJobStatus.AWAITING_PAYMENT,
            requested="23.4567",
            rounded="23.450000",
            source_tx_hash="ABC123",
            agent_reference="REF-77",
        ))

        item = (await aggregator.build(EVM_WALLET)).pending[0]

        assert item.amount == Decimal("23.4567")
        assert item.amount_expected == Decimal("23.450000")
        assert item.usd_value == Decimal("58.625")
        assert item.vault_id == DEFAULT_VAULT_ID
        assert item.kind == "bridge"
        assert metric(item, "XRPL Payment").value == "Sent"
        assert metric(item, "XRPL Payment").explorer_url == "https://testnet.xrpl.org/transactions/ABC123"
        assert metric(item, "Bridge Reference").value == "REF-77"
        assert metric(item, "Lot Rounding").value == "0.006700 XRP not bridged (kept in wallet)"

    @pytest.mark.asyncio
    async def test_delay_flagged_after_ceiling(self, db, scheduler, aggregator):
        await db.upsert_bridge_job(make_job("job-1", BridgeJobStatus.PAID))
        await aggregator.build(EVM_WALLET)

        await scheduler.advance(601)
        item = (await aggregator.build(EVM_WALLET)).pending[0]

        assert item.delayed is True
        assert item.lifecycle_stage is LifecycleStage.BRIDGING
        assert metric(item, "Settlement").value == "Taking longer than usual"

    @pytest.mark.asyncio
    async def test_delay_counts_from_last_bridge_update(self, db, wall_clock, aggregator):
        await db.upsert_bridge_job(make_job("job-1", BridgeJobStatus.PAID))
        wall_clock.advance(601)

        item = (await aggregator.build(EVM_WALLET)).pending[0]

        assert item.delayed is True

    @pytest.mark.asyncio
    async def test_recent_job_not_delayed_on_first_view(self, db, wall_clock, aggregator):
        await db.upsert_bridge_job(make_job("job-1", BridgeJobStatus.PAID))
        wall_clock.advance(300)

        item = (await aggregator.build(EVM_WALLET)).pending[0]

        assert item.delayed is False

    @pytest.mark.asyncio
    async def test_evm_wallet_case_insensitive(self, db, aggregator):
        await db.upsert_bridge_job(make_job("job-1"))

        view = await aggregator.build(EVM_WALLET.upper().replace("0X", "0x"))

        assert [item.id for item in view.items] == ["job-1"]


class TestDegradation:

    @pytest.mark.asyncio
    async def test_wallet_required(self, aggregator):
        with pytest.raises(WalletRequired):
            await aggregator.build("")

    @pytest.mark.asyncio
    async def test_timeout_serves_last_known_positions(self, db, chain, reconciliation, aggregator):
        await db.upsert_position(make_position())
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("100"))
        await aggregator.build(EVM_WALLET)
        chain.delay = 1.0
        reconciliation.timeout = 0.05

        view = await aggregator.build(EVM_WALLET)

        assert view.stale is True
        assert view.summary.stale is True
        assert [item.id for item in view.items] == ["pos-1"]

    @pytest.mark.asyncio
    async def test_timeout_without_history_raises(self, db, chain, reconciliation, aggregator):
        await db.upsert_position(make_position())
        chain.delay = 1.0
        reconciliation.timeout = 0.05

        with pytest.raises(ReconciliationTimeout):
            await aggregator.build(EVM_WALLET)


def test_explorer_url_unknown_chain():
    assert explorer_url("dogechain", "abc") is None
    assert explorer_url("xrpl", None) is None
    assert explorer_url("xrpl", "abc", "mainnet") == "https://livenet.xrpl.org/transactions/abc"
