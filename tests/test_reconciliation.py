"""Tests for position reconciliation against on-chain vault balances."""

from decimal import Decimal

import pytest

from core.errors import ReconciliationTimeout, WalletRequired
from core.types import Verification
from orchestrator import DEFAULT_VAULT_ID
from reconciliation import DEFAULT_TOLERANCE, compare_balances

from conftest import EVM_WALLET, XRPL_WALLET, make_position


class TestCompareBalances:

    def test_equal_balances(self):
        assert compare_balances(Decimal("100"), Decimal("100"), DEFAULT_TOLERANCE) is None

    def test_within_relative_tolerance(self):
        assert compare_balances(Decimal("100"), Decimal("99.999995"), DEFAULT_TOLERANCE) is None

    def test_discrepancy_is_recorded_minus_on_chain(self):
        assert compare_balances(Decimal("100"), Decimal("99.99995"), DEFAULT_TOLERANCE) == Decimal("0.00005")
        assert compare_balances(Decimal("100"), Decimal("100.5"), DEFAULT_TOLERANCE) == Decimal("-0.5")

    def test_default_is_tighter_than_a_ten_thousandth(self):
        # A 0.0001 tolerance, absolute or relative, would accept this 0.00005 gap
        assert compare_balances(Decimal("100"), Decimal("99.99995"), Decimal("0.0001")) is None
        assert abs(Decimal("100") - Decimal("99.99995")) < Decimal("0.0001")
        assert DEFAULT_TOLERANCE < Decimal("0.00005") / Decimal("100")


class TestReconcile:

    @pytest.mark.asyncio
    async def test_mismatch_keeps_recorded_amount(self, db, chain, reconciliation):
        await db.upsert_position(make_position(amount="100.000000"))
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("99.999950"))

        summary = await reconciliation.reconcile(EVM_WALLET)

        position = summary.positions[0]
        assert position.balance_verified is Verification.MISMATCHED
        assert position.balance_verified.as_flag() is False
        assert position.amount == Decimal("100.000000")
        assert position.on_chain_balance == Decimal("99.999950")
        assert position.discrepancy == Decimal("0.00005")
        assert summary.total_db_balance == Decimal("100")
        assert summary.on_chain_total_balance == Decimal("99.999950")

    @pytest.mark.asyncio
    async def test_matching_balance_is_verified(self, db, chain, reconciliation):
        await db.upsert_position(make_position(amount="100.000000"))
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("100"))

        summary = await reconciliation.reconcile(EVM_WALLET)

        position = summary.positions[0]
        assert position.balance_verified is Verification.VERIFIED
        assert position.discrepancy is None
        assert summary.on_chain_verified is True

    @pytest.mark.asyncio
    async def test_vault_shares_allocated_pro_rata(self, db, chain, reconciliation):
        await db.upsert_position(make_position("pos-a", "60"))
        await db.upsert_position(make_position("pos-b", "40"))
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("100"))

        summary = await reconciliation.reconcile(EVM_WALLET)

        by_id = {p.id: p for p in summary.positions}
        assert by_id["pos-a"].on_chain_balance == Decimal("60")
        assert by_id["pos-b"].on_chain_balance == Decimal("40")
        assert all(p.balance_verified is Verification.VERIFIED for p in summary.positions)

    @pytest.mark.asyncio
    async def test_unreadable_vault_is_not_applicable(self, db, chain, reconciliation):
        await db.upsert_position(make_position())
        chain.failing_vaults.add(DEFAULT_VAULT_ID)

        summary = await reconciliation.reconcile(EVM_WALLET)

        position = summary.positions[0]
        assert position.balance_verified is Verification.NOT_APPLICABLE
        assert position.balance_verified.as_flag() is None
        assert position.on_chain_balance is None
        assert summary.on_chain_verified is False
        assert summary.total_value == Decimal("250")

    @pytest.mark.asyncio
    async def test_non_verifiable_vault_is_not_applicable(self, db, chain, reconciliation):
        await db.upsert_position(make_position(vault_id="vault-flr", amount="1000"))

        summary = await reconciliation.reconcile(EVM_WALLET)

        assert summary.positions[0].balance_verified is Verification.NOT_APPLICABLE
        assert summary.positions[0].usd_value == Decimal("20")

    @pytest.mark.asyncio
    async def test_values_and_totals(self, db, chain, reconciliation):
        await db.upsert_position(make_position("pos-a", "100", rewards=Decimal("4")))
        await db.upsert_position(make_position("pos-b", "50", status="withdrawn"))
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("100"))

        summary = await reconciliation.reconcile(EVM_WALLET)

        by_id = {p.id: p for p in summary.positions}
        assert by_id["pos-a"].usd_value == Decimal("250")
        assert by_id["pos-a"].rewards_usd == Decimal("10")
        assert by_id["pos-a"].vault.asset == "FXRP"
        assert by_id["pos-b"].balance_verified is Verification.NOT_APPLICABLE
        assert summary.total_value == Decimal("250")
        assert summary.total_rewards == Decimal("4")
        assert summary.total_db_balance == Decimal("100")

    @pytest.mark.asyncio
    async def test_missing_price_values_at_zero(self, db, chain, prices, reconciliation):
        prices.prices.pop("XRP")
        await db.upsert_position(make_position())
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("100"))

        summary = await reconciliation.reconcile(EVM_WALLET)

        assert summary.positions[0].usd_value == Decimal("0")
        assert summary.positions[0].balance_verified is Verification.VERIFIED

    @pytest.mark.asyncio
    async def test_ledger_wallet_skips_vault_reads(self, db, chain, ledger, reconciliation):
        await db.upsert_position(make_position(wallet_address=XRPL_WALLET))
        chain.failing_vaults.add(DEFAULT_VAULT_ID)
        ledger.balances[XRPL_WALLET] = Decimal("42.5")

        summary = await reconciliation.reconcile(XRPL_WALLET)

        assert summary.positions[0].balance_verified is Verification.NOT_APPLICABLE
        assert summary.ledger_balance == Decimal("42.5")

    @pytest.mark.asyncio
    async def test_ledger_outage_degrades(self, db, ledger, reconciliation):
        ledger.failing = True

        summary = await reconciliation.reconcile(XRPL_WALLET)

        assert summary.ledger_balance is None
        assert summary.positions == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("wallet", ["", "   "])
    async def test_wallet_required(self, reconciliation, wallet):
        with pytest.raises(WalletRequired):
            await reconciliation.reconcile(wallet)


class TestTimeoutsAndCaching:

    @pytest.mark.asyncio
    async def test_timeout_without_history(self, db, chain, reconciliation):
        await db.upsert_position(make_position())
        chain.delay = 1.0

        with pytest.raises(ReconciliationTimeout) as exc_info:
            await reconciliation.reconcile(EVM_WALLET, timeout=0.05)

        assert exc_info.value.last_known is None

    @pytest.mark.asyncio
    async def test_timeout_returns_last_known_summary(self, db, chain, reconciliation):
        await db.upsert_position(make_position())
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("100"))
        first = await reconciliation.reconcile(EVM_WALLET)
        chain.delay = 1.0

        with pytest.raises(ReconciliationTimeout) as exc_info:
            await reconciliation.reconcile(EVM_WALLET, timeout=0.05)

        last = exc_info.value.last_known
        assert last.stale is True
        assert last.positions == first.positions
        assert first.stale is False

    @pytest.mark.asyncio
    async def test_summary_cached_until_max_age(self, db, chain, scheduler, reconciliation):
        await db.upsert_position(make_position())
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("100"))

        first = await reconciliation.get_summary(EVM_WALLET, max_age=15)
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("90"))
        cached = await reconciliation.get_summary(EVM_WALLET, max_age=15)
        await scheduler.advance(16)
        fresh = await reconciliation.get_summary(EVM_WALLET, max_age=15)

        assert cached is first
        assert fresh.positions[0].balance_verified is Verification.MISMATCHED

    @pytest.mark.asyncio
    async def test_invalidate_forces_fresh_pass(self, db, chain, reconciliation):
        await db.upsert_position(make_position())
        chain.set_holding(EVM_WALLET, DEFAULT_VAULT_ID, Decimal("100"))
        first = await reconciliation.get_summary(EVM_WALLET)

        reconciliation.invalidate(EVM_WALLET)
        second = await reconciliation.get_summary(EVM_WALLET)

        assert second is not first
