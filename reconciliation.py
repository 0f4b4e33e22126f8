"""Reconciles recorded positions against on-chain vault balances."""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from core.errors import (
    OrchestratorError,
    PriceUnavailable,
    ReconciliationTimeout,
    VerificationInconclusive,
    WalletRequired,
)
from core.types import Position, ReconciliationSummary, Vault, Verification
from database import OrchestratorDatabase
from ledger.node import LedgerReader
from prices import PriceSource
from store import KIND_POSITION, KIND_SUMMARY, SnapshotStore, wallet_key
from vault.reader import ChainReader, VaultHolding

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.0000001")  # relative
DEFAULT_ASSET = "XRP"
AMOUNT_QUANTUM = Decimal("0.000001")


@dataclass
class _VaultCheck:
    vault: Vault
    recorded_total: Decimal
    holding: Optional[VaultHolding] = None
    error: Optional[str] = None

    @property
    def read_ok(self) -> bool:
        return self.holding is not None


def is_evm_address(address: str) -> bool:
    return address.lower().startswith("0x")


def compare_balances(recorded: Decimal, on_chain: Decimal, tolerance: Decimal) -> Optional[Decimal]:
    """Compare a recorded balance with the chain under a relative tolerance.

    Returns:
        None when within tolerance, else the signed discrepancy ``recorded - on_chain``
    """
    delta = recorded - on_chain
    allowed = tolerance * max(abs(recorded), abs(on_chain))
    if abs(delta) > allowed:
        return delta
    return None


class PositionReconciliationService:
    """Builds the verified, valued position list for a wallet.

    Failures local to one vault or one price degrade that item only:
    an unreadable vault marks its positions NOT_APPLICABLE, a missing price
    values them at zero. Only a missing wallet and the caller's deadline
    raise.
    """

    def __init__(
        self,
        db: OrchestratorDatabase,
        chain_reader: ChainReader,
        price_source: PriceSource,
        store: SnapshotStore,
        ledger_reader: Optional[LedgerReader] = None,
        tolerance: Decimal = DEFAULT_TOLERANCE,
        timeout: float = 10.0,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize the reconciliation service.

        Args:
            db: Persistence for recorded positions and vault metadata
            chain_reader: Vault balance reader
            price_source: USD price source
            store: Snapshot store for the latest summaries
            ledger_reader: Optional ledger reader for XRPL wallet balances
            tolerance: Relative tolerance for balance comparison
            timeout: Default caller-side deadline in seconds
            now: Wall clock
        """
        self.db = db
        self.chain_reader = chain_reader
        self.price_source = price_source
        self.store = store
        self.ledger_reader = ledger_reader
        self.tolerance = tolerance
        self.timeout = timeout
        self._now = now

    async def reconcile(self, wallet_address: str, timeout: Optional[float] = None) -> ReconciliationSummary:
        """Reconcile all positions of a wallet.

        Args:
            wallet_address: EVM or XRPL address
            timeout: Deadline in seconds (defaults to the service timeout)

        Returns:
            ReconciliationSummary

        Raises:
            WalletRequired: If no address is given
            ReconciliationTimeout: If the deadline passes; carries the last known summary
        """
        if not wallet_address or not wallet_address.strip():
            raise WalletRequired("Wallet address required")

        wallet = wallet_key(wallet_address)
        deadline = self.timeout if timeout is None else timeout

        try:
            summary = await asyncio.wait_for(self._reconcile(wallet), deadline)
        except asyncio.TimeoutError:
            last = self.last_summary(wallet)
            logger.warning(f"Reconciliation for {wallet[:16]} timed out after {deadline}s")
            raise ReconciliationTimeout(wallet, deadline, last_known=last)

        self.store.put(wallet, KIND_SUMMARY, wallet, summary, summary.last_updated)
        for position in summary.positions:
            self.store.put(wallet, KIND_POSITION, position.id, position, summary.last_updated)
        return summary

    async def get_summary(self, wallet_address: str, max_age: float = 15.0) -> ReconciliationSummary:
        """Cached summary if younger than ``max_age`` seconds, else a fresh pass."""
        if not wallet_address or not wallet_address.strip():
            raise WalletRequired("Wallet address required")
        snapshot = self.store.get(wallet_address, KIND_SUMMARY, wallet_key(wallet_address))
        if snapshot and not snapshot.stale and self.store.age(snapshot) < max_age:
            return snapshot.value
        return await self.reconcile(wallet_address)

    def last_summary(self, wallet_address: str) -> Optional[ReconciliationSummary]:
        """Last known-good summary, marked stale."""
        snapshot = self.store.get(wallet_address, KIND_SUMMARY, wallet_key(wallet_address))
        if snapshot is None:
            return None
        return replace(snapshot.value, stale=True)

    def invalidate(self, wallet_address: str) -> None:
        self.store.invalidate(wallet_address, KIND_SUMMARY)

    async def _reconcile(self, wallet: str) -> ReconciliationSummary:
        positions = await self.db.list_positions(wallet)
        vaults = {vault.id: vault for vault in await self.db.list_vaults()}

        checks = await self._read_vaults(wallet, positions, vaults)
        prices = await self._load_prices(
            (vaults[p.vault_id].asset if p.vault_id in vaults else DEFAULT_ASSET) for p in positions
        )

        enriched: List[Position] = []
        for position in positions:
            vault = vaults.get(position.vault_id)
            asset = vault.asset if vault else DEFAULT_ASSET
            price = prices.get(asset, Decimal("0"))
            position = self._verify(position, checks.get(position.vault_id))
            position.vault = vault
            position.usd_value = position.amount * price
            position.rewards_usd = position.rewards * price
            enriched.append(position)

        active = [p for p in enriched if p.is_active]
        readable = [c for c in checks.values() if c.read_ok]
        on_chain_total = sum((c.holding.shares for c in readable), Decimal("0"))
        recorded_total = sum((c.recorded_total for c in checks.values()), Decimal("0"))

        ledger_balance = None
        if self.ledger_reader is not None and not is_evm_address(wallet):
            try:
                ledger_balance = await self.ledger_reader.get_balance(wallet)
            except OrchestratorError as e:
                logger.warning(f"Ledger balance unavailable for {wallet[:16]}: {e}")

        return ReconciliationSummary(
            wallet_address=wallet,
            positions=enriched,
            total_value=sum((p.usd_value for p in active), Decimal("0")),
            total_rewards=sum((p.rewards for p in active), Decimal("0")),
            total_rewards_usd=sum((p.rewards_usd for p in active), Decimal("0")),
            on_chain_total_balance=on_chain_total,
            on_chain_verified=bool(checks) and len(readable) == len(checks),
            total_db_balance=recorded_total,
            last_updated=self._now(),
            ledger_balance=ledger_balance,
        )

    async def _read_vaults(
        self,
        wallet: str,
        positions: List[Position],
        vaults: Dict[str, Vault],
    ) -> Dict[str, _VaultCheck]:
        """Read on-chain holdings for every verifiable vault the wallet is in."""
        if not is_evm_address(wallet):
            return {}

        checks: Dict[str, _VaultCheck] = {}
        for position in positions:
            vault = vaults.get(position.vault_id)
            if not position.is_active or vault is None or not vault.verifiable:
                continue
            check = checks.setdefault(vault.id, _VaultCheck(vault=vault, recorded_total=Decimal("0")))
            check.recorded_total += position.amount

        async def _read(check: _VaultCheck) -> None:
            try:
                check.holding = await self.chain_reader.get_position(wallet, check.vault.id)
            except (OrchestratorError, ValueError) as e:
                error = VerificationInconclusive(str(e), asset=check.vault.asset)
                check.error = str(error)
                logger.warning(
                    f"Verification inconclusive for {wallet[:16]} in vault {check.vault.id}: {e}"
                )

        await asyncio.gather(*(_read(check) for check in checks.values()))
        return checks

    def _verify(self, position: Position, check: Optional[_VaultCheck]) -> Position:
        if check is None or not check.read_ok or not position.is_active:
            return position.with_verification(Verification.NOT_APPLICABLE)

        on_chain = check.holding.shares
        if check.recorded_total > 0:
            share = (on_chain * position.amount / check.recorded_total).quantize(AMOUNT_QUANTUM)
        else:
            share = on_chain

        discrepancy = compare_balances(check.recorded_total, on_chain, self.tolerance)
        if discrepancy is None:
            return position.with_verification(Verification.VERIFIED, on_chain_balance=share)

        logger.warning(
            f"Balance mismatch for {position.wallet_address[:16]} in vault {check.vault.id}: "
            f"recorded={check.recorded_total} on-chain={on_chain} discrepancy={discrepancy}"
        )
        return position.with_verification(
            Verification.MISMATCHED, on_chain_balance=share, discrepancy=discrepancy
        )

    async def _load_prices(self, assets: Iterable[str]) -> Dict[str, Decimal]:
        prices: Dict[str, Decimal] = {}
        for asset in set(assets):
            try:
                prices[asset] = await self.price_source.get_price(asset)
            except PriceUnavailable as e:
                logger.warning(f"Price unavailable for {asset}, valuing at 0: {e}")
            except OrchestratorError as e:
                logger.warning(f"Price source error for {asset}, valuing at 0: {e}")
        return prices
