"""Cross-chain position lifecycle orchestrator."""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from aggregator import ActivityAggregator, ActivityView
from bridge_client import BridgeClient, HttpBridgeClient, MockBridgeClient
from config import OrchestratorConfig
from core.errors import (
    InvalidAmount,
    InvalidTransition,
    NotFound,
    OrchestratorError,
    ReconciliationTimeout,
    WalletRequired,
)
from core.types import (
    BridgeJob,
    BridgeJobStatus,
    LifecycleStage,
    Position,
    ReconciliationSummary,
    Vault,
    WithdrawalRequest,
    WithdrawalStatus,
    WithdrawalType,
)
from database import OrchestratorDatabase
from deposit_tracker import DepositProgress
from ledger.node import LedgerNetwork, LedgerNodeConfig, LedgerReader, LedgerTxStatus, MockLedgerReader, XrplNode
from poller import BridgeJobPoller, Subscription
from prices import HttpPriceSource, PriceSource, StaticPriceSource
from reconciliation import PositionReconciliationService
from scheduler import AsyncioScheduler, Scheduler, TimerHandle
from store import KIND_JOB, SnapshotStore, Snapshot, StoreKey, wallet_key
from units import LotRounding, normalize, parse_amount
from vault.reader import ChainReader, MockChainReader, RpcChainReader
from withdrawal_tracker import WithdrawalProgress, WithdrawalTracker

logger = logging.getLogger(__name__)

EventListener = Callable[[Dict[str, Any]], Awaitable[None]]

DEFAULT_VAULT_ID = "vault-fxrp"
BRIDGE_MINTED_ASSETS = ("FXRP",)

MOCK_PRICES = {"XRP": Decimal("2.50"), "FLR": Decimal("0.02")}


class Orchestrator:
    """Tracks deposits and withdrawals across the ledger, the bridge and the vault.

    Collaborators are chosen once at construction: in ``mock`` client mode all
    of them are in-memory, in ``live`` mode they talk to the configured
    endpoints. Any collaborator can also be injected directly.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        bridge_client: Optional[BridgeClient] = None,
        chain_reader: Optional[ChainReader] = None,
        ledger_reader: Optional[LedgerReader] = None,
        price_source: Optional[PriceSource] = None,
        db: Optional[OrchestratorDatabase] = None,
        scheduler: Optional[Scheduler] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize the orchestrator.

        Args:
            config: Orchestrator configuration
            bridge_client: Bridge status endpoint (default from ``client_mode``)
            chain_reader: Vault reader (default from ``client_mode``)
            ledger_reader: XRPL reader (default from ``client_mode``)
            price_source: USD prices (default from ``client_mode``)
            db: Persistence (default sqlite at ``database_path``)
            scheduler: Timer source (default: running event loop)
            now: Wall clock
        """
        self.config = config
        self.running = False
        self._now = now
        self._stopped = asyncio.Event()

        self.bridge_client = bridge_client or self._build_bridge_client()
        self.chain_reader = chain_reader or self._build_chain_reader()
        self.ledger_reader = ledger_reader or self._build_ledger_reader()
        self.price_source = price_source or self._build_price_source()
        self.db = db or OrchestratorDatabase(config.database_path)
        self.scheduler = scheduler or AsyncioScheduler()

        self.store = SnapshotStore(clock=self.scheduler.now)
        self.poller = BridgeJobPoller(
            client=self.bridge_client,
            store=self.store,
            scheduler=self.scheduler,
            interval=config.bridge_poll_interval,
            max_failures=config.max_poll_failures,
        )
        self.reconciliation = PositionReconciliationService(
            db=self.db,
            chain_reader=self.chain_reader,
            price_source=self.price_source,
            store=self.store,
            ledger_reader=self.ledger_reader,
            tolerance=config.balance_tolerance,
            timeout=config.reconcile_timeout,
            now=now,
        )
        self.aggregator = ActivityAggregator(
            reconciliation=self.reconciliation,
            db=self.db,
            store=self.store,
            network=config.network,
            delay_ceiling=config.deposit_delay_ceiling,
            failed_retention=timedelta(seconds=config.failed_activity_retention),
            clock=self.scheduler.now,
            now=now,
        )

        self._job_subscriptions: Dict[str, Subscription] = {}
        self._withdrawal_trackers: Dict[str, WithdrawalTracker] = {}
        self._watched_wallets: Dict[str, int] = {}
        self._listeners: List[EventListener] = []
        self._remove_store_listener: Optional[Callable[[], None]] = None
        self._reconcile_timer: Optional[TimerHandle] = None
        self._update_tasks: Set[asyncio.Future] = set()

        logger.info(f"Initialized orchestrator ({config.network}, {config.client_mode} clients)")

    # Collaborator variants

    def _build_bridge_client(self) -> BridgeClient:
        if self.config.is_mock:
            return MockBridgeClient(now=self._now)
        return HttpBridgeClient(self.config.bridge_api_url)

    def _build_chain_reader(self) -> ChainReader:
        if self.config.is_mock:
            return MockChainReader()
        return RpcChainReader(
            self.config.flare_rpc_url,
            vault_addresses={DEFAULT_VAULT_ID: self.config.vault_address},
        )

    def _build_ledger_reader(self) -> LedgerReader:
        if self.config.is_mock:
            return MockLedgerReader()
        return XrplNode(LedgerNodeConfig(
            rpc_url=self.config.xrpl_rpc_url,
            network=LedgerNetwork(self.config.network),
        ))

    def _build_price_source(self) -> PriceSource:
        if self.config.is_mock:
            return StaticPriceSource(MOCK_PRICES)
        return HttpPriceSource(self.config.price_api_url, cache_ttl=self.config.price_cache_ttl)

    def default_vault(self) -> Vault:
        asset = self.config.vault_asset.upper()
        return Vault(
            id=DEFAULT_VAULT_ID,
            name=f"{asset} Vault",
            asset=asset,
            apy=Decimal("0"),
            address=self.config.vault_address or None,
            verifiable=asset in BRIDGE_MINTED_ASSETS,
        )

    # Lifecycle

    async def start(self) -> None:
        """Start the orchestrator."""
        logger.info("Starting orchestrator...")

        self.config.validate()

        await self.db.start()
        if await self.db.get_vault(DEFAULT_VAULT_ID) is None:
            await self.db.upsert_vault(self.default_vault())

        await self.bridge_client.start()
        await self.chain_reader.start()
        await self.ledger_reader.start()
        await self.price_source.start()

        self._remove_store_listener = self.store.add_listener(self._on_store_update)

        # Resume polling of jobs left in flight by a previous run
        for job in await self.db.list_open_bridge_jobs():
            self.store.put(job.wallet_address, KIND_JOB, job.id, job, job.updated_at)
            self._watch_job(job)

        self._reconcile_timer = self.scheduler.call_every(
            self.config.reconcile_interval, self._refresh_watched_wallets
        )

        self.running = True
        self._stopped.clear()
        logger.info("Orchestrator started successfully")

    async def stop(self) -> None:
        """Stop the orchestrator."""
        logger.info("Stopping orchestrator...")
        self.running = False

        if self._reconcile_timer:
            self._reconcile_timer.cancel()
            self._reconcile_timer = None
        self.poller.stop()
        self._job_subscriptions.clear()
        if self._remove_store_listener:
            self._remove_store_listener()
            self._remove_store_listener = None
        # Let in-progress job updates finish writing before the db closes
        if self._update_tasks:
            await asyncio.gather(*self._update_tasks, return_exceptions=True)

        await self.price_source.stop()
        await self.ledger_reader.stop()
        await self.chain_reader.stop()
        await self.bridge_client.stop()
        await self.db.stop()

        self._stopped.set()
        logger.info("Orchestrator stopped")

    async def run(self) -> None:
        """Run the orchestrator until ``stop()`` is called (blocking)."""
        await self.start()
        try:
            await self._stopped.wait()
        except asyncio.CancelledError:
            logger.info("Received shutdown signal")
        finally:
            if self.running:
                await self.stop()

    # Events

    def add_event_listener(self, listener: EventListener) -> Callable[[], None]:
        """Receive ``bridge_job_update`` / ``withdrawal_update`` / ``positions_update`` events."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    async def _emit(self, event: Dict[str, Any]) -> None:
        event.setdefault("timestamp", self._now().isoformat())
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"Error in event listener: {e}", exc_info=True)

    # Deposits

    def quote(self, amount: Any) -> LotRounding:
        """Lot rounding for a prospective deposit.

        Raises:
            InvalidAmount: If the amount is invalid or below one lot
        """
        return normalize(amount, self.config.lot_size_uba, self.config.minting_decimals)

    async def initiate_deposit(self, wallet_address: str, amount: Any, vault_id: Optional[str] = None) -> BridgeJob:
        """Reserve a bridge job for a deposit and start tracking it.

        Only whole lots are bridged; the shortfall stays in the ledger wallet
        and is recorded on the job.

        Raises:
            WalletRequired: If no address is given
            InvalidAmount: If the amount is invalid or below one lot
            NotFound: If the vault does not exist
        """
        if not wallet_address or not wallet_address.strip():
            raise WalletRequired("Wallet address required")
        rounding = self.quote(amount)

        vault_id = vault_id or DEFAULT_VAULT_ID
        if await self.db.get_vault(vault_id) is None:
            raise NotFound(f"Vault {vault_id} not found")

        job = await self.bridge_client.reserve(wallet_address.strip(), rounding, vault_id)
        await self.db.upsert_bridge_job(job)
        self.store.put(job.wallet_address, KIND_JOB, job.id, job, job.updated_at)

        if rounding.needs_rounding:
            logger.info(
                f"Deposit {job.id}: bridging {job.amount_rounded} of {job.amount_requested}, "
                f"{job.amount_shortfall} stays in {job.wallet_address[:16]}"
            )

        self._watch_job(job)
        return job

    def _watch_job(self, job: BridgeJob) -> None:
        if job.id in self._job_subscriptions or job.is_terminal:
            return
        self._job_subscriptions[job.id] = self.poller.subscribe(job.wallet_address, job.id)

    async def _latest_job(self, job_id: str) -> Tuple[BridgeJob, bool]:
        """Recorded job overlaid with a newer polled snapshot, and its staleness.

        Raises:
            NotFound: If the job is unknown
        """
        job = await self.db.get_bridge_job(job_id)
        if job is None:
            raise NotFound(f"Bridge job {job_id} not found")

        snapshot = self.store.get(job.wallet_address, KIND_JOB, job_id)
        if snapshot is None:
            return job, False
        if snapshot.value.updated_at >= job.updated_at:
            job = snapshot.value.with_local_state(job)
        return job, snapshot.stale

    async def get_deposit(self, job_id: str) -> Tuple[BridgeJob, DepositProgress]:
        """Latest job snapshot and its derived deposit progress.

        Raises:
            NotFound: If the job is unknown
        """
        job, stale = await self._latest_job(job_id)

        tracker = self.aggregator.tracker_for(job)
        tracker.observe_job(job, stale=stale)

        position = await self.db.get_position_for_job(job_id)
        if position is not None:
            summary = await self._summary_or_last(job.wallet_address)
            reconciled = next((p for p in summary.positions if p.id == position.id), None) if summary else None
            tracker.observe_position(reconciled or position)
        return job, tracker.snapshot()

    async def record_payment(self, job_id: str, tx_hash: str) -> DepositProgress:
        """Register the wallet's ledger payment and check its finality.

        The payment hash is recorded on the job, so cancellation stays refused
        after a restart.
        """
        job, _ = await self._latest_job(job_id)

        tracker = self.aggregator.tracker_for(job)
        tracker.observe_job(job)
        tracker.observe_payment_broadcast(tx_hash)

        if not job.source_tx_hash:
            await self.db.record_job_payment(job_id, tx_hash)

        try:
            status = await self.ledger_reader.get_transaction(tx_hash)
        except OrchestratorError as e:
            logger.warning(f"Could not check payment {tx_hash[:16]}: {e}")
            status = LedgerTxStatus.PENDING

        if status is LedgerTxStatus.VALIDATED:
            tracker.observe_payment_confirmed()
        return tracker.snapshot()

    async def cancel_deposit(self, job_id: str) -> DepositProgress:
        """User abort before the payment is broadcast.

        The cancellation is recorded on the job: polling stops and is not
        resumed on restart, and the job leaves the activity view after the
        failed-job retention window.

        Raises:
            NotFound: If the job is unknown
            CancellationRefused: Once the payment has been broadcast
        """
        job, _ = await self._latest_job(job_id)
        tracker = self.aggregator.tracker_for(job)
        tracker.observe_job(job)
        tracker.cancel()

        subscription = self._job_subscriptions.pop(job_id, None)
        if subscription:
            subscription.unsubscribe()

        if not job.cancelled and tracker.stage is LifecycleStage.CANCELLED:
            cancelled = replace(job, cancelled_at=self._now())
            await self.db.mark_job_cancelled(job_id, cancelled.cancelled_at)
            self.store.put(cancelled.wallet_address, KIND_JOB, cancelled.id, cancelled, cancelled.updated_at)
            logger.info(f"Deposit {job_id} cancelled by user")
        return tracker.snapshot()

    def _on_store_update(self, key: StoreKey, snapshot: Snapshot) -> None:
        wallet, kind, ident = key
        if kind != KIND_JOB:
            return
        task = self.scheduler.spawn(self._handle_job_update(wallet, ident))
        self._update_tasks.add(task)
        task.add_done_callback(self._update_tasks.discard)

    async def _handle_job_update(self, wallet: str, job_id: str) -> None:
        # Always persist the newest accepted snapshot, whatever triggered us
        snapshot = self.store.get(wallet, KIND_JOB, job_id)
        if snapshot is None:
            return
        job = snapshot.value

        try:
            await self.db.upsert_bridge_job(job)
            if job.status is BridgeJobStatus.MINTED:
                await self._settle(job)
        except Exception as e:
            logger.error(f"Failed to record update of job {job_id}: {e}", exc_info=True)

        if job.is_terminal:
            subscription = self._job_subscriptions.pop(job_id, None)
            if subscription:
                subscription.unsubscribe()

        await self._emit({
            "type": "bridge_job_update",
            "job_id": job.id,
            "wallet_address": job.wallet_address,
            "status": job.status.value,
            "cancelled": job.cancelled,
            "stale": snapshot.stale,
            "error_message": job.error_message,
        })

    async def _settle(self, job: BridgeJob) -> None:
        """Record the vault position produced by a minted job, once."""
        if await self.db.get_position_for_job(job.id) is not None:
            return
        position = Position(
            id=f"pos-{job.id}",
            wallet_address=job.wallet_address,
            vault_id=job.vault_id or DEFAULT_VAULT_ID,
            amount=job.amount_rounded,
            rewards=Decimal("0"),
            status="active",
            created_at=job.updated_at,
            source_job_id=job.id,
        )
        await self.db.upsert_position(position)
        self.reconciliation.invalidate(job.wallet_address)
        logger.info(f"Recorded position {position.id}: {position.amount} in {position.vault_id}")

    # Positions and activity

    async def get_positions(self, wallet_address: str) -> ReconciliationSummary:
        return await self.reconciliation.get_summary(
            wallet_address, max_age=self.config.reconcile_interval
        )

    async def get_activity(self, wallet_address: str) -> ActivityView:
        return await self.aggregator.build(wallet_address)

    async def _summary_or_last(self, wallet_address: str) -> Optional[ReconciliationSummary]:
        try:
            return await self.get_positions(wallet_address)
        except ReconciliationTimeout as e:
            return e.last_known

    @property
    def watched_wallets(self) -> Set[str]:
        return set(self._watched_wallets)

    def watch_wallet(self, wallet_address: str) -> Callable[[], None]:
        """Keep a wallet's reconciliation fresh while watched. Returns an unwatch function."""
        wallet = wallet_key(wallet_address)
        self._watched_wallets[wallet] = self._watched_wallets.get(wallet, 0) + 1

        def _unwatch():
            count = self._watched_wallets.get(wallet, 0) - 1
            if count > 0:
                self._watched_wallets[wallet] = count
            else:
                self._watched_wallets.pop(wallet, None)

        return _unwatch

    async def _refresh_watched_wallets(self) -> None:
        for wallet in list(self._watched_wallets):
            try:
                summary = await self.reconciliation.reconcile(wallet)
            except ReconciliationTimeout as e:
                logger.warning(f"Periodic reconciliation timed out: {e}")
                continue
            except OrchestratorError as e:
                logger.error(f"Periodic reconciliation failed for {wallet[:16]}: {e}")
                continue
            await self._emit({
                "type": "positions_update",
                "wallet_address": wallet,
                "on_chain_verified": summary.on_chain_verified,
                "mismatched": [
                    p.id for p in summary.positions if p.balance_verified.as_flag() is False
                ],
            })

    # Withdrawals

    async def request_withdrawal(
        self,
        wallet_address: str,
        amount: Any,
        position_id: Optional[str] = None,
        vault_id: Optional[str] = None,
    ) -> WithdrawalRequest:
        """Create a withdrawal request against a recorded position.

        Raises:
            WalletRequired: If no address is given
            InvalidAmount: If the amount is invalid or exceeds what the position
                has left after its open withdrawals
            NotFound: If the wallet has no matching active position
        """
        if not wallet_address or not wallet_address.strip():
            raise WalletRequired("Wallet address required")
        wallet = wallet_key(wallet_address)
        value = parse_amount(amount)

        position = await self._find_position(wallet, position_id, vault_id)
        reserved = sum(
            (w.amount for w in await self.db.list_withdrawals(wallet)
             if w.position_id == position.id and not w.status.is_terminal),
            Decimal("0"),
        )
        available = position.amount - reserved
        if value > available:
            raise InvalidAmount(
                f"Amount {value} exceeds available balance {available} "
                f"(position {position.amount}, {reserved} in open withdrawals)"
            )

        vault = await self.db.get_vault(position.vault_id)
        request = WithdrawalRequest(
            id=f"wd-{uuid.uuid4().hex[:12]}",
            wallet_address=wallet,
            vault_id=position.vault_id,
            position_id=position.id,
            type=WithdrawalType.FULL if value == position.amount else WithdrawalType.PARTIAL,
            amount=value,
            asset=vault.asset if vault else self.config.vault_asset,
            status=WithdrawalStatus.PENDING,
            requested_at=self._now(),
        )
        await self.db.upsert_withdrawal(request)
        self._tracker_for_withdrawal(request)

        logger.info(f"Withdrawal {request.id} requested: {value} {request.asset} ({request.type.value})")
        await self._emit_withdrawal(request)
        return request

    async def _find_position(self, wallet: str, position_id: Optional[str], vault_id: Optional[str]) -> Position:
        if position_id:
            position = await self.db.get_position(position_id)
            if position is None or wallet_key(position.wallet_address) != wallet:
                raise NotFound(f"Position {position_id} not found")
            if not position.is_active:
                raise InvalidAmount(f"Position {position_id} is already withdrawn")
            return position

        vault_id = vault_id or DEFAULT_VAULT_ID
        for position in await self.db.list_positions(wallet):
            if position.vault_id == vault_id and position.is_active:
                return position
        raise NotFound(f"No active position in {vault_id} for {wallet[:16]}")

    async def update_withdrawal(
        self,
        withdrawal_id: str,
        status: WithdrawalStatus,
        tx_hash: Optional[str] = None,
        rejection_reason: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> WithdrawalRequest:
        """Apply a status change reported by withdrawal processing.

        Raises:
            NotFound: If the withdrawal is unknown
            InvalidTransition: If completion is reported without a payout hash,
                or a request is moved back to pending
        """
        request = await self.db.get_withdrawal(withdrawal_id)
        if request is None:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        if request.status.is_terminal:
            logger.warning(f"Ignoring {status.value} for finished withdrawal {withdrawal_id}")
            return request
        if status is WithdrawalStatus.PENDING and request.status is not WithdrawalStatus.PENDING:
            raise InvalidTransition(f"Withdrawal {withdrawal_id} cannot return to pending")

        # Payout hash only lives on processing/completed requests
        payout_hash = tx_hash or request.tx_hash
        if status not in (WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED):
            payout_hash = None
        if status is WithdrawalStatus.COMPLETED and not payout_hash:
            raise InvalidTransition(f"Withdrawal {withdrawal_id} cannot complete without a payout transaction")
        if status is WithdrawalStatus.REJECTED:
            rejection_reason = rejection_reason or "Rejected"
        else:
            rejection_reason = None

        updated = replace(
            request,
            status=status,
            tx_hash=payout_hash,
            rejection_reason=rejection_reason,
            error_message=error_message,
            processed_at=self._now() if status.is_terminal else request.processed_at,
        )
        await self.db.upsert_withdrawal(updated)
        self._tracker_for_withdrawal(updated).observe_request(updated)

        if status is WithdrawalStatus.COMPLETED:
            await self._apply_withdrawal(updated)

        logger.info(f"Withdrawal {withdrawal_id}: {request.status.value} -> {status.value}")
        await self._emit_withdrawal(updated)
        return updated

    async def _apply_withdrawal(self, request: WithdrawalRequest) -> None:
        if not request.position_id:
            return
        position = await self.db.get_position(request.position_id)
        if position is None:
            return
        remaining = position.amount - request.amount
        if request.type is WithdrawalType.FULL or remaining <= 0:
            position = replace(position, status="withdrawn")
        else:
            position = replace(position, amount=remaining)
        await self.db.upsert_position(position)
        self.reconciliation.invalidate(request.wallet_address)

    async def check_payout(self, withdrawal_id: str) -> WithdrawalProgress:
        """Poll ledger finality of a withdrawal's payout transaction."""
        request = await self.db.get_withdrawal(withdrawal_id)
        if request is None:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        tracker = self._tracker_for_withdrawal(request)
        if not request.tx_hash or request.status.is_terminal:
            return tracker.snapshot()

        try:
            status = await self.ledger_reader.get_transaction(request.tx_hash)
        except OrchestratorError as e:
            logger.warning(f"Could not check payout {request.tx_hash[:16]}: {e}")
            return tracker.snapshot()

        tracker.observe_payout_status(status)
        if status is LedgerTxStatus.VALIDATED:
            await self.update_withdrawal(withdrawal_id, WithdrawalStatus.COMPLETED)
        elif status is LedgerTxStatus.FAILED:
            await self.update_withdrawal(
                withdrawal_id, WithdrawalStatus.FAILED, error_message="Ledger payout transaction failed"
            )
        return tracker.snapshot()

    async def get_withdrawal(self, withdrawal_id: str) -> Tuple[WithdrawalRequest, WithdrawalProgress]:
        request = await self.db.get_withdrawal(withdrawal_id)
        if request is None:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        tracker = self._tracker_for_withdrawal(request)
        tracker.observe_request(request)
        return request, tracker.snapshot()

    async def list_withdrawals(self, wallet_address: str) -> List[Tuple[WithdrawalRequest, WithdrawalProgress]]:
        if not wallet_address or not wallet_address.strip():
            raise WalletRequired("Wallet address required")
        results = []
        for request in await self.db.list_withdrawals(wallet_address):
            tracker = self._tracker_for_withdrawal(request)
            tracker.observe_request(request)
            results.append((request, tracker.snapshot()))
        return results

    def dismiss_withdrawal(self, withdrawal_id: str) -> WithdrawalProgress:
        """Clear the UI-facing state of a finished withdrawal.

        Raises:
            NotFound: If no tracker exists for the withdrawal
            TrackerNotDismissible: While the withdrawal is still in flight
        """
        tracker = self._withdrawal_trackers.get(withdrawal_id)
        if tracker is None:
            raise NotFound(f"Withdrawal {withdrawal_id} not tracked")
        tracker.dismiss()
        return tracker.snapshot()

    def _tracker_for_withdrawal(self, request: WithdrawalRequest) -> WithdrawalTracker:
        tracker = self._withdrawal_trackers.get(request.id)
        if tracker is None:
            tracker = WithdrawalTracker(
                request,
                stage_ceilings={LifecycleStage.SENDING: self.config.withdrawal_delay_ceiling},
                clock=self.scheduler.now,
            )
            self._withdrawal_trackers[request.id] = tracker
        return tracker

    async def _emit_withdrawal(self, request: WithdrawalRequest) -> None:
        progress = self._tracker_for_withdrawal(request).snapshot()
        await self._emit({
            "type": "withdrawal_update",
            "withdrawal_id": request.id,
            "wallet_address": request.wallet_address,
            "status": request.status.value,
            "stage": progress.stage.value,
            "progress": progress.progress,
            "tx_hash": request.tx_hash,
        })
