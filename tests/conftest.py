"""
Shared fixtures for orchestrator tests.

All collaborators are the in-memory variants and time is driven by
ManualScheduler, so nothing here touches the network or sleeps.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

from bridge_client import MockBridgeClient
from config import OrchestratorConfig
from core.types import BridgeJob, BridgeJobStatus, Position, Vault
from database import OrchestratorDatabase
from ledger.node import MockLedgerReader
from orchestrator import DEFAULT_VAULT_ID, Orchestrator
from prices import StaticPriceSource
from reconciliation import PositionReconciliationService
from scheduler import ManualScheduler
from store import SnapshotStore
from vault.reader import MockChainReader

EVM_WALLET = "0xAbC0000000000000000000000000000000000001"
XRPL_WALLET = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class WallClock:
    """Settable wall clock."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


async def eventually(check, timeout: float = 2.0, interval: float = 0.01):
    """Wait for background work that goes through the db executor.

    ``check`` may be a plain or async callable; its first truthy result is returned.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = check()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


def make_job(
    job_id: str = "job-1",
    status: BridgeJobStatus = BridgeJobStatus.QUEUED,
    wallet_address: str = EVM_WALLET,
    requested: str = "25",
    rounded: str = "20",
    created_at: datetime = T0,
    updated_at: Optional[datetime] = None,
    **fields,
) -> BridgeJob:
    return BridgeJob(
        id=job_id,
        wallet_address=wallet_address,
        source_chain="xrpl",
        dest_chain="flare",
        amount_requested=Decimal(requested),
        amount_rounded=Decimal(rounded),
        status=status,
        created_at=created_at,
        updated_at=updated_at or created_at,
        vault_id=fields.pop("vault_id", DEFAULT_VAULT_ID),
        **fields,
    )


def make_position(
    position_id: str = "pos-1",
    amount: str = "100.000000",
    wallet_address: str = EVM_WALLET,
    vault_id: str = DEFAULT_VAULT_ID,
    created_at: datetime = T0,
    **fields,
) -> Position:
    return Position(
        id=position_id,
        wallet_address=wallet_address,
        vault_id=vault_id,
        amount=Decimal(amount),
        rewards=fields.pop("rewards", Decimal("0")),
        status=fields.pop("status", "active"),
        created_at=created_at,
        **fields,
    )


FXRP_VAULT = Vault(
    id=DEFAULT_VAULT_ID,
    name="FXRP Vault",
    asset="FXRP",
    apy=Decimal("6.2"),
    address="0x00000000000000000000000000000000000000f1",
    verifiable=True,
)

FLR_VAULT = Vault(id="vault-flr", name="FLR Vault", asset="FLR", apy=Decimal("3.1"), verifiable=False)


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def store(scheduler):
    return SnapshotStore(clock=scheduler.now)


@pytest.fixture
def bridge(wall_clock):
    return MockBridgeClient(now=wall_clock)


@pytest.fixture
def chain():
    return MockChainReader()


@pytest.fixture
def ledger():
    return MockLedgerReader()


@pytest.fixture
def prices():
    return StaticPriceSource({"XRP": Decimal("2.50"), "FLR": Decimal("0.02")})


@pytest_asyncio.fixture
async def db():
    database = OrchestratorDatabase(":memory:")
    await database.start()
    await database.upsert_vault(FXRP_VAULT)
    await database.upsert_vault(FLR_VAULT)
    yield database
    await database.stop()


@pytest.fixture
def reconciliation(db, chain, prices, store, ledger, wall_clock):
    return PositionReconciliationService(
        db=db,
        chain_reader=chain,
        price_source=prices,
        store=store,
        ledger_reader=ledger,
        timeout=5.0,
        now=wall_clock,
    )


@pytest.fixture
def config():
    return OrchestratorConfig(
        client_mode="mock",
        database_path=":memory:",
        lot_size_uba=10_000_000,
        minting_decimals=6,
    )


@pytest_asyncio.fixture
async def orchestrator(config, bridge, chain, ledger, prices, db, scheduler, wall_clock):
    instance = Orchestrator(
        config,
        bridge_client=bridge,
        chain_reader=chain,
        ledger_reader=ledger,
        price_source=prices,
        db=db,
        scheduler=scheduler,
        now=wall_clock,
    )
    await instance.start()
    yield instance
    await instance.stop()
