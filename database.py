"""Database management for positions, bridge jobs and withdrawals."""

import sqlite3
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from pathlib import Path
import asyncio

from core.types import (
    BridgeJob,
    BridgeJobStatus,
    Position,
    Vault,
    WithdrawalRequest,
    WithdrawalStatus,
    WithdrawalType,
)
from store import wallet_key

logger = logging.getLogger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


class OrchestratorDatabase:
    """SQLite database for recorded positions, bridge jobs and withdrawals."""

    def __init__(self, db_path: str = "orchestrator.db"):
        """Initialize the database.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        logger.info(f"Initialized database at {db_path}")

    async def start(self) -> None:
        """Initialize database connection and create tables."""
        if self.conn:
            return
        # Run blocking DB operations in executor
        await asyncio.get_event_loop().run_in_executor(None, self._init_db)
        logger.info("Database started")

    def _init_db(self) -> None:
        """Internal: Initialize database connection and schema."""
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS vaults (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                asset TEXT NOT NULL,
                apy TEXT NOT NULL,
                address TEXT,
                verifiable INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS positions (
                id TEXT PRIMARY KEY,
                wallet_address TEXT NOT NULL,
                vault_id TEXT NOT NULL REFERENCES vaults(id),
                amount TEXT NOT NULL,
                rewards TEXT NOT NULL DEFAULT '0',
                status TEXT NOT NULL DEFAULT 'active',
                source_job_id TEXT,
                created_at TIMESTAMP NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_positions_wallet
                ON positions(wallet_address);

            CREATE TABLE IF NOT EXISTS bridge_jobs (
                id TEXT PRIMARY KEY,
                wallet_address TEXT NOT NULL,
                source_chain TEXT NOT NULL,
                dest_chain TEXT NOT NULL,
                amount_requested TEXT NOT NULL,
                amount_rounded TEXT NOT NULL,
                amount_shortfall TEXT NOT NULL,
                status TEXT NOT NULL,
                vault_id TEXT,
                source_tx_hash TEXT,
                dest_tx_hash TEXT,
                agent_reference TEXT,
                error_message TEXT,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                cancelled_at TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_bridge_jobs_wallet
                ON bridge_jobs(wallet_address);

            CREATE TABLE IF NOT EXISTS withdrawal_requests (
                id TEXT PRIMARY KEY,
                wallet_address TEXT NOT NULL,
                vault_id TEXT NOT NULL,
                position_id TEXT,
                type TEXT NOT NULL,
                amount TEXT NOT NULL,
                asset TEXT NOT NULL,
                status TEXT NOT NULL,
                requested_at TIMESTAMP NOT NULL,
                processed_at TIMESTAMP,
                tx_hash TEXT,
                rejection_reason TEXT,
                error_message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_withdrawals_wallet
                ON withdrawal_requests(wallet_address);
        """)
        self.conn.commit()

    async def stop(self) -> None:
        """Close database connection."""
        if self.conn:
            await asyncio.get_event_loop().run_in_executor(None, self.conn.close)
            self.conn = None
        logger.info("Database stopped")

    # Vaults

    async def upsert_vault(self, vault: Vault) -> None:
        def _save():
            self.conn.execute(
                """INSERT OR REPLACE INTO vaults (id, name, asset, apy, address, verifiable)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (vault.id, vault.name, vault.asset, str(vault.apy), vault.address, int(vault.verifiable))
            )
            self.conn.commit()

        await asyncio.get_event_loop().run_in_executor(None, _save)

    async def get_vault(self, vault_id: str) -> Optional[Vault]:
        def _get():
            row = self.conn.execute("SELECT * FROM vaults WHERE id = ?", (vault_id,)).fetchone()
            return self._row_to_vault(row) if row else None

        return await asyncio.get_event_loop().run_in_executor(None, _get)

    async def list_vaults(self) -> List[Vault]:
        def _list():
            rows = self.conn.execute("SELECT * FROM vaults ORDER BY id").fetchall()
            return [self._row_to_vault(row) for row in rows]

        return await asyncio.get_event_loop().run_in_executor(None, _list)

    # Positions

    async def list_positions(self, wallet_address: str) -> List[Position]:
        """Get all recorded positions for a wallet, newest first.

        Args:
            wallet_address: EVM or XRPL address

        Returns:
            Positions as recorded (no on-chain data)
        """
        def _list():
            rows = self.conn.execute(
                """SELECT * FROM positions WHERE wallet_address = ?
                   ORDER BY created_at DESC""",
                (wallet_key(wallet_address),)
            ).fetchall()
            return [self._row_to_position(row) for row in rows]

        return await asyncio.get_event_loop().run_in_executor(None, _list)

    async def get_position(self, position_id: str) -> Optional[Position]:
        def _get():
            row = self.conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
            return self._row_to_position(row) if row else None

        return await asyncio.get_event_loop().run_in_executor(None, _get)

    async def upsert_position(self, position: Position) -> None:
        """Insert or replace the recorded part of a position.

        Args:
            position: Position to persist; reconciliation fields are not stored
        """
        def _save():
            self.conn.execute(
                """INSERT OR REPLACE INTO positions
                   (id, wallet_address, vault_id, amount, rewards, status, source_job_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    position.id, wallet_key(position.wallet_address), position.vault_id,
                    str(position.amount), str(position.rewards), position.status,
                    position.source_job_id, _ts(position.created_at),
                )
            )
            self.conn.commit()

        await asyncio.get_event_loop().run_in_executor(None, _save)
        logger.debug(f"Saved position {position.id} for {position.wallet_address[:16]}")

    # Bridge jobs

    async def upsert_bridge_job(self, job: BridgeJob) -> None:
        """Save the latest snapshot of a bridge job.

        The payment hash and cancellation time are kept when the new snapshot
        does not carry them, since the bridge never reports a cancellation.
        """
        def _save():
            self.conn.execute(
                """INSERT INTO bridge_jobs
                   (id, wallet_address, source_chain, dest_chain, amount_requested,
                    amount_rounded, amount_shortfall, status, vault_id, source_tx_hash,
                    dest_tx_hash, agent_reference, error_message, created_at, updated_at,
                    cancelled_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    vault_id = excluded.vault_id,
                    source_tx_hash = COALESCE(excluded.source_tx_hash, bridge_jobs.source_tx_hash),
                    dest_tx_hash = excluded.dest_tx_hash,
                    agent_reference = excluded.agent_reference,
                    error_message = excluded.error_message,
                    updated_at = excluded.updated_at,
                    cancelled_at = COALESCE(excluded.cancelled_at, bridge_jobs.cancelled_at)""",
                (
                    job.id, wallet_key(job.wallet_address), job.source_chain, job.dest_chain,
                    str(job.amount_requested), str(job.amount_rounded), str(job.amount_shortfall),
                    job.status.value, job.vault_id, job.source_tx_hash, job.dest_tx_hash,
                    job.agent_reference, job.error_message,
                    _ts(job.created_at), _ts(job.updated_at), _ts(job.cancelled_at),
                )
            )
            self.conn.commit()

        await asyncio.get_event_loop().run_in_executor(None, _save)

    async def record_job_payment(self, job_id: str, tx_hash: str) -> None:
        """Keep the first ledger payment hash the wallet reported for a job."""
        def _save():
            self.conn.execute(
                "UPDATE bridge_jobs SET source_tx_hash = COALESCE(source_tx_hash, ?) WHERE id = ?",
                (tx_hash, job_id)
            )
            self.conn.commit()

        await asyncio.get_event_loop().run_in_executor(None, _save)

    async def mark_job_cancelled(self, job_id: str, cancelled_at: datetime) -> None:
        def _save():
            self.conn.execute(
                "UPDATE bridge_jobs SET cancelled_at = COALESCE(cancelled_at, ?) WHERE id = ?",
                (_ts(cancelled_at), job_id)
            )
            self.conn.commit()

        await asyncio.get_event_loop().run_in_executor(None, _save)

    async def get_bridge_job(self, job_id: str) -> Optional[BridgeJob]:
        def _get():
            row = self.conn.execute("SELECT * FROM bridge_jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row) if row else None

        return await asyncio.get_event_loop().run_in_executor(None, _get)

    async def list_bridge_jobs(self, wallet_address: str) -> List[BridgeJob]:
        def _list():
            rows = self.conn.execute(
                """SELECT * FROM bridge_jobs WHERE wallet_address = ?
                   ORDER BY created_at DESC""",
                (wallet_key(wallet_address),)
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

        return await asyncio.get_event_loop().run_in_executor(None, _list)

    async def list_open_bridge_jobs(self) -> List[BridgeJob]:
        """Jobs neither finished nor cancelled, for resuming polling."""
        terminal = [s.value for s in BridgeJobStatus if s.is_terminal]

        def _list():
            rows = self.conn.execute(
                f"""SELECT * FROM bridge_jobs
                    WHERE status NOT IN ({", ".join("?" for _ in terminal)})
                    AND cancelled_at IS NULL
                    ORDER BY created_at""",
                terminal
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

        return await asyncio.get_event_loop().run_in_executor(None, _list)

    async def get_position_for_job(self, job_id: str) -> Optional[Position]:
        def _get():
            row = self.conn.execute(
                "SELECT * FROM positions WHERE source_job_id = ?", (job_id,)
            ).fetchone()
            return self._row_to_position(row) if row else None

        return await asyncio.get_event_loop().run_in_executor(None, _get)

    # Withdrawals

    async def upsert_withdrawal(self, request: WithdrawalRequest) -> None:
        def _save():
            self.conn.execute(
                """INSERT OR REPLACE INTO withdrawal_requests
                   (id, wallet_address, vault_id, position_id, type, amount, asset, status,
                    requested_at, processed_at, tx_hash, rejection_reason, error_message)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    request.id, wallet_key(request.wallet_address), request.vault_id,
                    request.position_id, request.type.value, str(request.amount), request.asset,
                    request.status.value, _ts(request.requested_at), _ts(request.processed_at),
                    request.tx_hash, request.rejection_reason, request.error_message,
                )
            )
            self.conn.commit()

        await asyncio.get_event_loop().run_in_executor(None, _save)

    async def get_withdrawal(self, withdrawal_id: str) -> Optional[WithdrawalRequest]:
        def _get():
            row = self.conn.execute(
                "SELECT * FROM withdrawal_requests WHERE id = ?", (withdrawal_id,)
            ).fetchone()
            return self._row_to_withdrawal(row) if row else None

        return await asyncio.get_event_loop().run_in_executor(None, _get)

    async def list_withdrawals(self, wallet_address: str) -> List[WithdrawalRequest]:
        def _list():
            rows = self.conn.execute(
                """SELECT * FROM withdrawal_requests WHERE wallet_address = ?
                   ORDER BY requested_at DESC""",
                (wallet_key(wallet_address),)
            ).fetchall()
            return [self._row_to_withdrawal(row) for row in rows]

        return await asyncio.get_event_loop().run_in_executor(None, _list)

    # Row mapping

    @staticmethod
    def _row_to_vault(row: sqlite3.Row) -> Vault:
        return Vault(
            id=row["id"],
            name=row["name"],
            asset=row["asset"],
            apy=Decimal(row["apy"]),
            address=row["address"],
            verifiable=bool(row["verifiable"]),
        )

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> Position:
        return Position(
            id=row["id"],
            wallet_address=row["wallet_address"],
            vault_id=row["vault_id"],
            amount=Decimal(row["amount"]),
            rewards=Decimal(row["rewards"]),
            status=row["status"],
            created_at=_dt(row["created_at"]),
            source_job_id=row["source_job_id"],
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> BridgeJob:
        return BridgeJob(
            id=row["id"],
            wallet_address=row["wallet_address"],
            source_chain=row["source_chain"],
            dest_chain=row["dest_chain"],
            amount_requested=Decimal(row["amount_requested"]),
            amount_rounded=Decimal(row["amount_rounded"]),
            amount_shortfall=_dec(row["amount_shortfall"]),
            status=BridgeJobStatus(row["status"]),
            vault_id=row["vault_id"],
            source_tx_hash=row["source_tx_hash"],
            dest_tx_hash=row["dest_tx_hash"],
            agent_reference=row["agent_reference"],
            error_message=row["error_message"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            cancelled_at=_dt(row["cancelled_at"]),
        )

    @staticmethod
    def _row_to_withdrawal(row: sqlite3.Row) -> WithdrawalRequest:
        return WithdrawalRequest(
            id=row["id"],
            wallet_address=row["wallet_address"],
            vault_id=row["vault_id"],
            position_id=row["position_id"],
            type=WithdrawalType(row["type"]),
            amount=Decimal(row["amount"]),
            asset=row["asset"],
            status=WithdrawalStatus(row["status"]),
            requested_at=_dt(row["requested_at"]),
            processed_at=_dt(row["processed_at"]),
            tx_hash=row["tx_hash"],
            rejection_reason=row["rejection_reason"],
            error_message=row["error_message"],
        )
