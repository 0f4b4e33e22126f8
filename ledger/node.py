"""XRPL JSON-RPC client for ledger balance and transaction lookups."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp

from core.errors import OrchestratorError, RPCError
from units import LEDGER_DECIMALS, from_base_units

logger = logging.getLogger(__name__)


class LedgerNetwork(Enum):
    """XRPL network types."""
    MAINNET = "mainnet"
    TESTNET = "testnet"


class LedgerTxStatus(Enum):
    """Finality of a ledger transaction."""
    NOT_FOUND = "not_found"
    PENDING = "pending"  # seen but not in a validated ledger yet
    VALIDATED = "validated"
    FAILED = "failed"  # validated with a non-tesSUCCESS result


@dataclass
class LedgerNodeConfig:
    """Configuration for an XRPL JSON-RPC connection."""
    rpc_url: str
    network: LedgerNetwork = LedgerNetwork.TESTNET
    timeout: float = 30.0


class LedgerReader(ABC):
    """Read access to the source ledger."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def get_balance(self, address: str) -> Decimal:
        """Native balance of an account in ledger units."""

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> LedgerTxStatus:
        """Finality status of a transaction."""


class XrplNode(LedgerReader):
    """Reads the XRP Ledger through a rippled JSON-RPC endpoint."""

    def __init__(self, config: LedgerNodeConfig):
        """Create a new XRPL RPC client.

        Args:
            config: Configuration for the rippled connection
        """
        self.config = config
        self._session: Optional[aiohttp.ClientSession] = None
        logger.info(f"Initializing XRPL RPC client at {config.rpc_url}")

    async def start(self) -> None:
        """Open the HTTP session."""
        if self._session:
            logger.info("Already connected to rippled")
            return
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        self._session = aiohttp.ClientSession(timeout=timeout)
        logger.info(f"Connected to rippled ({self.config.network.value})")

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Disconnected from rippled")

    async def _rpc_call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make a JSON-RPC call to rippled.

        Args:
            method: RPC method name
            params: Parameters object for the call

        Returns:
            The ``result`` object of the response

        Raises:
            OrchestratorError: If the session is not initialized
            RPCError: If the call fails or returns an error
        """
        if not self._session:
            raise OrchestratorError("Session not initialized - call start() first")

        request_body = {
            "method": method,
            "params": [params or {}],
        }

        try:
            async with self._session.post(self.config.rpc_url, json=request_body) as response:
                response_data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RPCError("Failed to send RPC request", method=method, details=str(e))

        result = response_data.get("result")
        if not isinstance(result, dict):
            raise RPCError("Missing result in RPC response", method=method)

        if result.get("status") == "error":
            raise RPCError(
                str(result.get("error", "unknown")),
                method=method,
                details=str(result.get("error_message", "")),
            )

        return result

    async def get_balance(self, address: str) -> Decimal:
        """Get validated XRP balance.

        Args:
            address: Classic XRPL address ("r...")

        Returns:
            Balance in XRP
        """
        result = await self._rpc_call(
            "account_info",
            {"account": address, "ledger_index": "validated"},
        )
        drops = int(result["account_data"]["Balance"])
        return from_base_units(drops, LEDGER_DECIMALS)

    async def get_transaction(self, tx_hash: str) -> LedgerTxStatus:
        """Get finality status of a transaction.

        Args:
            tx_hash: Transaction hash

        Returns:
            LedgerTxStatus
        """
        try:
            result = await self._rpc_call("tx", {"transaction": tx_hash, "binary": False})
        except RPCError as e:
            if "txnNotFound" in str(e):
                return LedgerTxStatus.NOT_FOUND
            raise

        if not result.get("validated"):
            return LedgerTxStatus.PENDING

        outcome = result.get("meta", {}).get("TransactionResult")
        if outcome == "tesSUCCESS":
            return LedgerTxStatus.VALIDATED
        logger.warning(f"Transaction {tx_hash[:16]}... validated with {outcome}")
        return LedgerTxStatus.FAILED

    async def __aenter__(self) -> "XrplNode":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()


class MockLedgerReader(LedgerReader):
    """In-memory ledger for demo mode and tests."""

    def __init__(self):
        self.balances: Dict[str, Decimal] = {}
        self.transactions: Dict[str, LedgerTxStatus] = {}
        self.failing = False

    async def get_balance(self, address: str) -> Decimal:
        if self.failing:
            raise RPCError("Simulated ledger outage", method="account_info")
        return self.balances.get(address, Decimal("0"))

    async def get_transaction(self, tx_hash: str) -> LedgerTxStatus:
        if self.failing:
            raise RPCError("Simulated ledger outage", method="tx")
        return self.transactions.get(tx_hash, LedgerTxStatus.NOT_FOUND)
