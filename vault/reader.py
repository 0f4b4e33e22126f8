"""Read-only access to ERC-4626 vault and token balances on the smart-contract chain."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from core.errors import OrchestratorError, RPCError
from units import from_base_units

logger = logging.getLogger(__name__)

# 4-byte function selectors
SELECTOR_BALANCE_OF = "0x70a08231"  # balanceOf(address)
SELECTOR_DECIMALS = "0x313ce567"  # decimals()
SELECTOR_CONVERT_TO_ASSETS = "0x07a2d13a"  # convertToAssets(uint256)


@dataclass
class VaultHolding:
    """A wallet's holding in one vault."""
    shares: Decimal  # vault share balance
    amount: Decimal  # underlying assets redeemable for those shares


def _encode_address(address: str) -> str:
    raw = address.lower().replace("0x", "")
    if len(raw) != 40:
        raise ValueError(f"Invalid EVM address: {address}")
    return raw.rjust(64, "0")


def _encode_uint(value: int) -> str:
    return format(value, "x").rjust(64, "0")


class ChainReader(ABC):
    """Vault/chain reader."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def get_position(self, wallet_address: str, vault_id: str) -> VaultHolding:
        """Shares and underlying amount held by a wallet in a vault."""

    @abstractmethod
    async def get_balance(self, address: str, asset: str) -> Decimal:
        """Token balance of an address."""


class RpcChainReader(ChainReader):
    """Reads vault state with ``eth_call`` over JSON-RPC."""

    def __init__(
        self,
        rpc_url: str,
        vault_addresses: Optional[Dict[str, str]] = None,
        token_addresses: Optional[Dict[str, str]] = None,
        timeout: float = 15.0,
    ):
        """Create a new chain reader.

        Args:
            rpc_url: EVM JSON-RPC endpoint
            vault_addresses: vault id -> vault contract address
            token_addresses: asset symbol -> token contract address
            timeout: Total per-request timeout in seconds
        """
        self.rpc_url = rpc_url
        self.vault_addresses: Dict[str, str] = dict(vault_addresses or {})
        self.token_addresses: Dict[str, str] = {k.upper(): v for k, v in (token_addresses or {}).items()}
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._decimals: Dict[str, int] = {}
        self._request_id = 0

    async def start(self) -> None:
        if self._session:
            return
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )
        logger.info(f"Chain reader connected to {self.rpc_url}")

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Chain reader stopped")

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise OrchestratorError("Session not initialized - call start() first")

        self._request_id += 1
        request_body = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        try:
            async with self._session.post(self.rpc_url, json=request_body) as response:
                response_data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RPCError("Failed to send RPC request", method=method, details=str(e))

        if response_data.get("error"):
            error = response_data["error"]
            raise RPCError(str(error.get("message", error)), method=method, details=str(error))

        if "result" not in response_data:
            raise RPCError("Missing result in RPC response", method=method)

        return response_data["result"]

    async def _call_uint(self, contract: str, data: str) -> int:
        result = await self._rpc_call("eth_call", [{"to": contract, "data": data}, "latest"])
        if not result or result == "0x":
            raise RPCError("Empty eth_call result", method="eth_call", details=contract)
        return int(result, 16)

    async def _decimals_of(self, contract: str) -> int:
        if contract not in self._decimals:
            self._decimals[contract] = await self._call_uint(contract, SELECTOR_DECIMALS)
        return self._decimals[contract]

    def _vault_address(self, vault_id: str) -> str:
        address = self.vault_addresses.get(vault_id)
        if not address:
            raise RPCError("No contract address for vault", method="eth_call", details=vault_id)
        return address

    async def get_position(self, wallet_address: str, vault_id: str) -> VaultHolding:
        vault = self._vault_address(vault_id)
        share_units = await self._call_uint(
            vault, SELECTOR_BALANCE_OF + _encode_address(wallet_address)
        )
        decimals = await self._decimals_of(vault)
        asset_units = 0
        if share_units:
            asset_units = await self._call_uint(
                vault, SELECTOR_CONVERT_TO_ASSETS + _encode_uint(share_units)
            )
        return VaultHolding(
            shares=from_base_units(share_units, decimals),
            amount=from_base_units(asset_units, decimals),
        )

    async def get_balance(self, address: str, asset: str) -> Decimal:
        token = self.token_addresses.get(asset.upper())
        if not token:
            raise RPCError("No contract address for asset", method="eth_call", details=asset)
        units = await self._call_uint(token, SELECTOR_BALANCE_OF + _encode_address(address))
        return from_base_units(units, await self._decimals_of(token))


class MockChainReader(ChainReader):
    """In-memory chain for demo mode and tests."""

    def __init__(self):
        self.holdings: Dict[Tuple[str, str], VaultHolding] = {}
        self.balances: Dict[Tuple[str, str], Decimal] = {}
        self.failing_vaults: set = set()
        self.delay: float = 0.0

    def set_holding(self, wallet_address: str, vault_id: str, shares: Decimal, amount: Optional[Decimal] = None) -> None:
        self.holdings[(wallet_address.lower(), vault_id)] = VaultHolding(
            shares=shares, amount=shares if amount is None else amount
        )

    async def get_position(self, wallet_address: str, vault_id: str) -> VaultHolding:
        if self.delay:
            await asyncio.sleep(self.delay)
        if vault_id in self.failing_vaults:
            raise RPCError("Simulated chain outage", method="eth_call", details=vault_id)
        return self.holdings.get(
            (wallet_address.lower(), vault_id),
            VaultHolding(shares=Decimal("0"), amount=Decimal("0")),
        )

    async def get_balance(self, address: str, asset: str) -> Decimal:
        return self.balances.get((address.lower(), asset.upper()), Decimal("0"))
