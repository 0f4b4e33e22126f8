"""Vault contract reads on the smart-contract chain."""

from vault.reader import ChainReader, MockChainReader, RpcChainReader, VaultHolding

__all__ = [
    "ChainReader",
    "MockChainReader",
    "RpcChainReader",
    "VaultHolding",
]
