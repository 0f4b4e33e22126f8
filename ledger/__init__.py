"""XRP Ledger integration via rippled JSON-RPC."""

from ledger.node import (
    LedgerNetwork,
    LedgerNodeConfig,
    LedgerReader,
    LedgerTxStatus,
    MockLedgerReader,
    XrplNode,
)

__all__ = [
    "LedgerNetwork",
    "LedgerNodeConfig",
    "LedgerReader",
    "LedgerTxStatus",
    "MockLedgerReader",
    "XrplNode",
]
