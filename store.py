"""Process-scoped store of the latest known bridge job / position snapshots."""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

KIND_JOB = "job"
KIND_POSITION = "position"
KIND_SUMMARY = "summary"

StoreKey = Tuple[str, str, str]  # (wallet, kind, id)
Listener = Callable[[StoreKey, "Snapshot"], Any]
InvalidationHook = Callable[[str, Optional[str], Optional[str]], Any]


def wallet_key(wallet_address: str) -> str:
    """Canonical wallet key: EVM addresses are case-insensitive, XRPL ones are not."""
    address = wallet_address.strip()
    if address.lower().startswith("0x"):
        return address.lower()
    return address


@dataclass(frozen=True)
class Snapshot:
    """Latest accepted value for a key."""
    value: Any
    version: datetime  # source timestamp, e.g. BridgeJob.updated_at
    observed_at: float  # local monotonic time of acceptance
    stale: bool = False


class SnapshotStore:
    """Latest-snapshot cache keyed by ``(wallet, kind, id)``.

    Writes are last-writer-wins under a monotonic version guard: a value whose
    version is older than the stored one is discarded. Keys are never removed
    except through ``invalidate``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[StoreKey, Snapshot] = {}
        self._listeners: List[Listener] = []
        self._invalidation_hooks: List[InvalidationHook] = []

    def put(self, wallet_address: str, kind: str, ident: str, value: Any, version: datetime) -> bool:
        """Store a value if it is not older than the current one.

        Returns:
            True if accepted
        """
        key = (wallet_key(wallet_address), kind, ident)
        current = self._entries.get(key)
        if current is not None and version < current.version:
            logger.debug(
                f"Discarding out-of-order {kind} {ident[:16]} "
                f"(version {version.isoformat()} < {current.version.isoformat()})"
            )
            return False

        snapshot = Snapshot(value=value, version=version, observed_at=self._clock())
        self._entries[key] = snapshot
        self._notify(key, snapshot)
        return True

    def get(self, wallet_address: str, kind: str, ident: str) -> Optional[Snapshot]:
        return self._entries.get((wallet_key(wallet_address), kind, ident))

    def age(self, snapshot: Snapshot) -> float:
        """Seconds since a snapshot was accepted."""
        return self._clock() - snapshot.observed_at

    def values(self, wallet_address: str, kind: str) -> List[Snapshot]:
        wallet = wallet_key(wallet_address)
        return [
            snap for (w, k, _ident), snap in self._entries.items()
            if w == wallet and k == kind
        ]

    def mark_stale(self, wallet_address: str, kind: str, ident: str, stale: bool = True) -> None:
        key = (wallet_key(wallet_address), kind, ident)
        current = self._entries.get(key)
        if current is None or current.stale == stale:
            return
        snapshot = replace(current, stale=stale)
        self._entries[key] = snapshot
        self._notify(key, snapshot)

    def invalidate(self, wallet_address: str, kind: Optional[str] = None, ident: Optional[str] = None) -> int:
        """Drop cached entries for a wallet, optionally narrowed by kind and id.

        Returns:
            Number of entries removed
        """
        wallet = wallet_key(wallet_address)
        doomed = [
            key for key in self._entries
            if key[0] == wallet
            and (kind is None or key[1] == kind)
            and (ident is None or key[2] == ident)
        ]
        for key in doomed:
            del self._entries[key]

        for hook in list(self._invalidation_hooks):
            try:
                hook(wallet, kind, ident)
            except Exception as e:
                logger.error(f"Error in invalidation hook: {e}", exc_info=True)

        logger.debug(f"Invalidated {len(doomed)} entries for {wallet[:16]}")
        return len(doomed)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to accepted writes. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def add_invalidation_hook(self, hook: InvalidationHook) -> Callable[[], None]:
        self._invalidation_hooks.append(hook)
        return lambda: self._invalidation_hooks.remove(hook) if hook in self._invalidation_hooks else None

    def _notify(self, key: StoreKey, snapshot: Snapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, snapshot)
            except Exception as e:
                logger.error(f"Error in store listener: {e}", exc_info=True)
