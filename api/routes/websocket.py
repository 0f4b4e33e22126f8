"""WebSocket endpoint for real-time updates."""

import json
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.dependencies import current_orchestrator
from store import wallet_key

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


class ConnectionManager:
    """Track WebSocket clients and the wallets each one watches.

    A client that watches no wallet receives every event; one that watches
    wallets only receives events carrying one of those wallets.
    """

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.watched: Dict[WebSocket, Set[str]] = {}
        self._unwatch: Dict[WebSocket, List[Callable[[], None]]] = {}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        self.watched.pop(websocket, None)
        for unwatch in self._unwatch.pop(websocket, []):
            unwatch()
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    def watch(self, websocket: WebSocket, wallet_address: str, unwatch: Callable[[], None]) -> bool:
        """Register interest in a wallet. Returns False if already watched."""
        wallets = self.watched.setdefault(websocket, set())
        wallet = wallet_key(wallet_address)
        if wallet in wallets:
            unwatch()
            return False
        wallets.add(wallet)
        self._unwatch.setdefault(websocket, []).append(unwatch)
        return True

    def _wants(self, websocket: WebSocket, message: dict) -> bool:
        wallets = self.watched.get(websocket)
        wallet = message.get("wallet_address")
        if not wallets or not wallet:
            return True
        return wallet_key(wallet) in wallets

    async def broadcast(self, message: dict):
        """Send an orchestrator event to every interested client."""
        for connection in list(self.active_connections):
            if not self._wants(connection, message):
                continue
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error broadcasting to client: {e}")
                self.disconnect(connection)


# Global connection manager
manager = ConnectionManager()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return None


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time updates.

    Clients receive ``bridge_job_update``, ``withdrawal_update`` and
    ``positions_update`` messages. Sending ``{"type": "watch", "wallet_address": ...}``
    narrows delivery to that wallet and keeps its positions refreshing; any other
    message is answered with a pong.
    """
    await manager.connect(websocket)
    try:
        while True:
            message = _parse(await websocket.receive_text())
            if isinstance(message, dict) and message.get("type") == "watch" and message.get("wallet_address"):
                orchestrator = current_orchestrator()
                if orchestrator is None:
                    await websocket.send_json({"type": "error", "detail": "Orchestrator not initialized"})
                    continue
                wallet = message["wallet_address"]
                manager.watch(websocket, wallet, orchestrator.watch_wallet(wallet))
                await websocket.send_json({"type": "watching", "wallet_address": wallet, "timestamp": _timestamp()})
            else:
                await websocket.send_json({"type": "pong", "timestamp": _timestamp()})
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        manager.disconnect(websocket)
