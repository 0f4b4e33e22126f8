"""Shared dependencies for API routes."""

import logging
from typing import Optional
from fastapi import HTTPException

from core.errors import (
    CancellationRefused,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    OrchestratorError,
    ReconciliationTimeout,
    TrackerNotDismissible,
    WalletRequired,
)
from orchestrator import Orchestrator

logger = logging.getLogger(__name__)

# Global orchestrator instance
_orchestrator: Optional[Orchestrator] = None


def set_orchestrator(orchestrator: Optional[Orchestrator]) -> None:
    """Set the global orchestrator instance."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> Orchestrator:
    """Get the orchestrator instance dependency."""
    if not _orchestrator:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return _orchestrator


def http_error(error: OrchestratorError) -> HTTPException:
    """Map an orchestrator error onto an HTTP error."""
    if isinstance(error, (InvalidAmount, WalletRequired)):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, NotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (CancellationRefused, InvalidTransition, TrackerNotDismissible)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ReconciliationTimeout):
        return HTTPException(status_code=504, detail=str(error))
    logger.error(f"Unhandled orchestrator error: {error}")
    return HTTPException(status_code=500, detail=str(error))


def current_orchestrator() -> Optional[Orchestrator]:
    """Orchestrator instance, or None before startup. For WebSocket handlers."""
    return _orchestrator
