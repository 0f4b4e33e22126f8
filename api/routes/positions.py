"""Position and activity endpoints."""

import logging
from fastapi import APIRouter, Depends

from api.dependencies import get_orchestrator, http_error
from api.models import ActivityResponse, PendingActivityModel, PositionModel, PositionsResponse
from core.errors import OrchestratorError
from core.types import Position
from orchestrator import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["positions"])


@router.get("/positions/{wallet_address}", response_model=PositionsResponse)
async def get_positions(
    wallet_address: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Get reconciled positions for a wallet.

    Each position carries ``balance_verified`` (true / false / null) and,
    when false, the signed ``discrepancy``.
    """
    try:
        summary = await orchestrator.get_positions(wallet_address)
        return PositionsResponse.from_summary(summary)
    except OrchestratorError as e:
        raise http_error(e)


@router.get("/activity/{wallet_address}", response_model=ActivityResponse)
async def get_activity(
    wallet_address: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Get pending bridge activity and settled positions, most recent first.

    Frontend calls this to render the portfolio/activity list.
    """
    try:
        view = await orchestrator.get_activity(wallet_address)
    except OrchestratorError as e:
        raise http_error(e)

    items = [
        PositionModel.from_position(item) if isinstance(item, Position)
        else PendingActivityModel.from_activity(item)
        for item in view.items
    ]
    return ActivityResponse(wallet_address=view.wallet_address, items=items, stale=view.stale)
