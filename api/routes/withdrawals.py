"""Withdrawal-related API endpoints."""

import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_orchestrator, http_error
from api.models import (
    WithdrawalCreateRequest,
    WithdrawalRejectRequest,
    WithdrawalStatusModel,
    WithdrawalUpdateRequest,
)
from core.errors import OrchestratorError
from core.types import WithdrawalStatus
from orchestrator import Orchestrator
from store import wallet_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["withdrawals"])


@router.post("/withdrawals", response_model=WithdrawalStatusModel)
async def create_withdrawal(
    request: WithdrawalCreateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Request a withdrawal from a position."""
    try:
        created = await orchestrator.request_withdrawal(
            request.wallet_address,
            request.amount,
            position_id=request.position_id,
            vault_id=request.vault_id,
        )
        withdrawal, progress = await orchestrator.get_withdrawal(created.id)
        return WithdrawalStatusModel.build(withdrawal, progress)
    except OrchestratorError as e:
        logger.error(f"Failed to create withdrawal: {e}")
        raise http_error(e)


@router.get("/withdrawals/{wallet_address}", response_model=List[WithdrawalStatusModel])
async def get_withdrawals(
    wallet_address: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Get withdrawal history for a wallet.

    Frontend calls this to show pending and past withdrawals.
    """
    try:
        withdrawals = await orchestrator.list_withdrawals(wallet_address)
        return [WithdrawalStatusModel.build(request, progress) for request, progress in withdrawals]
    except OrchestratorError as e:
        raise http_error(e)


@router.get("/withdrawals/{wallet_address}/{withdrawal_id}", response_model=WithdrawalStatusModel)
async def get_withdrawal_status(
    wallet_address: str,
    withdrawal_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Get status of a specific withdrawal.

    Frontend polls this to drive the withdrawal progress modal.
    """
    try:
        await orchestrator.check_payout(withdrawal_id)
        withdrawal, progress = await orchestrator.get_withdrawal(withdrawal_id)
    except OrchestratorError as e:
        raise http_error(e)

    if wallet_key(withdrawal.wallet_address) != wallet_key(wallet_address):
        raise HTTPException(status_code=404, detail=f"Withdrawal {withdrawal_id} not found")
    return WithdrawalStatusModel.build(withdrawal, progress)


@router.post("/withdrawals/{wallet_address}/{withdrawal_id}/dismiss", response_model=WithdrawalStatusModel)
async def dismiss_withdrawal(
    wallet_address: str,
    withdrawal_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Clear a finished withdrawal from the progress view."""
    try:
        withdrawal, _ = await orchestrator.get_withdrawal(withdrawal_id)
        if wallet_key(withdrawal.wallet_address) != wallet_key(wallet_address):
            raise HTTPException(status_code=404, detail=f"Withdrawal {withdrawal_id} not found")
        progress = orchestrator.dismiss_withdrawal(withdrawal_id)
        return WithdrawalStatusModel.build(withdrawal, progress)
    except OrchestratorError as e:
        raise http_error(e)


async def _apply_status(
    orchestrator: Orchestrator,
    withdrawal_id: str,
    status: WithdrawalStatus,
    **fields,
) -> WithdrawalStatusModel:
    try:
        await orchestrator.update_withdrawal(withdrawal_id, status, **fields)
        withdrawal, progress = await orchestrator.get_withdrawal(withdrawal_id)
        return WithdrawalStatusModel.build(withdrawal, progress)
    except OrchestratorError as e:
        logger.error(f"Failed to update withdrawal {withdrawal_id}: {e}")
        raise http_error(e)


@router.patch("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalStatusModel)
async def approve_withdrawal(
    withdrawal_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Accept a pending withdrawal for processing."""
    return await _apply_status(orchestrator, withdrawal_id, WithdrawalStatus.APPROVED)


@router.patch("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalStatusModel)
async def reject_withdrawal(
    withdrawal_id: str,
    request: WithdrawalRejectRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    return await _apply_status(
        orchestrator, withdrawal_id, WithdrawalStatus.REJECTED, rejection_reason=request.reason,
    )


@router.patch("/withdrawals/{withdrawal_id}", response_model=WithdrawalStatusModel)
async def update_withdrawal(
    withdrawal_id: str,
    request: WithdrawalUpdateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Record progress of withdrawal processing.

    The payout service reports ``processing`` with the ledger ``tx_hash`` once
    the payout is broadcast; completion is normally detected by polling the
    withdrawal status, which checks ledger finality of that hash.
    """
    try:
        status = WithdrawalStatus(request.status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown withdrawal status: {request.status}")

    return await _apply_status(
        orchestrator,
        withdrawal_id,
        status,
        tx_hash=request.tx_hash,
        rejection_reason=request.rejection_reason,
        error_message=request.error_message,
    )
