"""Deposit-related API endpoints."""

import logging
from fastapi import APIRouter, Depends

from api.dependencies import get_orchestrator, http_error
from api.models import (
    DepositRequest,
    DepositStatusResponse,
    PaymentRequest,
    QuoteRequest,
    QuoteResponse,
)
from core.errors import OrchestratorError
from orchestrator import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deposits", tags=["deposits"])


@router.post("/quote", response_model=QuoteResponse)
async def quote_deposit(
    request: QuoteRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Preview how a deposit amount rounds to whole bridge lots.

    Frontend calls this before asking the user to sign.
    """
    try:
        return QuoteResponse.from_rounding(orchestrator.quote(request.amount))
    except OrchestratorError as e:
        raise http_error(e)


@router.post("", response_model=DepositStatusResponse)
async def create_deposit(
    request: DepositRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Reserve a bridge job and start tracking the deposit."""
    try:
        job = await orchestrator.initiate_deposit(request.wallet_address, request.amount, request.vault_id)
        job, progress = await orchestrator.get_deposit(job.id)
        return DepositStatusResponse.build(job, progress)
    except OrchestratorError as e:
        logger.error(f"Failed to create deposit: {e}")
        raise http_error(e)


@router.get("/{job_id}", response_model=DepositStatusResponse)
async def get_deposit_status(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Get the bridge job and deposit stage.

    Frontend polls this to drive the progress modal.
    """
    try:
        job, progress = await orchestrator.get_deposit(job_id)
        return DepositStatusResponse.build(job, progress)
    except OrchestratorError as e:
        raise http_error(e)


@router.post("/{job_id}/payment", response_model=DepositStatusResponse)
async def record_payment(
    job_id: str,
    request: PaymentRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Register the ledger payment the wallet broadcast for a job."""
    try:
        await orchestrator.record_payment(job_id, request.tx_hash)
        job, progress = await orchestrator.get_deposit(job_id)
        return DepositStatusResponse.build(job, progress)
    except OrchestratorError as e:
        raise http_error(e)


@router.post("/{job_id}/cancel", response_model=DepositStatusResponse)
async def cancel_deposit(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Abort a deposit whose payment has not been broadcast."""
    try:
        await orchestrator.cancel_deposit(job_id)
        job, progress = await orchestrator.get_deposit(job_id)
        return DepositStatusResponse.build(job, progress)
    except OrchestratorError as e:
        raise http_error(e)
