"""Clients for the bridge job/status endpoint."""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import aiohttp

from core.errors import NotFound, OrchestratorError, PollFailure, RPCError
from core.types import BridgeJob, BridgeJobStatus
from units import LotRounding

logger = logging.getLogger(__name__)

SOURCE_CHAIN = "xrpl"
DEST_CHAIN = "flare"

# Detailed backend statuses collapsed onto the job status vocabulary
BACKEND_STATUS_MAP: Dict[str, BridgeJobStatus] = {
    "queued": BridgeJobStatus.QUEUED,
    "pending": BridgeJobStatus.QUEUED,
    "reserving": BridgeJobStatus.RESERVING,
    "reserving_collateral": BridgeJobStatus.RESERVING,
    "awaiting_payment": BridgeJobStatus.AWAITING_PAYMENT,
    "bridging": BridgeJobStatus.AWAITING_PAYMENT,
    "paid": BridgeJobStatus.PAID,
    "xrpl_confirmed": BridgeJobStatus.PAID,
    "generating_proof": BridgeJobStatus.PAID,
    "proof_generated": BridgeJobStatus.PAID,
    "fdc_proof_generated": BridgeJobStatus.PAID,
    "minting": BridgeJobStatus.MINTING,
    "vault_minting": BridgeJobStatus.MINTING,
    "minted": BridgeJobStatus.MINTED,
    "vault_minted": BridgeJobStatus.MINTED,
    "completed": BridgeJobStatus.MINTED,
    "failed": BridgeJobStatus.FAILED,
    "vault_mint_failed": BridgeJobStatus.FAILED,
    "cancelled": BridgeJobStatus.FAILED,
    "expired": BridgeJobStatus.EXPIRED,
    "fdc_timeout": BridgeJobStatus.EXPIRED,
}


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # Backend sends epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def job_from_dict(data: Dict[str, Any]) -> BridgeJob:
    """Build a BridgeJob from a backend JSON payload.

    Raises:
        RPCError: If the payload is malformed or carries an unknown status
    """
    try:
        raw_status = str(data["status"])
        status = BACKEND_STATUS_MAP.get(raw_status)
        if status is None:
            raise RPCError(f"Unknown bridge status {raw_status!r}", method="job")

        requested = Decimal(str(data.get("amountRequested") or data["xrpAmount"]))
        rounded = Decimal(str(data.get("amountRounded") or requested))
        created_at = _parse_time(data["createdAt"])

        return BridgeJob(
            id=str(data["id"]),
            wallet_address=data["walletAddress"],
            source_chain=data.get("sourceChain", SOURCE_CHAIN),
            dest_chain=data.get("destChain", DEST_CHAIN),
            amount_requested=requested,
            amount_rounded=rounded,
            status=status,
            created_at=created_at,
            updated_at=_parse_time(data.get("updatedAt") or created_at),
            vault_id=data.get("vaultId"),
            source_tx_hash=data.get("sourceTxHash") or data.get("xrplTxHash"),
            dest_tx_hash=data.get("destTxHash") or data.get("flareTxHash"),
            agent_reference=data.get("agentReference") or data.get("paymentReference"),
            error_message=data.get("errorMessage"),
        )
    except RPCError:
        raise
    except (KeyError, ValueError, ArithmeticError) as e:
        raise RPCError("Malformed bridge job payload", method="job", details=str(e))


class BridgeClient(ABC):
    """Bridge status endpoint."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> BridgeJob:
        """Fetch the latest snapshot of a job.

        Raises:
            PollFailure: On transient transport or backend errors
            NotFound: If the job does not exist
        """

    @abstractmethod
    async def reserve(self, wallet_address: str, rounding: LotRounding, vault_id: Optional[str] = None) -> BridgeJob:
        """Create a bridge job for a lot-rounded amount."""


class HttpBridgeClient(BridgeClient):
    """Bridge backend reached over HTTP."""

    def __init__(self, base_url: str, timeout: float = 15.0):
        """Create a new bridge HTTP client.

        Args:
            base_url: Root URL of the bridge backend
            timeout: Total per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        logger.info(f"Initializing bridge client at {self.base_url}")

    async def start(self) -> None:
        if self._session:
            return
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Bridge client stopped")

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Make a JSON request to the bridge backend.

        Raises:
            OrchestratorError: If the session is not initialized
            NotFound: On HTTP 404
            RPCError: On any other failure
        """
        if not self._session:
            raise OrchestratorError("Session not initialized - call start() first")

        url = f"{self.base_url}{path}"
        try:
            async with self._session.request(method, url, json=payload) as response:
                if response.status == 404:
                    raise NotFound(f"{path} not found")
                if response.status >= 400:
                    text = await response.text()
                    raise RPCError(f"HTTP {response.status}", method=f"{method} {path}", details=text[:200])
                return await response.json()
        except (NotFound, RPCError):
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RPCError("Request failed", method=f"{method} {path}", details=str(e))

    async def get_job(self, job_id: str) -> BridgeJob:
        try:
            data = await self._request("GET", f"/api/bridges/{job_id}")
        except RPCError as e:
            raise PollFailure(str(e), job_id=job_id)
        return job_from_dict(data.get("bridge", data))

    async def reserve(self, wallet_address: str, rounding: LotRounding, vault_id: Optional[str] = None) -> BridgeJob:
        payload = {
            "walletAddress": wallet_address,
            "amountRequested": str(rounding.requested_amount),
            "amountRounded": rounding.formatted(),
            "lots": rounding.lots,
            "vaultId": vault_id,
        }
        data = await self._request("POST", "/api/bridges/reserve", payload)
        job = job_from_dict(data.get("bridge", data))
        logger.info(f"Reserved bridge job {job.id} for {wallet_address[:16]}: {job.amount_rounded}")
        return job



class MockBridgeClient(BridgeClient):
    """In-memory bridge for demo mode and tests.

    Jobs only move when ``set_status`` is called. ``get_job`` calls are counted
    and can be held open with ``hold()`` / ``release()``.
    """

    def __init__(self, now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._now = now
        self._jobs: Dict[str, BridgeJob] = {}
        self._ids = itertools.count(1)
        self._gate = asyncio.Event()
        self._gate.set()
        self._failures_left = 0
        self.get_job_calls = 0

    def hold(self) -> None:
        self._gate.clear()

    def release(self) -> None:
        self._gate.set()

    def fail_next(self, count: int = 1) -> None:
        self._failures_left = count

    def add_job(self, job: BridgeJob) -> None:
        self._jobs[job.id] = job

    def set_status(self, job_id: str, status: BridgeJobStatus, **fields: Any) -> BridgeJob:
        job = self._jobs[job_id]
        values = dict(job.__dict__)
        values.update(fields)
        values["status"] = status
        values["updated_at"] = fields.get("updated_at", self._now())
        values.pop("amount_shortfall", None)
        updated = BridgeJob(**values)
        self._jobs[job_id] = updated
        logger.debug(f"MOCK: job {job_id} -> {status.value}")
        return updated

    async def get_job(self, job_id: str) -> BridgeJob:
        self.get_job_calls += 1
        await self._gate.wait()
        if self._failures_left > 0:
            self._failures_left -= 1
            raise PollFailure("Simulated bridge outage", job_id=job_id)
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"Bridge job {job_id} not found")
        return job

    async def reserve(self, wallet_address: str, rounding: LotRounding, vault_id: Optional[str] = None) -> BridgeJob:
        now = self._now()
        job = BridgeJob(
            id=f"MOCK_BRIDGE_{next(self._ids)}",
            wallet_address=wallet_address,
            source_chain=SOURCE_CHAIN,
            dest_chain=DEST_CHAIN,
            amount_requested=rounding.requested_amount,
            amount_rounded=rounding.rounded_amount,
            status=BridgeJobStatus.QUEUED,
            created_at=now,
            updated_at=now,
            vault_id=vault_id,
            agent_reference=f"MOCK_REF_{rounding.lots}",
        )
        self._jobs[job.id] = job
        logger.info(f"MOCK: reserved {job.id} ({rounding.lots} lots)")
        return job
