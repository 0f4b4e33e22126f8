"""Polling of in-flight bridge jobs."""

import asyncio
import logging
from typing import Callable, Dict, Optional, Set

from bridge_client import BridgeClient
from core.errors import OrchestratorError
from core.types import BridgeJob
from scheduler import CancellationToken, Scheduler, TimerHandle
from store import KIND_JOB, SnapshotStore

logger = logging.getLogger(__name__)

JobCallback = Callable[[BridgeJob, bool], None]


class Subscription:
    """A live view of one bridge job."""

    def __init__(self, poller: "BridgeJobPoller", watch: "_JobWatch", callback: Optional[JobCallback]):
        self._poller = poller
        self._watch = watch
        self.callback = callback
        self.active = True

    @property
    def job_id(self) -> str:
        return self._watch.job_id

    @property
    def job(self) -> Optional[BridgeJob]:
        snapshot = self._poller.store.get(self._watch.wallet_address, KIND_JOB, self._watch.job_id)
        return snapshot.value if snapshot else None

    @property
    def stale(self) -> bool:
        return self._watch.stale

    @property
    def consecutive_failures(self) -> int:
        return self._watch.failures

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._poller._unsubscribe(self)


class _JobWatch:
    """Polling state shared by all subscribers of one job."""

    def __init__(self, wallet_address: str, job_id: str):
        self.wallet_address = wallet_address
        self.job_id = job_id
        self.subscribers: Set[Subscription] = set()
        self.token = CancellationToken()
        self.timer: Optional[TimerHandle] = None
        self.in_flight: Optional[asyncio.Future] = None
        self.deferred = False
        self.failures = 0
        self.stale = False
        self.last_error: Optional[str] = None


class _SharedFetch:
    def __init__(self, task: asyncio.Future):
        self.task = task
        self.waiters = 0


class BridgeJobPoller:
    """Keeps bridge job snapshots fresh while someone is watching.

    One watch per job id regardless of subscriber count. Ticks that arrive while
    a request is outstanding are deferred until it completes. Polling stops once
    the job reaches a terminal status or the last subscriber leaves.
    """

    def __init__(
        self,
        client: BridgeClient,
        store: SnapshotStore,
        scheduler: Scheduler,
        interval: float = 5.0,
        max_failures: int = 3,
    ):
        """Initialize the poller.

        Args:
            client: Bridge status endpoint
            store: Snapshot store receiving accepted job snapshots
            scheduler: Timer source
            interval: Seconds between polls of a non-terminal job
            max_failures: Consecutive failures before a job is flagged stale
        """
        self.client = client
        self.store = store
        self.scheduler = scheduler
        self.interval = interval
        self.max_failures = max_failures
        self._watches: Dict[str, _JobWatch] = {}
        self._fetches: Dict[str, _SharedFetch] = {}

        logger.info(f"Initialized bridge job poller (interval={interval}s, max_failures={max_failures})")

    @property
    def active_jobs(self) -> Set[str]:
        return set(self._watches)

    def subscribe(self, wallet_address: str, job_id: str, callback: Optional[JobCallback] = None) -> Subscription:
        """Start (or join) polling of a job.

        Args:
            wallet_address: Owner of the job
            job_id: Bridge job id
            callback: Called with ``(job, stale)`` on every accepted update

        Returns:
            Subscription; call ``unsubscribe()`` on teardown
        """
        watch = self._watches.get(job_id)
        created = watch is None
        if created:
            watch = _JobWatch(wallet_address, job_id)
            self._watches[job_id] = watch

        subscription = Subscription(self, watch, callback)
        watch.subscribers.add(subscription)

        if created:
            known = self.store.get(wallet_address, KIND_JOB, job_id)
            if known and known.value.is_terminal:
                logger.debug(f"Job {job_id} already terminal, not polling")
            else:
                self._start(watch)
        return subscription

    def _start(self, watch: _JobWatch) -> None:
        watch.timer = self.scheduler.call_every(self.interval, self._tick, watch)
        watch.token.add_callback(watch.timer.cancel)
        logger.debug(f"Polling job {watch.job_id} every {self.interval}s")
        self._tick(watch)

    def _unsubscribe(self, subscription: Subscription) -> None:
        watch = subscription._watch
        watch.subscribers.discard(subscription)
        if watch.subscribers:
            return
        # Last subscriber gone: drop timer and abandon any in-flight result
        watch.token.cancel()
        if self._watches.get(watch.job_id) is watch:
            del self._watches[watch.job_id]
        logger.debug(f"Stopped polling job {watch.job_id}")

    def _tick(self, watch: _JobWatch) -> None:
        if watch.token.cancelled or not watch.subscribers:
            return
        if watch.in_flight is not None and not watch.in_flight.done():
            watch.deferred = True
            return
        watch.deferred = False
        watch.in_flight = self.scheduler.spawn(self._poll(watch), watch.token)

    async def _poll(self, watch: _JobWatch) -> None:
        try:
            job = await self._shared_fetch(watch.job_id)
        except asyncio.CancelledError:
            raise
        except OrchestratorError as e:
            self._record_failure(watch, e)
        except Exception as e:
            logger.error(f"Unexpected error polling job {watch.job_id}: {e}", exc_info=True)
            self._record_failure(watch, e)
        else:
            if not watch.token.cancelled:
                self._apply(watch, job)
        finally:
            watch.in_flight = None

        if watch.deferred and not watch.token.cancelled and watch.timer and not watch.timer.cancelled:
            self._tick(watch)

    async def _shared_fetch(self, job_id: str) -> BridgeJob:
        """Fetch a job, joining an outstanding request for the same id."""
        shared = self._fetches.get(job_id)
        if shared is None:
            shared = _SharedFetch(asyncio.ensure_future(self.client.get_job(job_id)))
            self._fetches[job_id] = shared

            def _done(_task, job_id=job_id, shared=shared):
                if self._fetches.get(job_id) is shared:
                    del self._fetches[job_id]

            shared.task.add_done_callback(_done)

        shared.waiters += 1
        try:
            return await asyncio.shield(shared.task)
        finally:
            shared.waiters -= 1
            if shared.waiters == 0 and not shared.task.done():
                shared.task.cancel()

    def _apply(self, watch: _JobWatch, job: BridgeJob) -> None:
        previous = self.store.get(watch.wallet_address, KIND_JOB, job.id)
        accepted = self.store.put(watch.wallet_address, KIND_JOB, job.id, job, job.updated_at)

        watch.failures = 0
        watch.last_error = None
        if watch.stale:
            watch.stale = False
            self.store.mark_stale(watch.wallet_address, KIND_JOB, job.id, False)

        if not accepted:
            return

        if previous is None or previous.value.status is not job.status:
            logger.info(f"Bridge job {job.id} status: {job.status.value}")

        if job.is_terminal and watch.timer:
            watch.timer.cancel()
            logger.info(f"Bridge job {job.id} reached terminal status {job.status.value}, polling stopped")

        self._notify(watch, job)

    def _record_failure(self, watch: _JobWatch, error: Exception) -> None:
        watch.failures += 1
        watch.last_error = str(error)
        logger.debug(f"Poll of job {watch.job_id} failed ({watch.failures}/{self.max_failures}): {error}")

        if watch.failures >= self.max_failures and not watch.stale:
            watch.stale = True
            self.store.mark_stale(watch.wallet_address, KIND_JOB, watch.job_id, True)
            logger.warning(
                f"Bridge job {watch.job_id} may be out of date after "
                f"{watch.failures} consecutive poll failures"
            )
            known = self.store.get(watch.wallet_address, KIND_JOB, watch.job_id)
            if known:
                self._notify(watch, known.value)

    def _notify(self, watch: _JobWatch, job: BridgeJob) -> None:
        for subscription in list(watch.subscribers):
            if subscription.callback is None:
                continue
            try:
                subscription.callback(job, watch.stale)
            except Exception as e:
                logger.error(f"Error in job subscriber callback: {e}", exc_info=True)

    async def refresh(self, wallet_address: str, job_id: str) -> BridgeJob:
        """One-shot fetch that shares any outstanding request for the job.

        Raises:
            PollFailure: If the fetch fails
        """
        job = await self._shared_fetch(job_id)
        self.store.put(wallet_address, KIND_JOB, job.id, job, job.updated_at)
        return job

    def stop(self) -> None:
        """Cancel every watch."""
        for watch in list(self._watches.values()):
            watch.token.cancel()
        self._watches.clear()
        logger.info("Bridge job poller stopped")
