"""Tests for the snapshot store and the scheduler abstraction."""

from datetime import timedelta

import pytest

from core.types import BridgeJobStatus
from scheduler import CancellationToken, ManualScheduler
from store import KIND_JOB, KIND_POSITION, SnapshotStore, wallet_key

from conftest import EVM_WALLET, T0, XRPL_WALLET, make_job


class TestWalletKey:

    def test_evm_addresses_are_case_insensitive(self):
        assert wallet_key(EVM_WALLET) == EVM_WALLET.lower()

    def test_xrpl_addresses_keep_case(self):
        assert wallet_key(f"  {XRPL_WALLET} ") == XRPL_WALLET


class TestSnapshotStore:

    def test_newer_version_replaces(self, store):
        old = make_job(status=BridgeJobStatus.QUEUED)
        new = make_job(status=BridgeJobStatus.PAID, updated_at=T0 + timedelta(seconds=10))

        assert store.put(EVM_WALLET, KIND_JOB, "job-1", old, old.updated_at)
        assert store.put(EVM_WALLET, KIND_JOB, "job-1", new, new.updated_at)
        assert store.get(EVM_WALLET, KIND_JOB, "job-1").value.status is BridgeJobStatus.PAID

    def test_out_of_order_write_is_discarded(self, store):
        new = make_job(status=BridgeJobStatus.MINTING, updated_at=T0 + timedelta(seconds=30))
        old = make_job(status=BridgeJobStatus.AWAITING_PAYMENT, updated_at=T0 + timedelta(seconds=5))

        store.put(EVM_WALLET, KIND_JOB, "job-1", new, new.updated_at)
        accepted = store.put(EVM_WALLET, KIND_JOB, "job-1", old, old.updated_at)

        assert accepted is False
        assert store.get(EVM_WALLET, KIND_JOB, "job-1").value.status is BridgeJobStatus.MINTING

    def test_keys_ignore_evm_case(self, store):
        job = make_job()
        store.put(EVM_WALLET.upper().replace("0X", "0x"), KIND_JOB, job.id, job, job.updated_at)

        assert store.get(EVM_WALLET.lower(), KIND_JOB, job.id) is not None

    def test_listeners_see_accepted_writes_only(self, store):
        seen = []
        remove = store.add_listener(lambda key, snap: seen.append((key, snap.value.status)))
        new = make_job(status=BridgeJobStatus.PAID, updated_at=T0 + timedelta(seconds=10))
        old = make_job(status=BridgeJobStatus.QUEUED)

        store.put(EVM_WALLET, KIND_JOB, "job-1", new, new.updated_at)
        store.put(EVM_WALLET, KIND_JOB, "job-1", old, old.updated_at)
        remove()
        store.put(EVM_WALLET, KIND_JOB, "job-1", new, new.updated_at)

        assert seen == [((EVM_WALLET.lower(), KIND_JOB, "job-1"), BridgeJobStatus.PAID)]

    def test_mark_stale_keeps_value(self, store):
        job = make_job()
        store.put(EVM_WALLET, KIND_JOB, job.id, job, job.updated_at)
        store.mark_stale(EVM_WALLET, KIND_JOB, job.id)

        snapshot = store.get(EVM_WALLET, KIND_JOB, job.id)
        assert snapshot.stale is True
        assert snapshot.value is job

    def test_invalidate_by_kind_and_hooks(self, store):
        calls = []
        store.add_invalidation_hook(lambda wallet, kind, ident: calls.append((wallet, kind, ident)))
        job = make_job()
        store.put(EVM_WALLET, KIND_JOB, job.id, job, job.updated_at)
        store.put(EVM_WALLET, KIND_POSITION, "pos-1", object(), T0)

        removed = store.invalidate(EVM_WALLET, KIND_POSITION)

        assert removed == 1
        assert store.get(EVM_WALLET, KIND_JOB, job.id) is not None
        assert store.get(EVM_WALLET, KIND_POSITION, "pos-1") is None
        assert calls == [(EVM_WALLET.lower(), KIND_POSITION, None)]

    def test_age_uses_store_clock(self):
        now = [100.0]
        store = SnapshotStore(clock=lambda: now[0])
        store.put(EVM_WALLET, KIND_JOB, "job-1", make_job(), T0)
        now[0] = 112.5

        assert store.age(store.get(EVM_WALLET, KIND_JOB, "job-1")) == pytest.approx(12.5)


class TestCancellationToken:

    def test_callbacks_run_once(self):
        token = CancellationToken()
        calls = []
        token.add_callback(lambda: calls.append(1))

        token.cancel()
        token.cancel()

        assert calls == [1]

    def test_callback_added_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append(1))

        assert calls == [1]

    def test_removed_callback_does_not_run(self):
        token = CancellationToken()
        calls = []
        remove = token.add_callback(lambda: calls.append(1))
        remove()
        token.cancel()

        assert calls == []


class TestManualScheduler:

    @pytest.mark.asyncio
    async def test_call_later_fires_once_at_due_time(self):
        scheduler = ManualScheduler()
        fired = []
        scheduler.call_later(5, fired.append, "x")

        await scheduler.advance(4.9)
        assert fired == []
        await scheduler.advance(0.2)
        assert fired == ["x"]
        await scheduler.advance(10)
        assert fired == ["x"]

    @pytest.mark.asyncio
    async def test_call_every_repeats_until_cancelled(self):
        scheduler = ManualScheduler()
        fired = []
        handle = scheduler.call_every(5, lambda: fired.append(scheduler.now()))

        await scheduler.advance(16)
        handle.cancel()
        await scheduler.advance(20)

        assert fired == [5, 10, 15]
        assert scheduler.pending_timers == 0

    @pytest.mark.asyncio
    async def test_coroutine_callbacks_are_spawned(self):
        scheduler = ManualScheduler()
        done = []

        async def work():
            done.append(scheduler.now())

        scheduler.call_later(3, work)
        await scheduler.advance(3)

        assert done == [3]

    @pytest.mark.asyncio
    async def test_shared_token_cancels_timers(self):
        scheduler = ManualScheduler()
        token = CancellationToken()
        fired = []
        scheduler.call_every(1, fired.append, "a", token=token)
        scheduler.call_later(2, fired.append, "b", token=token)

        token.cancel()
        await scheduler.advance(5)

        assert fired == []
        assert scheduler.pending_timers == 0

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValueError):
            ManualScheduler().call_every(0, lambda: None)
