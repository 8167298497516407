"""
同期コーディネーター 統合テスト
同期パスの排他性・リトライ上限・冪等な確定・起動/停止の確認
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from booking_sync.core.errors import InvalidTransitionError, NetworkError, PersistenceError, ServerRejection
from booking_sync.core.models import DateAlternative, IntentStatus, ResourceAlternative
from booking_sync.layers.remote_layer.connectivity import ManualConnectivity
from booking_sync.layers.sync_layer import SyncCoordinator

from conftest import make_remote, make_request


@pytest.fixture
async def make_coordinator(store, api, connectivity, clock):
    """テスト終了時に停止するコーディネーターの生成"""
    created = []

    def factory(**overrides):
        monitor = overrides.pop('connectivity', connectivity)
        options = dict(
            confirmed_grace_seconds=5.0,
            periodic_interval_seconds=0,
            sync_on_start=False,
            clock=clock,
        )
        options.update(overrides)
        coordinator = SyncCoordinator(store, api, monitor, **options)
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        await coordinator.stop()


class TestSyncPass:
    """同期パスの基本動作"""

    @pytest.mark.asyncio
    async def test_confirms_pending_intent(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        coordinator = make_coordinator()

        result = await coordinator.trigger_sync()

        assert result.confirmed == 1
        assert result.outcomes == {intent_id: IntentStatus.CONFIRMED}
        intent = await store.get(intent_id)
        assert intent.status == IntentStatus.CONFIRMED
        assert intent.remote_id == "remote-1"
        assert api.commit_attempts[0].to_api()['offlineId'] == intent_id

    @pytest.mark.asyncio
    async def test_processes_in_insertion_order(self, make_coordinator, store, api):
        ids = [await store.enqueue(make_request(resource_id=f"homestay-{n}")) for n in range(3)]
        coordinator = make_coordinator()

        await coordinator.trigger_sync()

        assert [intent.id for intent in api.commit_attempts] == ids

    @pytest.mark.asyncio
    async def test_concurrent_triggers_run_one_pass(self, make_coordinator, store, api):
        await store.enqueue(make_request())
        await store.enqueue(make_request(resource_id="homestay-s"))
        api.commit_delay = 0.05
        coordinator = make_coordinator()

        results = await asyncio.gather(coordinator.trigger_sync(), coordinator.trigger_sync())

        assert sum(result is None for result in results) == 1
        assert len(api.commit_attempts) == 2
        assert coordinator.get_statistics()['triggers_rejected'] == 1
        assert not coordinator.is_syncing

    @pytest.mark.asyncio
    async def test_confirmed_intent_is_not_committed_twice(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        coordinator = make_coordinator()

        await coordinator.trigger_sync()
        second = await coordinator.trigger_sync()

        assert len(api.commit_attempts) == 1
        assert second.processed == 0
        assert (await store.get(intent_id)).status == IntentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_offline_trigger_is_noop(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        coordinator = make_coordinator(connectivity=ManualConnectivity(online=False))

        assert await coordinator.trigger_sync() is None
        assert api.commit_attempts == []
        assert (await store.get(intent_id)).status == IntentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unexpected_commit_error_is_retried(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        api.commit_errors = [RuntimeError("unexpected payload")]
        coordinator = make_coordinator()

        result = await coordinator.trigger_sync()

        assert result.retried == 1
        intent = await store.get(intent_id)
        assert intent.status == IntentStatus.PENDING
        assert intent.last_error == "unexpected payload"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, make_coordinator, store, api):
        first = await store.enqueue(make_request())
        second = await store.enqueue(make_request(resource_id="homestay-s"))
        api.commit_errors = [ServerRejection(503, "maintenance")]
        coordinator = make_coordinator()

        result = await coordinator.trigger_sync()

        assert result.outcomes == {first: IntentStatus.PENDING, second: IntentStatus.CONFIRMED}

    @pytest.mark.asyncio
    async def test_commit_timeout_is_a_network_failure(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        api.commit_delay = 0.5
        coordinator = make_coordinator(remote_timeout_seconds=0.01)

        result = await coordinator.trigger_sync()

        assert result.retried == 1
        assert "timed out" in (await store.get(intent_id)).last_error

    @pytest.mark.asyncio
    async def test_detection_outage_still_commits(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        api.remote_bookings = [make_remote()]
        api.conflict_error = NetworkError("conflict service down")
        coordinator = make_coordinator()

        await coordinator.trigger_sync()

        assert (await store.get(intent_id)).status == IntentStatus.CONFIRMED


class TestRetries:
    """指数バックオフとリトライ上限"""

    @pytest.mark.asyncio
    async def test_three_transport_failures_end_in_failed(self, make_coordinator, store, api, clock, monkeypatch):
        intent_id = await store.enqueue(make_request())
        api.commit_errors = [NetworkError("connection reset")] * 3
        coordinator = make_coordinator()
        delays = []
        monkeypatch.setattr(coordinator.retry_scheduler, "_arm", delays.append)

        await coordinator.trigger_sync()
        intent = await store.get(intent_id)
        assert intent.status == IntentStatus.PENDING
        assert intent.retry_count == 1
        assert intent.next_attempt_at == clock() + timedelta(seconds=2)

        # バックオフ中は対象外
        early = await coordinator.trigger_sync()
        assert early.skipped == 1
        assert len(api.commit_attempts) == 1

        clock.advance(2)
        await coordinator.trigger_sync()
        intent = await store.get(intent_id)
        assert intent.retry_count == 2
        assert intent.next_attempt_at == clock() + timedelta(seconds=4)

        clock.advance(4)
        result = await coordinator.trigger_sync()
        intent = await store.get(intent_id)
        assert result.failed == 1
        assert intent.status == IntentStatus.FAILED
        assert intent.retry_count == 3
        assert intent.last_error == "connection reset"
        assert delays == [2.0, 4.0]

        clock.advance(60)
        await coordinator.trigger_sync()
        assert len(api.commit_attempts) == 3
        assert (await store.get(intent_id)).status == IntentStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_timer_runs_a_full_pass(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        api.commit_errors = [ServerRejection(503, "maintenance")]
        coordinator = make_coordinator(clock=None, backoff_base=0.01)

        await coordinator.trigger_sync()
        assert coordinator.retry_scheduler.pending_wakeups == 1

        await asyncio.sleep(0.2)

        assert (await store.get(intent_id)).status == IntentStatus.CONFIRMED
        assert coordinator.passes_completed == 2
        assert len(api.commit_attempts) == 2

    @pytest.mark.asyncio
    async def test_retry_due_during_running_pass_runs_after_it(self, make_coordinator, store, api):
        first = await store.enqueue(make_request())
        second = await store.enqueue(make_request(resource_id="homestay-s"))
        api.commit_errors = [NetworkError("connection reset")]
        api.commit_delays = {"homestay-s": 0.3}
        coordinator = make_coordinator(clock=None, backoff_base=0.05)

        result = await coordinator.trigger_sync()
        assert result.outcomes == {first: IntentStatus.PENDING, second: IntentStatus.CONFIRMED}
        # バックオフ（0.05秒）のタイマーは2件目のコミット中に発火済み
        assert coordinator.triggers_rejected == 1

        await coordinator.wait_for_background()

        assert (await store.get(first)).status == IntentStatus.CONFIRMED
        assert coordinator.passes_completed == 2
        assert len(api.commit_attempts) == 3


class TestConflictScenarios:
    """競合を含む同期"""

    @pytest.mark.asyncio
    async def test_overlap_rewritten_to_alternative_dates(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        api.remote_bookings = [make_remote()]
        api.date_alternatives = [DateAlternative(
            check_in=datetime(2025, 6, 6, tzinfo=timezone.utc),
            check_out=datetime(2025, 6, 10, tzinfo=timezone.utc),
            total_amount=410.0,
        )]
        coordinator = make_coordinator()

        result = await coordinator.trigger_sync()

        assert result.confirmed == 1
        committed = api.commit_attempts[0]
        assert committed.check_in == datetime(2025, 6, 6, tzinfo=timezone.utc)
        assert committed.check_out == datetime(2025, 6, 10, tzinfo=timezone.utc)
        stored = await store.get(intent_id)
        assert stored.check_in == committed.check_in
        assert stored.total_amount == 410.0

    @pytest.mark.asyncio
    async def test_overlap_without_alternatives_fails_permanently(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        api.remote_bookings = [make_remote()]
        coordinator = make_coordinator()

        result = await coordinator.trigger_sync()

        assert result.failed == 1
        intent = await store.get(intent_id)
        assert intent.status == IntentStatus.FAILED
        assert "could not be resolved" in intent.last_error
        assert coordinator.retry_scheduler.pending_wakeups == 0
        assert api.commit_attempts == []

    @pytest.mark.asyncio
    async def test_capacity_moves_to_alternative_resource(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        api.remote_bookings = [make_remote(
            check_in=datetime(2025, 6, 5, tzinfo=timezone.utc),
            check_out=datetime(2025, 6, 8, tzinfo=timezone.utc),
            guests=3, max_guests=4,
        )]
        api.resource_alternatives = [ResourceAlternative(resource_id="homestay-s", estimated_price=350.0)]
        coordinator = make_coordinator()

        await coordinator.trigger_sync()

        assert api.commit_attempts[0].resource_id == "homestay-s"
        intent = await store.get(intent_id)
        assert intent.status == IntentStatus.CONFIRMED
        assert intent.total_amount == 350.0

    @pytest.mark.asyncio
    async def test_failed_intent_stays_visible(self, make_coordinator, store, api):
        intent_id = await store.enqueue(make_request())
        api.remote_bookings = [make_remote()]
        coordinator = make_coordinator()

        await coordinator.trigger_sync()

        assert [intent.id for intent in await coordinator.list_queued()] == [intent_id]
        assert await coordinator.count_pending() == 0


class TestPersistenceFailures:
    """書き込み失敗時も同期を継続"""

    @pytest.mark.asyncio
    async def test_pass_continues_in_memory(self, make_coordinator, store, backend, api):
        intent_id = await store.enqueue(make_request())
        backend.fail_writes = True
        coordinator = make_coordinator()

        result = await coordinator.trigger_sync()

        assert result.confirmed == 1
        assert store.is_degraded
        assert (await store.get(intent_id)).status == IntentStatus.CONFIRMED
        assert coordinator.get_statistics()['errors']['persistence_error'] >= 1


class TestLifecycle:
    """起動・停止・トリガー"""

    @pytest.mark.asyncio
    async def test_start_recovers_interrupted_state(self, make_coordinator, store):
        interrupted = await store.enqueue(make_request())
        finished = await store.enqueue(make_request())
        await store.update_status(interrupted, IntentStatus.SYNCING)
        await store.update_status(finished, IntentStatus.SYNCING)
        await store.update_status(finished, IntentStatus.CONFIRMED, {'remote_id': 'remote-9'})
        coordinator = make_coordinator(connectivity=ManualConnectivity(online=False))

        await coordinator.start()

        intents = await store.list()
        assert [intent.id for intent in intents] == [interrupted]
        assert intents[0].status == IntentStatus.PENDING

    @pytest.mark.asyncio
    async def test_start_syncs_when_online(self, make_coordinator, store):
        intent_id = await store.enqueue(make_request())
        coordinator = make_coordinator(sync_on_start=True)

        await coordinator.start()
        await coordinator.wait_for_background()

        assert (await store.get(intent_id)).status == IntentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_reconnect_triggers_sync(self, make_coordinator, store, api):
        connectivity = ManualConnectivity(online=False)
        coordinator = make_coordinator(connectivity=connectivity)
        await coordinator.start()

        intent_id = await coordinator.queue_booking(make_request())
        await coordinator.wait_for_background()
        assert api.commit_attempts == []

        connectivity.set_online(True)
        await coordinator.wait_for_background()

        assert (await store.get(intent_id)).status == IntentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_queue_booking_syncs_when_online(self, make_coordinator, store):
        coordinator = make_coordinator()
        await coordinator.start()

        intent_id = await coordinator.queue_booking(make_request())
        await coordinator.wait_for_background()

        assert (await store.get(intent_id)).status == IntentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_queue_booking_syncs_while_persistence_degraded(self, make_coordinator, store, backend, api):
        backend.fail_writes = True
        coordinator = make_coordinator()
        await coordinator.start()

        with pytest.raises(PersistenceError) as exc_info:
            await coordinator.queue_booking(make_request())
        await coordinator.wait_for_background()

        intent = await store.get(exc_info.value.intent_id)
        assert intent.status == IntentStatus.CONFIRMED
        assert len(api.commit_attempts) == 1

    @pytest.mark.asyncio
    async def test_retry_failed_requeues_and_syncs(self, make_coordinator, store, api):
        failed_id = await store.enqueue(make_request())
        api.remote_bookings = [make_remote()]
        coordinator = make_coordinator()
        await coordinator.start()
        await coordinator.trigger_sync()
        assert (await store.get(failed_id)).status == IntentStatus.FAILED

        # 競合相手がキャンセルされた後に手動で再試行
        api.remote_bookings = []
        new_id = await coordinator.retry_failed(failed_id)
        await coordinator.wait_for_background()

        assert new_id != failed_id
        assert await store.get(failed_id) is None
        intent = await store.get(new_id)
        assert intent.status == IntentStatus.CONFIRMED
        assert intent.retry_count == 0

    @pytest.mark.asyncio
    async def test_retry_failed_rejects_other_states(self, make_coordinator, store):
        intent_id = await store.enqueue(make_request())
        coordinator = make_coordinator()

        assert await coordinator.retry_failed("missing") is None
        with pytest.raises(InvalidTransitionError):
            await coordinator.retry_failed(intent_id)

    @pytest.mark.asyncio
    async def test_periodic_pass(self, make_coordinator, store):
        coordinator = make_coordinator(periodic_interval_seconds=0.02)
        await coordinator.start()
        intent_id = await store.enqueue(make_request())

        await asyncio.sleep(0.2)

        assert (await store.get(intent_id)).status == IntentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_confirmed_removed_after_grace_window(self, make_coordinator, store):
        await store.enqueue(make_request())
        coordinator = make_coordinator(confirmed_grace_seconds=0.02)

        await coordinator.trigger_sync()
        assert len(await store.list()) == 1

        await asyncio.sleep(0.1)
        await coordinator.wait_for_background()

        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_timers(self, make_coordinator, store, api):
        await store.enqueue(make_request())
        await store.enqueue(make_request(resource_id="homestay-s"))
        api.commit_errors = [NetworkError("connection reset")]
        coordinator = make_coordinator()
        await coordinator.start()

        await coordinator.trigger_sync()
        assert coordinator.retry_scheduler.pending_wakeups == 1

        await coordinator.stop()

        assert coordinator.retry_scheduler.pending_wakeups == 0
        assert not coordinator.is_running
        assert len(await store.list()) == 2
