"""
同期コーディネーター - オフライン予約キューとサーバーの照合を統括
排他的な同期パスでキューを投入順に処理し、競合検出→解決→確定を行う
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ...core.errors import ConflictUnresolvable, PersistenceError
from ...core.models import (
    BookingIntent, BookingRequest, IntentStatus, SyncPassResult, utc_now,
)
from ...utils.sync_logger import SyncLogger, get_logger
from ..remote_layer.booking_api import BookingApiClient
from ..remote_layer.connectivity import ConnectivityMonitor
from ..storage_layer.intent_store import IntentStore
from .conflict_detector import ConflictDetector
from .conflict_resolver import ConflictResolver
from .error_handler import ErrorHandler, RecoveryResult, bounded, describe_error
from .retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)

# タイマー（monotonic）と壁時計のずれを吸収
DUE_TOLERANCE = timedelta(milliseconds=250)


class SyncCoordinator:
    """オフライン予約同期エンジン"""

    def __init__(self,
                 store: IntentStore,
                 api: BookingApiClient,
                 connectivity: ConnectivityMonitor,
                 detector: Optional[ConflictDetector] = None,
                 resolver: Optional[ConflictResolver] = None,
                 retry_scheduler: Optional[RetryScheduler] = None,
                 confirmed_grace_seconds: float = 5.0,
                 periodic_interval_seconds: float = 300.0,
                 remote_timeout_seconds: Optional[float] = 30.0,
                 max_attempts: int = 3,
                 backoff_base: float = 2.0,
                 sync_on_start: bool = True,
                 clock: Optional[Callable[[], datetime]] = None,
                 ops_logger: Optional[SyncLogger] = None):
        self.store = store
        self.api = api
        self.connectivity = connectivity
        self.confirmed_grace_seconds = confirmed_grace_seconds
        self.periodic_interval_seconds = periodic_interval_seconds
        self.remote_timeout_seconds = remote_timeout_seconds
        self.sync_on_start = sync_on_start
        self.clock = clock or utc_now
        self.ops_logger = ops_logger or get_logger()

        self.error_handler = ErrorHandler()
        self.detector = detector or ConflictDetector(api, remote_timeout_seconds)
        self.resolver = resolver or ConflictResolver(api, remote_timeout_seconds)
        self.retry_scheduler = retry_scheduler or RetryScheduler(
            store, self.error_handler, max_attempts=max_attempts,
            backoff_base=backoff_base, clock=self.clock,
        )
        if self.retry_scheduler.wake_up is None:
            # 再試行は必ず排他的な同期パス経由
            self.retry_scheduler.wake_up = self.trigger_sync

        self._sync_in_progress = False
        # パス実行中に拒否されたトリガーがあれば終了後に再実行
        self._rerun_requested = False
        self._running = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._grace_timers: Dict[str, asyncio.TimerHandle] = {}

        # 統計情報
        self.passes_completed = 0
        self.triggers_rejected = 0

    @classmethod
    def from_config(cls, config, store: IntentStore, api: BookingApiClient,
                    connectivity: ConnectivityMonitor, **kwargs) -> 'SyncCoordinator':
        """BookingSyncConfigから構築"""
        return cls(
            store, api, connectivity,
            confirmed_grace_seconds=config.sync.confirmed_grace_seconds,
            periodic_interval_seconds=config.sync.periodic_interval_seconds,
            remote_timeout_seconds=config.remote.timeout_seconds,
            max_attempts=config.retry.max_attempts,
            backoff_base=config.retry.backoff_base,
            sync_on_start=config.sync.sync_on_start,
            **kwargs,
        )

    @property
    def is_syncing(self) -> bool:
        return self._sync_in_progress

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """同期エンジン開始"""
        if self._running:
            return
        self._running = True

        await self._recover()
        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity_change)

        if self.periodic_interval_seconds and self.periodic_interval_seconds > 0:
            self._periodic_task = asyncio.create_task(self._periodic_loop())

        logger.info("Booking sync engine started")

        if self.sync_on_start and self.connectivity.is_online:
            self._spawn(self.trigger_sync())

    async def stop(self):
        """同期エンジン停止（タイマー・バックグラウンド処理をすべて取り消し）"""
        self._running = False

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        if self._periodic_task:
            self._periodic_task.cancel()
            await asyncio.gather(self._periodic_task, return_exceptions=True)
            self._periodic_task = None

        await self.retry_scheduler.cancel_all()

        for handle in self._grace_timers.values():
            handle.cancel()
        self._grace_timers.clear()

        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        logger.info("Booking sync engine stopped")

    async def queue_booking(self, request: BookingRequest) -> str:
        """予約をオフラインキューに追加し、オンラインなら同期を起動"""
        try:
            intent_id = await self.store.enqueue(request)
        except PersistenceError:
            # メモリ上にはキュー済み
            self._request_sync()
            raise

        self._request_sync()
        return intent_id

    async def retry_failed(self, intent_id: str) -> Optional[str]:
        """失敗した予約を新しいインテントとして再投入（ホストからの手動再試行）"""
        new_id = await self.store.requeue_failed(intent_id)
        if new_id is not None:
            self._request_sync()
        return new_id

    def _request_sync(self):
        if self.connectivity.is_online:
            self._spawn(self.trigger_sync())

    async def trigger_sync(self) -> Optional[SyncPassResult]:
        """同期パスの実行（実行中・オフライン時は何もせずNone）"""
        if self._sync_in_progress:
            self.triggers_rejected += 1
            self._rerun_requested = True
            logger.debug("Sync pass already in progress, rerun queued")
            return None

        if not self.connectivity.is_online:
            logger.debug("Offline, sync trigger ignored")
            return None

        self._sync_in_progress = True
        self._rerun_requested = False
        result = SyncPassResult(started_at=self.clock())
        operation = self.ops_logger.log_operation_start("sync_pass")

        try:
            intents = await self.store.list()
            eligible = [intent.id for intent in intents if intent.status == IntentStatus.PENDING]

            for intent_id in eligible:
                await self._sync_intent(intent_id, result)
        finally:
            self._sync_in_progress = False
            result.finished_at = self.clock()

        self.passes_completed += 1
        self.ops_logger.log_operation_end(
            operation, success=True,
            confirmed=result.confirmed, retried=result.retried,
            failed=result.failed, skipped=result.skipped,
        )
        if self.ops_logger.metrics:
            self.ops_logger.metrics.set_gauge("pending_intents", await self.count_pending())

        if result.processed or result.skipped:
            logger.info(result.summary())

        if self._rerun_requested:
            self._rerun_requested = False
            self._request_sync()
        return result

    async def _sync_intent(self, intent_id: str, result: SyncPassResult):
        """1件分の同期（ストアから再読込して状態を確認）"""
        intent = await self.store.get(intent_id)

        # 確定済み・失敗済み・削除済みは対象外
        if intent is None or intent.status != IntentStatus.PENDING:
            result.skipped += 1
            return

        if not intent.is_due(self.clock() + DUE_TOLERANCE):
            result.skipped += 1
            return

        intent = await self._transition(intent, IntentStatus.SYNCING)

        try:
            conflicts = await self.detector.detect(intent)
            if conflicts:
                resolved = await self.resolver.resolve(intent, conflicts)
                if resolved is None:
                    raise ConflictUnresolvable(
                        f"Booking conflicts could not be resolved: {conflicts[0].summary()}"
                    )
                if resolved != intent:
                    intent = await self._transition(intent, IntentStatus.SYNCING, {
                        'resource_id': resolved.resource_id,
                        'check_in': resolved.check_in,
                        'check_out': resolved.check_out,
                        'total_amount': resolved.total_amount,
                    })

            remote_id = await bounded(self.api.commit_booking(intent), self.remote_timeout_seconds, "commit_booking")

        except Exception as e:
            logger.warning(f"Failed to sync booking {intent.id}: {describe_error(e)}")
            decision = await self.retry_scheduler.schedule_retry(intent, e)
            status = IntentStatus.PENDING if decision == RecoveryResult.RETRY else IntentStatus.FAILED
            result.record(intent.id, status)
            self._record_outcome(status)
            return

        await self._transition(intent, IntentStatus.CONFIRMED, {
            'remote_id': remote_id,
            'last_error': None,
            'next_attempt_at': None,
        })
        result.record(intent.id, IntentStatus.CONFIRMED)
        self._record_outcome(IntentStatus.CONFIRMED)
        self._schedule_removal(intent.id)

    async def _transition(self, intent: BookingIntent, status: IntentStatus,
                          patch: Optional[Dict[str, Any]] = None) -> BookingIntent:
        """ステータス更新（永続化に失敗してもメモリ上の状態で続行）"""
        try:
            updated = await self.store.update_status(intent.id, status, patch)
        except PersistenceError as e:
            self.error_handler.handle_error(e, {'intent_id': intent.id})
            self.ops_logger.error("Booking state kept in memory only", error=e,
                                  operation="persist_intent", intent_id=intent.id)
            updated = await self.store.get(intent.id)

        return updated or intent.revised(status=status, **(patch or {}))

    def _record_outcome(self, status: IntentStatus):
        if self.ops_logger.metrics:
            self.ops_logger.metrics.record_event(f"intent_{status.value}")

    def _schedule_removal(self, intent_id: str):
        """確定済みインテントを猶予時間後に削除（UIの確定表示用）"""
        if self.confirmed_grace_seconds <= 0:
            self._spawn(self._remove_confirmed(intent_id))
            return

        loop = asyncio.get_running_loop()

        def fire():
            self._grace_timers.pop(intent_id, None)
            self._spawn(self._remove_confirmed(intent_id))

        self._grace_timers[intent_id] = loop.call_later(self.confirmed_grace_seconds, fire)

    async def _remove_confirmed(self, intent_id: str):
        try:
            await self.store.remove(intent_id)
        except PersistenceError as e:
            self.error_handler.handle_error(e, {'intent_id': intent_id})
            logger.error(f"Confirmed booking {intent_id} removed from memory only: {e}")

    async def _recover(self):
        """前回プロセスの中断状態を整理"""
        try:
            await self.store.reset_interrupted()
            for intent in await self.store.list():
                if intent.status == IntentStatus.CONFIRMED:
                    await self.store.remove(intent.id)
        except PersistenceError as e:
            self.error_handler.handle_error(e)
            logger.error(f"Recovery changes kept in memory only: {e}")

    def _on_connectivity_change(self, online: bool):
        if online:
            logger.info("Syncing offline bookings after reconnect")
            self._spawn(self.trigger_sync())
        else:
            logger.debug("Sync paused while offline")

    async def _periodic_loop(self):
        """定期同期"""
        while True:
            await asyncio.sleep(self.periodic_interval_seconds)
            try:
                await self.trigger_sync()
            except Exception as e:
                logger.error(f"Periodic sync failed: {e}")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def wait_for_background(self):
        """バックグラウンドで起動した同期・削除処理の完了待ち"""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def list_queued(self) -> List[BookingIntent]:
        """キュー内の全インテント（失敗・確定直後を含む）"""
        return await self.store.list()

    async def count_pending(self) -> int:
        """未確定（pending/syncing）の件数"""
        return sum(
            1 for intent in await self.store.list()
            if intent.status in (IntentStatus.PENDING, IntentStatus.SYNCING)
        )

    def get_statistics(self) -> Dict[str, Any]:
        """同期エンジン統計情報"""
        return {
            "passes_completed": self.passes_completed,
            "triggers_rejected": self.triggers_rejected,
            "sync_in_progress": self._sync_in_progress,
            "store": self.store.get_statistics(),
            "detector": self.detector.get_statistics(),
            "resolver": self.resolver.get_statistics(),
            "retry": self.retry_scheduler.get_statistics(),
            "errors": self.error_handler.get_statistics(),
        }
