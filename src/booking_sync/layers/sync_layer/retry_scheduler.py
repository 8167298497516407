"""
リトライスケジューラ - 指数バックオフによる再試行管理
再試行はインテントをpendingに戻して次の同期パスに任せる
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ...core.errors import PersistenceError
from ...core.models import BookingIntent, IntentStatus, utc_now
from ..storage_layer.intent_store import IntentStore
from .error_handler import ErrorHandler, RecoveryResult, describe_error

logger = logging.getLogger(__name__)

WakeUp = Callable[[], Awaitable[Any]]


class RetryScheduler:
    """再試行スケジューラ"""

    def __init__(self,
                 store: IntentStore,
                 error_handler: Optional[ErrorHandler] = None,
                 max_attempts: int = 3,
                 backoff_base: float = 2.0,
                 wake_up: Optional[WakeUp] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.error_handler = error_handler or ErrorHandler()
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.wake_up = wake_up
        self.clock = clock or utc_now

        self._timers: Set[asyncio.TimerHandle] = set()
        self._wake_tasks: Set[asyncio.Task] = set()

        # 統計情報
        self.retries_scheduled = 0
        self.terminal_failures = 0

    def compute_delay(self, retry_count: int) -> float:
        """待機秒数（base ** retry_count）"""
        return self.backoff_base ** retry_count

    @property
    def pending_wakeups(self) -> int:
        return len(self._timers)

    async def schedule_retry(self, intent: BookingIntent, error: BaseException) -> RecoveryResult:
        """失敗したインテントを再試行待ちか確定失敗にする"""
        retry_count = intent.retry_count + 1
        last_error = describe_error(error)
        decision = self.error_handler.handle_error(error, {'intent_id': intent.id, 'retry_count': retry_count})

        if decision == RecoveryResult.FAIL or retry_count >= self.max_attempts:
            await self._update(intent.id, IntentStatus.FAILED, {
                'retry_count': retry_count,
                'last_error': last_error,
                'next_attempt_at': None,
            })
            self.terminal_failures += 1
            logger.error(f"Booking {intent.id} failed permanently after {retry_count} attempts: {last_error}")
            return RecoveryResult.FAIL

        delay = self.compute_delay(retry_count)
        await self._update(intent.id, IntentStatus.PENDING, {
            'retry_count': retry_count,
            'last_error': last_error,
            'next_attempt_at': self.clock() + timedelta(seconds=delay),
        })
        self._arm(delay)
        self.retries_scheduled += 1
        logger.info(f"Retry {retry_count}/{self.max_attempts} for {intent.id} in {delay:.0f}s: {last_error}")
        return RecoveryResult.RETRY

    async def _update(self, intent_id: str, status: IntentStatus, patch: Dict[str, Any]):
        try:
            await self.store.update_status(intent_id, status, patch)
        except PersistenceError as e:
            # メモリ上には反映済み
            self.error_handler.handle_error(e, {'intent_id': intent_id})

    def _arm(self, delay: float):
        """遅延後に同期パスを起動するタイマー"""
        if self.wake_up is None:
            return

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire():
            self._timers.discard(handle)
            task = asyncio.ensure_future(self._run_wake_up())
            self._wake_tasks.add(task)
            task.add_done_callback(self._wake_tasks.discard)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    async def _run_wake_up(self):
        result = await self.wake_up()
        if result is None:
            logger.debug("Retry wake-up deferred until the running sync pass finishes")

    async def cancel_all(self):
        """未発火タイマーと実行中の起動処理を取り消し"""
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()

        for task in list(self._wake_tasks):
            task.cancel()
        await asyncio.gather(*self._wake_tasks, return_exceptions=True)
        self._wake_tasks.clear()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "retries_scheduled": self.retries_scheduled,
            "terminal_failures": self.terminal_failures,
            "pending_wakeups": self.pending_wakeups,
            "max_attempts": self.max_attempts,
        }
