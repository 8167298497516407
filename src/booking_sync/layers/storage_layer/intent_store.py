"""
インテントストア - オフライン予約インテントの永続キュー
コレクション全体を1つのキーにJSONで保存し、変更ごとに丸ごと書き戻す
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ...core.errors import InvalidTransitionError, PersistenceError
from ...core.models import (
    ALLOWED_TRANSITIONS, BookingIntent, BookingRequest, IntentStatus, utc_now,
)
from .key_value_store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "village_offline_bookings"

# patchで更新可能なフィールド
PATCHABLE_FIELDS = frozenset({
    'resource_id', 'check_in', 'check_out', 'total_amount',
    'retry_count', 'last_error', 'remote_id', 'next_attempt_at',
})


class IntentStore:
    """予約インテントキュー"""

    def __init__(self,
                 backend: KeyValueStore,
                 storage_key: str = DEFAULT_STORAGE_KEY,
                 clock: Optional[Callable[[], datetime]] = None):
        self.backend = backend
        self.storage_key = storage_key
        self.clock = clock or utc_now

        # 書き込み失敗後はメモリ上の状態が正
        self._intents: List[BookingIntent] = []
        self._degraded = False
        self.last_persistence_error: Optional[PersistenceError] = None

        # 変更操作（read-modify-write）を直列化
        self._lock = asyncio.Lock()

    @property
    def is_degraded(self) -> bool:
        return self._degraded

    async def initialize(self) -> None:
        """バックエンド初期化と既存キューの読み込み"""
        await self.backend.initialize()
        self._intents = await self._read_all()
        logger.info(f"Intent store loaded: {len(self._intents)} intents under '{self.storage_key}'")

    async def enqueue(self, request: BookingRequest) -> str:
        """インテントをキューに追加してIDを返す"""
        intent = BookingIntent.create(request, created_at=self.clock())

        async with self._lock:
            intents = await self._read_all()
            intents.append(intent)
            await self._write_all(intents, intent_id=intent.id)

        logger.info(f"Booking intent queued: {intent.id} (resource {intent.resource_id})")
        return intent.id

    async def list(self) -> List[BookingIntent]:
        """全インテントを投入順に取得"""
        return await self._read_all()

    async def get(self, intent_id: str) -> Optional[BookingIntent]:
        for intent in await self._read_all():
            if intent.id == intent_id:
                return intent
        return None

    async def update_status(self,
                            intent_id: str,
                            status: IntentStatus,
                            patch: Optional[Dict[str, Any]] = None) -> Optional[BookingIntent]:
        """ステータス更新（不明なIDならNone）"""
        patch = patch or {}
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported patch fields: {sorted(unknown)}")

        async with self._lock:
            intents = await self._read_all()
            index = next((i for i, item in enumerate(intents) if item.id == intent_id), None)
            if index is None:
                logger.warning(f"Status update for unknown intent ignored: {intent_id}")
                return None

            current = intents[index]
            if status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransitionError(
                    f"Intent {intent_id}: {current.status.value} -> {status.value} is not allowed"
                )
            if patch.get('retry_count', current.retry_count) < current.retry_count:
                raise InvalidTransitionError(f"Intent {intent_id}: retry_count must not decrease")

            updated = current.revised(status=status, **patch)
            intents[index] = updated
            await self._write_all(intents, intent_id=intent_id)

        logger.debug(f"Intent {intent_id}: {current.status.value} -> {status.value}")
        return updated

    async def reset_interrupted(self) -> List[str]:
        """前回プロセスでsyncingのまま残ったインテントをpendingに戻す"""
        async with self._lock:
            intents = await self._read_all()
            reset_ids = []
            for index, intent in enumerate(intents):
                if intent.status == IntentStatus.SYNCING:
                    intents[index] = intent.revised(status=IntentStatus.PENDING)
                    reset_ids.append(intent.id)
            if reset_ids:
                await self._write_all(intents)

        if reset_ids:
            logger.info(f"Reset {len(reset_ids)} interrupted intents to pending")
        return reset_ids

    async def requeue_failed(self, intent_id: str) -> Optional[str]:
        """失敗したインテントを同じ位置に新しいpendingインテントとして置き換え（不明なIDならNone）

        failedは終端状態のため、ID・retry_count・created_atは新規に採番する。
        """
        async with self._lock:
            intents = await self._read_all()
            index = next((i for i, item in enumerate(intents) if item.id == intent_id), None)
            if index is None:
                return None

            current = intents[index]
            if current.status != IntentStatus.FAILED:
                raise InvalidTransitionError(
                    f"Intent {intent_id}: only failed intents can be requeued, not {current.status.value}"
                )

            replacement = BookingIntent.create(current.to_request(), created_at=self.clock())
            intents[index] = replacement
            await self._write_all(intents, intent_id=replacement.id)

        logger.info(f"Failed intent {intent_id} requeued as {replacement.id}")
        return replacement.id

    async def remove(self, intent_id: str) -> bool:
        """インテント削除"""
        async with self._lock:
            intents = await self._read_all()
            remaining = [intent for intent in intents if intent.id != intent_id]
            if len(remaining) == len(intents):
                return False
            await self._write_all(remaining, intent_id=intent_id)

        logger.debug(f"Intent removed: {intent_id}")
        return True

    async def _read_all(self) -> List[BookingIntent]:
        """コレクション全体の読み込み"""
        if self._degraded:
            return list(self._intents)

        try:
            raw = await self.backend.get(self.storage_key)
        except PersistenceError as e:
            logger.error(f"Failed to load booking intents, using in-memory copy: {e}")
            return list(self._intents)

        if not raw:
            return []

        try:
            intents = [BookingIntent.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Stored booking intents are unreadable, using in-memory copy: {e}")
            return list(self._intents)

        self._intents = intents
        return list(intents)

    async def _write_all(self, intents: List[BookingIntent], intent_id: Optional[str] = None):
        """コレクション全体の書き込み（失敗してもメモリ上には反映）"""
        self._intents = list(intents)

        payload = json.dumps([intent.to_dict() for intent in intents], ensure_ascii=False)
        try:
            await self.backend.set(self.storage_key, payload)
        except PersistenceError as e:
            self._degraded = True
            self.last_persistence_error = e
            logger.error(f"Failed to save booking intents, continuing in memory only: {e}")
            raise PersistenceError(str(e), intent_id=intent_id) from e

        if self._degraded:
            # メモリ上の全件を書き戻せたので永続化に復帰
            self._degraded = False
            logger.info("Intent store persistence recovered")

    def get_statistics(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {status.value: 0 for status in IntentStatus}
        for intent in self._intents:
            counts[intent.status.value] += 1
        return {
            "total_intents": len(self._intents),
            "by_status": counts,
            "degraded": self._degraded,
        }
