"""
競合解決システム - 検出された予約競合を競合タイプ別のポリシーで解決
解決できない場合はNoneを返し、呼び出し側で確定失敗として扱う
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ...core.errors import ServerRejection
from ...core.models import (
    AvailabilityQuery, BookingIntent, ConflictRecord, ConflictType,
    ResolutionHint, ResourceSearchQuery,
)
from ..remote_layer.booking_api import BookingApiClient
from .error_handler import bounded

logger = logging.getLogger(__name__)

T = TypeVar('T')

ConflictHandler = Callable[[BookingIntent, ConflictRecord], Awaitable[Optional[BookingIntent]]]


class ConflictResolver:
    """競合解決エンジン"""

    def __init__(self, api: BookingApiClient, timeout_seconds: Optional[float] = 30.0):
        self.api = api
        self.timeout_seconds = timeout_seconds

        self._handlers: Dict[ConflictType, ConflictHandler] = {
            ConflictType.DATE_OVERLAP: self._resolve_date_overlap,
            ConflictType.CAPACITY_EXCEEDED: self._resolve_capacity_exceeded,
            ConflictType.PRICING_CHANGED: self._resolve_pricing_changed,
        }

        # 統計情報
        self.conflicts_resolved: Dict[str, int] = {t.value: 0 for t in ConflictType}
        self.conflicts_unresolvable: Dict[str, int] = {t.value: 0 for t in ConflictType}

    async def resolve(self, intent: BookingIntent, conflicts: List[ConflictRecord]) -> Optional[BookingIntent]:
        """競合解決（リストの先頭の競合のみで判定）"""
        if not conflicts:
            return intent

        conflict = conflicts[0]
        if len(conflicts) > 1:
            logger.debug(f"{intent.id}: {len(conflicts) - 1} further conflicts ignored, "
                         f"resolving {conflict.conflict_type.value} first")

        handler = self._handlers[conflict.conflict_type]
        resolved = await handler(intent, conflict)

        if resolved is None:
            self.conflicts_unresolvable[conflict.conflict_type.value] += 1
            logger.warning(f"Conflict could not be resolved for {intent.id}: {conflict.summary()}")
        else:
            self.conflicts_resolved[conflict.conflict_type.value] += 1
            logger.info(f"Conflict resolved for {intent.id}: {conflict.summary()}")

        return resolved

    async def _query_alternatives(self, call: Awaitable[List[T]], operation: str) -> List[T]:
        """代替案の問い合わせ（サーバー拒否は候補なし扱い、通信失敗は呼び出し側へ）"""
        try:
            return await bounded(call, self.timeout_seconds, operation)
        except ServerRejection as e:
            logger.warning(f"{operation} rejected by server: {e}")
            return []

    async def _resolve_date_overlap(self, intent: BookingIntent,
                                    conflict: ConflictRecord) -> Optional[BookingIntent]:
        """日程重複: ローカルが新しければそのまま、そうでなければ代替日程"""
        if conflict.resolution_hint == ResolutionHint.KEEP_LOCAL:
            # サーバー側の再検証に任せる
            return intent

        alternatives = await self._query_alternatives(
            self.api.suggest_alternative_dates(AvailabilityQuery.from_intent(intent)),
            "suggest_alternative_dates",
        )
        if not alternatives:
            return None

        alternative = alternatives[0]
        logger.info(f"{intent.id}: moving stay to {alternative.check_in.date()} - {alternative.check_out.date()}")
        return intent.revised(
            check_in=alternative.check_in,
            check_out=alternative.check_out,
            total_amount=alternative.total_amount,
        )

    async def _resolve_capacity_exceeded(self, intent: BookingIntent,
                                         conflict: ConflictRecord) -> Optional[BookingIntent]:
        """定員超過: 空きがあればそのまま、なければ代替リソース"""
        remote = conflict.remote
        if remote.max_guests is not None:
            available_capacity = remote.max_guests - remote.guests
            if intent.guests <= available_capacity:
                return intent

        candidates = await self._query_alternatives(
            self.api.search_alternative_resources(ResourceSearchQuery.from_intent(intent)),
            "search_alternative_resources",
        )
        candidates = [c for c in candidates if c.resource_id != intent.resource_id]
        if not candidates:
            return None

        candidate = candidates[0]
        logger.info(f"{intent.id}: moving booking from {intent.resource_id} to {candidate.resource_id}")
        return intent.revised(
            resource_id=candidate.resource_id,
            total_amount=candidate.estimated_price,
        )

    async def _resolve_pricing_changed(self, intent: BookingIntent,
                                       conflict: ConflictRecord) -> Optional[BookingIntent]:
        """料金変更: サーバーの現行料金を採用"""
        current_price = conflict.remote.current_price
        if current_price is None:
            return intent
        return intent.revised(total_amount=current_price)

    def get_statistics(self) -> Dict[str, Any]:
        """競合解決統計情報"""
        resolved = sum(self.conflicts_resolved.values())
        unresolvable = sum(self.conflicts_unresolvable.values())
        total = resolved + unresolvable
        return {
            "conflicts_resolved": resolved,
            "conflicts_unresolvable": unresolvable,
            "resolved_by_type": dict(self.conflicts_resolved),
            "unresolvable_by_type": dict(self.conflicts_unresolvable),
            "auto_resolution_rate": (resolved / total * 100) if total > 0 else 0.0,
        }
