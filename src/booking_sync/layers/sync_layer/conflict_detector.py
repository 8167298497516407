"""
競合検出 - ローカルの予約インテントとサーバー側確定予約の突き合わせ
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from ...core.errors import SyncError
from ...core.models import (
    AvailabilityQuery, BookingIntent, ConflictRecord, ConflictType,
    RemoteBooking, ResolutionHint,
)
from ..remote_layer.booking_api import BookingApiClient
from .error_handler import bounded

logger = logging.getLogger(__name__)

ConflictPredicate = Callable[[BookingIntent, RemoteBooking], bool]


def date_ranges_overlap(start_a: datetime, end_a: datetime,
                        start_b: datetime, end_b: datetime) -> bool:
    """半開区間 [start, end) の重なり判定"""
    return start_a < end_b and end_a > start_b


def _dates_overlap(intent: BookingIntent, remote: RemoteBooking) -> bool:
    return date_ranges_overlap(intent.check_in, intent.check_out, remote.check_in, remote.check_out)


def _capacity_exceeded(intent: BookingIntent, remote: RemoteBooking) -> bool:
    if remote.max_guests is None:
        return False
    return intent.guests + remote.guests > remote.max_guests


def _always(intent: BookingIntent, remote: RemoteBooking) -> bool:
    return True


# 判定順（先にマッチしたものを採用）
CLASSIFICATION_RULES: Tuple[Tuple[ConflictPredicate, ConflictType], ...] = (
    (_dates_overlap, ConflictType.DATE_OVERLAP),
    (_capacity_exceeded, ConflictType.CAPACITY_EXCEEDED),
    (_always, ConflictType.PRICING_CHANGED),
)


def classify_conflict(intent: BookingIntent,
                      remote: RemoteBooking,
                      rules: Sequence[Tuple[ConflictPredicate, ConflictType]] = CLASSIFICATION_RULES) -> ConflictType:
    """競合タイプの分類"""
    for predicate, conflict_type in rules:
        if predicate(intent, remote):
            return conflict_type
    return ConflictType.PRICING_CHANGED


def resolution_hint(intent: BookingIntent, remote: RemoteBooking) -> ResolutionHint:
    """Last-Writer-Wins: ローカルの作成時刻が厳密に新しければkeep_local"""
    if intent.created_at > remote.created_at:
        return ResolutionHint.KEEP_LOCAL
    return ResolutionHint.KEEP_REMOTE


class ConflictDetector:
    """競合検出エンジン"""

    def __init__(self, api: BookingApiClient, timeout_seconds: Optional[float] = 30.0):
        self.api = api
        self.timeout_seconds = timeout_seconds

        # 統計情報
        self.checks_performed = 0
        self.conflicts_detected = 0
        self.check_failures = 0

    async def detect(self, intent: BookingIntent) -> List[ConflictRecord]:
        """競合検出（問い合わせ失敗時は競合なし扱い）"""
        self.checks_performed += 1
        query = AvailabilityQuery.from_intent(intent)

        try:
            competing = await bounded(self.api.check_conflicts(query), self.timeout_seconds, "check_conflicts")
        except SyncError as e:
            # 検出系の障害で同期全体を止めない（最終判定はサーバー側）
            self.check_failures += 1
            logger.warning(f"Conflict check failed for {intent.id}, proceeding without conflicts: {e}")
            return []

        conflicts = [
            ConflictRecord(
                intent_id=intent.id,
                remote=remote,
                conflict_type=classify_conflict(intent, remote),
                resolution_hint=resolution_hint(intent, remote),
            )
            for remote in competing
        ]

        if conflicts:
            self.conflicts_detected += len(conflicts)
            logger.info(f"Detected {len(conflicts)} conflicts for {intent.id}: "
                        f"{', '.join(c.conflict_type.value for c in conflicts)}")
        return conflicts

    def get_statistics(self) -> dict:
        return {
            "checks_performed": self.checks_performed,
            "conflicts_detected": self.conflicts_detected,
            "check_failures": self.check_failures,
        }
