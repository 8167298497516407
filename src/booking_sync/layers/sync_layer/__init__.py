"""
同期層 - オフライン予約キューとサーバーの照合を管理
"""

from .sync_coordinator import SyncCoordinator
from .conflict_detector import ConflictDetector, classify_conflict, date_ranges_overlap
from .conflict_resolver import ConflictResolver
from .retry_scheduler import RetryScheduler
from .error_handler import ErrorHandler, RecoveryResult

__all__ = [
    'SyncCoordinator',
    'ConflictDetector', 'classify_conflict', 'date_ranges_overlap',
    'ConflictResolver',
    'RetryScheduler',
    'ErrorHandler', 'RecoveryResult'
]
