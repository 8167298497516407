"""
エラーハンドリング - 同期処理のエラー分類とリトライ判定
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Dict, Optional, TypeVar

from ...core.errors import (
    ConflictUnresolvable, NetworkError, PersistenceError, ServerRejection,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ErrorType(Enum):
    """エラータイプ分類"""
    NETWORK_ERROR = "network_error"
    SERVER_REJECTION = "server_rejection"
    CONFLICT_UNRESOLVABLE = "conflict_unresolvable"
    PERSISTENCE_ERROR = "persistence_error"
    UNKNOWN_ERROR = "unknown_error"


class RecoveryResult(Enum):
    """リトライ判定結果"""
    RETRY = "retry"
    FAIL = "fail"


@dataclass
class ErrorStrategy:
    """エラー対応戦略設定"""
    retryable: bool
    alert_threshold: int = 1


class ErrorHandler:
    """同期エラーの分類・集計"""

    # エラータイプ別の対応戦略
    STRATEGIES: Dict[ErrorType, ErrorStrategy] = {
        ErrorType.NETWORK_ERROR: ErrorStrategy(retryable=True, alert_threshold=5),
        ErrorType.SERVER_REJECTION: ErrorStrategy(retryable=True, alert_threshold=3),
        ErrorType.CONFLICT_UNRESOLVABLE: ErrorStrategy(retryable=False, alert_threshold=3),
        ErrorType.PERSISTENCE_ERROR: ErrorStrategy(retryable=False, alert_threshold=1),
        # 想定外の例外もリトライ対象
        ErrorType.UNKNOWN_ERROR: ErrorStrategy(retryable=True, alert_threshold=3),
    }

    def __init__(self):
        self.error_counts: Dict[ErrorType, int] = {}

    def classify_error(self, error: BaseException) -> ErrorType:
        """エラーを分類してタイプを返す"""
        if isinstance(error, NetworkError):
            return ErrorType.NETWORK_ERROR
        if isinstance(error, ServerRejection):
            return ErrorType.SERVER_REJECTION
        if isinstance(error, ConflictUnresolvable):
            return ErrorType.CONFLICT_UNRESOLVABLE
        if isinstance(error, PersistenceError):
            return ErrorType.PERSISTENCE_ERROR
        if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
            return ErrorType.NETWORK_ERROR
        return ErrorType.UNKNOWN_ERROR

    def handle_error(self, error: BaseException, context: Optional[dict] = None) -> RecoveryResult:
        """エラーを記録し、リトライ可否を返す"""
        error_type = self.classify_error(error)
        strategy = self.STRATEGIES[error_type]

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1
        count = self.error_counts[error_type]

        logger.info(f"Error classified as {error_type.value} (count: {count}): {error}")

        if count == strategy.alert_threshold:
            logger.warning(
                f"Error threshold reached for {error_type.value}: {count} occurrences, "
                f"latest: {error} context: {context or {}}"
            )

        return RecoveryResult.RETRY if strategy.retryable else RecoveryResult.FAIL

    def get_statistics(self) -> Dict[str, int]:
        return {error_type.value: count for error_type, count in self.error_counts.items()}


def describe_error(error: BaseException) -> str:
    """lastErrorに記録する文字列"""
    message = str(error)
    return message if message else error.__class__.__name__


async def bounded(awaitable: Awaitable[T], timeout: Optional[float], operation: str) -> T:
    """リモート呼び出しにタイムアウトを設定（超過時はNetworkError）"""
    if not timeout:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise NetworkError(f"{operation} timed out after {timeout}s") from e
