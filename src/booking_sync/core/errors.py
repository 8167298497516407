"""同期処理の例外定義"""

from typing import Optional


class SyncError(Exception):
    """同期処理エラーの基底クラス"""


class NetworkError(SyncError):
    """通信失敗・タイムアウト"""


class ServerRejection(SyncError):
    """サーバーが非成功ステータスを返した"""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        detail = f": {body[:200]}" if body else ""
        super().__init__(f"Server responded with {status}{detail}")


class ConflictUnresolvable(SyncError):
    """競合を自動解決できなかった（リトライ不可）"""


class PersistenceError(SyncError):
    """ローカルストレージへの書き込み失敗"""

    def __init__(self, message: str, intent_id: Optional[str] = None):
        self.intent_id = intent_id
        super().__init__(message)


class InvalidTransitionError(ValueError):
    """許可されていないステータス遷移"""
