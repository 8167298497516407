"""
キーバリューストレージ - インテントキューの永続化ポート
SQLite（aiosqlite）実装とテスト用インメモリ実装
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

import aiosqlite

from ...core.errors import PersistenceError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """永続キーバリューストアのインターフェース"""

    async def initialize(self) -> None:
        """初期化（必要な実装のみ）"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """値の取得（未保存ならNone）"""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """値の保存（失敗時はPersistenceError）"""

    async def close(self) -> None:
        """後始末"""


class InMemoryKeyValueStore(KeyValueStore):
    """プロセス内メモリのみのストア（テスト・一時利用向け）"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value


class SQLiteKeyValueStore(KeyValueStore):
    """SQLiteによるキーバリュー永続化"""

    def __init__(self, database_path: Union[str, Path] = "data/booking_sync.db"):
        self.database_path = Path(database_path)
        self._initialized = False

    async def initialize(self) -> None:
        """テーブル作成"""
        table_sql = """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
        try:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(table_sql)
                await db.commit()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to initialize key-value store {self.database_path}: {e}") from e

        self._initialized = True
        logger.info(f"Key-value store initialized: {self.database_path}")

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.initialize()

    async def get(self, key: str) -> Optional[str]:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row[0] if row else None
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to read key {key}: {e}") from e

    async def set(self, key: str, value: str) -> None:
        await self._ensure_initialized()
        sql = """
        INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
        """
        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (key, value))
                await db.commit()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to write key {key}: {e}") from e

        logger.debug(f"Stored key {key} ({len(value)} bytes)")
