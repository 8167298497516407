"""
ストレージ層 - オフライン予約インテントの永続キュー
"""

from .key_value_store import KeyValueStore, InMemoryKeyValueStore, SQLiteKeyValueStore
from .intent_store import IntentStore, DEFAULT_STORAGE_KEY

__all__ = [
    'KeyValueStore', 'InMemoryKeyValueStore', 'SQLiteKeyValueStore',
    'IntentStore', 'DEFAULT_STORAGE_KEY'
]
