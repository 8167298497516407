"""
設定管理システム - 階層化YAML設定と秘密情報の管理
"""

import base64
import json
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from cryptography.fernet import Fernet, InvalidToken

from ..utils.sync_logger import get_logger

logger = get_logger()

ENCRYPTED_PREFIX = "encrypted:"


@dataclass
class StorageConfig:
    """ローカルストレージ設定"""
    backend: str = "sqlite"                  # sqlite, memory
    database_path: str = "data/booking_sync.db"
    storage_key: str = "village_offline_bookings"


@dataclass
class RemoteConfig:
    """予約API設定"""
    base_url: str = "http://localhost:3000"
    timeout_seconds: float = 30.0
    health_path: str = "/api/health"
    endpoints: Dict[str, str] = field(default_factory=lambda: {
        "commit": "/api/bookings",
        "check_conflicts": "/api/bookings/check-conflicts",
        "suggest_alternatives": "/api/bookings/suggest-alternatives",
        "search_alternatives": "/api/homestays/search-alternatives",
    })


@dataclass
class RetryConfig:
    """リトライ設定"""
    max_attempts: int = 3
    backoff_base: float = 2.0


@dataclass
class SyncConfig:
    """同期エンジン設定"""
    confirmed_grace_seconds: float = 5.0
    periodic_interval_seconds: float = 300.0   # 0で無効
    probe_interval_seconds: float = 30.0
    sync_on_start: bool = True


@dataclass
class LoggingConfig:
    """ログ設定"""
    level: str = "INFO"
    file_path: Optional[str] = None
    metrics_enabled: bool = True


@dataclass
class BookingSyncConfig:
    """設定メインクラス"""
    storage: StorageConfig = field(default_factory=StorageConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug: bool = False
    version: str = "1.0.0"
    environment: str = "development"  # development, staging, production

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


SECTION_TYPES = {
    'storage': StorageConfig,
    'remote': RemoteConfig,
    'retry': RetryConfig,
    'sync': SyncConfig,
    'logging': LoggingConfig,
}


class SecurityManager:
    """秘密情報の暗号化・復号"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or self._get_or_create_key()
        self.cipher = Fernet(self.encryption_key.encode())

    def _get_or_create_key(self) -> str:
        key = os.getenv('BOOKING_SYNC_ENCRYPTION_KEY')

        if not key:
            key = Fernet.generate_key().decode()
            logger.warning(
                "New encryption key generated. Store it securely!",
                key_preview=key[:8] + "...",
                operation="key_generation"
            )

        return key

    def encrypt_value(self, value: str) -> str:
        encrypted = self.cipher.encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """復号（失敗時は元の値を返す）"""
        try:
            decoded = base64.urlsafe_b64decode(encrypted_value.encode())
            return self.cipher.decrypt(decoded).decode()
        except (InvalidToken, ValueError) as e:
            logger.error("Decryption failed", error=e, operation="secrets_decrypt")
            return encrypted_value


class ConfigManager:
    """設定管理メインクラス"""

    SECTION_FILES = ('storage', 'remote', 'retry', 'sync', 'logging')
    SECRET_KEYS = ('BOOKING_SYNC_API_TOKEN',)

    def __init__(self,
                 config_dir: Union[str, Path] = "config",
                 secrets_dir: Optional[Union[str, Path]] = None,
                 encryption_key: Optional[str] = None):
        self.config_dir = Path(config_dir)
        self.secrets_dir = Path(secrets_dir) if secrets_dir else self.config_dir / "secrets"
        self._encryption_key = encryption_key
        self._security_manager: Optional[SecurityManager] = None

        self._config_cache: Optional[BookingSyncConfig] = None
        self._secrets_cache: Dict[str, Any] = {}

    @property
    def security_manager(self) -> SecurityManager:
        if self._security_manager is None:
            self._security_manager = SecurityManager(self._encryption_key)
        return self._security_manager

    def load_config(self, reload: bool = False) -> BookingSyncConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        merged = self._load_yaml_file(self.config_dir / "main.yaml")
        for section in self.SECTION_FILES:
            section_config = self._load_yaml_file(self.config_dir / f"{section}.yaml")
            if section_config:
                if not isinstance(merged.get(section), dict):
                    merged[section] = {}
                merged[section].update(section_config)

        merged = self._apply_env_overrides(merged)
        self._config_cache = self._create_config_object(merged)

        logger.info(
            "Configuration loaded",
            environment=self._config_cache.environment,
            version=self._config_cache.version,
            operation="config_load"
        )
        return self._config_cache

    def load_secrets(self, reload: bool = False) -> Dict[str, Any]:
        """秘密情報の読み込み（優先順位: 環境変数 > .env > JSON）"""
        if self._secrets_cache and not reload:
            return self._secrets_cache

        self._secrets_cache = {
            **self._load_json_secrets(),
            **self._load_env_file(),
            **self._load_env_secrets(),
        }
        self._decrypt_secrets()

        logger.info("Secrets loaded", secret_count=len(self._secrets_cache), operation="secrets_load")
        return self._secrets_cache

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        if not file_path.exists():
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load YAML file: {file_path}", error=e, operation="config_load")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-mapping YAML file: {file_path}")
            return {}
        return data

    def _load_env_secrets(self) -> Dict[str, str]:
        return {key: os.environ[key] for key in self.SECRET_KEYS if os.getenv(key)}

    def _load_env_file(self) -> Dict[str, str]:
        env_file = self.secrets_dir / ".env"
        if not env_file.exists():
            return {}

        secrets = {}
        with open(env_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    secrets[key.strip()] = value.strip().strip('"\'')
        return secrets

    def _load_json_secrets(self) -> Dict[str, Any]:
        file_path = self.secrets_dir / "api_credentials.json"
        if not file_path.exists():
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Failed to load JSON secrets", error=e, operation="secrets_load")
            return {}

    def _decrypt_secrets(self):
        for key, value in self._secrets_cache.items():
            if isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX):
                self._secrets_cache[key] = self.security_manager.decrypt_value(value[len(ENCRYPTED_PREFIX):])

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        env_overrides = {
            'BOOKING_SYNC_DEBUG': ('debug', lambda x: x.lower() in ['true', '1', 'yes']),
            'BOOKING_SYNC_ENVIRONMENT': ('environment', str),
            'BOOKING_SYNC_LOG_LEVEL': ('logging.level', str.upper),
            'BOOKING_SYNC_API_BASE_URL': ('remote.base_url', str),
            'BOOKING_SYNC_DATABASE_PATH': ('storage.database_path', str),
        }

        for env_key, (config_path, converter) in env_overrides.items():
            env_value = os.getenv(env_key)
            if env_value:
                self._set_nested_value(config, config_path, converter(env_value))

        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        keys = path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict) -> BookingSyncConfig:
        """設定辞書から設定オブジェクトを作成（未知のキーは無視）"""
        kwargs: Dict[str, Any] = {}
        top_level = {f.name for f in fields(BookingSyncConfig)}

        for key, value in config_dict.items():
            if key in SECTION_TYPES:
                section_type = SECTION_TYPES[key]
                known = {f.name for f in fields(section_type)}
                section_values = value if isinstance(value, dict) else {}
                ignored = set(section_values) - known
                if ignored:
                    logger.warning(f"Unknown {key} settings ignored: {sorted(ignored)}")
                kwargs[key] = section_type(**{k: v for k, v in section_values.items() if k in known})
            elif key in top_level:
                kwargs[key] = value
            else:
                logger.warning(f"Unknown setting ignored: {key}")

        return BookingSyncConfig(**kwargs)

    def save_config_template(self):
        """設定ファイルテンプレートの作成"""
        defaults = BookingSyncConfig()
        templates = {
            "main.yaml": {
                "version": defaults.version,
                "environment": defaults.environment,
                "debug": defaults.debug,
            },
            "storage.yaml": asdict(defaults.storage),
            "remote.yaml": asdict(defaults.remote),
            "retry.yaml": asdict(defaults.retry),
            "sync.yaml": asdict(defaults.sync),
            "logging.yaml": asdict(defaults.logging),
        }

        self.config_dir.mkdir(parents=True, exist_ok=True)
        for filename, template in templates.items():
            file_path = self.config_dir / filename
            if not file_path.exists():
                with open(file_path, 'w', encoding='utf-8') as f:
                    yaml.safe_dump(template, f, default_flow_style=False, allow_unicode=True)
                logger.info(f"Created config template: {filename}")
