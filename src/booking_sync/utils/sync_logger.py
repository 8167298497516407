"""
同期ログシステム - 構造化ログ（structlog）と同期メトリクスの収集
"""

import json
import logging
import sys
from collections import defaultdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import structlog


class LogLevel(Enum):
    """ログレベル定義"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MetricsCollector:
    """同期メトリクス収集"""

    def __init__(self):
        self.counters = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.histograms = defaultdict(list)
        self.start_time = datetime.now()

    def record_success(self, operation: str, duration: float):
        self.counters[f"{operation}_success"] += 1
        self.histograms[f"{operation}_duration"].append(duration)

    def record_error(self, operation: str, error_type: str):
        self.counters[f"{operation}_error_{error_type}"] += 1

    def record_event(self, event_name: str, count: int = 1):
        self.counters[event_name] += count

    def set_gauge(self, name: str, value: float):
        self.gauges[name] = value

    def get_health_summary(self) -> dict:
        """健全性サマリー"""
        successes = sum(count for key, count in self.counters.items() if key.endswith('_success'))
        errors = sum(count for key, count in self.counters.items() if '_error_' in key)
        total = successes + errors

        avg_durations = {
            key: sum(values) / len(values)
            for key, values in self.histograms.items() if values
        }

        return {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'success_rate_percent': (successes / total * 100) if total > 0 else 100.0,
            'total_operations': total,
            'avg_durations': avg_durations,
            'counters': dict(self.counters),
            'gauges': self.gauges.copy(),
        }


class SyncLogger:
    """構造化ログ + 標準ログ"""

    def __init__(self,
                 name: str = "booking_sync",
                 log_level: LogLevel = LogLevel.INFO,
                 log_file: Optional[Path] = None,
                 metrics_enabled: bool = True):
        self.name = name
        self.log_level = log_level
        self.log_file = log_file
        self.metrics = MetricsCollector() if metrics_enabled else None

        self._setup_structured_logging()
        self._setup_standard_logging()

    def _setup_structured_logging(self):
        """構造化ログの設定"""
        def add_context(logger, method_name, event_dict):
            event_dict['timestamp'] = datetime.now().isoformat()
            event_dict['logger'] = self.name
            return event_dict

        def json_formatter(logger, method_name, event_dict):
            return json.dumps(event_dict, ensure_ascii=False, default=str)

        structlog.configure(
            processors=[
                add_context,
                structlog.processors.add_log_level,
                json_formatter,
            ],
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, self.log_level.value)
            ),
            logger_factory=structlog.WriteLoggerFactory(),
            cache_logger_on_first_use=False,
        )

        self.structured_logger = structlog.get_logger(self.name)

    def _setup_standard_logging(self):
        """標準ログの設定（ハンドラーの重複登録はしない）"""
        self.logger = logging.getLogger(self.name)
        self.logger.setLevel(getattr(logging, self.log_level.value))

        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

        if not any(getattr(h, '_booking_sync', False) for h in self.logger.handlers):
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(formatter)
            console_handler._booking_sync = True
            self.logger.addHandler(console_handler)

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            file_handler._booking_sync = True
            self.logger.addHandler(file_handler)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[BaseException] = None, **kwargs):
        if error:
            kwargs['error_type'] = error.__class__.__name__
            kwargs['error_message'] = str(error)
        self._log(LogLevel.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def _log(self, level: LogLevel, message: str, **kwargs):
        """内部ログ処理"""
        if self.metrics and level == LogLevel.ERROR:
            self.metrics.record_error(kwargs.get('operation', 'unknown'),
                                      kwargs.get('error_type', 'unknown'))

        log_method = getattr(self.structured_logger, level.value.lower())
        log_method(message, **kwargs)

        if kwargs:
            message = f"{message} | Context: {json.dumps(kwargs, default=str)}"
        getattr(self.logger, level.value.lower())(message)

    def log_operation_start(self, operation: str, **context) -> dict:
        """操作開始ログ"""
        start_time = datetime.now()
        self.debug(f"Operation started: {operation}", operation=operation, **context)
        return {'start_time': start_time, 'operation': operation, **context}

    def log_operation_end(self, operation_context: dict, success: bool = True, **additional_context):
        """操作終了ログ"""
        start_time = operation_context.get('start_time')
        operation = operation_context.get('operation', 'unknown')
        duration = (datetime.now() - start_time).total_seconds() if start_time else 0.0

        context = {k: v for k, v in operation_context.items() if k not in ('start_time', 'operation')}
        context.update(additional_context)

        if success:
            if self.metrics:
                self.metrics.record_success(operation, duration)
            self.info(f"Operation completed: {operation} ({duration:.2f}s)",
                      operation=operation, duration_seconds=duration, **context)
        else:
            self.error(f"Operation failed: {operation} ({duration:.2f}s)",
                       operation=operation, duration_seconds=duration, **context)

    def get_health_status(self) -> dict:
        """健全性ステータス"""
        if not self.metrics:
            return {"status": "metrics_disabled"}

        summary = self.metrics.get_health_summary()
        success_rate = summary['success_rate_percent']
        if success_rate >= 98.0:
            status = "healthy"
        elif success_rate >= 90.0:
            status = "warning"
        elif success_rate >= 70.0:
            status = "degraded"
        else:
            status = "critical"

        return {"overall_status": status, "timestamp": datetime.now().isoformat(), **summary}


# グローバルインスタンス
_global_logger: Optional[SyncLogger] = None


def get_logger(name: str = "booking_sync",
               log_level: LogLevel = LogLevel.INFO,
               log_file: Optional[Path] = None) -> SyncLogger:
    """グローバルロガー取得"""
    global _global_logger

    if _global_logger is None:
        _global_logger = SyncLogger(name, log_level, log_file)

    return _global_logger


def setup_logging(config: Optional[dict] = None) -> SyncLogger:
    """ログ設定の初期化"""
    config = config or {}

    log_file_path = config.get('file_path')

    global _global_logger
    _global_logger = SyncLogger(
        name=config.get('name', 'booking_sync'),
        log_level=LogLevel(str(config.get('level', 'INFO')).upper()),
        log_file=Path(log_file_path) if log_file_path else None,
        metrics_enabled=config.get('metrics_enabled', True),
    )
    return _global_logger
