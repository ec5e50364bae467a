"""
強化ログシステム
structlogによる構造化ログと同期メトリクス収集
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

ROOT_LOGGER_NAME = "calendar_sync"


class LogLevel(Enum):
    """ログレベル定義"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MetricsCollector:
    """システムメトリクス収集"""

    def __init__(self):
        self.success_counts: Dict[str, int] = defaultdict(int)
        self.error_counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, list] = defaultdict(list)
        self.start_time = datetime.now()

    def record_success(self, operation: str, duration: float = 0.0):
        """成功メトリクス記録"""
        self.success_counts[operation] += 1
        self.histograms[f"{operation}_duration"].append(duration)

    def record_error(self, operation: str, error_type: str):
        """エラーメトリクス記録"""
        self.error_counts[operation][error_type] += 1

    def record_event(self, event_name: str, count: int = 1):
        self.counters[event_name] += count

    def set_gauge(self, name: str, value: float):
        self.gauges[name] = value

    def get_health_summary(self) -> dict:
        """システム健全性サマリー"""
        uptime = (datetime.now() - self.start_time).total_seconds()

        total_successes = sum(self.success_counts.values())
        total_errors = sum(sum(by_type.values()) for by_type in self.error_counts.values())
        total_operations = total_successes + total_errors
        success_rate = (total_successes / total_operations * 100) if total_operations > 0 else 100.0

        avg_response_times = {
            key: sum(values) / len(values)
            for key, values in self.histograms.items() if values
        }

        return {
            'uptime_seconds': uptime,
            'success_rate_percent': success_rate,
            'total_operations': total_operations,
            'avg_response_times': avg_response_times,
            'error_rates_by_type': self._get_error_rates(),
            'counters': dict(self.counters),
            'gauges': self.gauges.copy(),
            'last_health_check': datetime.now().isoformat(),
        }

    def _get_error_rates(self) -> Dict[str, float]:
        """操作・エラータイプ別のエラー率"""
        error_rates = {}
        for operation, by_type in self.error_counts.items():
            total = self.success_counts.get(operation, 0) + sum(by_type.values())
            for error_type, count in by_type.items():
                error_rates[f"{operation}:{error_type}"] = count / total * 100 if total else 0.0
        return error_rates


class EnhancedLogger:
    """構造化ロガー(モジュール単位)"""

    def __init__(self, name: str, metrics: Optional[MetricsCollector] = None):
        self.name = name
        self.metrics = metrics
        self._logger = structlog.get_logger(name)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[BaseException] = None, **kwargs):
        """エラーログ"""
        if error is not None:
            kwargs['error_type'] = error.__class__.__name__
            kwargs['error_message'] = str(error)
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def _log(self, level: LogLevel, message: str, **kwargs):
        if self.metrics and level in (LogLevel.ERROR, LogLevel.CRITICAL):
            self.metrics.record_error(kwargs.get('operation', 'unknown'),
                                      kwargs.get('error_type', 'unknown'))

        log_method = getattr(self._logger, level.value.lower())
        log_method(message, **kwargs)

    def log_operation_start(self, operation: str, **context) -> dict:
        """操作開始ログ"""
        start_time = datetime.now()
        self.info(f"Operation started: {operation}",
                  operation=operation, status='started', **context)
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
                      operation=operation, status='success', duration_seconds=duration, **context)
        else:
            self.error(f"Operation failed: {operation} ({duration:.2f}s)",
                       operation=operation, status='failed', duration_seconds=duration, **context)
        return duration


# モジュール共通状態
_loggers: Dict[str, EnhancedLogger] = {}
_metrics = MetricsCollector()
_metrics_enabled = True


def get_metrics() -> MetricsCollector:
    return _metrics


def get_logger(name: str = ROOT_LOGGER_NAME) -> EnhancedLogger:
    """名前ごとにキャッシュされたロガーを取得"""
    if name not in _loggers:
        _loggers[name] = EnhancedLogger(name, _metrics if _metrics_enabled else None)
    return _loggers[name]


def setup_logging(config: Any = None) -> MetricsCollector:
    """
    ログ設定の初期化

    config は LoggingConfig か辞書 (level, file_path, metrics_enabled)。
    """
    global _metrics, _metrics_enabled

    if config is None:
        config = {}
    elif not isinstance(config, dict):
        config = {
            'level': config.level,
            'file_path': config.file_path,
            'metrics_enabled': config.metrics_enabled,
        }

    log_level = LogLevel(str(config.get('level', 'INFO')).upper())
    numeric_level = getattr(logging, log_level.value)

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(serializer=json.dumps, ensure_ascii=False, default=str),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    file_path = config.get('file_path')
    if file_path:
        log_file = Path(file_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    _metrics = MetricsCollector()
    _metrics_enabled = bool(config.get('metrics_enabled', True))
    metrics = _metrics if _metrics_enabled else None
    for name in list(_loggers):
        _loggers[name] = EnhancedLogger(name, metrics)

    return _metrics
