"""
強化設定管理システム
階層化YAML設定ファイルと環境変数オーバーライド
"""

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union, get_type_hints

import yaml

from ..core.errors import ConfigurationError
from ..core.models import ConflictStrategy, SyncDirection, SyncSettings
from ..utils.enhanced_logger import get_logger

logger = get_logger(__name__)


@dataclass
class SyncDefaultsConfig:
    """同期デフォルト設定"""
    direction: str = "bidirectional"
    conflict_resolution: str = "keep_remote"
    sync_frequency_minutes: int = 15
    max_events_per_sync: int = 500
    initial_sync_window_days: int = 30
    request_timeout_seconds: float = 30.0
    failure_retry_minutes: int = 10
    sync_attendees: bool = False
    sync_attachments: bool = False
    max_attachment_size_mb: int = 25
    sync_private_events: bool = False


@dataclass
class ProviderRateLimitConfig:
    """プロバイダー別レート制限上書き"""
    requests_per_minute: Optional[int] = None
    requests_per_hour: Optional[int] = None
    requests_per_day: Optional[int] = None


@dataclass
class RateLimitConfig:
    """レート制限設定"""
    tick_interval_seconds: float = 5.0
    allow_queuing: bool = True
    batch_size: int = 10
    delay_between_batches: float = 1.0
    providers: Dict[str, ProviderRateLimitConfig] = field(default_factory=dict)


@dataclass
class RetryConfig:
    """オフラインキューのリトライ設定"""
    max_retries: int = 3
    base_delay_minutes: float = 1.0


@dataclass
class StorageConfig:
    database_path: str = "data/calendar_sync.db"


@dataclass
class SecurityConfig:
    """セキュリティ設定"""
    encryption_key_env: str = "CALSYNC_ENCRYPTION_KEY"
    allow_ephemeral_key: bool = False


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file_path: Optional[str] = None
    metrics_enabled: bool = True


@dataclass
class EngineConfig:
    """設定メインクラス"""
    sync: SyncDefaultsConfig = field(default_factory=SyncDefaultsConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug: bool = False
    environment: str = "development"  # development, staging, production

    def to_sync_settings(self) -> SyncSettings:
        """新規アカウント用の同期設定を構築"""
        try:
            direction = SyncDirection(self.sync.direction)
            strategy = ConflictStrategy(self.sync.conflict_resolution)
        except ValueError as e:
            raise ConfigurationError(f"Invalid sync defaults: {e}") from e

        return SyncSettings(
            direction=direction,
            conflict_resolution=strategy,
            max_retries=self.retry.max_retries,
            sync_frequency_minutes=self.sync.sync_frequency_minutes,
            max_events_per_sync=self.sync.max_events_per_sync,
            sync_attendees=self.sync.sync_attendees,
            sync_attachments=self.sync.sync_attachments,
            max_attachment_size_mb=self.sync.max_attachment_size_mb,
            sync_private_events=self.sync.sync_private_events,
            initial_sync_window_days=self.sync.initial_sync_window_days,
            request_timeout_seconds=self.sync.request_timeout_seconds,
        )


def _to_bool(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


def build_dataclass(cls, data: Optional[Dict[str, Any]], path: str = ""):
    """辞書からネストしたデータクラスを構築"""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected mapping for '{path or cls.__name__}', got {type(data).__name__}")

    hints = get_type_hints(cls)
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown config keys in '{path or cls.__name__}': {sorted(unknown)}")

    kwargs = {}
    for name, value in data.items():
        hint = hints[name]
        key_path = f"{path}.{name}" if path else name
        if is_dataclass(hint):
            kwargs[name] = build_dataclass(hint, value, key_path)
        elif name == "providers" and cls is RateLimitConfig:
            kwargs[name] = {
                provider: build_dataclass(ProviderRateLimitConfig, limits, f"{key_path}.{provider}")
                for provider, limits in (value or {}).items()
            }
        else:
            kwargs[name] = value
    return cls(**kwargs)


class ConfigManager:
    """設定管理メインクラス"""

    SECTION_FILES = {
        'sync': "sync.yaml",
        'rate_limits': "rate_limits.yaml",
        'storage': "storage.yaml",
    }

    ENV_OVERRIDES = {
        'CALSYNC_DEBUG': ('debug', _to_bool),
        'CALSYNC_ENVIRONMENT': ('environment', str),
        'CALSYNC_LOG_LEVEL': ('logging.level', str),
        'CALSYNC_DATABASE_PATH': ('storage.database_path', str),
        'CALSYNC_MAX_RETRIES': ('retry.max_retries', int),
        'CALSYNC_TICK_INTERVAL': ('rate_limits.tick_interval_seconds', float),
    }

    def __init__(self, config_dir: Union[str, Path] = "config"):
        self.config_dir = Path(config_dir)
        self._config_cache: Optional[EngineConfig] = None

    def load_config(self, reload: bool = False) -> EngineConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        main_config = self._load_yaml_file(self.config_dir / "main.yaml")
        section_configs = {
            section: self._load_yaml_file(self.config_dir / filename)
            for section, filename in self.SECTION_FILES.items()
        }

        merged_config = self._merge_configs(main_config, section_configs)
        merged_config = self._apply_env_overrides(merged_config)

        self._config_cache = build_dataclass(EngineConfig, merged_config)

        logger.info(
            "Configuration loaded successfully",
            config_dir=str(self.config_dir),
            environment=self._config_cache.environment,
            operation="config_load"
        )
        return self._config_cache

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み(壊れたファイルはデフォルト扱い)"""
        if not file_path.exists():
            logger.debug(f"Config file not found: {file_path}")
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to load YAML file: {file_path}", error=e, operation="config_load")
            return {}

        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Top level of {file_path} must be a mapping")
        return loaded

    def _merge_configs(self, main_config: Dict, section_configs: Dict) -> Dict:
        """セクションファイルはmain.yamlの同名セクションを上書き"""
        merged = dict(main_config)
        for section, section_config in section_configs.items():
            if section_config:
                base = dict(merged.get(section) or {})
                base.update(section_config)
                merged[section] = base
        return merged

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        for env_key, (config_path, converter) in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_key)
            if not env_value:
                continue
            try:
                converted_value = converter(env_value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_key}: {env_value!r}") from e
            self._set_nested_value(config, config_path, converted_value)
        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        """ネストされた設定値の設定"""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def save_config_template(self) -> List[Path]:
        """設定ファイルテンプレートの作成(既存ファイルは上書きしない)"""
        templates = {
            "main.yaml": {
                "environment": "development",
                "debug": False,
                "logging": {"level": "INFO", "file_path": "logs/calendar_sync.log"},
                "security": {"encryption_key_env": "CALSYNC_ENCRYPTION_KEY"},
                "retry": {"max_retries": 3, "base_delay_minutes": 1},
            },
            "sync.yaml": {
                "direction": "bidirectional",
                "conflict_resolution": "keep_remote",
                "sync_frequency_minutes": 15,
                "initial_sync_window_days": 30,
            },
            "rate_limits.yaml": {
                "tick_interval_seconds": 5,
                "allow_queuing": True,
                "providers": {"google_calendar": {"requests_per_minute": 100}},
            },
            "storage.yaml": {"database_path": "data/calendar_sync.db"},
        }

        self.config_dir.mkdir(parents=True, exist_ok=True)
        created = []
        for filename, template in templates.items():
            file_path = self.config_dir / filename
            if file_path.exists():
                continue
            with open(file_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(template, f, default_flow_style=False, allow_unicode=True)
            logger.info(f"Created config template: {filename}")
            created.append(file_path)
        return created


# グローバルインスタンス
_global_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_dir: Union[str, Path] = "config") -> ConfigManager:
    """グローバル設定マネージャーの取得"""
    global _global_config_manager

    if _global_config_manager is None:
        _global_config_manager = ConfigManager(config_dir)

    return _global_config_manager


def get_config(reload: bool = False) -> EngineConfig:
    return get_config_manager().load_config(reload)
