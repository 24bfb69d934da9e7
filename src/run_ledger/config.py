"""
Configuration system for run-ledger.

This module provides typed configuration classes with:
- Dataclass-based settings with validation
- Environment variable loading (optionally from a .env file)
- YAML, TOML or JSON file loading
- Sensible defaults with override capability
"""
from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import orjson
import yaml
from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError


# =============================================================================
# Storage Configuration
# =============================================================================

@dataclass
class DatabaseConfig:
    """PostgreSQL settings for the durable stores."""

    dsn: Optional[str] = field(default_factory=lambda: os.getenv("POSTGRES_DSN"))
    min_pool_size: int = 1
    max_pool_size: int = 10

    runs_table: str = "ledger_runs"
    steps_table: str = "ledger_steps"
    approvals_table: str = "ledger_approvals"

    def __post_init__(self):
        if self.min_pool_size < 0:
            raise ConfigError("min_pool_size cannot be negative")
        if self.max_pool_size < max(1, self.min_pool_size):
            raise ConfigError("max_pool_size must be >= min_pool_size and >= 1")


@dataclass
class RedisConfig:
    """Redis settings for approval wake-up signals."""

    url: Optional[str] = field(default_factory=lambda: os.getenv("REDIS_URL"))
    channel_prefix: str = "run_ledger:approval"


# =============================================================================
# Ledger Behaviour
# =============================================================================

@dataclass
class RunConfig:
    """Defaults for run queries."""

    recent_window_hours: float = 24.0
    default_limit: int = 100

    def __post_init__(self):
        if self.recent_window_hours <= 0:
            raise ConfigError("recent_window_hours must be positive")
        if self.default_limit < 1:
            raise ConfigError("default_limit must be at least 1")


@dataclass
class StepConfig:
    """Step hashing and payload retention."""

    hash_length: int = 16
    store_full_input: bool = False
    store_full_output: bool = False

    def __post_init__(self):
        if not 8 <= self.hash_length <= 64:
            raise ConfigError("hash_length must be between 8 and 64")


@dataclass
class ApprovalConfig:
    """Approval gate settings."""

    ttl_hours: float = 24.0
    environment: str = field(default_factory=lambda: os.getenv("APP_ENV", "development"))
    input_summary_chars: int = 200
    triggers_file: Optional[Path] = None

    # Whether sweep() also fails runs whose approvals expired while paused.
    reconcile_expired_runs: bool = False

    def __post_init__(self):
        if self.ttl_hours <= 0:
            raise ConfigError("ttl_hours must be positive")
        if self.input_summary_chars < 1:
            raise ConfigError("input_summary_chars must be at least 1")
        if isinstance(self.triggers_file, str):
            self.triggers_file = Path(self.triggers_file)

    @property
    def ttl_seconds(self) -> float:
        return self.ttl_hours * 3600.0


# =============================================================================
# Logging Configuration
# =============================================================================

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["text", "json"]


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: LogLevel = "INFO"
    format: LogFormat = "json"


# =============================================================================
# Master Configuration
# =============================================================================

@dataclass
class Settings:
    """
    Master configuration for the ledger.

    Aggregates all configuration sections into a single object that can
    be loaded from environment variables, a settings file, or constructed
    programmatically.
    """

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    runs: RunConfig = field(default_factory=RunConfig)
    steps: StepConfig = field(default_factory=StepConfig)
    approvals: ApprovalConfig = field(default_factory=ApprovalConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls, prefix: str = "RUN_LEDGER_") -> "Settings":
        """
        Load settings from environment variables.

        Example:
            RUN_LEDGER_DATABASE_DSN=postgresql://...
            RUN_LEDGER_APPROVAL_TTL_HOURS=12
            RUN_LEDGER_ENVIRONMENT=production
        """
        settings = cls()

        try:
            if dsn := os.getenv(f"{prefix}DATABASE_DSN"):
                settings.database.dsn = dsn
            if size := os.getenv(f"{prefix}DATABASE_MAX_POOL_SIZE"):
                settings.database.max_pool_size = int(size)

            if url := os.getenv(f"{prefix}REDIS_URL"):
                settings.redis.url = url

            if hours := os.getenv(f"{prefix}RECENT_WINDOW_HOURS"):
                settings.runs.recent_window_hours = float(hours)
            if limit := os.getenv(f"{prefix}DEFAULT_LIMIT"):
                settings.runs.default_limit = int(limit)

            if length := os.getenv(f"{prefix}STEP_HASH_LENGTH"):
                settings.steps.hash_length = int(length)
            if flag := os.getenv(f"{prefix}STORE_FULL_INPUT"):
                settings.steps.store_full_input = _parse_bool(flag)
            if flag := os.getenv(f"{prefix}STORE_FULL_OUTPUT"):
                settings.steps.store_full_output = _parse_bool(flag)

            if ttl := os.getenv(f"{prefix}APPROVAL_TTL_HOURS"):
                settings.approvals.ttl_hours = float(ttl)
            if env := os.getenv(f"{prefix}ENVIRONMENT"):
                settings.approvals.environment = env
            if path := os.getenv(f"{prefix}TRIGGERS_FILE"):
                settings.approvals.triggers_file = Path(path)
            if flag := os.getenv(f"{prefix}RECONCILE_EXPIRED_RUNS"):
                settings.approvals.reconcile_expired_runs = _parse_bool(flag)
        except ValueError as exc:
            raise ConfigError(f"Invalid environment setting: {exc}") from exc

        if level := os.getenv(f"{prefix}LOG_LEVEL"):
            settings.logging.level = level.upper()  # type: ignore
        if log_format := os.getenv(f"{prefix}LOG_FORMAT"):
            settings.logging.format = log_format.lower()  # type: ignore

        settings.validate()
        return settings

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Settings":
        """
        Load settings from a YAML, TOML or JSON file.

        Args:
            path: Path to configuration file (.yaml, .yml, .toml or .json)

        Returns:
            Settings object with values from file
        """
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        suffix = path.suffix.lower()

        try:
            if suffix in (".yaml", ".yml"):
                with open(path) as f:
                    data = yaml.safe_load(f)
            elif suffix == ".toml":
                with open(path, "rb") as f:
                    data = tomllib.load(f)
            elif suffix == ".json":
                data = orjson.loads(path.read_bytes())
            else:
                raise ConfigError(f"Unsupported config file format: {suffix}")
        except (yaml.YAMLError, tomllib.TOMLDecodeError, orjson.JSONDecodeError) as exc:
            raise ConfigError(f"Invalid configuration file {path}: {exc}") from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {path}")

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Create Settings from a dictionary."""
        sections = {
            "database": DatabaseConfig,
            "redis": RedisConfig,
            "runs": RunConfig,
            "steps": StepConfig,
            "approvals": ApprovalConfig,
            "logging": LoggingConfig,
        }
        kwargs: Dict[str, Any] = {}
        for name, section_cls in sections.items():
            if name not in data:
                continue
            section = data[name] or {}
            if not isinstance(section, dict):
                raise ConfigError(f"Section {name!r} must be a mapping")
            values = {k: v for k, v in section.items() if k in section_cls.__dataclass_fields__}
            kwargs[name] = section_cls(**values)

        settings = cls(**kwargs)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Re-run section validation after in-place mutation."""
        for section in (self.database, self.runs, self.steps, self.approvals):
            section.__post_init__()
        if self.logging.format not in ("text", "json"):
            raise ConfigError(f"Unknown log format: {self.logging.format}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary."""
        import dataclasses

        def convert(obj):
            if dataclasses.is_dataclass(obj):
                return {f.name: convert(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
            elif isinstance(obj, dict):
                return {k: convert(v) for k, v in obj.items()}
            elif isinstance(obj, Path):
                return str(obj)
            return obj

        return convert(self)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# =============================================================================
# Global Settings & Helpers
# =============================================================================

_global_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance, creating from the environment if needed."""
    global _global_settings
    if _global_settings is None:
        _global_settings = Settings.from_env()
    return _global_settings


def configure(settings: Optional[Settings] = None) -> Settings:
    """Install a Settings object as the global settings."""
    global _global_settings

    if settings is not None:
        _global_settings = settings
    elif _global_settings is None:
        _global_settings = Settings.from_env()

    return _global_settings


def load_env(path: Optional[str] = None, *, override: bool = False) -> bool:
    """
    Load environment variables from a .env file.

    Args:
        path: Optional path to a .env file. If not provided, uses find_dotenv().
        override: Whether to override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    env_path = path or find_dotenv(usecwd=True)
    if not env_path:
        return False
    return load_dotenv(env_path, override=override)


__all__ = [
    "DatabaseConfig",
    "RedisConfig",
    "RunConfig",
    "StepConfig",
    "ApprovalConfig",
    "LoggingConfig",
    "Settings",
    "get_settings",
    "configure",
    "load_env",
]
