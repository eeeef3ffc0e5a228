"""Configuration Management with Pydantic.

This module implements configuration models using Pydantic for parsing and
validation of YAML/JSON configuration files with environment variable
overrides. Every section has usable defaults, so an empty mapping is a
valid configuration.
"""

import os
import threading
from pathlib import Path
from typing import Any, TextIO

import yaml
from pydantic import BaseModel, Field, model_validator

from taskweave import log_config
from taskweave.log_config import get_logger

logger = get_logger(__name__)

# Constants
LARGE_CONCURRENCY_THRESHOLD = 500
LONG_RESET_TIMEOUT_THRESHOLD = 600.0  # 10 minutes
DEFAULT_CONFIG_FILES = ("taskweave.yaml", "taskweave.yml", "taskweave.json")
ENV_PREFIX = "TASKWEAVE"


class PoolConfig(BaseModel):
    """Concurrency pool settings.

    Attributes:
        max_concurrency: Maximum number of tasks running at once
        max_queue_length: Queue bound (None for unbounded)
    """

    max_concurrency: int = Field(default=10, ge=1, description="Maximum concurrently running tasks")
    max_queue_length: int | None = Field(
        default=None,
        ge=0,
        description="Maximum queued tasks before submit fails fast",
    )


class RetrySettings(BaseModel):
    """Retry policy settings.

    Attributes:
        max_attempts: Maximum number of attempts (including the first)
        base_delay_seconds: Delay after the first failure
        max_delay_seconds: Cap for any single backoff delay
        jitter: Add random jitter to each delay
    """

    max_attempts: int = Field(default=3, ge=1, description="Maximum attempts")
    base_delay_seconds: float = Field(default=0.1, ge=0, description="Backoff base delay")
    max_delay_seconds: float = Field(default=30.0, ge=0, description="Backoff delay cap")
    jitter: bool = Field(default=True, description="Add jitter to backoff delays")

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> "RetrySettings":
        """Ensure the cap is not below the base delay.

        Raises:
            ValueError: If max_delay_seconds < base_delay_seconds
        """
        if self.max_delay_seconds < self.base_delay_seconds:
            msg = "max_delay_seconds must be >= base_delay_seconds"
            raise ValueError(msg)
        return self


class BreakerConfig(BaseModel):
    """Circuit breaker settings applied to breakers created by the orchestrator.

    Attributes:
        failure_threshold: Failures that trip the breaker
        reset_timeout_seconds: Time spent OPEN before a trial call is admitted
        failure_window_seconds: Count only failures this recent (None means
            consecutive failures)
    """

    failure_threshold: int = Field(default=5, ge=1, description="Failures before opening")
    reset_timeout_seconds: float = Field(default=30.0, gt=0, description="Seconds spent OPEN")
    failure_window_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Failure tracking window in seconds",
    )


class MemoConfig(BaseModel):
    """Memoization settings.

    Attributes:
        ttl_seconds: Lifetime of cached results (None for no expiry)
        cache_errors: Replay failures until TTL instead of evicting them
        max_entries: LRU bound (None for unbounded)
    """

    ttl_seconds: float | None = Field(default=60.0, ge=0, description="Result lifetime")
    cache_errors: bool = Field(default=False, description="Cache failed calls")
    max_entries: int | None = Field(default=None, ge=1, description="Maximum cached keys")


class OrchestrationConfig(BaseModel):
    """Main configuration combining all settings.

    Attributes:
        pool: Concurrency pool configuration
        retry: Retry policy configuration
        breaker: Circuit breaker configuration
        memo: Memoization configuration
        logging_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render logs as JSON (False for the console renderer)
    """

    pool: PoolConfig = Field(default_factory=PoolConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    memo: MemoConfig = Field(default_factory=MemoConfig)
    logging_level: str = Field(
        default="INFO",
        description="Logging level",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )
    json_logs: bool = Field(default=True, description="Render logs as JSON")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "OrchestrationConfig":
        """Load configuration from a YAML (or JSON) file.

        Args:
            path: Path to the configuration file

        Returns:
            Parsed and validated OrchestrationConfig instance

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If the file is empty, not a mapping, or invalid
        """
        config_path = Path(path)

        if not config_path.exists():
            msg = f"Configuration file not found: {config_path}"
            raise FileNotFoundError(msg)

        logger.info("loading_configuration", path=str(config_path))

        try:
            with config_path.open() as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.exception("yaml_parse_error", error=str(e), path=str(config_path))
            msg = f"Invalid YAML in configuration file: {e}"
            raise ValueError(msg) from e

        if not config_data:
            msg = "Configuration file is empty"
            raise ValueError(msg)
        if not isinstance(config_data, dict):
            msg = "Configuration file must contain a mapping"
            raise ValueError(msg)

        config = cls.from_dict(config_data)
        logger.info(
            "configuration_loaded",
            max_concurrency=config.pool.max_concurrency,
            logging_level=config.logging_level,
        )
        return config

    def configure_logging(self, stream: TextIO | None = None) -> None:
        """Apply ``logging_level`` and ``json_logs`` to structlog.

        Args:
            stream: Output stream for log records (default: stdout)
        """
        log_config.configure_logging(level=self.logging_level, json_logs=self.json_logs, stream=stream)

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "OrchestrationConfig":
        """Build a configuration from a mapping, applying environment overrides."""
        return cls(**cls._apply_env_overrides(config_data))

    @classmethod
    def _apply_env_overrides(cls, config_data: dict[str, Any]) -> dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: TASKWEAVE_<SECTION>_<KEY>
        Example: TASKWEAVE_POOL_MAX_CONCURRENCY, TASKWEAVE_RETRY_JITTER

        Args:
            config_data: Base configuration dictionary from file

        Returns:
            Configuration dictionary with environment overrides applied
        """
        env_overrides = {
            ("pool", "max_concurrency"): (f"{ENV_PREFIX}_POOL_MAX_CONCURRENCY", int),
            ("pool", "max_queue_length"): (f"{ENV_PREFIX}_POOL_MAX_QUEUE_LENGTH", int),
            ("retry", "max_attempts"): (f"{ENV_PREFIX}_RETRY_MAX_ATTEMPTS", int),
            ("retry", "base_delay_seconds"): (f"{ENV_PREFIX}_RETRY_BASE_DELAY", float),
            ("retry", "max_delay_seconds"): (f"{ENV_PREFIX}_RETRY_MAX_DELAY", float),
            ("retry", "jitter"): (f"{ENV_PREFIX}_RETRY_JITTER", _parse_bool),
            ("breaker", "failure_threshold"): (f"{ENV_PREFIX}_BREAKER_FAILURE_THRESHOLD", int),
            ("breaker", "reset_timeout_seconds"): (f"{ENV_PREFIX}_BREAKER_RESET_TIMEOUT", float),
            ("memo", "ttl_seconds"): (f"{ENV_PREFIX}_MEMO_TTL", float),
            ("memo", "cache_errors"): (f"{ENV_PREFIX}_MEMO_CACHE_ERRORS", _parse_bool),
            ("logging_level",): (f"{ENV_PREFIX}_LOGGING_LEVEL", str.upper),
            ("json_logs",): (f"{ENV_PREFIX}_JSON_LOGS", _parse_bool),
        }

        config_data = {
            key: dict(value) if isinstance(value, dict) else value for key, value in config_data.items()
        }

        for path, (env_var, convert) in env_overrides.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            current = config_data
            for key in path[:-1]:
                current = current.setdefault(key, {})

            try:
                current[path[-1]] = convert(value)
            except ValueError as e:
                msg = f"Invalid value for {env_var}: {value!r}"
                raise ValueError(msg) from e

            logger.debug(
                "env_override_applied",
                env_var=env_var,
                config_path=".".join(path),
            )

        return config_data

    def validate_config(self) -> list[str]:
        """Validate configuration and return list of warnings.

        Returns:
            List of validation warning messages (empty if no warnings)
        """
        warnings = []

        if self.pool.max_queue_length == 0:
            warnings.append("max_queue_length is 0 - every submit beyond max_concurrency fails")

        if self.pool.max_concurrency > LARGE_CONCURRENCY_THRESHOLD:
            warnings.append(
                f"max_concurrency is very high ({self.pool.max_concurrency}) - "
                "monitor downstream load",
            )

        if self.retry.max_attempts > 1 and self.retry.base_delay_seconds == 0:
            warnings.append("Retries have no backoff delay - failures will be retried immediately")

        if self.breaker.reset_timeout_seconds > LONG_RESET_TIMEOUT_THRESHOLD:
            warnings.append(
                f"Breaker reset timeout is long ({self.breaker.reset_timeout_seconds}s) - "
                "recovered dependencies stay blocked for extended periods",
            )

        if self.memo.cache_errors and self.memo.ttl_seconds is None:
            warnings.append("cache_errors without ttl_seconds replays failures forever")

        return warnings


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


class ConfigManager:
    """Configuration manager using singleton pattern."""

    _instance: OrchestrationConfig | None = None
    _init_lock: threading.Lock = threading.Lock()

    @classmethod
    def load_config(cls, config_path: str | Path | None = None) -> OrchestrationConfig:
        """Load configuration from file.

        Args:
            config_path: Path to configuration file. If None, looks for
                taskweave.yaml, taskweave.yml or taskweave.json in the current
                directory, falling back to defaults plus environment overrides.

        Returns:
            Loaded OrchestrationConfig instance

        Raises:
            FileNotFoundError: If an explicit config_path does not exist
            ValueError: If the config file is invalid
        """
        if config_path is None:
            for default_name in DEFAULT_CONFIG_FILES:
                default_path = Path(default_name)
                if default_path.exists():
                    config_path = default_path
                    break
            else:
                logger.debug("no_configuration_file_found", searched=list(DEFAULT_CONFIG_FILES))
                return OrchestrationConfig.from_dict({})

        return OrchestrationConfig.from_yaml(config_path)

    @classmethod
    def get_config(
        cls,
        config_path: str | Path | None = None,
        reload: bool = False,
    ) -> OrchestrationConfig:
        """Get configuration instance (singleton pattern).

        Uses double-checked locking so concurrent threads don't both load.

        Args:
            config_path: Path to configuration file. Only used on first call or when reload=True.
            reload: If True, force reload configuration from file.

        Returns:
            OrchestrationConfig instance
        """
        if cls._instance is not None and not reload:
            return cls._instance

        with cls._init_lock:
            if cls._instance is None or reload:
                cls._instance = cls.load_config(config_path)

            return cls._instance

    @classmethod
    def reset_config(cls) -> None:
        """Reset the configuration instance."""
        cls._instance = None


def load_config(config_path: str | Path | None = None) -> OrchestrationConfig:
    """Load configuration from file."""
    return ConfigManager.load_config(config_path)


def get_config(config_path: str | Path | None = None, reload: bool = False) -> OrchestrationConfig:
    """Get configuration instance (singleton pattern)."""
    return ConfigManager.get_config(config_path, reload)


def reset_config() -> None:
    """Reset the configuration instance."""
    ConfigManager.reset_config()


__all__ = [
    "BreakerConfig",
    "ConfigManager",
    "MemoConfig",
    "OrchestrationConfig",
    "PoolConfig",
    "RetrySettings",
    "get_config",
    "load_config",
    "reset_config",
]
