"""
Configuration module for converge.

Loads configuration from environment variables. Provider plugins receive
their own configuration through PLUGIN_CONFIGS (a JSON object keyed by
plugin name) merged over what each plugin reads from the environment.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATE_BACKENDS = ("file", "postgres")
FAILURE_POLICIES = ("halt", "rollback")


@dataclass
class StateConfig:
    """State backend selection."""

    backend: str = "file"
    directory: str = ".converge"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("STATE_BACKEND", "file").lower()
        if backend not in STATE_BACKENDS:
            raise ValueError(
                f"STATE_BACKEND must be one of {', '.join(STATE_BACKENDS)}, "
                f"got '{backend}'"
            )
        return cls(
            backend=backend,
            directory=os.getenv("STATE_DIR", ".converge"),
        )


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration (postgres state backend)."""

    host: str = "localhost"
    port: int = 5432
    database: str = "converge"
    user: str = "converge"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 1
    max_pool_size: int = 5

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "converge"),
            user=os.getenv("DB_USER", "converge"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "5")),
        )


@dataclass
class ExecutorConfig:
    """Plan execution configuration."""

    max_concurrency: int = 4
    max_attempts: int = 3

    # Exponential backoff configuration
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 30.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    failure_policy: str = "halt"

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.failure_policy not in FAILURE_POLICIES:
            raise ValueError(
                f"failure_policy must be one of {', '.join(FAILURE_POLICIES)}, "
                f"got '{self.failure_policy}'"
            )

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrency=int(os.getenv("MAX_CONCURRENCY", "4")),
            max_attempts=int(os.getenv("MAX_ATTEMPTS", "3")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1.0")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "30.0")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            failure_policy=os.getenv("FAILURE_POLICY", "halt").lower(),
        )


@dataclass
class PluginConfig:
    """Provider plugin configuration."""

    # List of enabled plugin names (empty = use all registered plugins)
    enabled_provider_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configurations keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_str = os.getenv("ENABLED_PROVIDER_PLUGINS", "")
        enabled = [p.strip() for p in enabled_str.split(",") if p.strip()]

        plugin_configs = {}
        if os.getenv("PLUGIN_CONFIGS"):
            try:
                plugin_configs = json.loads(os.getenv("PLUGIN_CONFIGS"))
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid PLUGIN_CONFIGS: {e}")

        return cls(enabled_provider_plugins=enabled, plugin_configs=plugin_configs)

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(level=os.getenv("LOG_LEVEL", "INFO").upper())


@dataclass
class Config:
    """Main configuration object."""

    environment: str
    state: StateConfig
    database: Optional[DatabaseConfig]
    executor: ExecutorConfig
    plugins: PluginConfig
    logging: LogConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        state = StateConfig.from_env()
        return cls(
            environment=os.getenv("CONVERGE_ENVIRONMENT", "default"),
            state=state,
            # Only the postgres backend needs credentials
            database=DatabaseConfig.from_env() if state.backend == "postgres" else None,
            executor=ExecutorConfig.from_env(),
            plugins=PluginConfig.from_env(),
            logging=LogConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            environment="default",
            state=StateConfig(),
            database=None,
            executor=ExecutorConfig(),
            plugins=PluginConfig(),
            logging=LogConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
