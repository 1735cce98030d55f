"""
Configuration management for changerelay

Provides environment-based configuration with sensible defaults, optionally
layered on top of a YAML file.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from changerelay.backoff import RetryPolicy
from changerelay.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".changerelay" / "config.yaml"
STORE_BACKENDS = ("memory", "sqlite", "redis", "filesystem")


@dataclass
class RelayConfig:
    """Configuration for changerelay components"""

    # Object store
    store_backend: str = "sqlite"
    sqlite_path: str = str(Path.home() / ".changerelay" / "objects.db")
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "changerelay"
    filesystem_root: str = str(Path.home() / ".changerelay" / "objects")

    # Event loop guard
    self_identity: Optional[str] = None
    guard_patterns: List[str] = field(default_factory=list)

    # Optimistic updates
    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0

    # Timeouts (seconds)
    store_timeout: float = 10.0
    collaborator_timeout: float = 30.0

    # Fan-out
    max_concurrency: int = 10

    # Side-effect dispatchers
    notification_webhook_url: Optional[str] = None
    scheduler_webhook_url: Optional[str] = None

    # Keep the trigger when the archive write fails so the event is replayed
    delete_trigger_on_persist_failure: bool = False

    # Event source
    event_queue: str = "changerelay:events"

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __post_init__(self):
        """Load configuration from environment variables"""

        # Object store
        self.store_backend = os.getenv("CHANGERELAY_STORE_BACKEND", self.store_backend)
        self.sqlite_path = os.getenv("SQLITE_PATH", self.sqlite_path)
        self.redis_url = os.getenv("REDIS_URL", self.redis_url)
        self.key_prefix = os.getenv("CHANGERELAY_KEY_PREFIX", self.key_prefix)
        self.filesystem_root = os.getenv("CHANGERELAY_FILESYSTEM_ROOT", self.filesystem_root)

        # Guard
        if not self.self_identity:
            self.self_identity = os.getenv("CHANGERELAY_SELF_IDENTITY") or os.getenv("BACKEND_ROLE_ARN")
        patterns = os.getenv("CHANGERELAY_GUARD_PATTERNS")
        if patterns:
            self.guard_patterns = [p.strip() for p in patterns.split(",") if p.strip()]

        # Retries and timeouts
        self.max_retries = int(os.getenv("CHANGERELAY_MAX_RETRIES", str(self.max_retries)))
        self.store_timeout = float(os.getenv("CHANGERELAY_STORE_TIMEOUT", str(self.store_timeout)))
        self.collaborator_timeout = float(
            os.getenv("CHANGERELAY_COLLABORATOR_TIMEOUT", str(self.collaborator_timeout))
        )
        self.max_concurrency = int(os.getenv("CHANGERELAY_MAX_CONCURRENCY", str(self.max_concurrency)))

        # Dispatchers
        self.notification_webhook_url = os.getenv(
            "CHANGERELAY_NOTIFICATION_URL", self.notification_webhook_url
        )
        self.scheduler_webhook_url = os.getenv("CHANGERELAY_SCHEDULER_URL", self.scheduler_webhook_url)

        flag = os.getenv("CHANGERELAY_DELETE_TRIGGER_ON_PERSIST_FAILURE")
        if flag is not None:
            self.delete_trigger_on_persist_failure = flag.lower() in ("true", "1", "yes")

        # Logging
        self.log_level = os.getenv("LOG_LEVEL", self.log_level)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayConfig":
        """Create configuration from dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def validate(self) -> bool:
        """Validate configuration"""
        if self.store_backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"store_backend must be one of {', '.join(STORE_BACKENDS)}",
                data={"store_backend": self.store_backend},
            )
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be non-negative")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ConfigurationError("delays must satisfy 0 <= base_delay <= max_delay")
        if self.store_timeout <= 0 or self.collaborator_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")
        if self.max_concurrency < 0:
            raise ConfigurationError("max_concurrency must be non-negative")
        return True


def load_config(
    path: Optional[Path] = None,
    defaults: Optional[Dict[str, Any]] = None,
    **overrides: Any,
) -> RelayConfig:
    """Load configuration, lowest precedence first.

    Field defaults, then ``defaults``, then the YAML file (if present), then
    environment variables, then non-None ``overrides`` such as command line
    options.
    """
    config_file = Path(path) if path else DEFAULT_CONFIG_PATH
    data: Dict[str, Any] = {}
    if config_file.exists():
        with open(config_file, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_file} must contain a mapping")
        logger.debug(f"Loaded configuration from {config_file}")
    elif path:
        raise ConfigurationError(f"Config file not found: {config_file}")

    config = RelayConfig.from_dict({**(defaults or {}), **data})

    # Environment was applied in __post_init__; explicit overrides win over it
    known = {f.name for f in fields(RelayConfig)}
    for name, value in overrides.items():
        if value is None:
            continue
        if name not in known:
            raise ConfigurationError(f"Unknown configuration override: {name}")
        setattr(config, name, value)

    config.validate()
    return config


def setup_logging(config: RelayConfig):
    """Setup logging based on configuration"""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=config.log_format,
    )

    # Set specific loggers to appropriate levels
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    if config.log_level.upper() == "DEBUG":
        logging.getLogger("changerelay").setLevel(logging.DEBUG)
