#!/usr/bin/env python3
"""
Centralized configuration for tmi-stats.

Provides dataclass-based configuration with defaults.
Supports environment variable overrides for the gateway host and database path.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .logging_setup import get_logger

logger = get_logger(__name__)

# ── Gateway constants (fixed by the T-Mobile firmware) ───────────────

DEFAULT_HOST = "192.168.12.1"
GATEWAY_SCHEME = "http"
GATEWAY_REQUEST_PATH = "/TMI/v1/gateway?get=all"

DEFAULT_DB_PATH = "~/.local/share/tmi-stats/stats.db"
DEFAULT_CONFIG_PATH = "~/.config/tmi-stats/config.json"


@dataclass
class GatewayConfig:
    """Gateway HTTP endpoint configuration."""

    host: str = DEFAULT_HOST
    request_timeout: float = 5.0  # seconds, per GET

    @property
    def url(self) -> str:
        return f"{GATEWAY_SCHEME}://{self.host}{GATEWAY_REQUEST_PATH}"


@dataclass
class PollConfig:
    """Stabilization timing.

    The gateway refreshes its reading roughly every 10 seconds, so polling
    starts a little before that and gives up waiting for a change just after.
    """

    min_wait_ms: int = 9000
    max_wait_ms: int = 10000
    delay_ms: int = 500
    fetch_attempts: int = 3
    fetch_retry_delay_ms: int = 100


@dataclass
class StorageConfig:
    """Stats database configuration."""

    db_path: str = DEFAULT_DB_PATH

    @property
    def path(self) -> Path:
        return Path(self.db_path).expanduser()


@dataclass
class SpeedTestConfig:
    """External speed-test CLI configuration."""

    command: str = "speedtest"


@dataclass
class Config:
    """Main tmi-stats configuration."""

    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    speedtest: SpeedTestConfig = field(default_factory=SpeedTestConfig)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        """
        Load configuration from file.

        Args:
            path: Path to config file. If None, uses environment-based default.

        Returns:
            Config instance with loaded values. A missing file yields defaults
            (still subject to environment overrides).
        """
        if path is None:
            path = cls._get_default_path()

        path = Path(path).expanduser()

        if not path.exists():
            logger.debug("Config file not found: %s, using defaults", path)
            return cls._from_dict({})

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        logger.debug("Loaded config from %s", path)
        return cls._from_dict(data)

    @staticmethod
    def _get_default_path() -> Path:
        """Get default config path, honouring TMI_STATS_CONFIG."""
        return Path(os.getenv("TMI_STATS_CONFIG", DEFAULT_CONFIG_PATH))

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary (JSON data). Unknown keys are ignored."""
        # host/db: env var override → config file → default
        gateway = GatewayConfig(
            host=os.getenv("TMI_STATS_HOST", data.get("HOST", DEFAULT_HOST)),
            request_timeout=float(data.get("REQUEST_TIMEOUT", 5.0)),
        )

        poll = PollConfig(
            min_wait_ms=int(data.get("MIN_WAIT_MS", 9000)),
            max_wait_ms=int(data.get("MAX_WAIT_MS", 10000)),
            delay_ms=int(data.get("DELAY_MS", 500)),
            fetch_attempts=int(data.get("FETCH_ATTEMPTS", 3)),
            fetch_retry_delay_ms=int(data.get("FETCH_RETRY_DELAY_MS", 100)),
        )

        storage = StorageConfig(
            db_path=os.getenv("TMI_STATS_DB", data.get("DB_PATH", DEFAULT_DB_PATH)),
        )

        speedtest = SpeedTestConfig(
            command=data.get("SPEEDTEST_COMMAND", "speedtest"),
        )

        return cls(
            gateway=gateway,
            poll=poll,
            storage=storage,
            speedtest=speedtest,
        )
