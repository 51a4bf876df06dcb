"""
Replication Monitor - Configuration.

============================================================
CONFIGURATION SURFACE
============================================================

Read-only configuration consumed by the monitor:
- Ordered list of data sources (name, role, connection)
- Server settings (bind address, refresh interval)
- Monitoring thresholds

Configuration can be loaded from:
- Default values
- YAML config file
- Environment variables (REPLMON_*, .env supported)

============================================================
YAML LAYOUT
============================================================

    databases:
      - name: primary
        role: source
        host: db1.internal
        port: 5432
        user: monitor
        password: secret
        dbname: app
    server:
      port: 8080
      refresh_interval: 5
    monitoring:
      lag_threshold: 104857600
      inactive_threshold: 300

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from sqlalchemy.engine import URL

from .aggregator import Thresholds
from .exceptions import ConfigurationError
from .models import Role


logger = logging.getLogger(__name__)

ENV_PREFIX = "REPLMON_"


# =============================================================
# DATA SOURCES
# =============================================================


@dataclass
class SourceDescriptor:
    """One monitored PostgreSQL endpoint."""

    name: str
    role: Role
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = field(default="", repr=False)
    dbname: str = "postgres"
    sslmode: str = "require"
    connect_timeout_seconds: float = 5.0

    def url(self) -> URL:
        """SQLAlchemy URL for the asyncpg driver."""
        return URL.create(
            "postgresql+asyncpg",
            username=self.user,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=self.dbname,
        )

    def connect_args(self) -> Dict[str, Any]:
        """Driver arguments passed through to asyncpg.connect()."""
        return {
            "ssl": self.sslmode,
            "timeout": self.connect_timeout_seconds,
        }

    @property
    def env_password_key(self) -> str:
        return f"{ENV_PREFIX}{self.name.upper().replace('-', '_')}_PASSWORD"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceDescriptor":
        """Build from one `databases` entry."""
        try:
            role = Role(str(data.get("role", "")).lower())
        except ValueError:
            raise ConfigurationError([
                f"database '{data.get('name')}': role must be 'source' or 'target'"
            ])

        return cls(
            name=str(data.get("name", "")),
            role=role,
            host=data.get("host", "localhost"),
            port=int(data.get("port", 5432)),
            user=data.get("user", "postgres"),
            password=str(data.get("password") or ""),
            dbname=data.get("dbname", "postgres"),
            sslmode=data.get("sslmode", "require"),
            connect_timeout_seconds=float(data.get("connect_timeout", 5.0)),
        )


# =============================================================
# SERVER & MONITORING
# =============================================================


@dataclass
class ServerConfig:
    """HTTP / streaming server settings."""

    host: str = "0.0.0.0"
    port: int = 8080

    refresh_interval: float = 5.0
    """Seconds between broadcast ticks."""

    write_timeout: float = 5.0
    """Upper bound on one write to one subscriber."""

    heartbeat: Optional[float] = 30.0
    """Websocket ping interval; None disables pings."""


@dataclass
class MonitoringConfig:
    """Health classification and polling settings."""

    lag_threshold: int = 100 * 1024 * 1024
    """LSN distance in bytes above which a slot is lagging."""

    lag_seconds_threshold: Optional[float] = None
    """Optional time-lag threshold; not checked when unset."""

    inactive_threshold: int = 0
    """Reserved. Inactive slots are flagged immediately."""

    poll_timeout: float = 10.0
    """Deadline for polling one source."""

    def thresholds(self) -> Thresholds:
        return Thresholds(
            lag_bytes_threshold=self.lag_threshold,
            lag_seconds_threshold=self.lag_seconds_threshold,
            inactive_slot_threshold=self.inactive_threshold,
        )


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class MonitorConfig:
    """Top-level configuration."""

    databases: List[SourceDescriptor] = field(default_factory=list)
    server: ServerConfig = field(default_factory=ServerConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitorConfig":
        """Build from parsed YAML."""
        data = data or {}
        config = cls()

        config.databases = [
            SourceDescriptor.from_dict(entry) for entry in data.get("databases") or []
        ]

        s = data.get("server") or {}
        config.server = ServerConfig(
            host=s.get("host", "0.0.0.0"),
            port=int(s.get("port", 8080)),
            refresh_interval=float(s.get("refresh_interval", 5.0)),
            write_timeout=float(s.get("write_timeout", 5.0)),
            heartbeat=s.get("heartbeat", 30.0),
        )

        m = data.get("monitoring") or {}
        lag_seconds = m.get("lag_seconds_threshold")
        config.monitoring = MonitoringConfig(
            lag_threshold=int(m.get("lag_threshold", 100 * 1024 * 1024)),
            lag_seconds_threshold=float(lag_seconds) if lag_seconds is not None else None,
            inactive_threshold=int(m.get("inactive_threshold", 0)),
            poll_timeout=float(m.get("poll_timeout", 10.0)),
        )

        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "MonitorConfig":
        """
        Load configuration from a YAML file.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigurationError([f"failed to read config file {path}: {e}"])
        except yaml.YAMLError as e:
            raise ConfigurationError([f"failed to parse config file {path}: {e}"])

        if data is not None and not isinstance(data, dict):
            raise ConfigurationError([f"config file {path} must contain a mapping"])

        return cls.from_dict(data)

    def apply_env_overrides(self) -> "MonitorConfig":
        """
        Override settings from environment variables.

        Environment variables:
        - REPLMON_HOST
        - REPLMON_PORT
        - REPLMON_REFRESH_INTERVAL
        - REPLMON_WRITE_TIMEOUT
        - REPLMON_LAG_THRESHOLD
        - REPLMON_LAG_SECONDS_THRESHOLD
        - REPLMON_POLL_TIMEOUT
        - REPLMON_<NAME>_PASSWORD (per database)
        """
        if os.getenv("REPLMON_HOST"):
            self.server.host = os.getenv("REPLMON_HOST")
        if os.getenv("REPLMON_PORT"):
            self.server.port = int(os.getenv("REPLMON_PORT"))
        if os.getenv("REPLMON_REFRESH_INTERVAL"):
            self.server.refresh_interval = float(os.getenv("REPLMON_REFRESH_INTERVAL"))
        if os.getenv("REPLMON_WRITE_TIMEOUT"):
            self.server.write_timeout = float(os.getenv("REPLMON_WRITE_TIMEOUT"))
        if os.getenv("REPLMON_LAG_THRESHOLD"):
            self.monitoring.lag_threshold = int(os.getenv("REPLMON_LAG_THRESHOLD"))
        if os.getenv("REPLMON_LAG_SECONDS_THRESHOLD"):
            self.monitoring.lag_seconds_threshold = float(os.getenv("REPLMON_LAG_SECONDS_THRESHOLD"))
        if os.getenv("REPLMON_POLL_TIMEOUT"):
            self.monitoring.poll_timeout = float(os.getenv("REPLMON_POLL_TIMEOUT"))

        for source in self.databases:
            password = os.getenv(source.env_password_key)
            if password:
                source.password = password

        return self

    def validate(self) -> List[str]:
        """Return a list of validation errors (empty when valid)."""
        errors = []

        if not self.databases:
            errors.append("at least one database must be configured")

        seen = set()
        for source in self.databases:
            if not source.name:
                errors.append("every database needs a name")
            elif source.name in seen:
                errors.append(f"duplicate database name: {source.name}")
            seen.add(source.name)
            if not 0 < source.port < 65536:
                errors.append(f"database '{source.name}': invalid port {source.port}")

        if self.server.refresh_interval <= 0:
            errors.append("server.refresh_interval must be > 0")
        if self.server.write_timeout <= 0:
            errors.append("server.write_timeout must be > 0")
        if self.monitoring.lag_threshold < 0:
            errors.append("monitoring.lag_threshold must be >= 0")
        if self.monitoring.lag_seconds_threshold is not None and self.monitoring.lag_seconds_threshold < 0:
            errors.append("monitoring.lag_seconds_threshold must be >= 0")
        if self.monitoring.poll_timeout <= 0:
            errors.append("monitoring.poll_timeout must be > 0")

        return errors


def load_config(path: Union[str, Path], use_env: bool = True) -> MonitorConfig:
    """
    Load, override and validate configuration.

    Raises:
        ConfigurationError: If loading or validation fails
    """
    if use_env:
        load_dotenv()

    config = MonitorConfig.from_yaml(path)
    if use_env:
        config.apply_env_overrides()

    errors = config.validate()
    if errors:
        raise ConfigurationError(errors)

    logger.info(
        f"Configuration loaded from {path}: {len(config.databases)} database(s), "
        f"refresh every {config.server.refresh_interval}s"
    )
    return config
