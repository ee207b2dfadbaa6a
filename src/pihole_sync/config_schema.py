"""Configuration schema for pihole-sync.

Defines frozen Pydantic models for the YAML configuration: sync timing
and trigger settings, the main instance, the secondary instances with
their per-target sync policy, and logging.

Usage:
    from pihole_sync.config_schema import build_config

    raw = load_yaml_config(path)
    config = build_config(raw)
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SyncMode(str, Enum):
    """How a secondary receives main's state."""

    TELEPORTER = "teleporter"
    API = "api"


class SyncTriggerMode(str, Enum):
    """What starts a sync cycle in continuous mode."""

    INTERVAL = "interval"
    WATCH_CONFIG_FILE = "watch_config_file"
    WATCH_CONFIG_API = "watch_config_api"


class ConfigSyncMode(str, Enum):
    """Whether ``filter_keys`` name what to sync or what to leave alone."""

    INCLUDE = "include"
    EXCLUDE = "exclude"


# ---------------------------------------------------------------------------
# Teleporter import options
# ---------------------------------------------------------------------------


class GravityImportOptions(BaseModel):
    """Which gravity database tables a teleporter import restores."""

    group: bool = True
    adlist: bool = True
    adlist_by_group: bool = True
    domainlist: bool = True
    domainlist_by_group: bool = True
    client: bool = True
    client_by_group: bool = True

    model_config = {"frozen": True}


class TeleporterImportOptions(BaseModel):
    """Sub-parts of a teleporter archive to import on the secondary."""

    config: bool = True
    dhcp_leases: bool = True
    gravity: GravityImportOptions = Field(
        default_factory=GravityImportOptions
    )

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Selective (API) sync options
# ---------------------------------------------------------------------------


class ConfigSyncOptions(BaseModel):
    """Filter applied to main's config before patching a secondary."""

    mode: ConfigSyncMode = Field(
        default=ConfigSyncMode.INCLUDE,
        description="include: sync only filter_keys; exclude: sync everything else",
    )
    filter_keys: list[str] = Field(
        default_factory=list,
        description="Dotted config paths, array elements as key[index]",
    )

    model_config = {"frozen": True}


class ApiSyncOptions(BaseModel):
    """What a selective secondary receives."""

    sync_config: ConfigSyncOptions | None = None
    sync_groups: bool = False
    sync_lists: bool = False

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------


class InstanceConfig(BaseModel):
    """Connection settings for one Pi-hole instance.

    The main instance only uses the connection fields; sync policy fields
    are meaningful for secondaries.
    """

    host: str
    schema_: str = Field(default="https", alias="schema")
    port: int = Field(default=443, ge=1, le=65535)
    api_key: str
    update_gravity: bool = False
    sync_mode: SyncMode = SyncMode.TELEPORTER
    import_options: TeleporterImportOptions | None = None
    api_sync_options: ApiSyncOptions | None = None

    model_config = {"frozen": True, "populate_by_name": True}

    @property
    def identity(self) -> tuple[str, int]:
        """Endpoint identity: ``(host, port)``."""
        return (self.host, self.port)

    @property
    def base_url(self) -> str:
        return f"{self.schema_}://{self.host}:{self.port}/api"


# ---------------------------------------------------------------------------
# Sync and logging sections
# ---------------------------------------------------------------------------


class SyncSettings(BaseModel):
    """Timing, trigger and staging settings for the sync engine."""

    trigger_mode: SyncTriggerMode = SyncTriggerMode.INTERVAL
    interval: int = Field(
        default=60, ge=1, description="Sync interval in minutes"
    )
    api_poll_interval: int | None = Field(
        default=None,
        ge=1,
        description="Poll interval in minutes (defaults to interval)",
    )
    config_path: str = Field(
        default="/etc/pihole/pihole.toml",
        description="Pi-hole config file watched in watch_config_file mode",
    )
    cache_location: str = Field(
        default="/var/cache/pihole-sync",
        description="Staging directory for teleporter archives",
    )
    trigger_api_readiness_timeout_secs: int = Field(default=60, ge=0)
    write_throttle_ms: int = Field(default=250, ge=0)
    session_keepalive: bool = True

    model_config = {"frozen": True}

    @property
    def interval_seconds(self) -> int:
        return self.interval * 60

    @property
    def api_poll_interval_seconds(self) -> int:
        return (self.api_poll_interval or self.interval) * 60


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", description="text or json")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


class AppConfig(BaseModel):
    """Top-level configuration: one main instance and N secondaries."""

    sync: SyncSettings = Field(default_factory=SyncSettings)
    main: InstanceConfig
    secondary: list[InstanceConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}

    @property
    def instances(self) -> list[InstanceConfig]:
        """Main first, then secondaries in configured order."""
        return [self.main, *self.secondary]


def build_config(raw_data: dict) -> AppConfig:
    """Construct an ``AppConfig`` from the raw dict loaded from YAML.

    Raises:
        pydantic.ValidationError: If a section is malformed or ``main``
            is missing.
    """
    return AppConfig.model_validate(raw_data or {})
