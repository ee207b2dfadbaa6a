"""Configuration loading for pihole-sync.

Resolves the config file, loads it, and validates the result into an
``AppConfig``.

Precedence for the file location (highest to lowest):
    --config CLI arg > PIHOLE_SYNC_CONFIG env var > /etc/pihole-sync/config.yaml
    > ./config.yaml

Environment variables:
    PIHOLE_SYNC_CONFIG: Path to the YAML config file (optional)
    Any variable referenced as ${VAR} or ${VAR:-default} inside the file.

The caller is responsible for calling ``load_dotenv()`` first so that
.env values are visible to interpolation.
"""

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config_loader import load_yaml_config, resolve_config_path
from .config_schema import AppConfig, SyncMode, build_config
from .errors import ConfigurationError
from .validators import validate_filter_key, validate_instance

logger = logging.getLogger(__name__)


def validate_config(config: AppConfig) -> None:
    """Validate cross-field rules the schema cannot express.

    Raises:
        ConfigurationError: If an instance is malformed, identities
            collide, or a filter key is not a valid path.
    """
    seen: dict[tuple[str, int], str] = {}

    for role, instance in [("main", config.main)] + [
        (f"secondary[{i}]", s) for i, s in enumerate(config.secondary)
    ]:
        ok, reason = validate_instance(
            instance.host, instance.schema_, instance.port, instance.api_key
        )
        if not ok:
            raise ConfigurationError(f"Invalid {role}: {reason}")

        if instance.identity in seen:
            raise ConfigurationError(
                f"{role} {instance.host}:{instance.port} duplicates "
                f"{seen[instance.identity]}"
            )
        seen[instance.identity] = role

    for instance in config.secondary:
        if instance.sync_mode != SyncMode.API:
            continue
        options = instance.api_sync_options
        if options is None:
            logger.warning(
                "[%s] sync_mode is 'api' but api_sync_options is missing; "
                "nothing will be synced to this instance",
                instance.host,
            )
            continue
        if options.sync_config is not None:
            for key in options.sync_config.filter_keys:
                ok, reason = validate_filter_key(key)
                if not ok:
                    raise ConfigurationError(reason, host=instance.host)

    if not config.secondary:
        logger.warning("No secondary instances configured")


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load and validate the configuration.

    Args:
        path: Explicit config path (from ``--config``). When ``None`` the
            default locations are searched.

    Returns:
        Validated ``AppConfig`` instance.

    Raises:
        ConfigurationError: If no config file is found, it cannot be
            parsed, or validation fails.
    """
    config_path = resolve_config_path(str(path) if path else None)
    if config_path is None:
        raise ConfigurationError(
            "No config file found. Create /etc/pihole-sync/config.yaml, "
            "set PIHOLE_SYNC_CONFIG, or pass --config."
        )
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        raw = load_yaml_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Failed to load config file {config_path}: {e}"
        ) from e

    try:
        config = build_config(raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration in {config_path}: {e}"
        ) from e

    validate_config(config)
    logger.info("Using config: %s", config_path)
    return config
