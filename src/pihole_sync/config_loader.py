"""
YAML configuration loader for pihole-sync.

Provides config file discovery, YAML !include support and env var
interpolation.

Usage:
    from pihole_sync.config_loader import load_yaml_config, resolve_config_path

    raw = load_yaml_config(resolve_config_path(cli_path))
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/pihole-sync/config.yaml")

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# Matches ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` patterns with env values.

    * ``${VAR}`` is replaced with ``os.environ.get(VAR, "")``.
    * ``${VAR:-default}`` uses *default* when VAR is unset or empty.
    * Literal ``${`` with no closing ``}`` is left untouched.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_val = os.environ.get(var_name)
        if env_val is not None and env_val != "":
            return env_val
        if default is not None:
            return default
        return ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    """Walk a nested dict/list and interpolate env vars in all strings.

    Strings that consist of a single placeholder are re-parsed as YAML
    scalars so ``port: ${PORT}`` still yields an int.
    """
    if isinstance(obj, str):
        interpolated = interpolate_env_vars(obj)
        if interpolated != obj and _ENV_VAR_PATTERN.fullmatch(obj.strip()):
            try:
                scalar = yaml.safe_load(interpolated)
            except yaml.YAMLError:
                return interpolated
            if isinstance(scalar, (bool, int, float)):
                return scalar
        return interpolated
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. YAML !include support (dedicated SafeLoader subclass)
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """YAML SafeLoader subclass with ``!include`` support.

    Uses a dedicated subclass so the global ``yaml.SafeLoader`` is never
    modified.  Tracks an *include stack* per-load to detect circular includes.
    """


def _include_constructor(
    loader: ConfigLoader, node: yaml.ScalarNode
) -> Any:
    """Handle ``!include path/to/file.yaml`` directives."""
    include_path_str: str = loader.construct_scalar(node)

    if os.path.isabs(include_path_str):
        include_path = Path(include_path_str)
    else:
        parent_dir = Path(loader.name).resolve().parent
        include_path = parent_dir / include_path_str

    include_path = include_path.resolve()

    include_stack: list[Path] = getattr(loader, "_include_stack", [])
    if include_path in include_stack:
        chain = (
            " -> ".join(str(p) for p in include_stack)
            + f" -> {include_path}"
        )
        raise ValueError(f"Circular include detected: {chain}")

    if not include_path.exists():
        source_file = Path(loader.name).resolve()
        raise FileNotFoundError(
            f"Include file not found: {include_path} (referenced from {source_file})"
        )

    new_stack = include_stack + [include_path]
    return _load_yaml_with_includes(
        include_path, _include_stack=new_stack
    )


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path,
    *,
    _include_stack: list[Path] | None = None,
) -> Any:
    """Load a YAML file using the ``ConfigLoader`` (with ``!include``)."""
    path = path.resolve()
    if _include_stack is None:
        _include_stack = [path]

    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_stack = _include_stack  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# 3. Config file discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config file paths in precedence order (highest first).

    Search order:
        1. ``PIHOLE_SYNC_CONFIG`` env var (explicit single path)
        2. ``/etc/pihole-sync/config.yaml`` (system-wide default)
        3. ``config.yaml`` in CWD

    Only paths that exist on disk are returned.
    """
    candidates: list[Path] = []

    env_path = os.environ.get("PIHOLE_SYNC_CONFIG")
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    candidates.append(DEFAULT_CONFIG_PATH)
    candidates.append(Path.cwd() / "config.yaml")

    return [p for p in candidates if p.exists()]


def resolve_config_path(cli_path: str | None = None) -> Path | None:
    """Return the config file to use, or ``None`` if nothing was found.

    An explicit ``--config`` path always wins, even if it does not exist,
    so the caller can report it.
    """
    if cli_path:
        return Path(cli_path).expanduser()
    existing = discover_config_files()
    if existing:
        return existing[0]
    return None


# ---------------------------------------------------------------------------
# 4. Load
# ---------------------------------------------------------------------------


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load one config file, resolve includes and interpolate env vars.

    Returns an empty dict for an empty file.

    Raises:
        ValueError: If the file's root is not a mapping or an include
            chain is circular.
        FileNotFoundError: If the file or an included file is missing.
        yaml.YAMLError: If the YAML cannot be parsed.
    """
    logger.debug("Loading config: %s", path)
    data = _load_yaml_with_includes(path)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(
            f"Config file {path} has non-dict root ({type(data).__name__})"
        )

    return _interpolate_recursive(data)
