"""
Input validation functions for pihole-sync.

Validates config filter paths and instance connection settings before
any request is made against a Pi-hole instance.
"""

import re

# key(.key|[index])*  where a key is anything but '.', '[' and ']'
_FILTER_KEY_PATTERN = re.compile(r"^[^.\[\]]+(?:\.[^.\[\]]+|\[\d+\])*$")


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Filter key")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_filter_key(key: str) -> tuple[bool, str]:
    """
    Validate a config filter path such as ``dns.upstreams`` or
    ``dns.hosts[0]``.

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.
    """
    if not key or not key.strip():
        return (
            False,
            format_validation_error("Filter key", "cannot be empty"),
        )

    if key != key.strip():
        return (
            False,
            format_validation_error(
                f"Filter key '{key}'",
                "cannot have leading or trailing whitespace",
            ),
        )

    if not _FILTER_KEY_PATTERN.match(key):
        return (
            False,
            format_validation_error(
                f"Filter key '{key}'",
                "must look like 'section.key' with optional '[index]' parts",
            ),
        )

    return (True, "")


def validate_instance(
    host: str, schema: str, port: int, api_key: str
) -> tuple[bool, str]:
    """
    Validate connection settings for one Pi-hole instance.

    Validation rules:
        - Host cannot be empty or contain a scheme or path
        - Schema must be http or https
        - Port must be within 1-65535
        - API key cannot be empty
    """
    if not host or not host.strip():
        return (False, format_validation_error("Host", "cannot be empty"))

    if "://" in host or "/" in host:
        return (
            False,
            format_validation_error(
                f"Host '{host}'",
                "must be a bare hostname or address (set schema/port separately)",
            ),
        )

    if schema not in ("http", "https"):
        return (
            False,
            format_validation_error(
                f"Schema '{schema}' for {host}", "must be http or https"
            ),
        )

    if not 1 <= port <= 65535:
        return (
            False,
            format_validation_error(
                f"Port {port} for {host}", "must be between 1 and 65535"
            ),
        )

    if not api_key or not api_key.strip():
        return (
            False,
            format_validation_error(
                f"API key for {host}", "cannot be empty"
            ),
        )

    return (True, "")
