import json
import logging
import os
import sys
import warnings

from .errors import UnresolvedReferenceWarning

_DATEFMT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter for structured output.

    Produces one JSON object per log record with fields: ts, level, logger, msg.
    Exception info is included as an "exc" field when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _make_formatter(log_format: str, with_name: bool) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(datefmt=_DATEFMT)
    fmt = (
        "[%(asctime)s] [%(levelname)s] %(name)s %(message)s"
        if with_name
        else "[%(asctime)s] [%(levelname)s] %(message)s"
    )
    return logging.Formatter(fmt, datefmt=_DATEFMT)


def resolve_log_level(
    debug: bool = False, config_level: str | None = None
) -> int:
    """Pick the effective level: --debug > LOG_LEVEL > config > INFO."""
    if debug:
        return logging.DEBUG
    name = os.getenv("LOG_LEVEL") or config_level or "INFO"
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    debug: bool = False,
    log_file: str | None = None,
    log_format: str = "text",
    config_level: str | None = None,
) -> None:
    """
    Configure root logging for the sync daemon.

    Logs always go to stderr; stdout is left for command output such as
    ``--json`` reports.

    Args:
        debug: If True, overrides LOG_LEVEL and the config level to DEBUG.
        log_file: Optional file that receives a copy of every record.
        log_format: "text" (default) or "json" for structured output.
        config_level: ``logging.level`` from the config file, if loaded.

    Environment variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR).
                   Overrides the config file level. Default: INFO.
    """
    log_level = resolve_log_level(debug, config_level)

    handlers: list[logging.Handler] = []
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_make_formatter(log_format, with_name=False))
    handlers.append(stderr_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(_make_formatter(log_format, with_name=True))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Route warnings.warn() (unresolved group memberships) through logging
    logging.captureWarnings(True)
    warnings.simplefilter("always", UnresolvedReferenceWarning)

    # Silence third-party libs unless DEBUG
    if log_level != logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("watchdog").setLevel(logging.WARNING)
