"""Command-line entry point for pihole-sync.

Commands:
    sync            Run the sync engine (continuous by default).
    app-password    Fetch an application password for a configured instance.
    instances list  Show configured instances and their sync modes.
"""

import argparse
import asyncio
import getpass
import json
import logging
import sys

from dotenv import find_dotenv, load_dotenv

from . import __version__
from .config import load_config
from .config_schema import AppConfig, InstanceConfig, SyncMode
from .core.session import SessionManager
from .errors import AuthenticationError, ConfigurationError, PiHoleSyncError
from .logger import setup_logging
from .runner import run_sync
from .sync.reporter import report_to_json

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pihole-sync",
        description="Keep secondary Pi-hole v6 instances in sync with a main instance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run continuously using /etc/pihole-sync/config.yaml
  pihole-sync sync

  # One cycle, machine-readable report on stdout
  pihole-sync -c ./config.yaml sync --once --json

  # Start watching without syncing first
  pihole-sync sync --no-initial-sync

  # Create an app password to use as api_key
  pihole-sync app-password --host pihole-2.lan

Environment:
  PIHOLE_SYNC_CONFIG  Config file path (when --config is not given)
  LOG_LEVEL           Log level (overrides the config file)
        """,
    )
    parser.add_argument(
        "-c",
        "--config",
        help="Path to config file (default: $PIHOLE_SYNC_CONFIG, "
        "/etc/pihole-sync/config.yaml, ./config.yaml)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging (overrides LOG_LEVEL and config)",
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        help="Log output format (default: from config, else text)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"pihole-sync version {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Run the sync engine")
    sync_parser.add_argument(
        "--once", action="store_true", help="Run a single cycle and exit"
    )
    sync_parser.add_argument(
        "--no-initial-sync",
        action="store_true",
        help="Skip the sync at startup (API-poll mode still seeds its baseline)",
    )
    sync_parser.add_argument(
        "--json",
        action="store_true",
        help="With --once, print the cycle report as JSON on stdout",
    )

    app_parser = subparsers.add_parser(
        "app-password", help="Fetch an application password"
    )
    app_parser.add_argument(
        "--host", required=True, help="Host of a configured instance"
    )

    instances_parser = subparsers.add_parser(
        "instances", help="Inspect configured instances"
    )
    instances_sub = instances_parser.add_subparsers(
        dest="instances_command", required=True
    )
    instances_sub.add_parser("list", help="List configured instances")

    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_sync(args: argparse.Namespace, config: AppConfig) -> int:
    report = asyncio.run(
        run_sync(
            config,
            run_once=args.once,
            disable_initial_sync=args.no_initial_sync,
        )
    )
    if report is None:
        return EXIT_OK
    if args.json:
        print(json.dumps(report_to_json(report), indent=2))
    return EXIT_OK if report.ok else EXIT_FAILURE


def _find_instance(config: AppConfig, host: str) -> InstanceConfig | None:
    for instance in config.instances:
        if instance.host == host:
            return instance
    return None


async def _fetch_app_password(
    instance: InstanceConfig, password: str
) -> dict[str, str]:
    session = SessionManager.for_instance(instance)
    try:
        return await session.fetch_app_password(password)
    finally:
        try:
            await session.logout()
        except PiHoleSyncError as e:
            logger.warning("[%s] Logout failed: %s", instance.host, e.message)


def _cmd_app_password(args: argparse.Namespace, config: AppConfig) -> int:
    instance = _find_instance(config, args.host)
    if instance is None:
        print(
            f"ERROR: {args.host} is not a configured instance", file=sys.stderr
        )
        return EXIT_FAILURE

    password = getpass.getpass(f"Web interface password for {instance.host}: ")
    try:
        app = asyncio.run(_fetch_app_password(instance, password))
    except AuthenticationError as e:
        print(
            f"ERROR: Authentication failed: {e}. Check the password.",
            file=sys.stderr,
        )
        return EXIT_FAILURE
    except PiHoleSyncError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILURE

    print(f"App password: {app['password']}")
    print(f"Hash:         {app['hash']}")
    print(
        "Set the hash as the app password in the Pi-hole web interface "
        "and use the password as api_key.",
        file=sys.stderr,
    )
    return EXIT_OK


def _describe_mode(instance: InstanceConfig) -> str:
    if instance.sync_mode == SyncMode.TELEPORTER:
        return "teleporter"
    options = instance.api_sync_options
    if options is None:
        return "api (nothing selected)"
    parts = []
    if options.sync_config is not None:
        parts.append(
            f"config:{options.sync_config.mode.value}"
            f"[{', '.join(options.sync_config.filter_keys)}]"
        )
    if options.sync_groups:
        parts.append("groups")
    if options.sync_lists:
        parts.append("lists")
    return f"api ({', '.join(parts) or 'nothing selected'})"


def _cmd_instances(args: argparse.Namespace, config: AppConfig) -> int:
    main = config.main
    print(f"main       {main.schema_}://{main.host}:{main.port}")
    for instance in config.secondary:
        gravity = " +gravity" if instance.update_gravity else ""
        print(
            f"secondary  {instance.schema_}://{instance.host}:{instance.port}  "
            f"{_describe_mode(instance)}{gravity}"
        )
    return EXIT_OK


_COMMANDS = {
    "sync": _cmd_sync,
    "app-password": _cmd_app_password,
    "instances": _cmd_instances,
}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, load configuration and dispatch the command.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv(find_dotenv(usecwd=True))

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        setup_logging(
            debug=args.debug,
            log_file=args.log_file,
            log_format=args.log_format or "text",
        )
        logger.error("Configuration error: %s", e)
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(
        debug=args.debug,
        log_file=args.log_file or config.logging.file,
        log_format=args.log_format or config.logging.format,
        config_level=config.logging.level,
    )

    try:
        return _COMMANDS[args.command](args, config)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
