"""Process wiring for the sync daemon.

``SyncContext`` owns everything a run needs (sessions, targets, change
tracker, orchestrator) and is handed to the trigger strategy explicitly.
``run_sync()`` drives one run:

1. Prepare the teleporter staging directory when snapshot targets exist.
2. ``run_once``: one cycle, return its report.
3. Otherwise run an initial cycle, unless disabled; in API-poll mode the
   poll baseline is then seeded from a plain config fetch instead.
4. Start session keepalives.
5. Run the configured trigger forever.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config_schema import AppConfig, SyncTriggerMode
from .core.session import SessionManager
from .errors import ConfigurationError, PiHoleSyncError
from .sync.engine import SyncOrchestrator
from .sync.models import CycleReport
from .sync.reporter import format_cycle_report
from .sync.state import ChangeTracker, hash_value
from .sync.targets import SyncTarget, build_targets
from .sync.triggers import ApiPollTrigger, FileWatchTrigger, IntervalTrigger

logger = logging.getLogger(__name__)

Trigger = IntervalTrigger | FileWatchTrigger | ApiPollTrigger


@dataclass
class SyncContext:
    """Services shared by every cycle of one run."""

    config: AppConfig
    main: SessionManager
    targets: list[SyncTarget]
    tracker: ChangeTracker
    orchestrator: SyncOrchestrator
    keepalive_tasks: list[asyncio.Task] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: AppConfig) -> SyncContext:
        settings = config.sync
        main = SessionManager.for_instance(config.main)
        targets = build_targets(
            config.secondary, write_throttle=settings.write_throttle_ms / 1000
        )
        tracker = ChangeTracker()
        cache_dir = (
            Path(settings.cache_location)
            if any(t.is_snapshot for t in targets)
            else None
        )
        orchestrator = SyncOrchestrator(
            main=main,
            targets=targets,
            tracker=tracker,
            cache_dir=cache_dir,
            readiness_timeout=settings.trigger_api_readiness_timeout_secs,
        )
        return cls(
            config=config,
            main=main,
            targets=targets,
            tracker=tracker,
            orchestrator=orchestrator,
        )

    @property
    def sessions(self) -> list[SessionManager]:
        return self.orchestrator.sessions

    @property
    def sync_interval(self) -> int:
        """Seconds between cycles for the configured trigger mode."""
        settings = self.config.sync
        if settings.trigger_mode == SyncTriggerMode.WATCH_CONFIG_API:
            return settings.api_poll_interval_seconds
        return settings.interval_seconds

    def prepare_cache(self) -> None:
        """Create the staging directory.

        Raises:
            ConfigurationError: If the directory cannot be created.
        """
        cache_dir = self.orchestrator.cache_dir
        if cache_dir is None:
            return
        logger.info("Checking cache directory: %s", cache_dir)
        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot create cache directory {cache_dir}: {e}"
            ) from e

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def cycle(
        self, main_config: dict[str, Any] | None = None
    ) -> CycleReport:
        report = await self.orchestrator.run_cycle(main_config)
        logger.info("%s", format_cycle_report(report))
        return report

    async def triggered_cycle(
        self, main_config: dict[str, Any] | None = None
    ) -> CycleReport | None:
        """Cycle started by a file or API trigger.

        Instances may be restarting right after the change that fired the
        trigger, so every instance must answer first.
        """
        if not await self.orchestrator.wait_until_ready():
            logger.warning("Skipping triggered sync: instances not ready")
            await self.orchestrator.logout_all()
            return None
        return await self.cycle(main_config)

    async def fetch_main_config(self) -> dict[str, Any]:
        try:
            return await self.main.get_config()
        finally:
            try:
                await self.main.logout()
            except PiHoleSyncError as e:
                logger.warning("[%s] Logout failed: %s", self.main.host, e.message)

    async def seed_baseline(self) -> int | None:
        """Hash main's current config without syncing anything."""
        try:
            current = hash_value(await self.fetch_main_config())
        except PiHoleSyncError as e:
            logger.warning("Could not seed baseline config hash: %s", e)
            return None
        logger.info(
            "Seeded baseline config hash from main instance without "
            "initial sync: %d",
            current,
        )
        return current

    # ------------------------------------------------------------------
    # Keepalive and triggers
    # ------------------------------------------------------------------

    async def start_keepalives(self) -> list[asyncio.Task]:
        for session in self.sessions:
            try:
                task = await session.start_keepalive(self.sync_interval)
            except PiHoleSyncError as e:
                logger.warning(
                    "[%s] Not starting session keepalive: %s",
                    session.host,
                    e.message,
                )
                continue
            if task is not None:
                self.keepalive_tasks.append(task)
        return self.keepalive_tasks

    def stop_keepalives(self) -> None:
        for session in self.sessions:
            session.stop_keepalive()
        self.keepalive_tasks.clear()

    def build_trigger(self, baseline_hash: int | None = None) -> Trigger:
        settings = self.config.sync
        if settings.trigger_mode == SyncTriggerMode.WATCH_CONFIG_FILE:
            return FileWatchTrigger(settings.config_path, self.triggered_cycle)
        if settings.trigger_mode == SyncTriggerMode.WATCH_CONFIG_API:
            return ApiPollTrigger(
                settings.api_poll_interval_seconds,
                self.fetch_main_config,
                self.triggered_cycle,
                baseline_hash=baseline_hash,
            )
        return IntervalTrigger(settings.interval_seconds, self.cycle)


async def run_sync(
    config: AppConfig,
    run_once: bool = False,
    disable_initial_sync: bool = False,
) -> CycleReport | None:
    """Run the sync engine.

    Args:
        config: Validated configuration.
        run_once: Run a single cycle and return its report.
        disable_initial_sync: Skip the cycle at startup; API-poll mode
            still seeds its baseline.

    Returns:
        The report in ``run_once`` mode; continuous mode only returns
        when cancelled.

    Raises:
        ConfigurationError: If the staging directory cannot be created.
    """
    ctx = SyncContext.from_config(config)
    ctx.prepare_cache()
    poll_mode = config.sync.trigger_mode == SyncTriggerMode.WATCH_CONFIG_API

    if run_once:
        return await ctx.cycle()

    baseline: int | None = None
    if disable_initial_sync:
        logger.info("Initial sync disabled")
        if poll_mode:
            baseline = await ctx.seed_baseline()
    else:
        report = await ctx.cycle()
        baseline = report.main_config_hash
        if poll_mode and baseline is None:
            baseline = await ctx.seed_baseline()

    if config.sync.session_keepalive:
        await ctx.start_keepalives()

    try:
        await ctx.build_trigger(baseline).run()
    finally:
        ctx.stop_keepalives()
    return None
