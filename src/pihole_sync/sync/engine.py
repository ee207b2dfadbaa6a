"""Sync orchestrator: one full cycle from main to every secondary.

The ``SyncOrchestrator`` ties together sessions, the change tracker, the
path filter and the reconciler. Per cycle it:

1. Splits targets into snapshot (teleporter) and selective (API) ones.
2. Snapshot: downloads main's archive, skips the upload when the archive
   hash equals the last one every target accepted, otherwise uploads to
   each snapshot target and optionally triggers gravity.
3. Selective: fetches only the main data some target needs (lists imply
   groups), then per target patches the filtered config (waiting for the
   API to come back), reconciles groups and lists, and triggers gravity
   when lists were written.
4. Logs out of main and every secondary.
5. Returns a ``CycleReport``.

Error handling is per target and per step: a failing secondary never
stops the others. A ``ReadinessTimeout`` after a config patch aborts the
remaining steps for that secondary only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pihole_sync.core.client import BACKUP_RESOURCE_NAME
from pihole_sync.core.session import SessionManager
from pihole_sync.errors import PiHoleSyncError, ReadinessTimeout
from pihole_sync.sync.models import (
    CycleReport,
    Group,
    ListEntry,
    StepAction,
    StepResult,
    SyncStep,
)
from pihole_sync.sync.reconciler import (
    build_group_lookup,
    normalize_groups,
    normalize_lists,
    parse_groups,
    parse_lists,
)
from pihole_sync.sync.state import ChangeTracker, hash_bytes, hash_value
from pihole_sync.sync.targets import SyncTarget

logger = logging.getLogger(__name__)

DEFAULT_READINESS_TIMEOUT = 60.0


@dataclass
class MainData:
    """Main's state fetched once per cycle for all selective targets."""

    config: dict[str, Any] | None = None
    groups: list[Group] | None = None
    lists: list[ListEntry] | None = None
    group_lookup: dict[int, str] = field(default_factory=dict)
    groups_hash: int | None = None
    lists_hash: int | None = None


def _result(
    host: str,
    step: SyncStep,
    action: StepAction,
    writes: int = 0,
    detail: str | None = None,
    error: str | None = None,
) -> StepResult:
    return StepResult(
        host=host,
        step=step,
        action=action,
        writes=writes,
        detail=detail,
        error=error,
    )


class SyncOrchestrator:
    """Run sync cycles from main to all targets.

    Args:
        main: Session of the main instance.
        targets: Secondaries with their policies.
        tracker: Change tracker shared across cycles.
        cache_dir: Directory where the downloaded archive is staged, or
            None to keep it in memory only.
        readiness_timeout: Seconds to wait for a secondary after a config
            patch, and for every instance before a triggered cycle.
    """

    def __init__(
        self,
        main: SessionManager,
        targets: list[SyncTarget],
        tracker: ChangeTracker | None = None,
        cache_dir: Path | None = None,
        readiness_timeout: float = DEFAULT_READINESS_TIMEOUT,
    ) -> None:
        self.main = main
        self.targets = targets
        self.tracker = tracker if tracker is not None else ChangeTracker()
        self.cache_dir = cache_dir
        self.readiness_timeout = readiness_timeout

    @property
    def snapshot_targets(self) -> list[SyncTarget]:
        return [t for t in self.targets if t.is_snapshot]

    @property
    def selective_targets(self) -> list[SyncTarget]:
        return [t for t in self.targets if t.is_selective]

    @property
    def sessions(self) -> list[SessionManager]:
        return [self.main] + [t.session for t in self.targets]

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run_cycle(
        self, main_config: dict[str, Any] | None = None
    ) -> CycleReport:
        """Execute one sync cycle.

        Args:
            main_config: Main's config when the caller already fetched it
                (API-poll trigger); fetched on demand otherwise.

        Returns:
            A ``CycleReport`` with one result per host and step.
        """
        started_at = datetime.now(timezone.utc)
        results: list[StepResult] = []

        try:
            if self.snapshot_targets:
                results.extend(await self._sync_snapshot())
            if self.selective_targets:
                main_config, selective_results = await self._sync_selective(
                    main_config
                )
                results.extend(selective_results)
        finally:
            results.extend(await self.logout_all())

        config_hash = None
        if main_config is not None:
            try:
                config_hash = hash_value(main_config)
            except PiHoleSyncError as e:
                logger.warning("Cannot hash main config: %s", e)

        report = CycleReport(
            main_host=self.main.host,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            main_config_hash=config_hash,
            results=results,
        )
        logger.info(
            "Sync cycle finished in %.1fs: %d write(s), %d failure(s)",
            report.duration,
            report.total_writes,
            len(report.failures),
        )
        return report

    async def wait_until_ready(self) -> bool:
        """Wait for main and every secondary to accept requests.

        Returns:
            False if any instance stayed unavailable past the timeout.
        """
        for session in self.sessions:
            logger.debug(
                "[%s] Waiting up to %ss for the API to become ready",
                session.host,
                self.readiness_timeout,
            )
            try:
                await session.wait_for_ready(self.readiness_timeout)
            except ReadinessTimeout as e:
                logger.warning("%s", e)
                return False
        return True

    async def logout_all(self) -> list[StepResult]:
        """Log out of every session. Only failures are reported."""
        results: list[StepResult] = []
        for session in self.sessions:
            try:
                await session.logout()
            except PiHoleSyncError as e:
                logger.error("[%s] Logout failed: %s", session.host, e.message)
                results.append(
                    _result(
                        session.host,
                        SyncStep.LOGOUT,
                        StepAction.FAIL,
                        error=e.message,
                    )
                )
        return results

    # ------------------------------------------------------------------
    # Snapshot (teleporter)
    # ------------------------------------------------------------------

    def _stage_archive(self, data: bytes) -> None:
        if self.cache_dir is None:
            return
        path = self.cache_dir / BACKUP_RESOURCE_NAME
        try:
            path.write_bytes(data)
        except OSError as e:
            logger.warning("Cannot stage teleporter archive at %s: %s", path, e)
        else:
            logger.debug("Staged teleporter archive at %s", path)

    async def _sync_snapshot(self) -> list[StepResult]:
        main_host = self.main.host
        targets = self.snapshot_targets

        logger.info("[%s] Downloading teleporter archive", main_host)
        try:
            data = await self.main.download_teleporter()
        except PiHoleSyncError as e:
            logger.error(
                "[%s] Failed to download teleporter archive: %s",
                main_host,
                e.message,
            )
            return [
                _result(
                    main_host, SyncStep.SNAPSHOT, StepAction.FAIL, error=e.message
                )
            ]
        self._stage_archive(data)

        key = f"snapshot:{main_host}"
        digest = hash_bytes(data)
        if not self.tracker.has_changed(key, digest):
            logger.info(
                "Teleporter archive unchanged since last run; "
                "skipping upload to secondary instances"
            )
            return [
                _result(
                    t.host, SyncStep.SNAPSHOT, StepAction.SKIP, detail="unchanged"
                )
                for t in targets
            ]

        results: list[StepResult] = []
        all_applied = True
        for target in targets:
            logger.info("[%s] Uploading teleporter archive", target.host)
            try:
                files = await target.session.upload_teleporter(
                    data, target.snapshot_policy.import_options
                )
            except PiHoleSyncError as e:
                all_applied = False
                logger.error(
                    "[%s] Failed to upload teleporter archive: %s",
                    target.host,
                    e.message,
                )
                results.append(
                    _result(
                        target.host,
                        SyncStep.SNAPSHOT,
                        StepAction.FAIL,
                        error=e.message,
                    )
                )
                continue

            logger.info(
                "[%s] Teleporter import processed %d file(s)",
                target.host,
                len(files),
            )
            for name in files:
                logger.debug("[%s]   %s", target.host, name)
            results.append(
                _result(
                    target.host,
                    SyncStep.SNAPSHOT,
                    StepAction.APPLY,
                    writes=1,
                    detail=f"{len(files)} file(s) processed",
                )
            )
            if target.update_gravity:
                results.append(await self._trigger_gravity(target))

        if all_applied:
            self.tracker.update(key, digest)
        else:
            logger.warning(
                "Teleporter archive not applied everywhere; "
                "it will be uploaded again next cycle"
            )
        return results

    # ------------------------------------------------------------------
    # Selective (API)
    # ------------------------------------------------------------------

    async def _fetch_main_data(
        self, main_config: dict[str, Any] | None
    ) -> tuple[MainData, list[StepResult]]:
        policies = [t.selective_policy for t in self.selective_targets]
        needs_config = any(p.needs_config for p in policies)
        needs_lists = any(p.sync_lists for p in policies)
        needs_groups = needs_lists or any(p.needs_groups for p in policies)
        logger.debug(
            "API sync needs config=%s groups=%s lists=%s",
            needs_config,
            needs_groups,
            needs_lists,
        )

        data = MainData(config=main_config)
        failures: list[StepResult] = []
        host = self.main.host

        if needs_config and data.config is None:
            try:
                data.config = await self.main.get_config()
            except PiHoleSyncError as e:
                logger.error(
                    "[%s] Failed to fetch config: %s", host, e.message
                )
                failures.append(
                    _result(host, SyncStep.CONFIG, StepAction.FAIL, error=e.message)
                )

        if needs_groups:
            try:
                groups = parse_groups(await self.main.get_groups())
                data.group_lookup = build_group_lookup(groups)
                data.groups_hash = hash_value(normalize_groups(groups))
                data.groups = groups
            except PiHoleSyncError as e:
                logger.error(
                    "[%s] Failed to fetch groups: %s", host, e.message
                )
                failures.append(
                    _result(host, SyncStep.GROUPS, StepAction.FAIL, error=e.message)
                )

        if needs_lists and data.groups is not None:
            try:
                lists = parse_lists(await self.main.get_lists())
                data.lists_hash = hash_value(
                    normalize_lists(lists, data.group_lookup)
                )
                data.lists = lists
            except PiHoleSyncError as e:
                logger.error("[%s] Failed to fetch lists: %s", host, e.message)
                failures.append(
                    _result(host, SyncStep.LISTS, StepAction.FAIL, error=e.message)
                )

        return data, failures

    async def _sync_selective(
        self, main_config: dict[str, Any] | None
    ) -> tuple[dict[str, Any] | None, list[StepResult]]:
        data, results = await self._fetch_main_data(main_config)

        for target in self.selective_targets:
            try:
                results.extend(await self._sync_target(target, data))
            except Exception as exc:
                logger.exception(
                    "[%s] Unexpected error during API sync: %s", target.host, exc
                )
                results.append(
                    _result(
                        target.host,
                        SyncStep.CONFIG,
                        StepAction.FAIL,
                        error=str(exc),
                    )
                )
        return data.config, results

    async def _sync_target(
        self, target: SyncTarget, data: MainData
    ) -> list[StepResult]:
        policy = target.selective_policy
        if policy.is_empty:
            logger.debug("[%s] Nothing selected for API sync", target.host)
            return []

        results: list[StepResult] = []
        try:
            if policy.needs_config:
                results.append(await self._sync_config(target, data))
            groups_failed = False
            if policy.sync_groups:
                groups_result = await self._sync_groups(target, data)
                results.append(groups_result)
                groups_failed = groups_result.action == StepAction.FAIL
            if policy.sync_lists and groups_failed:
                # lists hash stays unrecorded until groups apply cleanly
                logger.warning(
                    "[%s] Skipping list sync: group sync failed", target.host
                )
                results.append(
                    _result(
                        target.host,
                        SyncStep.LISTS,
                        StepAction.SKIP,
                        detail="groups failed",
                    )
                )
            elif policy.sync_lists:
                lists_result = await self._sync_lists(target, data)
                results.append(lists_result)
                if lists_result.writes and target.update_gravity:
                    logger.info(
                        "[%s] Lists changed; triggering gravity update",
                        target.host,
                    )
                    results.append(await self._trigger_gravity(target))
        except ReadinessTimeout as e:
            logger.error(
                "[%s] Instance not ready after config patch; "
                "skipping remaining steps: %s",
                target.host,
                e.message,
            )
            results.append(
                _result(
                    target.host, SyncStep.CONFIG, StepAction.FAIL, error=e.message
                )
            )
        return results

    async def _sync_config(
        self, target: SyncTarget, data: MainData
    ) -> StepResult:
        host = target.host
        if data.config is None:
            logger.warning(
                "[%s] Skipping config sync: no config from main instance", host
            )
            return _result(
                host, SyncStep.CONFIG, StepAction.SKIP, detail="main unavailable"
            )

        config_filter = target.selective_policy.config_filter
        if config_filter is None:
            return _result(
                host, SyncStep.CONFIG, StepAction.SKIP, detail="not selected"
            )
        try:
            filtered = config_filter.apply(data.config)
            digest = hash_value(filtered)
        except PiHoleSyncError as e:
            logger.error("[%s] Cannot prepare config: %s", host, e.message)
            return _result(
                host, SyncStep.CONFIG, StepAction.FAIL, error=e.message
            )

        if not filtered:
            logger.info("[%s] Config filter selects nothing; skipping", host)
            return _result(
                host, SyncStep.CONFIG, StepAction.SKIP, detail="empty selection"
            )

        key = f"config:{host}"
        if not self.tracker.has_changed(key, digest):
            logger.info(
                "[%s] Skipping config sync; config unchanged since last run",
                host,
            )
            return _result(
                host, SyncStep.CONFIG, StepAction.SKIP, detail="unchanged"
            )

        logger.info("[%s] Syncing config via API", host)
        try:
            await target.session.patch_config(filtered)
        except PiHoleSyncError as e:
            logger.error("[%s] Config sync failed: %s", host, e.message)
            return _result(
                host, SyncStep.CONFIG, StepAction.FAIL, error=e.message
            )

        # Patching config may restart FTL
        await target.session.wait_for_ready(self.readiness_timeout)
        self.tracker.update(key, digest)
        return _result(host, SyncStep.CONFIG, StepAction.APPLY, writes=1)

    async def _sync_groups(
        self, target: SyncTarget, data: MainData
    ) -> StepResult:
        host = target.host
        if data.groups is None or data.groups_hash is None:
            logger.warning(
                "[%s] Skipping group sync: no groups from main instance", host
            )
            return _result(
                host, SyncStep.GROUPS, StepAction.SKIP, detail="main unavailable"
            )

        key = f"groups:{host}"
        if not self.tracker.has_changed(key, data.groups_hash):
            logger.info(
                "[%s] Skipping groups sync; groups unchanged since last run",
                host,
            )
            return _result(
                host, SyncStep.GROUPS, StepAction.SKIP, detail="unchanged"
            )

        try:
            writes = await target.reconciler.sync_groups(data.groups)
        except PiHoleSyncError as e:
            logger.error("[%s] Group sync failed: %s", host, e.message)
            return _result(
                host, SyncStep.GROUPS, StepAction.FAIL, error=e.message
            )

        self.tracker.update(key, data.groups_hash)
        logger.info("[%s] Groups synced (%d write(s))", host, writes)
        return _result(host, SyncStep.GROUPS, StepAction.APPLY, writes=writes)

    async def _sync_lists(
        self, target: SyncTarget, data: MainData
    ) -> StepResult:
        host = target.host
        if data.lists is None or data.lists_hash is None:
            logger.warning(
                "[%s] Skipping list sync: no lists from main instance", host
            )
            return _result(
                host, SyncStep.LISTS, StepAction.SKIP, detail="main unavailable"
            )

        key = f"lists:{host}"
        if not self.tracker.has_changed(key, data.lists_hash):
            logger.info(
                "[%s] Skipping lists sync; lists unchanged since last run",
                host,
            )
            return _result(
                host, SyncStep.LISTS, StepAction.SKIP, detail="unchanged"
            )

        try:
            writes = await target.reconciler.sync_lists(
                data.lists, data.group_lookup, target.selective_policy.sync_groups
            )
        except PiHoleSyncError as e:
            logger.error("[%s] List sync failed: %s", host, e.message)
            return _result(
                host, SyncStep.LISTS, StepAction.FAIL, error=e.message
            )

        self.tracker.update(key, data.lists_hash)
        logger.info("[%s] Lists synced (%d write(s))", host, writes)
        return _result(host, SyncStep.LISTS, StepAction.APPLY, writes=writes)

    # ------------------------------------------------------------------
    # Gravity
    # ------------------------------------------------------------------

    async def _trigger_gravity(self, target: SyncTarget) -> StepResult:
        try:
            await target.session.trigger_gravity()
        except PiHoleSyncError as e:
            logger.error(
                "[%s] Failed to trigger gravity update: %s",
                target.host,
                e.message,
            )
            return _result(
                target.host, SyncStep.GRAVITY, StepAction.FAIL, error=e.message
            )
        logger.info("[%s] Triggered gravity update", target.host)
        return _result(target.host, SyncStep.GRAVITY, StepAction.APPLY, writes=1)
