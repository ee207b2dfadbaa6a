"""Sync targets: one secondary plus the policy that decides how it is fed.

The policy is chosen once when targets are built from configuration:

- ``SnapshotPolicy`` -- the secondary imports main's teleporter archive.
- ``SelectivePolicy`` -- the secondary receives a filtered config patch
  and/or reconciled groups and lists over the API.

The selective config filter is compiled into a ``PathFilter`` up front.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from ..config_schema import (
    ApiSyncOptions,
    InstanceConfig,
    SyncMode,
    TeleporterImportOptions,
)
from ..core.session import SessionManager
from .filter import PathFilter
from .reconciler import DEFAULT_WRITE_THROTTLE, EntityReconciler


@dataclass(frozen=True)
class SnapshotPolicy:
    """Import main's full archive. ``import_options`` None means the
    instance's own defaults."""

    import_options: TeleporterImportOptions | None = None


@dataclass(frozen=True)
class SelectivePolicy:
    """Sync selected resources over the API.

    Attributes:
        config_filter: Filter applied to main's config, or None to skip
            config sync.
        sync_groups: Reconcile groups.
        sync_lists: Reconcile lists (requires main's groups to map
            memberships, even when ``sync_groups`` is off).
    """

    config_filter: PathFilter | None = None
    sync_groups: bool = False
    sync_lists: bool = False

    @property
    def needs_config(self) -> bool:
        return self.config_filter is not None

    @property
    def needs_groups(self) -> bool:
        return self.sync_groups or self.sync_lists

    @property
    def is_empty(self) -> bool:
        return not (self.needs_config or self.sync_groups or self.sync_lists)

    @classmethod
    def from_options(cls, options: ApiSyncOptions | None) -> SelectivePolicy:
        if options is None:
            return cls()
        config_filter = None
        if options.sync_config is not None:
            config_filter = PathFilter(
                options.sync_config.filter_keys, options.sync_config.mode
            )
        return cls(
            config_filter=config_filter,
            sync_groups=options.sync_groups,
            sync_lists=options.sync_lists,
        )


SyncPolicy = Union[SnapshotPolicy, SelectivePolicy]


@dataclass
class SyncTarget:
    """A secondary endpoint with its policy and session."""

    session: SessionManager
    policy: SyncPolicy
    update_gravity: bool = False
    reconciler: EntityReconciler | None = None

    def __post_init__(self) -> None:
        if self.reconciler is None:
            self.reconciler = EntityReconciler(self.session)

    @property
    def host(self) -> str:
        return self.session.host

    @property
    def is_snapshot(self) -> bool:
        return isinstance(self.policy, SnapshotPolicy)

    @property
    def is_selective(self) -> bool:
        return isinstance(self.policy, SelectivePolicy)

    @property
    def snapshot_policy(self) -> SnapshotPolicy:
        if not isinstance(self.policy, SnapshotPolicy):
            raise TypeError(f"{self.host} is not a teleporter target")
        return self.policy

    @property
    def selective_policy(self) -> SelectivePolicy:
        if not isinstance(self.policy, SelectivePolicy):
            raise TypeError(f"{self.host} is not an API sync target")
        return self.policy


def build_policy(instance: InstanceConfig) -> SyncPolicy:
    if instance.sync_mode == SyncMode.API:
        return SelectivePolicy.from_options(instance.api_sync_options)
    return SnapshotPolicy(import_options=instance.import_options)


def build_target(
    instance: InstanceConfig,
    write_throttle: float = DEFAULT_WRITE_THROTTLE,
    session: SessionManager | None = None,
) -> SyncTarget:
    """Build a ``SyncTarget`` for one configured secondary."""
    session = session or SessionManager.for_instance(instance)
    return SyncTarget(
        session=session,
        policy=build_policy(instance),
        update_gravity=instance.update_gravity,
        reconciler=EntityReconciler(session, write_throttle),
    )


def build_targets(
    secondaries: list[InstanceConfig],
    write_throttle: float = DEFAULT_WRITE_THROTTLE,
) -> list[SyncTarget]:
    return [build_target(s, write_throttle) for s in secondaries]
