"""Group and list reconciliation between main and one secondary.

Planning is pure: ``plan_groups()`` and ``plan_lists()`` compare main's
collection with the secondary's and return the create/update calls
needed. ``EntityReconciler`` fetches the secondary's side, plans, and
issues the writes with a fixed delay between successive calls.

Reconciliation is additive: entries that only exist on the secondary are
never deleted.

Group membership crosses instances by *name*: a list's group ids on main
are mapped to names through main's group table, then to ids through the
secondary's table. Memberships that cannot be mapped fall back to the
default group (id 0) and emit an ``UnresolvedReferenceWarning``.
"""

from __future__ import annotations

import asyncio
import logging
import warnings
from typing import Any, Iterable

from ..core.session import SessionManager
from ..errors import UnresolvedReferenceWarning
from .models import Group, ListEntry, PlannedWrite, WriteKind

logger = logging.getLogger(__name__)

DEFAULT_GROUP_ID = 0
DEFAULT_WRITE_THROTTLE = 0.25


# ---------------------------------------------------------------------------
# Parsing and normalisation
# ---------------------------------------------------------------------------


def parse_groups(raw: Iterable[dict[str, Any]]) -> list[Group]:
    return [Group.model_validate(item) for item in raw]


def parse_lists(raw: Iterable[dict[str, Any]]) -> list[ListEntry]:
    return [ListEntry.model_validate(item) for item in raw]


def build_group_lookup(groups: Iterable[Group]) -> dict[int, str]:
    """Map instance-local group id to group name."""
    return {g.id: g.name for g in groups if g.id is not None}


def normalize_groups(groups: Iterable[Group]) -> list[dict[str, Any]]:
    """Instance-independent view of groups, sorted by name, for hashing."""
    return sorted(
        (
            {"name": g.name, "comment": g.comment, "enabled": g.enabled}
            for g in groups
        ),
        key=lambda g: g["name"],
    )


def _member_ids(entry: ListEntry) -> list[int]:
    return list(entry.groups) if entry.groups else [DEFAULT_GROUP_ID]


def normalize_lists(
    lists: Iterable[ListEntry], group_lookup: dict[int, str]
) -> list[dict[str, Any]]:
    """Instance-independent view of lists, for hashing.

    Group ids become names; ids missing from *group_lookup* are rendered
    as ``id:N``. Sorted by ``(address, type)``.
    """
    normalized = [
        {
            "address": entry.address,
            "type": entry.list_type,
            "comment": entry.comment,
            "enabled": entry.enabled,
            "groups": sorted(
                group_lookup.get(gid, f"id:{gid}")
                for gid in _member_ids(entry)
            ),
        }
        for entry in lists
    ]
    normalized.sort(key=lambda item: (item["address"], item["type"]))
    return normalized


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def _group_payload(group: Group) -> dict[str, Any]:
    return {
        "name": group.name,
        "comment": group.comment,
        "enabled": group.enabled,
    }


def plan_groups(
    main_groups: Iterable[Group], secondary_groups: Iterable[Group]
) -> list[PlannedWrite]:
    """Writes needed so every main group exists on the secondary with the
    same comment and enabled state."""
    existing = {g.name: g for g in secondary_groups}
    plan: list[PlannedWrite] = []

    for group in main_groups:
        current = existing.get(group.name)
        if current is None:
            plan.append(
                PlannedWrite(
                    kind=WriteKind.CREATE,
                    key=group.name,
                    payload=_group_payload(group),
                )
            )
        elif (current.comment, current.enabled) != (
            group.comment,
            group.enabled,
        ):
            plan.append(
                PlannedWrite(
                    kind=WriteKind.UPDATE,
                    key=group.name,
                    payload=_group_payload(group),
                )
            )
    return plan


def resolve_list_groups(
    entry: ListEntry,
    main_lookup: dict[int, str],
    secondary_ids: dict[str, int],
    sync_groups: bool,
    host: str,
) -> list[int]:
    """Translate a main list's group ids into the secondary's ids.

    Args:
        entry: The list as seen on main.
        main_lookup: Main's id to name table.
        secondary_ids: Secondary's name to id table.
        sync_groups: Whether groups are synced to this secondary.
        host: Secondary host, for diagnostics.

    Returns:
        Sorted, de-duplicated secondary group ids.
    """
    member_ids = _member_ids(entry)

    if not sync_groups and any(gid != DEFAULT_GROUP_ID for gid in member_ids):
        warnings.warn(
            f"[{host}] sync_lists is enabled without sync_groups; list "
            f"{entry.address} belongs to groups {member_ids} on main and is "
            f"assigned to the default group",
            UnresolvedReferenceWarning,
            stacklevel=2,
        )
        return [DEFAULT_GROUP_ID]

    mapped: set[int] = set()
    for gid in member_ids:
        name = main_lookup.get(gid, f"id:{gid}")
        if name in secondary_ids:
            mapped.add(secondary_ids[name])
        elif gid == DEFAULT_GROUP_ID:
            mapped.add(DEFAULT_GROUP_ID)
        else:
            warnings.warn(
                f"[{host}] Group '{name}' missing on secondary; list "
                f"{entry.address} is assigned to the default group",
                UnresolvedReferenceWarning,
                stacklevel=2,
            )
            mapped.add(DEFAULT_GROUP_ID)
    return sorted(mapped)


def lists_equal(
    comment: str | None,
    enabled: bool,
    groups: list[int],
    existing: ListEntry,
) -> bool:
    """Compare a desired list state with the secondary's current entry."""
    return (
        comment == existing.comment
        and enabled == existing.enabled
        and sorted(set(groups)) == sorted(set(_member_ids(existing)))
    )


def plan_lists(
    main_lists: Iterable[ListEntry],
    main_lookup: dict[int, str],
    secondary_groups: Iterable[Group],
    secondary_lists: Iterable[ListEntry],
    sync_groups: bool,
    host: str = "",
) -> list[PlannedWrite]:
    """Writes needed so every main list exists on the secondary with the
    same comment, enabled state and (name-mapped) group membership."""
    secondary_ids = {
        g.name: g.id for g in secondary_groups if g.id is not None
    }
    existing = {entry.key: entry for entry in secondary_lists}
    plan: list[PlannedWrite] = []

    for entry in main_lists:
        groups = resolve_list_groups(
            entry, main_lookup, secondary_ids, sync_groups, host
        )
        current = existing.get(entry.key)

        if current is None:
            plan.append(
                PlannedWrite(
                    kind=WriteKind.CREATE,
                    key=entry.address,
                    list_type=entry.list_type,
                    payload={
                        "address": entry.address,
                        "comment": entry.comment,
                        "groups": groups,
                        "enabled": entry.enabled,
                    },
                )
            )
        elif not lists_equal(entry.comment, entry.enabled, groups, current):
            plan.append(
                PlannedWrite(
                    kind=WriteKind.UPDATE,
                    key=entry.address,
                    list_type=entry.list_type,
                    payload={
                        "comment": entry.comment,
                        "type": entry.list_type,
                        "groups": groups,
                        "enabled": entry.enabled,
                    },
                )
            )
    return plan


# ---------------------------------------------------------------------------
# Applying
# ---------------------------------------------------------------------------


class EntityReconciler:
    """Apply group and list plans to one secondary.

    Successive writes are spaced by at least *write_throttle* seconds,
    also across separate ``sync_groups()`` / ``sync_lists()`` calls.

    Args:
        session: Session of the secondary.
        write_throttle: Minimum delay between two write calls, in seconds.
    """

    def __init__(
        self,
        session: SessionManager,
        write_throttle: float = DEFAULT_WRITE_THROTTLE,
    ) -> None:
        self.session = session
        self.write_throttle = write_throttle
        self._last_write: float | None = None

    async def _throttle(self) -> None:
        loop = asyncio.get_running_loop()
        if self._last_write is not None:
            wait = self._last_write + self.write_throttle - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
        self._last_write = loop.time()

    async def _write_group(self, write: PlannedWrite) -> None:
        if write.kind == WriteKind.CREATE:
            logger.info("[%s] Creating group '%s'", self.session.host, write.key)
            await self.session.add_group(write.payload)
        else:
            logger.info("[%s] Updating group '%s'", self.session.host, write.key)
            await self.session.update_group(write.key, write.payload)

    async def _write_list(self, write: PlannedWrite) -> None:
        list_type = write.list_type or "block"
        if write.kind == WriteKind.CREATE:
            logger.info(
                "[%s] Creating %s list %s",
                self.session.host,
                list_type,
                write.key,
            )
            await self.session.add_list(list_type, write.payload)
        else:
            logger.info(
                "[%s] Updating %s list %s",
                self.session.host,
                list_type,
                write.key,
            )
            await self.session.update_list(write.key, list_type, write.payload)

    async def apply_groups(self, plan: list[PlannedWrite]) -> int:
        for write in plan:
            await self._throttle()
            await self._write_group(write)
        return len(plan)

    async def apply_lists(self, plan: list[PlannedWrite]) -> int:
        for write in plan:
            await self._throttle()
            await self._write_list(write)
        return len(plan)

    async def sync_groups(self, main_groups: list[Group]) -> int:
        """Reconcile groups. Returns the number of writes issued."""
        secondary_groups = parse_groups(await self.session.get_groups())
        plan = plan_groups(main_groups, secondary_groups)
        if not plan:
            logger.debug("[%s] Groups already in sync", self.session.host)
        return await self.apply_groups(plan)

    async def sync_lists(
        self,
        main_lists: list[ListEntry],
        main_lookup: dict[int, str],
        sync_groups: bool,
    ) -> int:
        """Reconcile lists against the secondary's current groups.

        Groups are re-fetched so lists see groups created moments ago.
        Returns the number of writes issued.
        """
        secondary_groups = parse_groups(await self.session.get_groups())
        secondary_lists = parse_lists(await self.session.get_lists())
        plan = plan_lists(
            main_lists,
            main_lookup,
            secondary_groups,
            secondary_lists,
            sync_groups,
            host=self.session.host,
        )
        if not plan:
            logger.debug("[%s] Lists already in sync", self.session.host)
        return await self.apply_lists(plan)
