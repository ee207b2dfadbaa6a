"""Pydantic models for the sync engine.

Defines the data contracts shared by the sync modules:

- ``Group``, ``ListEntry``: Pi-hole entities as returned by the API.
- ``WriteKind``, ``PlannedWrite``: one create/update call a reconciliation
  plan wants to issue against a secondary.
- ``SyncStep``, ``StepAction``, ``StepResult``: outcome of one step for one
  host.
- ``CycleReport``: aggregate results for a full sync cycle.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Group(BaseModel):
    """A Pi-hole group. ``name`` is the cross-instance identity; ``id`` is
    local to one instance."""

    name: str
    comment: str | None = None
    enabled: bool = True
    id: int | None = None

    model_config = {"frozen": True, "extra": "ignore"}


class ListEntry(BaseModel):
    """A Pi-hole subscription list (adlist or allowlist).

    Attributes:
        address: List URL.
        list_type: ``block`` or ``allow``; serialized as ``type``.
        comment: Free-text comment.
        enabled: Whether the list is active.
        groups: Instance-local group ids the list belongs to.
        id: Instance-local list id.
    """

    address: str
    list_type: str = Field(default="block", alias="type")
    comment: str | None = None
    enabled: bool = True
    groups: list[int] = Field(default_factory=list)
    id: int | None = None

    model_config = {"frozen": True, "extra": "ignore", "populate_by_name": True}

    @property
    def key(self) -> tuple[str, str]:
        """Composite identity: ``(address, type)``."""
        return (self.address, self.list_type)


class WriteKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class PlannedWrite(BaseModel):
    """One write a reconciliation plan wants to issue.

    ``key`` is the group name or the list address; ``list_type`` is only
    set for lists.
    """

    kind: WriteKind
    key: str
    payload: dict[str, Any]
    list_type: str | None = None

    model_config = {"frozen": True}


class SyncStep(str, Enum):
    SNAPSHOT = "snapshot"
    CONFIG = "config"
    GROUPS = "groups"
    LISTS = "lists"
    GRAVITY = "gravity"
    LOGOUT = "logout"


class StepAction(str, Enum):
    APPLY = "apply"
    SKIP = "skip"
    FAIL = "fail"


class StepResult(BaseModel):
    """Outcome of one step against one host.

    Attributes:
        host: Instance the step ran against.
        step: Which step.
        action: Applied, skipped (unchanged or not needed) or failed.
        writes: Number of write calls issued.
        detail: Short human-readable note.
        error: Error message if the step failed.
    """

    host: str
    step: SyncStep
    action: StepAction
    writes: int = 0
    detail: str | None = None
    error: str | None = None

    model_config = {"frozen": True}


class CycleReport(BaseModel):
    """Aggregate results for a full sync cycle."""

    main_host: str
    started_at: datetime
    finished_at: datetime
    main_config_hash: int | None = None
    results: list[StepResult] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def failures(self) -> list[StepResult]:
        return [r for r in self.results if r.action == StepAction.FAIL]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def total_writes(self) -> int:
        return sum(r.writes for r in self.results)

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()
