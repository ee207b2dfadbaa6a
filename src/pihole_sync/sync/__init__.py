"""Main-to-secondaries sync engine.

Keeps secondary Pi-hole instances converged toward a main instance.

Modules:

- ``engine``     -- ``SyncOrchestrator``: runs one full sync cycle.
- ``targets``    -- ``SyncTarget`` with ``SnapshotPolicy`` or
  ``SelectivePolicy``, built once from configuration.
- ``state``      -- ``ChangeTracker`` and content hashing.
- ``filter``     -- ``PathFilter``: include/exclude JSON config paths.
- ``reconciler`` -- ``EntityReconciler``: name-based group and list sync.
- ``triggers``   -- interval, file-watch and API-poll trigger loops.
- ``models``     -- data contracts (entities, step results, reports).
- ``reporter``   -- human-readable and JSON report formatting.

Usage example
-------------
::

    from pihole_sync.core.session import SessionManager
    from pihole_sync.sync import SyncOrchestrator, build_targets

    orchestrator = SyncOrchestrator(
        main=SessionManager.for_instance(config.main),
        targets=build_targets(config.secondary),
    )
    report = await orchestrator.run_cycle()
    print(format_cycle_report(report))
"""

from .engine import SyncOrchestrator
from .filter import FilterMode, PathFilter
from .models import CycleReport, StepAction, StepResult, SyncStep
from .reconciler import EntityReconciler, plan_groups, plan_lists
from .reporter import format_cycle_report, report_to_json
from .state import ChangeTracker, hash_bytes, hash_value
from .targets import SelectivePolicy, SnapshotPolicy, SyncTarget, build_targets
from .triggers import ApiPollTrigger, FileWatchTrigger, IntervalTrigger

__all__ = [
    "ApiPollTrigger",
    "ChangeTracker",
    "CycleReport",
    "EntityReconciler",
    "FileWatchTrigger",
    "FilterMode",
    "IntervalTrigger",
    "PathFilter",
    "SelectivePolicy",
    "SnapshotPolicy",
    "StepAction",
    "StepResult",
    "SyncOrchestrator",
    "SyncStep",
    "SyncTarget",
    "build_targets",
    "format_cycle_report",
    "hash_bytes",
    "hash_value",
    "plan_groups",
    "plan_lists",
    "report_to_json",
]
