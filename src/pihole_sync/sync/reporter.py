"""Cycle report formatting functions.

Provides human-readable and machine-readable output for sync cycles:

- ``format_cycle_report`` -- post-cycle summary, grouped by host.
- ``report_to_json`` -- structured dict for ``sync --once --json``.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import CycleReport, StepResult

from .models import StepAction

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def _describe(result: StepResult) -> str:
    text = f"{result.step.value}: {result.action.value}"
    if result.writes:
        text += f" ({result.writes} write(s))"
    if result.error:
        text += f" -- {result.error}"
    elif result.detail:
        text += f" -- {result.detail}"
    return text


def format_cycle_report(report: CycleReport) -> str:
    """Format a cycle report as human-readable text.

    Hosts are listed in the order their first result appeared.

    Args:
        report: The completed cycle report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append(f"Sync cycle from {report.main_host}")
    lines.append(f"Started: {report.started_at.isoformat()}")
    lines.append(f"Finished: {report.finished_at.isoformat()}")
    lines.append("")

    applied = sum(1 for r in report.results if r.action == StepAction.APPLY)
    skipped = sum(1 for r in report.results if r.action == StepAction.SKIP)
    lines.append(
        f"{applied} applied, {skipped} skipped, "
        f"{len(report.failures)} failed, {report.total_writes} write(s)"
    )
    lines.append("")

    by_host: dict[str, list[StepResult]] = defaultdict(list)
    for r in report.results:
        by_host[r.host].append(r)

    for host, results in by_host.items():
        lines.append(f"{host}:")
        for r in results:
            lines.append(f"  {_describe(r)}")
        lines.append("")

    if not report.results:
        lines.append("Nothing to do.")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: CycleReport) -> dict:
    """Convert a cycle report to a structured dict for JSON serialisation.

    Args:
        report: The cycle report.

    Returns:
        Dict with timing, counts, and per-result details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "host": r.host,
            "step": r.step.value,
            "action": r.action.value,
            "writes": r.writes,
        }
        if r.detail:
            entry["detail"] = r.detail
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "main_host": report.main_host,
        "started_at": report.started_at.isoformat(),
        "finished_at": report.finished_at.isoformat(),
        "main_config_hash": report.main_config_hash,
        "ok": report.ok,
        "counts": {
            "total": len(report.results),
            "applied": sum(
                1 for r in report.results if r.action == StepAction.APPLY
            ),
            "skipped": sum(
                1 for r in report.results if r.action == StepAction.SKIP
            ),
            "failed": len(report.failures),
            "writes": report.total_writes,
        },
        "results": results_list,
    }
