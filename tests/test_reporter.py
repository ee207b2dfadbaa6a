"""Tests for cycle report formatting functions.

Covers:
- format_cycle_report with various result combinations
- report_to_json structure and completeness
- Empty report produces concise output
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from pihole_sync.sync.models import CycleReport, StepAction, StepResult, SyncStep
from pihole_sync.sync.reporter import format_cycle_report, report_to_json

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

STARTED = datetime(2026, 2, 7, 10, 0, tzinfo=timezone.utc)


def _make_report(results: list[StepResult] | None = None) -> CycleReport:
    """Build a CycleReport with sensible defaults."""
    return CycleReport(
        main_host="pihole-main.lan",
        started_at=STARTED,
        finished_at=STARTED + timedelta(seconds=4),
        main_config_hash=1234,
        results=results or [],
    )


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


MIXED = [
    _result("pihole-2.lan", SyncStep.SNAPSHOT, StepAction.APPLY, writes=1),
    _result("pihole-3.lan", SyncStep.CONFIG, StepAction.SKIP, detail="unchanged"),
    _result("pihole-2.lan", SyncStep.GRAVITY, StepAction.APPLY, writes=1),
    _result(
        "pihole-3.lan",
        SyncStep.LISTS,
        StepAction.FAIL,
        error="POST /lists failed with HTTP 500",
    ),
]


# ---------------------------------------------------------------------------
# CycleReport properties
# ---------------------------------------------------------------------------


class TestCycleReport:
    def test_counts(self):
        report = _make_report(MIXED)
        assert report.total_writes == 2
        assert len(report.failures) == 1
        assert not report.ok
        assert report.duration == 4.0

    def test_empty_is_ok(self):
        assert _make_report().ok


# ---------------------------------------------------------------------------
# format_cycle_report
# ---------------------------------------------------------------------------


class TestFormatCycleReport:
    def test_header_and_summary(self):
        text = format_cycle_report(_make_report(MIXED))
        assert text.startswith("Sync cycle from pihole-main.lan")
        assert "2 applied, 1 skipped, 1 failed, 2 write(s)" in text

    def test_grouped_by_host_in_first_seen_order(self):
        text = format_cycle_report(_make_report(MIXED))
        lines = text.splitlines()
        host_lines = [line for line in lines if line.endswith(":")]
        assert host_lines == ["pihole-2.lan:", "pihole-3.lan:"]

        block = text.split("pihole-2.lan:")[1].split("pihole-3.lan:")[0]
        assert "snapshot: apply (1 write(s))" in block
        assert "gravity: apply (1 write(s))" in block

    def test_error_preferred_over_detail(self):
        text = format_cycle_report(_make_report(MIXED))
        assert "lists: fail -- POST /lists failed with HTTP 500" in text
        assert "config: skip -- unchanged" in text

    def test_empty_report(self):
        text = format_cycle_report(_make_report())
        assert text.endswith("Nothing to do.")
        assert "0 applied, 0 skipped, 0 failed, 0 write(s)" in text


# ---------------------------------------------------------------------------
# report_to_json
# ---------------------------------------------------------------------------


class TestReportToJson:
    def test_structure(self):
        data = report_to_json(_make_report(MIXED))

        assert data["main_host"] == "pihole-main.lan"
        assert data["main_config_hash"] == 1234
        assert data["ok"] is False
        assert data["counts"] == {
            "total": 4,
            "applied": 2,
            "skipped": 1,
            "failed": 1,
            "writes": 2,
        }
        assert data["results"][0] == {
            "host": "pihole-2.lan",
            "step": "snapshot",
            "action": "apply",
            "writes": 1,
        }
        assert data["results"][1]["detail"] == "unchanged"
        assert data["results"][3]["error"].startswith("POST /lists")

    def test_serialisable(self):
        data = report_to_json(_make_report(MIXED))
        decoded = json.loads(json.dumps(data))
        assert decoded["started_at"] == "2026-02-07T10:00:00+00:00"
