"""Tests for sync/engine.py -- SyncOrchestrator cycles against fake sessions."""

from __future__ import annotations

import pytest

from pihole_sync.errors import TransportError
from pihole_sync.sync.engine import SyncOrchestrator
from pihole_sync.sync.filter import FilterMode, PathFilter
from pihole_sync.sync.models import StepAction, SyncStep
from pihole_sync.sync.reconciler import EntityReconciler
from pihole_sync.sync.state import ChangeTracker, hash_bytes, hash_value
from pihole_sync.sync.targets import SelectivePolicy, SnapshotPolicy, SyncTarget

MAIN_CONFIG = {
    "dns": {"upstreams": ["1.1.1.1", "9.9.9.9"], "hosts": ["10.0.0.5 nas.lan"]},
    "webserver": {"session": {"timeout": 1800}},
}

MAIN_GROUPS = [
    {"name": "Default", "comment": None, "enabled": True, "id": 0},
    {"name": "Family", "comment": "kids", "enabled": True, "id": 7},
]

MAIN_LISTS = [
    {
        "address": "https://ads.example/list.txt",
        "type": "block",
        "comment": None,
        "enabled": True,
        "groups": [7],
        "id": 1,
    },
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _snapshot_target(session, update_gravity=False, import_options=None):
    return SyncTarget(
        session=session,
        policy=SnapshotPolicy(import_options=import_options),
        update_gravity=update_gravity,
        reconciler=EntityReconciler(session, write_throttle=0),
    )


def _selective_target(
    session,
    filter_keys=None,
    mode=FilterMode.INCLUDE,
    sync_groups=False,
    sync_lists=False,
    update_gravity=False,
):
    config_filter = PathFilter(filter_keys, mode) if filter_keys is not None else None
    return SyncTarget(
        session=session,
        policy=SelectivePolicy(
            config_filter=config_filter,
            sync_groups=sync_groups,
            sync_lists=sync_lists,
        ),
        update_gravity=update_gravity,
        reconciler=EntityReconciler(session, write_throttle=0),
    )


def _results(report, host, step=None):
    return [
        r
        for r in report.results
        if r.host == host and (step is None or r.step == step)
    ]


@pytest.fixture
def main(fake_session_factory):
    return fake_session_factory(
        "pihole-main.lan",
        config=MAIN_CONFIG,
        groups=[dict(g) for g in MAIN_GROUPS],
        lists=[dict(item) for item in MAIN_LISTS],
    )


# ---------------------------------------------------------------------------
# Snapshot (teleporter)
# ---------------------------------------------------------------------------


class TestSnapshotSync:
    async def test_uploads_to_every_snapshot_target(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        b = fake_session_factory("pihole-3.lan")
        orchestrator = SyncOrchestrator(
            main, [_snapshot_target(a), _snapshot_target(b)]
        )

        report = await orchestrator.run_cycle()

        assert report.ok
        assert a.uploads[0][0] == main.archive
        assert b.uploads[0][0] == main.archive
        assert _results(report, "pihole-2.lan")[0].action == StepAction.APPLY

    async def test_unchanged_archive_is_not_uploaded_again(
        self, main, fake_session_factory
    ):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(main, [_snapshot_target(a)])

        await orchestrator.run_cycle()
        report = await orchestrator.run_cycle()

        assert len(a.uploads) == 1
        result = _results(report, "pihole-2.lan", SyncStep.SNAPSHOT)[0]
        assert result.action == StepAction.SKIP

    async def test_changed_archive_is_uploaded(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(main, [_snapshot_target(a)])

        await orchestrator.run_cycle()
        main.archive = b"PK\x03\x04archive-v2"
        await orchestrator.run_cycle()

        assert [u[0] for u in a.uploads] == [b"PK\x03\x04archive-v1", main.archive]

    async def test_partial_failure_retries_everyone(self, main, fake_session_factory):
        """The archive hash is only recorded once every target accepted it."""
        a = fake_session_factory("pihole-2.lan")
        b = fake_session_factory("pihole-3.lan", fail_on={"upload_teleporter"})
        tracker = ChangeTracker()
        orchestrator = SyncOrchestrator(
            main, [_snapshot_target(a), _snapshot_target(b)], tracker=tracker
        )

        report = await orchestrator.run_cycle()
        assert not report.ok
        assert tracker.has_changed("snapshot:pihole-main.lan", hash_bytes(main.archive))

        b.fail_on.clear()
        await orchestrator.run_cycle()
        assert len(a.uploads) == 2
        assert len(b.uploads) == 1
        assert not tracker.has_changed(
            "snapshot:pihole-main.lan", hash_bytes(main.archive)
        )

        await orchestrator.run_cycle()
        assert len(a.uploads) == 2

    async def test_import_options_forwarded(self, main, fake_session_factory):
        from pihole_sync.config_schema import TeleporterImportOptions

        options = TeleporterImportOptions(dhcp_leases=False)
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_snapshot_target(a, import_options=options)]
        )

        await orchestrator.run_cycle()

        assert a.uploads[0][1] is options

    async def test_gravity_after_upload(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_snapshot_target(a, update_gravity=True)]
        )

        report = await orchestrator.run_cycle()

        assert a.call_names() == ["upload_teleporter", "trigger_gravity"]
        assert _results(report, "pihole-2.lan", SyncStep.GRAVITY)[0].action == (
            StepAction.APPLY
        )

    async def test_gravity_failure_does_not_force_reupload(
        self, main, fake_session_factory
    ):
        a = fake_session_factory("pihole-2.lan", fail_on={"trigger_gravity"})
        orchestrator = SyncOrchestrator(
            main, [_snapshot_target(a, update_gravity=True)]
        )

        report = await orchestrator.run_cycle()
        assert [r.step for r in report.failures] == [SyncStep.GRAVITY]

        await orchestrator.run_cycle()
        assert len(a.uploads) == 1

    async def test_download_failure(self, main, fake_session_factory):
        main.fail_on.add("download_teleporter")
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(main, [_snapshot_target(a)])

        report = await orchestrator.run_cycle()

        assert [(r.host, r.action) for r in report.failures] == [
            ("pihole-main.lan", StepAction.FAIL)
        ]
        assert a.uploads == []

    async def test_archive_staged_in_cache_dir(
        self, main, fake_session_factory, tmp_path
    ):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_snapshot_target(a)], cache_dir=tmp_path
        )

        await orchestrator.run_cycle()

        assert (tmp_path / "pihole_backup.zip").read_bytes() == main.archive

    async def test_unwritable_cache_dir_is_not_fatal(
        self, main, fake_session_factory, tmp_path
    ):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_snapshot_target(a)], cache_dir=tmp_path / "missing"
        )

        report = await orchestrator.run_cycle()

        assert report.ok
        assert len(a.uploads) == 1


# ---------------------------------------------------------------------------
# Selective (API)
# ---------------------------------------------------------------------------


class TestSelectiveConfig:
    async def test_patches_filtered_config(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_selective_target(a, filter_keys=["dns.upstreams"])]
        )

        report = await orchestrator.run_cycle()

        assert a.patched == [{"dns": {"upstreams": ["1.1.1.1", "9.9.9.9"]}}]
        assert "wait_for_ready" in a.call_names()
        assert report.main_config_hash == hash_value(MAIN_CONFIG)

    async def test_exclude_mode(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main,
            [_selective_target(a, filter_keys=["webserver"], mode=FilterMode.EXCLUDE)],
        )

        await orchestrator.run_cycle()

        assert a.patched == [{"dns": MAIN_CONFIG["dns"]}]

    async def test_unchanged_config_not_patched_again(
        self, main, fake_session_factory
    ):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_selective_target(a, filter_keys=["dns.upstreams"])]
        )

        await orchestrator.run_cycle()
        report = await orchestrator.run_cycle()

        assert len(a.patched) == 1
        assert _results(report, "pihole-2.lan")[0].action == StepAction.SKIP

    async def test_change_outside_filter_not_patched(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_selective_target(a, filter_keys=["dns.upstreams"])]
        )

        await orchestrator.run_cycle()
        main.config_tree = {**MAIN_CONFIG, "misc": {"privacylevel": 3}}
        await orchestrator.run_cycle()

        assert len(a.patched) == 1

    async def test_empty_selection_skipped(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_selective_target(a, filter_keys=["ntp.ipv4"])]
        )

        report = await orchestrator.run_cycle()

        assert a.patched == []
        assert _results(report, "pihole-2.lan")[0].detail == "empty selection"

    async def test_supplied_config_is_not_refetched(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_selective_target(a, filter_keys=["dns.upstreams"])]
        )
        supplied = {"dns": {"upstreams": ["8.8.8.8"]}}

        report = await orchestrator.run_cycle(main_config=supplied)

        assert "get_config" not in main.call_names()
        assert a.patched == [supplied]
        assert report.main_config_hash == hash_value(supplied)

    async def test_readiness_timeout_aborts_remaining_steps(
        self, main, fake_session_factory
    ):
        a = fake_session_factory("pihole-2.lan")
        a.ready = False
        orchestrator = SyncOrchestrator(
            main,
            [
                _selective_target(
                    a, filter_keys=["dns"], sync_groups=True, sync_lists=True
                )
            ],
            readiness_timeout=0,
        )

        report = await orchestrator.run_cycle()

        assert [(r.step, r.action) for r in _results(report, "pihole-2.lan")] == [
            (SyncStep.CONFIG, StepAction.FAIL)
        ]
        assert "get_groups" not in a.call_names()
        # Not recorded, so the next cycle patches again
        a.ready = True
        await orchestrator.run_cycle()
        assert len(a.patched) == 2

    async def test_failing_secondary_does_not_stop_others(
        self, main, fake_session_factory
    ):
        a = fake_session_factory("pihole-2.lan", fail_on={"patch_config"})
        b = fake_session_factory("pihole-3.lan")
        orchestrator = SyncOrchestrator(
            main,
            [
                _selective_target(a, filter_keys=["dns.upstreams"]),
                _selective_target(b, filter_keys=["dns.upstreams"]),
            ],
        )

        report = await orchestrator.run_cycle()

        assert [r.host for r in report.failures] == ["pihole-2.lan"]
        assert len(b.patched) == 1

    async def test_unexpected_error_is_isolated(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        b = fake_session_factory("pihole-3.lan")

        async def broken(config):
            raise RuntimeError("boom")

        a.patch_config = broken
        orchestrator = SyncOrchestrator(
            main,
            [
                _selective_target(a, filter_keys=["dns"]),
                _selective_target(b, filter_keys=["dns"]),
            ],
        )

        report = await orchestrator.run_cycle()

        assert report.failures[0].host == "pihole-2.lan"
        assert "boom" in report.failures[0].error
        assert len(b.patched) == 1


class TestSelectiveEntities:
    async def test_groups_then_lists_with_remapped_ids(
        self, main, fake_session_factory
    ):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_selective_target(a, sync_groups=True, sync_lists=True)]
        )

        report = await orchestrator.run_cycle()

        assert report.ok
        family = next(g for g in a.groups if g["name"] == "Family")
        assert family["comment"] == "kids"
        assert a.lists[0]["groups"] == [family["id"]]
        assert family["id"] != 7

    async def test_second_cycle_is_noop(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_selective_target(a, sync_groups=True, sync_lists=True)]
        )

        await orchestrator.run_cycle()
        a.reset_calls()
        report = await orchestrator.run_cycle()

        assert a.write_count == 0
        assert {r.action for r in _results(report, "pihole-2.lan")} == {
            StepAction.SKIP
        }

    async def test_only_needed_main_data_is_fetched(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(main, [_selective_target(a, sync_groups=True)])

        await orchestrator.run_cycle()

        assert "get_config" not in main.call_names()
        assert "get_lists" not in main.call_names()
        assert "get_groups" in main.call_names()

    async def test_lists_imply_main_groups(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(main, [_selective_target(a, sync_lists=True)])

        with pytest.warns(UserWarning):
            await orchestrator.run_cycle()

        assert "get_groups" in main.call_names()
        assert "get_lists" in main.call_names()
        # Groups are not synced, so membership falls back to the default group
        assert a.lists[0]["groups"] == [0]

    async def test_gravity_only_after_list_writes(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main,
            [
                _selective_target(
                    a, sync_groups=True, sync_lists=True, update_gravity=True
                )
            ],
        )

        await orchestrator.run_cycle()
        assert a.call_names().count("trigger_gravity") == 1

        main.groups[1]["comment"] = "changed"
        a.reset_calls()
        await orchestrator.run_cycle()
        assert "trigger_gravity" not in a.call_names()

    async def test_main_groups_unavailable(self, main, fake_session_factory):
        main.fail_on.add("get_groups")
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(
            main, [_selective_target(a, sync_groups=True, sync_lists=True)]
        )

        report = await orchestrator.run_cycle()

        assert _results(report, "pihole-main.lan")[0].step == SyncStep.GROUPS
        assert {r.action for r in _results(report, "pihole-2.lan")} == {
            StepAction.SKIP
        }
        assert a.write_count == 0

    async def test_lists_wait_for_successful_group_sync(
        self, main, fake_session_factory
    ):
        a = fake_session_factory("pihole-2.lan", fail_on={"add_group"})
        orchestrator = SyncOrchestrator(
            main, [_selective_target(a, sync_groups=True, sync_lists=True)]
        )

        report = await orchestrator.run_cycle()

        assert _results(report, "pihole-2.lan", SyncStep.GROUPS)[0].action == (
            StepAction.FAIL
        )
        lists_result = _results(report, "pihole-2.lan", SyncStep.LISTS)[0]
        assert lists_result.action == StepAction.SKIP
        assert lists_result.detail == "groups failed"
        assert a.lists == []

        a.fail_on.clear()
        report = await orchestrator.run_cycle()

        assert report.ok
        family = next(g for g in a.groups if g["name"] == "Family")
        assert a.lists[0]["groups"] == [family["id"]]

    async def test_empty_policy_does_nothing(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(main, [_selective_target(a)])

        report = await orchestrator.run_cycle()

        assert report.results == []
        assert a.calls == []


# ---------------------------------------------------------------------------
# Teardown and readiness
# ---------------------------------------------------------------------------


class TestTeardown:
    async def test_every_session_logged_out(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        b = fake_session_factory("pihole-3.lan", fail_on={"patch_config"})
        orchestrator = SyncOrchestrator(
            main,
            [_snapshot_target(a), _selective_target(b, filter_keys=["dns"])],
        )

        await orchestrator.run_cycle()

        assert (main.logouts, a.logouts, b.logouts) == (1, 1, 1)

    async def test_logout_failure_reported(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")

        async def failing_logout():
            raise TransportError("Logout failed with HTTP 500", status_code=500)

        a.logout = failing_logout
        orchestrator = SyncOrchestrator(main, [_snapshot_target(a)])

        report = await orchestrator.run_cycle()

        assert [(r.host, r.step) for r in report.failures] == [
            ("pihole-2.lan", SyncStep.LOGOUT)
        ]
        assert main.logouts == 1

    async def test_wait_until_ready(self, main, fake_session_factory):
        a = fake_session_factory("pihole-2.lan")
        orchestrator = SyncOrchestrator(main, [_snapshot_target(a)])

        assert await orchestrator.wait_until_ready() is True
        a.ready = False
        assert await orchestrator.wait_until_ready() is False
