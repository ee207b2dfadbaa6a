"""Shared pytest fixtures for pihole-sync tests."""

from __future__ import annotations

import copy
import logging
from typing import Any

import pytest

from pihole_sync.config_schema import AppConfig, InstanceConfig
from pihole_sync.errors import ReadinessTimeout, TransportError

WRITE_CALLS = frozenset(
    {
        "add_group",
        "update_group",
        "add_list",
        "update_list",
        "patch_config",
        "upload_teleporter",
        "trigger_gravity",
    }
)


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require live Pi-hole instances",
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


class FakeSession:
    """In-memory stand-in for ``SessionManager``.

    Stores groups, lists and config like a Pi-hole would and records
    every call. Names listed in ``fail_on`` raise ``TransportError``.
    """

    def __init__(
        self,
        host: str,
        config: dict[str, Any] | None = None,
        groups: list[dict[str, Any]] | None = None,
        lists: list[dict[str, Any]] | None = None,
        archive: bytes = b"PK\x03\x04archive-v1",
        fail_on: set[str] | None = None,
    ) -> None:
        self.host = host
        self.config_tree = config or {}
        self.groups = groups if groups is not None else [
            {"name": "Default", "comment": None, "enabled": True, "id": 0}
        ]
        self.lists = lists or []
        self.archive = archive
        self.fail_on = set(fail_on or ())
        self.ready = True
        self.calls: list[tuple] = []
        self.patched: list[dict[str, Any]] = []
        self.uploads: list[tuple[bytes, Any]] = []
        self.logouts = 0

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise TransportError(f"{name} failed", host=self.host, status_code=500)

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    @property
    def write_count(self) -> int:
        return sum(1 for c in self.calls if c[0] in WRITE_CALLS)

    def reset_calls(self) -> None:
        self.calls.clear()

    # SessionManager surface -------------------------------------------

    async def get_config(self) -> dict[str, Any]:
        self._record("get_config")
        return copy.deepcopy(self.config_tree)

    async def patch_config(self, config: dict[str, Any]) -> None:
        self._record("patch_config", config)
        self.patched.append(config)

    async def download_teleporter(self) -> bytes:
        self._record("download_teleporter")
        return self.archive

    async def upload_teleporter(self, data: bytes, import_options=None) -> list[str]:
        self._record("upload_teleporter")
        self.uploads.append((data, import_options))
        return ["etc/pihole/pihole.toml", "etc/pihole/gravity.db"]

    async def trigger_gravity(self) -> None:
        self._record("trigger_gravity")

    async def get_groups(self) -> list[dict[str, Any]]:
        self._record("get_groups")
        return copy.deepcopy(self.groups)

    async def add_group(self, payload: dict[str, Any]) -> None:
        self._record("add_group", payload)
        next_id = max((g["id"] for g in self.groups), default=0) + 1
        self.groups.append({**payload, "id": next_id})

    async def update_group(self, name: str, payload: dict[str, Any]) -> None:
        self._record("update_group", name, payload)
        for group in self.groups:
            if group["name"] == name:
                group.update(payload)

    async def get_lists(self) -> list[dict[str, Any]]:
        self._record("get_lists")
        return copy.deepcopy(self.lists)

    async def add_list(self, list_type: str, payload: dict[str, Any]) -> None:
        self._record("add_list", list_type, payload)
        next_id = max((item["id"] for item in self.lists), default=0) + 1
        self.lists.append({**payload, "type": list_type, "id": next_id})

    async def update_list(
        self, address: str, list_type: str, payload: dict[str, Any]
    ) -> None:
        self._record("update_list", address, list_type, payload)
        for item in self.lists:
            if item["address"] == address and item["type"] == list_type:
                item.update(payload)

    async def wait_for_ready(self, timeout: float) -> None:
        self._record("wait_for_ready", timeout)
        if not self.ready:
            raise ReadinessTimeout("not ready", host=self.host, elapsed=timeout)

    async def logout(self) -> None:
        self.logouts += 1

    async def start_keepalive(self, sync_interval: float) -> None:
        self._record("start_keepalive", sync_interval)

    def stop_keepalive(self) -> None:
        self.calls.append(("stop_keepalive",))


@pytest.fixture(autouse=True)
def _reset_warning_capture():
    """Undo ``logging.captureWarnings(True)`` left behind by ``setup_logging``."""
    yield
    logging.captureWarnings(False)


@pytest.fixture
def fake_session_factory():
    """Factory fixture for ``FakeSession`` instances."""
    return FakeSession


@pytest.fixture
def main_instance():
    return InstanceConfig(host="pihole-main.lan", api_key="main-key")


@pytest.fixture
def secondary_instance():
    return InstanceConfig(
        host="pihole-2.lan", schema="http", port=8080, api_key="secret-key"
    )


@pytest.fixture
def app_config(main_instance, secondary_instance):
    """Minimal valid configuration: one main, one teleporter secondary."""
    return AppConfig(main=main_instance, secondary=[secondary_instance])


@pytest.fixture
def write_config(tmp_path):
    """Factory fixture that writes YAML text to a config file."""

    def _write(text: str, name: str = "config.yaml"):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write
