"""Trigger strategies that decide *when* a sync cycle runs.

All three strategies wrap an injected async cycle callback and loop
forever (``max_iterations`` bounds them in tests):

- ``IntervalTrigger`` -- sleep, run a cycle, repeat.
- ``FileWatchTrigger`` -- watch a file (via its parent directory, so
  replace-on-write edits are seen), debounce bursts of events into one
  cycle, skip while a Pi-hole update is running.
- ``ApiPollTrigger`` -- poll main's config, hash it, run a cycle with the
  fetched config when the hash differs from the baseline.

A cycle that raises is logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import PiHoleSyncError
from .state import hash_value

logger = logging.getLogger(__name__)

FILE_WATCH_DEBOUNCE = 0.75

_WATCHED_EVENT_TYPES = frozenset({"created", "modified", "moved"})


async def _run_guarded(
    callback: Callable[..., Awaitable[Any]], *args: Any
) -> bool:
    """Run one cycle; returns False if it raised."""
    try:
        await callback(*args)
    except Exception as exc:
        logger.exception("Sync cycle failed: %s", exc)
        return False
    return True


async def is_update_running() -> bool:
    """True while ``pihole -up`` is running on this host.

    A missing or failing ``pgrep`` counts as "not running".
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "pgrep",
            "-af",
            "pihole.*-up",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except OSError as e:
        logger.warning('Failed to run pgrep to detect "pihole -up": %s', e)
        return False

    if proc.returncode == 0:
        return bool(stdout.strip())
    # pgrep exits with 1 when nothing matched
    if proc.returncode == 1:
        return False
    logger.warning(
        "pgrep returned status %s: %s",
        proc.returncode,
        stderr.decode(errors="replace").strip(),
    )
    return False


# ---------------------------------------------------------------------------
# Interval
# ---------------------------------------------------------------------------


class IntervalTrigger:
    """Run the cycle every *interval* seconds."""

    def __init__(
        self,
        interval: float,
        on_cycle: Callable[[], Awaitable[Any]],
    ) -> None:
        self.interval = interval
        self.on_cycle = on_cycle

    async def run(self, max_iterations: int | None = None) -> None:
        logger.info(
            "Sync trigger mode: interval. Running every %s second(s).",
            self.interval,
        )
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            await asyncio.sleep(self.interval)
            iterations += 1
            await _run_guarded(self.on_cycle)


# ---------------------------------------------------------------------------
# File watch
# ---------------------------------------------------------------------------


class ConfigFileEventHandler(FileSystemEventHandler):
    """Forward events for one file from the observer thread to the loop.

    Args:
        targets: Literal and resolved paths of the watched file.
        loop: Event loop that owns *queue*.
        queue: Receives the matching event path.
    """

    def __init__(
        self,
        targets: set[str],
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
    ) -> None:
        super().__init__()
        self.targets = targets
        self.loop = loop
        self.queue = queue

    def _matches(self, path: str) -> bool:
        if not path:
            return False
        return path in self.targets or os.path.realpath(path) in self.targets

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _WATCHED_EVENT_TYPES:
            return
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            path = os.fsdecode(raw) if raw else ""
            if self._matches(path):
                self.loop.call_soon_threadsafe(self.queue.put_nowait, path)
                return


class FileWatchTrigger:
    """Run the cycle when *path* changes.

    Args:
        path: File to watch; its parent directory is observed.
        on_cycle: Cycle callback.
        debounce: Seconds to wait after the first event; further events
            for the file arriving meanwhile are coalesced.
        precondition: Async check that, when True, skips the triggered
            cycle (default: ``is_update_running``).
        observer_factory: Builds the watchdog observer.
    """

    def __init__(
        self,
        path: str | Path,
        on_cycle: Callable[[], Awaitable[Any]],
        debounce: float = FILE_WATCH_DEBOUNCE,
        precondition: Callable[[], Awaitable[bool]] = is_update_running,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.path = Path(path)
        self.on_cycle = on_cycle
        self.debounce = debounce
        self.precondition = precondition
        self.observer_factory = observer_factory

    def watch_targets(self) -> set[str]:
        literal = os.path.abspath(self.path)
        return {str(self.path), literal, os.path.realpath(literal)}

    @staticmethod
    def _drain(queue: asyncio.Queue) -> int:
        drained = 0
        while True:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            drained += 1

    async def run(self, max_iterations: int | None = None) -> None:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[str] = asyncio.Queue()
        handler = ConfigFileEventHandler(self.watch_targets(), loop, queue)

        watch_dir = os.path.dirname(os.path.abspath(self.path))
        observer = self.observer_factory()
        observer.schedule(handler, watch_dir, recursive=False)
        observer.start()
        logger.info(
            "Sync trigger mode: watch_config_file. Watching %s.", self.path
        )

        try:
            triggers = 0
            while max_iterations is None or triggers < max_iterations:
                await queue.get()
                await asyncio.sleep(self.debounce)
                coalesced = self._drain(queue)
                triggers += 1
                logger.info(
                    "Detected change in %s (%d event(s) coalesced)",
                    self.path,
                    coalesced + 1,
                )

                if await self.precondition():
                    logger.warning(
                        'Detected running "pihole -up"; skipping sync until '
                        "update completes."
                    )
                    continue
                await _run_guarded(self.on_cycle)
        finally:
            observer.stop()
            await asyncio.to_thread(observer.join)


# ---------------------------------------------------------------------------
# API poll
# ---------------------------------------------------------------------------


class ApiPollTrigger:
    """Run the cycle when main's config hash changes.

    Args:
        poll_interval: Seconds between polls.
        fetch_config: Fetches main's config.
        on_cycle: Cycle callback; receives the fetched config.
        baseline_hash: Hash of the last config synced, or None to sync on
            the first poll.
    """

    def __init__(
        self,
        poll_interval: float,
        fetch_config: Callable[[], Awaitable[dict[str, Any]]],
        on_cycle: Callable[[dict[str, Any]], Awaitable[Any]],
        baseline_hash: int | None = None,
    ) -> None:
        self.poll_interval = poll_interval
        self.fetch_config = fetch_config
        self.on_cycle = on_cycle
        self.baseline_hash = baseline_hash

    async def run(self, max_iterations: int | None = None) -> None:
        logger.info(
            "Sync trigger mode: watch_config_api. Polling every %s second(s).",
            self.poll_interval,
        )
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            await asyncio.sleep(self.poll_interval)
            iterations += 1

            try:
                config = await self.fetch_config()
                current = hash_value(config)
            except PiHoleSyncError as e:
                logger.error("Failed to poll main config: %s", e)
                continue
            except Exception as e:
                logger.exception("Unexpected error polling main config: %s", e)
                continue

            if current == self.baseline_hash:
                logger.debug("Main config unchanged (hash %d)", current)
                continue

            logger.info("Main config changed; triggering sync")
            if await _run_guarded(self.on_cycle, config):
                self.baseline_hash = current
