"""Per-endpoint session lifecycle.

``SessionManager`` owns the one authenticated session an endpoint has for
the lifetime of the process. It caches the session id, re-validates it
before use, re-authenticates transparently when it expired, checks
readiness with jittered backoff after restarts, tears the session down at
the end of a cycle and can keep it alive in the background.

The raw session id never leaves this module: callers pass client methods
to ``SessionManager`` and receive their results.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from typing import Any, Callable, TypeVar

from ..config_schema import InstanceConfig, TeleporterImportOptions
from ..errors import (
    AuthenticationError,
    PiHoleSyncError,
    ReadinessTimeout,
    SessionExpiredError,
    TransportError,
)
from .async_utils import run_sync
from .client import PiHoleClient

T = TypeVar("T")
logger = logging.getLogger(__name__)

BACKOFF_BASE = 0.05
BACKOFF_CAP = 1.0
KEEPALIVE_MARGIN = 30


def backoff_delay(attempt: int) -> float:
    """Jittered exponential backoff: uniform in ``[d/2, d]`` with
    ``d = min(2**attempt * 50ms, 1s)``."""
    delay = min((2**attempt) * BACKOFF_BASE, BACKOFF_CAP)
    return random.uniform(delay / 2, delay)


class SessionManager:
    """Authenticated session for one Pi-hole endpoint.

    Args:
        client: HTTP client bound to the endpoint.
    """

    def __init__(self, client: PiHoleClient) -> None:
        self._client = client
        self._token: str | None = None
        self._lock = threading.Lock()
        self._keepalive_task: asyncio.Task | None = None

    @classmethod
    def for_instance(cls, instance: InstanceConfig) -> SessionManager:
        return cls(PiHoleClient(instance))

    @property
    def host(self) -> str:
        return self._client.host

    @property
    def config(self) -> InstanceConfig:
        return self._client.config

    @property
    def has_session(self) -> bool:
        with self._lock:
            return self._token is not None

    # ------------------------------------------------------------------
    # Token cache
    # ------------------------------------------------------------------

    def _get_token(self) -> str | None:
        with self._lock:
            return self._token

    def _set_token(self, token: str | None) -> None:
        with self._lock:
            self._token = token

    def _take_token(self) -> str | None:
        with self._lock:
            token, self._token = self._token, None
            return token

    def _renew_token(self, expected: str, renewed: str | None) -> None:
        """Replace the token only if nobody changed it meanwhile."""
        if not renewed or renewed == expected:
            return
        with self._lock:
            if self._token == expected:
                logger.debug("[%s] Session id renewed", self.host)
                self._token = renewed

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self, password: str | None = None) -> None:
        """Log in with *password* (default: the configured API key).

        Raises:
            AuthenticationError: If the response carries no session id.
            TransportError: If the request itself fails.
        """
        logger.debug("[%s] Authenticating", self.host)
        sid = await run_sync(
            self._client.login,
            password if password is not None else self.config.api_key,
        )
        if not sid:
            raise AuthenticationError("no session id", host=self.host)
        self._set_token(sid)

    async def ensure_authenticated(self) -> None:
        """Make sure a valid session exists, logging in if needed."""
        token = self._get_token()
        if token is None:
            await self.authenticate()
            return

        valid, sid = await run_sync(self._client.check_session, token)
        if valid:
            self._renew_token(token, sid)
            return

        logger.debug("[%s] Session no longer valid, re-authenticating", self.host)
        self._set_token(None)
        await self.authenticate()

    async def wait_for_ready(self, timeout: float) -> None:
        """Poll ``ensure_authenticated`` until it succeeds.

        Args:
            timeout: Total budget in seconds.

        Raises:
            ReadinessTimeout: If the endpoint is still failing once
                *timeout* seconds have elapsed.
        """
        start = time.monotonic()
        attempt = 0
        while True:
            try:
                await self.ensure_authenticated()
                if attempt:
                    logger.info(
                        "[%s] Ready after %d attempt(s)", self.host, attempt + 1
                    )
                return
            except (AuthenticationError, TransportError) as e:
                last_error = e

            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                raise ReadinessTimeout(
                    f"not ready after {elapsed:.1f}s: {last_error.message}",
                    host=self.host,
                    elapsed=elapsed,
                ) from last_error

            delay = backoff_delay(attempt)
            logger.debug(
                "[%s] Not ready (%s), retrying in %.2fs",
                self.host,
                last_error.message,
                delay,
            )
            await asyncio.sleep(delay)
            attempt += 1

    async def logout(self) -> None:
        """Invalidate the cached session, if any.

        No-op without a session. The local token is cleared whatever the
        server answers; 2xx, 401 and 410 count as logged out.

        Raises:
            TransportError: If the server answered with another status or
                could not be reached.
        """
        token = self._take_token()
        if token is None:
            return

        status = await run_sync(self._client.logout, token)
        if 200 <= status < 300 or status in (401, 410):
            logger.debug("[%s] Logged out", self.host)
            return
        raise TransportError(
            f"Logout failed with HTTP {status}",
            host=self.host,
            status_code=status,
        )

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run an authenticated client call, retrying once after a 401."""
        await self.ensure_authenticated()
        token = self._get_token()
        try:
            return await run_sync(func, token, *args)
        except SessionExpiredError:
            logger.info(
                "[%s] Session expired mid-call, re-authenticating", self.host
            )
            self._set_token(None)
            await self.authenticate()
            return await run_sync(func, self._get_token(), *args)

    # ------------------------------------------------------------------
    # Keepalive
    # ------------------------------------------------------------------

    async def start_keepalive(
        self, sync_interval: float
    ) -> asyncio.Task | None:
        """Start a background keepalive when sessions would otherwise expire
        between cycles.

        Args:
            sync_interval: Seconds between sync cycles.

        Returns:
            The keepalive task, or None when none was needed.
        """
        timeout = await self._call(self._client.get_session_timeout)
        if timeout == 0:
            logger.warning(
                "[%s] Could not read session timeout, not starting keepalive",
                self.host,
            )
            return None

        if sync_interval <= timeout - KEEPALIVE_MARGIN:
            logger.debug(
                "[%s] Session timeout %ds covers sync interval %ds",
                self.host,
                timeout,
                sync_interval,
            )
            return None

        period = max(timeout - KEEPALIVE_MARGIN, 1)
        logger.info(
            "[%s] Sync interval exceeds session timeout (%ds), "
            "keeping session alive every %ds",
            self.host,
            timeout,
            period,
        )
        self.stop_keepalive()
        self._keepalive_task = asyncio.create_task(
            self._keepalive_loop(period),
            name=f"keepalive-{self.host}",
        )
        return self._keepalive_task

    async def _keepalive_loop(
        self, period: float, max_iterations: int | None = None
    ) -> None:
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            await asyncio.sleep(period)
            iterations += 1

            token = self._get_token()
            if token is None:
                # Nothing to keep alive between cycles; the next
                # foreground call logs in again.
                continue

            try:
                valid, sid = await run_sync(self._client.check_session, token)
            except PiHoleSyncError as e:
                logger.error("[%s] Session keepalive failed: %s", self.host, e)
                continue

            if not valid:
                logger.warning(
                    "[%s] Session became invalid, stopping keepalive",
                    self.host,
                )
                return
            self._renew_token(token, sid)
            logger.debug("[%s] Session keepalive ok", self.host)

    def stop_keepalive(self) -> None:
        if self._keepalive_task is not None and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        self._keepalive_task = None

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    async def fetch_app_password(self, password: str) -> dict[str, str]:
        """Log in with the web password and request an app password.

        The API key cannot be used for this, so no re-authentication is
        attempted on failure.
        """
        await self.authenticate(password)
        return await run_sync(self._client.get_app_password, self._get_token())

    async def get_config(self) -> dict[str, Any]:
        return await self._call(self._client.get_config)

    async def patch_config(self, config: dict[str, Any]) -> None:
        await self._call(self._client.patch_config, config)

    async def download_teleporter(self) -> bytes:
        return await self._call(self._client.download_teleporter)

    async def upload_teleporter(
        self,
        data: bytes,
        import_options: TeleporterImportOptions | None = None,
    ) -> list[str]:
        return await self._call(
            self._client.upload_teleporter, data, import_options
        )

    async def trigger_gravity(self) -> None:
        await self._call(self._client.trigger_gravity)

    async def get_groups(self) -> list[dict[str, Any]]:
        return await self._call(self._client.get_groups)

    async def add_group(self, payload: dict[str, Any]) -> None:
        await self._call(self._client.add_group, payload)

    async def update_group(self, name: str, payload: dict[str, Any]) -> None:
        await self._call(self._client.update_group, name, payload)

    async def get_lists(self) -> list[dict[str, Any]]:
        return await self._call(self._client.get_lists)

    async def add_list(self, list_type: str, payload: dict[str, Any]) -> None:
        await self._call(self._client.add_list, list_type, payload)

    async def update_list(
        self, address: str, list_type: str, payload: dict[str, Any]
    ) -> None:
        await self._call(
            self._client.update_list, address, list_type, payload
        )
