import json
import logging
import threading
from typing import Any
from urllib.parse import quote

import requests
import urllib3

from .. import __version__
from ..config_schema import InstanceConfig, TeleporterImportOptions
from ..errors import SerializationError, SessionExpiredError, TransportError

logger = logging.getLogger(__name__)

SID_HEADER = "sid"
USER_AGENT = f"pihole-sync/{__version__}"
BACKUP_RESOURCE_NAME = "pihole_backup.zip"
REQUEST_TIMEOUT = (10, 60)

# Pi-hole instances commonly serve self-signed certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def _as_object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


class PiHoleClient:
    """Thin synchronous wrapper around the Pi-hole v6 REST API.

    Holds no session state: every authenticated call takes the session id
    explicitly. Token caching and refresh live in ``SessionManager``.
    """

    def __init__(self, config: InstanceConfig):
        self.config = config
        self._thread_local = threading.local()
        self.base_url = config.base_url

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def session(self) -> requests.Session:
        """Accessor for the current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.verify = False
        session.headers["User-Agent"] = USER_AGENT
        return session

    def _request(
        self,
        method: str,
        endpoint: str,
        token: str | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """
        Send one request and return the raw response.

        Transport failures are wrapped in ``TransportError``; the status
        code is left for the caller to interpret.
        """
        url = f"{self.base_url}{endpoint}"
        headers = kwargs.pop("headers", {})
        if token is not None:
            headers[SID_HEADER] = token
        kwargs.setdefault("timeout", REQUEST_TIMEOUT)

        logger.debug("[%s] %s %s", self.host, method, endpoint)
        try:
            return self._get_session().request(
                method, url, headers=headers, **kwargs
            )
        except requests.RequestException as e:
            raise TransportError(
                f"{method} {endpoint} failed: {e}", host=self.host
            ) from e

    def _authed(
        self, method: str, endpoint: str, token: str, **kwargs: Any
    ) -> requests.Response:
        """Authenticated request that raises on any error status."""
        response = self._request(method, endpoint, token=token, **kwargs)
        if response.status_code == 401:
            raise SessionExpiredError(
                f"{method} {endpoint} rejected: session not valid",
                host=self.host,
                status_code=401,
            )
        if response.status_code >= 400:
            raise TransportError(
                f"{method} {endpoint} failed with HTTP "
                f"{response.status_code}: {response.text[:200]}",
                host=self.host,
                status_code=response.status_code,
            )
        return response

    def _json(self, response: requests.Response) -> dict[str, Any]:
        """Decode a response body that must be a JSON object."""
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                f"Invalid JSON from {response.request.method} "
                f"{response.url}: {e}",
                host=self.host,
                status_code=response.status_code,
            ) from e
        if not isinstance(body, dict):
            raise TransportError(
                f"Unexpected {type(body).__name__} body from "
                f"{response.request.method} {response.url}; expected an object",
                host=self.host,
                status_code=response.status_code,
            )
        return body

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self, password: str) -> str | None:
        """
        POST /auth with a password.

        Returns:
            The session id, or None when the server accepted the request
            but did not issue one (wrong password).

        Raises:
            TransportError: On network failure or a 5xx response.
        """
        response = self._request(
            "POST", "/auth", json={"password": password}
        )
        # 401 carries a session object without sid on a wrong password
        if response.status_code >= 400 and response.status_code != 401:
            raise TransportError(
                f"POST /auth failed with HTTP {response.status_code}",
                host=self.host,
                status_code=response.status_code,
            )
        return _as_object(self._json(response).get("session")).get("sid")

    def check_session(self, token: str) -> tuple[bool, str | None]:
        """
        GET /auth with the current session id.

        Returns:
            ``(valid, sid)``; ``sid`` may be a renewed session id. A 401
            yields ``(False, None)``.
        """
        response = self._request("GET", "/auth", token=token)
        if response.status_code == 401:
            return (False, None)
        if response.status_code >= 400:
            raise TransportError(
                f"GET /auth failed with HTTP {response.status_code}",
                host=self.host,
                status_code=response.status_code,
            )
        session = _as_object(self._json(response).get("session"))
        return (bool(session.get("valid")), session.get("sid"))

    def logout(self, token: str) -> int:
        """DELETE /auth. Returns the HTTP status code."""
        return self._request("DELETE", "/auth", token=token).status_code

    def get_app_password(self, token: str) -> dict[str, str]:
        """GET /auth/app. Returns ``{"password": ..., "hash": ...}``."""
        response = self._authed("GET", "/auth/app", token)
        return self._json(response)["app"]

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self, token: str) -> dict[str, Any]:
        response = self._authed("GET", "/config", token)
        body = self._json(response)
        if "config" not in body:
            raise TransportError(
                "GET /config response has no 'config' field",
                host=self.host,
            )
        return body["config"]

    def get_session_timeout(self, token: str) -> int:
        """Session timeout in seconds, or 0 when it cannot be read."""
        response = self._authed(
            "GET", "/config/webserver/session/timeout", token
        )
        node: Any = self._json(response)
        for key in ("config", "webserver", "session"):
            node = _as_object(node.get(key))
        timeout = node.get("timeout")
        return timeout if isinstance(timeout, int) else 0

    def patch_config(self, token: str, config: dict[str, Any]) -> None:
        self._authed("PATCH", "/config", token, json={"config": config})

    # ------------------------------------------------------------------
    # Teleporter
    # ------------------------------------------------------------------

    def download_teleporter(self, token: str) -> bytes:
        response = self._authed("GET", "/teleporter", token)
        return response.content

    def upload_teleporter(
        self,
        token: str,
        data: bytes,
        import_options: TeleporterImportOptions | None = None,
    ) -> list[str]:
        """
        POST /teleporter as multipart form.

        Args:
            token: Session id.
            data: Archive bytes as downloaded from main.
            import_options: Optional sub-part selection sent as the
                ``import`` JSON part.

        Returns:
            The list of files the instance reports as processed.
        """
        files: dict[str, Any] = {
            "file": (BACKUP_RESOURCE_NAME, data, "application/zip"),
        }
        if import_options is not None:
            try:
                payload = json.dumps(import_options.model_dump())
            except (TypeError, ValueError) as e:
                raise SerializationError(
                    f"Cannot encode import options: {e}", host=self.host
                ) from e
            files["import"] = (None, payload, "application/json")

        response = self._authed(
            "POST",
            "/teleporter",
            token,
            data={"resourceName": BACKUP_RESOURCE_NAME},
            files=files,
        )
        return self._json(response).get("files", [])

    def trigger_gravity(self, token: str) -> None:
        """POST /action/gravity.

        The endpoint streams gravity output until the rebuild finishes;
        only the status is checked and the stream is closed right away.
        """
        response = self._authed(
            "POST", "/action/gravity", token, stream=True
        )
        response.close()

    # ------------------------------------------------------------------
    # Groups and lists
    # ------------------------------------------------------------------

    def get_groups(self, token: str) -> list[dict[str, Any]]:
        response = self._authed("GET", "/groups", token)
        return self._json(response).get("groups", [])

    def add_group(self, token: str, payload: dict[str, Any]) -> None:
        self._authed("POST", "/groups", token, json=payload)

    def update_group(
        self, token: str, name: str, payload: dict[str, Any]
    ) -> None:
        self._authed(
            "PUT", f"/groups/{quote(name, safe='')}", token, json=payload
        )

    def get_lists(self, token: str) -> list[dict[str, Any]]:
        response = self._authed("GET", "/lists", token)
        return self._json(response).get("lists", [])

    def add_list(
        self, token: str, list_type: str, payload: dict[str, Any]
    ) -> None:
        self._authed(
            "POST",
            "/lists",
            token,
            params={"type": list_type},
            json=payload,
        )

    def update_list(
        self,
        token: str,
        address: str,
        list_type: str,
        payload: dict[str, Any],
    ) -> None:
        self._authed(
            "PUT",
            f"/lists/{quote(address, safe='')}",
            token,
            params={"type": list_type},
            json=payload,
        )
