"""HTTP adapter for the Traccar user directory."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from ..errors import DirectoryError
from .models import DirectoryUser, NewDirectoryUser

logger = logging.getLogger(__name__)

SESSION_COOKIE = "JSESSIONID"
# Server-side sessions last 24 hours; refresh an hour early.
DEFAULT_SESSION_TTL_SECONDS = 23 * 60 * 60


class TraccarDirectoryClient:
    """Administrator session against the Traccar REST API.

    The session cookie is cached for ``session_ttl`` seconds. Concurrent
    callers share a single in-flight login, and a ``401`` from any call drops
    the cached session, logs in again and replays the request once. No other
    retries are attempted; non-2xx responses raise :class:`DirectoryError`.
    """

    def __init__(
        self,
        base_url: str,
        admin_email: str,
        admin_password: str,
        *,
        timeout: float = 10.0,
        session_ttl: float = DEFAULT_SESSION_TTL_SECONDS,
        session_factory: Callable[[], requests.Session] = requests.Session,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._admin_email = admin_email
        self._admin_password = admin_password
        self._timeout = timeout
        self._session_ttl = session_ttl
        self._session_factory = session_factory
        self._http = session_factory()
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._inflight: Optional[Future] = None

    # Session -----------------------------------------------------------------

    def authenticate(self) -> str:
        """Return a valid session token, logging in at most once concurrently."""

        with self._lock:
            if self._token is not None and self._clock() < self._expires_at:
                return self._token
            inflight = self._inflight
            owner = inflight is None
            if owner:
                inflight = Future()
                self._inflight = inflight

        if not owner:
            return inflight.result()

        try:
            token = self._login()
        except BaseException as exc:
            with self._lock:
                self._inflight = None
            inflight.set_exception(exc)
            raise

        with self._lock:
            self._token = token
            self._expires_at = self._clock() + self._session_ttl
            self._inflight = None
        inflight.set_result(token)
        return token

    def invalidate_session(self, token: Optional[str] = None) -> None:
        """Forget the cached session; with ``token``, only if it is still current."""

        with self._lock:
            if token is None or token == self._token:
                self._token = None
                self._expires_at = 0.0

    def _login(self) -> str:
        logger.info("Authenticating with directory at %s", self._base_url)
        try:
            response = self._http.post(
                f"{self._base_url}/api/session",
                data={"email": self._admin_email, "password": self._admin_password},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise DirectoryError(
                f"Directory authentication failed: {exc}", endpoint="/api/session"
            ) from exc

        if not response.ok:
            logger.error("Directory authentication failed with status %s", response.status_code)
            raise DirectoryError(
                f"Directory authentication failed: {response.text}",
                status_code=response.status_code,
                endpoint="/api/session",
            )
        token = response.cookies.get(SESSION_COOKIE)
        if not token:
            raise DirectoryError(
                "Directory authentication returned no session cookie",
                status_code=response.status_code,
                endpoint="/api/session",
            )
        return token

    # Transport ---------------------------------------------------------------

    def _send(self, method: str, endpoint: str, token: str, payload: Any) -> requests.Response:
        try:
            return self._http.request(
                method,
                f"{self._base_url}{endpoint}",
                json=payload,
                cookies={SESSION_COOKIE: token},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise DirectoryError(f"Directory request failed: {exc}", endpoint=endpoint) from exc

    def _request(self, method: str, endpoint: str, payload: Any = None) -> Any:
        token = self.authenticate()
        response = self._send(method, endpoint, token, payload)
        if response.status_code == 401:
            logger.info("Directory session rejected on %s %s; re-authenticating", method, endpoint)
            self.invalidate_session(token)
            token = self.authenticate()
            response = self._send(method, endpoint, token, payload)

        if not response.ok:
            logger.error(
                "Directory %s %s failed with status %s", method, endpoint, response.status_code
            )
            raise DirectoryError(
                f"Directory API error: {response.text}",
                status_code=response.status_code,
                endpoint=endpoint,
            )
        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return None

    # Users -------------------------------------------------------------------

    def list_users(self) -> List[DirectoryUser]:
        records = self._request("GET", "/api/users") or []
        return [DirectoryUser.model_validate(record) for record in records]

    def find_user_by_email(self, email: str) -> Optional[DirectoryUser]:
        # The directory has no server-side filter; scan the full listing.
        wanted = email.strip().lower()
        for user in self.list_users():
            if user.email.strip().lower() == wanted:
                return user
        return None

    def get_user(self, user_id: int) -> DirectoryUser:
        return DirectoryUser.model_validate(self._get_record(user_id))

    def create_user(self, profile: NewDirectoryUser) -> DirectoryUser:
        """Provision an account; callers must check for an existing one first."""

        logger.info("Creating directory user %s", profile.email)
        record = self._request("POST", "/api/users", profile.to_payload())
        user = DirectoryUser.model_validate(record)
        logger.info("Created directory user %s", user.id)
        return user

    def update_device_limit_and_attributes(
        self,
        user_id: int,
        device_limit: Optional[int],
        attribute_delta: Optional[Mapping[str, Any]] = None,
    ) -> DirectoryUser:
        """Read-modify-write of the full record; ``None`` keeps the current limit."""

        record = self._get_record(user_id)
        if device_limit is not None:
            record["deviceLimit"] = device_limit
        attributes = dict(record.get("attributes") or {})
        attributes.update(attribute_delta or {})
        record["attributes"] = attributes
        self._request("PUT", f"/api/users/{user_id}", record)
        logger.info("Updated directory user %s limit=%s", user_id, record.get("deviceLimit"))
        return DirectoryUser.model_validate(record)

    def set_disabled(self, user_id: int, disabled: bool) -> DirectoryUser:
        record = self._get_record(user_id)
        record["disabled"] = disabled
        self._request("PUT", f"/api/users/{user_id}", record)
        logger.info("%s directory user %s", "Disabled" if disabled else "Enabled", user_id)
        return DirectoryUser.model_validate(record)

    def verify_credentials(self, email: str, password: str) -> bool:
        """Throwaway login that never touches the cached administrator session."""

        probe = self._session_factory()
        try:
            response = probe.post(
                f"{self._base_url}/api/session",
                data={"email": email, "password": password},
                timeout=self._timeout,
            )
        except requests.RequestException:
            logger.warning("Credential check for %s could not reach the directory", email)
            return False
        finally:
            probe.close()
        logger.info("Credential check for %s returned %s", email, response.status_code)
        return bool(response.ok)

    def _get_record(self, user_id: int) -> Dict[str, Any]:
        record = self._request("GET", f"/api/users/{user_id}")
        if not isinstance(record, dict):
            raise DirectoryError(
                f"Directory returned no record for user {user_id}",
                endpoint=f"/api/users/{user_id}",
            )
        return dict(record)


__all__ = ["DEFAULT_SESSION_TTL_SECONDS", "SESSION_COOKIE", "TraccarDirectoryClient"]
