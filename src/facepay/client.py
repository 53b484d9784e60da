"""
FacePay client — authenticated request pipeline for the FacePay mobile API.

Every protected call goes through FacePayClient.call(), which attaches the
current access token and, when the backend answers 401, refreshes the token
exactly once no matter how many calls failed at the same time. Callers that
fail while a refresh is running wait for it and then replay their request.

Usage:
    import asyncio
    from facepay import FacePayClient

    async def main():
        client = FacePayClient(base_url="https://api.dev.facepe.ai")
        await client.login("+15555550100", "correct horse battery staple")

        requests = await client.call("GET", "/cb/users/me/payment-requests/")

        # If the refresh token is rejected too, every waiting call raises
        # RefreshError and the session is cleared (forced logout).
        client.add_logout_listener(lambda: print("signed out"))

    asyncio.run(main())
"""

import asyncio
import logging

import requests

from facepay.models import parse_timestamp
from facepay.session import Session, SessionRepository
from facepay.storage import FileStorage, MemoryStorage

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dev.facepe.ai"

LOGIN_PATH = "/cb/auth/login"
REGISTER_PATH = "/cb/auth/register-frontend"
REFRESH_PATH = "/cb/auth/refresh"
LOGOUT_PATH = "/cb/auth/logout"
VERIFY_PIN_PATH = "/cb/auth/verify-pin"

# Credential-issuing endpoints never trigger a refresh themselves
CREDENTIAL_PATHS = frozenset({LOGIN_PATH, REGISTER_PATH, REFRESH_PATH, LOGOUT_PATH})


# --- Error classes ---


class FacePayError(Exception):
    """Base exception for all FacePay SDK errors."""
    pass


class NetworkError(FacePayError):
    """No response from the backend (connection failure or timeout)."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Network error: {detail}")


class FacePayAPIError(FacePayError):
    """HTTP error from the FacePay backend."""

    def __init__(self, status_code: int, detail: str, payload=None):
        self.status_code = status_code
        self.detail = detail
        self.payload = payload
        super().__init__(f"FacePay API error {status_code}: {detail}")


class AuthError(FacePayAPIError):
    """Credentials rejected (HTTP 401)."""

    def __init__(self, detail: str = "Not authenticated", payload=None):
        super().__init__(401, detail, payload)


class LockoutError(FacePayAPIError):
    """PIN verification refused because of a server-side lock.

    Raised for HTTP 423, and for a 401 that carries a lock timestamp (the
    attempt that triggered the lock). `locked_until` is None when the server
    sent no timestamp or one that cannot be parsed.
    """

    def __init__(self, status_code: int, detail: str, locked_until_raw=None, payload=None):
        self.locked_until_raw = locked_until_raw
        self.locked_until = parse_timestamp(locked_until_raw)
        super().__init__(status_code, detail, payload)


class ValidationError(FacePayAPIError):
    """Request rejected as invalid (HTTP 400/422)."""
    pass


class RateLimitError(FacePayAPIError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(self, detail: str = "Rate limit exceeded", payload=None):
        super().__init__(429, detail, payload)


class ServerFault(FacePayAPIError):
    """Backend failure (HTTP 5xx)."""
    pass


class RefreshError(FacePayError):
    """The access token could not be refreshed; the session is over."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Session refresh failed: {detail}")


def _extract_detail(payload, text: str) -> str:
    if isinstance(payload, dict):
        for key in ("detail", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return text or ""


def _extract_lock_timestamp(payload):
    """Find `locked_until` at the top level or nested under message/detail."""
    if not isinstance(payload, dict):
        return None
    for container in (payload, payload.get("message"), payload.get("detail")):
        if isinstance(container, dict) and container.get("locked_until"):
            return container["locked_until"]
    return None


class FacePayClient:
    """Session manager and authenticated transport for the FacePay API."""

    LOGIN_ATTEMPTS = 3

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        sessions: SessionRepository = None,
        timeout: float = 30,
        login_backoff: float = 5.0,
        http=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.sessions = sessions or SessionRepository(MemoryStorage())
        self.timeout = timeout
        self.login_backoff = login_backoff
        if http is None:
            http = requests.Session()
            http.headers["Accept"] = "application/json"
        self.http = http
        self._session: Session = None
        self._logout_listeners = []

    @classmethod
    def from_settings(cls, settings) -> "FacePayClient":
        return cls(
            base_url=settings.base_url,
            sessions=SessionRepository(FileStorage(settings.data_dir)),
            timeout=settings.timeout,
        )

    @property
    def session(self) -> Session:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    def add_logout_listener(self, callback) -> None:
        """Run `callback()` whenever the session ends (logout or failed refresh)."""
        self._logout_listeners.append(callback)

    # --- Transport ---

    async def _send(self, method: str, path: str, token: str = None, **kwargs):
        """Perform one HTTP exchange and decode the outcome.

        The blocking requests call runs in a worker thread so the event loop
        keeps serving other tasks while it waits.
        """
        url = f"{self.base_url}{path}"
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            resp = await asyncio.to_thread(
                self.http.request, method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise NetworkError(str(e)) from e
        return self._decode(resp)

    def _decode(self, resp: requests.Response):
        """Convert a response into its JSON body or a typed exception."""
        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.ok:
            return payload

        status = resp.status_code
        detail = _extract_detail(payload, resp.text)

        if status == 429:
            raise RateLimitError(detail or "Rate limit exceeded", payload)

        locked_until = _extract_lock_timestamp(payload)
        if status == 423 or (status == 401 and locked_until):
            raise LockoutError(status, detail, locked_until, payload)
        if status == 401:
            raise AuthError(detail or "Not authenticated", payload)
        if status in (400, 422):
            raise ValidationError(status, detail, payload)
        if status >= 500:
            raise ServerFault(status, detail, payload)
        raise FacePayAPIError(status, detail, payload)

    # --- Authenticated calls ---

    async def call(self, method: str, path: str, refresh_on_auth: bool = True, **kwargs):
        """Make an authenticated request, refreshing the token once on 401.

        Pass refresh_on_auth=False for endpoints whose 401 does not mean an
        expired token (PIN verification). Credential endpoints are always
        exempt.
        """
        session = self._session
        token = session.access_token if session else None
        try:
            return await self._send(method, path, token, **kwargs)
        except AuthError:
            if not refresh_on_auth or path in CREDENTIAL_PATHS or session is None:
                raise

        await self._await_fresh_token(session, token)
        # Replayed exactly once; a second 401 propagates.
        return await self._send(method, path, session.access_token, **kwargs)

    async def _await_fresh_token(self, session: Session, stale_token: str) -> None:
        if self._session is not session:
            raise session.failure or RefreshError("Session has ended")

        if session.access_token != stale_token:
            # A refresh completed after this request was sent.
            return

        if session.refresh_task is None:
            session.refresh_task = asyncio.get_running_loop().create_task(self._run_refresh(session))
        # Shielded: cancelling this caller leaves the refresh running for the others.
        await asyncio.shield(session.refresh_task)

    async def _run_refresh(self, session: Session) -> None:
        try:
            await self._refresh(session)
        except RefreshError as e:
            logger.warning("Token refresh failed; ending session: %s", e.detail)
            session.failure = e
            if self._session is session:
                self._end_session()
            raise
        finally:
            session.refresh_task = None

    async def _refresh(self, session: Session) -> None:
        if not session.refresh_token:
            raise RefreshError("No refresh token available")

        logger.info("Access token rejected; refreshing")
        try:
            payload = await self._send(
                "POST", REFRESH_PATH, json={"refresh_token": session.refresh_token}
            )
        except FacePayError as e:
            raise RefreshError(str(e)) from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise RefreshError("No access token in refresh response")

        session.access_token = access_token
        if payload.get("refresh_token"):
            session.refresh_token = payload["refresh_token"]
        if self._session is session:
            self.sessions.save(session)
        logger.info("Access token refreshed")

    # --- Session lifecycle ---

    async def login(self, username: str, password: str) -> Session:
        """Sign in and persist the new session.

        Network failures are retried with a linear backoff (the backend may be
        cold-starting); credential errors are raised immediately.
        """
        last_error = None
        for attempt in range(1, self.LOGIN_ATTEMPTS + 1):
            try:
                payload = await self._send(
                    "POST", LOGIN_PATH, json={"username": username, "password": password}
                )
                break
            except NetworkError as e:
                last_error = e
                if attempt < self.LOGIN_ATTEMPTS:
                    delay = attempt * self.login_backoff
                    logger.warning(
                        "Login attempt %d failed (%s); retrying in %.0fs", attempt, e.detail, delay
                    )
                    await asyncio.sleep(delay)
        else:
            raise last_error

        payload = payload if isinstance(payload, dict) else {}
        if not payload.get("access_token") or not payload.get("refresh_token"):
            raise AuthError(
                "Invalid credentials. Please check your email/phone number and password.",
                payload,
            )

        session = Session(
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            user=payload.get("user"),
        )
        self._session = session
        self.sessions.save(session)
        logger.info("Signed in")
        return session

    def restore_session(self) -> bool:
        """Adopt a session persisted by an earlier run. Returns True if found."""
        session = self.sessions.load()
        if session is None:
            return False
        self._session = session
        return True

    async def logout(self) -> None:
        """Revoke the refresh token on the server (best effort) and sign out."""
        session = self._session
        try:
            if session is not None and session.refresh_token:
                try:
                    await self._send(
                        "POST",
                        LOGOUT_PATH,
                        session.access_token,
                        json={"refresh_token": session.refresh_token},
                    )
                except FacePayError as e:
                    logger.warning("Server logout failed, clearing local session anyway: %s", e)
        finally:
            self._end_session()

    def _end_session(self) -> None:
        self._session = None
        self.sessions.clear()
        logger.info("Session ended")
        for callback in list(self._logout_listeners):
            try:
                callback()
            except Exception:
                logger.exception("Logout listener failed")

    # --- Endpoints used by the core ---

    async def verify_pin(self, pin: str) -> dict:
        """Check the user's PIN. A 401 here means a wrong PIN, so no refresh."""
        return await self.call("POST", VERIFY_PIN_PATH, refresh_on_auth=False, json={"pin": pin})
