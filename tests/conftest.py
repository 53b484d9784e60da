"""Shared fakes: an in-process stand-in for requests.Session and a settable clock."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from facepay.client import FacePayClient
from facepay.session import Session, SessionRepository
from facepay.storage import MemoryStorage


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeRequest:
    def __init__(self, method, path, headers, json):
        self.method = method
        self.path = path
        self.headers = headers
        self.json = json

    @property
    def token(self):
        auth = self.headers.get("Authorization", "")
        return auth[len("Bearer "):] if auth.startswith("Bearer ") else None


class FakeHTTP:
    """Routes (method, path) to handler(request) -> FakeResponse and records calls.

    Called from worker threads via asyncio.to_thread, hence the lock.
    """

    def __init__(self, base_url: str = "https://api.test"):
        self.base_url = base_url
        self.routes = {}
        self.requests = []
        self._lock = threading.Lock()

    def route(self, method: str, path: str, handler):
        self.routes[(method, path)] = handler

    def request(self, method, url, headers=None, timeout=None, json=None, **kwargs):
        path = url[len(self.base_url):]
        req = FakeRequest(method, path, dict(headers or {}), json)
        with self._lock:
            self.requests.append(req)
        handler = self.routes.get((method, path))
        if handler is None:
            return FakeResponse(404, {"detail": "Not Found"})
        result = handler(req)
        if isinstance(result, Exception):
            raise result
        return result

    def calls(self, method: str, path: str) -> list:
        with self._lock:
            return [r for r in self.requests if r.method == method and r.path == path]


class FakeClock:
    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def http():
    return FakeHTTP()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def client(http, storage):
    return FacePayClient(
        base_url=http.base_url,
        sessions=SessionRepository(storage),
        login_backoff=0,
        http=http,
    )


@pytest.fixture
def signed_in(client):
    """The client with an active session holding access token "old"."""
    client.sessions.save(Session(access_token="old", refresh_token="refresh-1"))
    assert client.restore_session()
    return client


@pytest.fixture
def clock():
    return FakeClock()
