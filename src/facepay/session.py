"""
Session - the signed-in user's credentials and refresh coordination state.

A Session is owned by exactly one FacePayClient. While a credential refresh
is running it is held in `refresh_task`; every caller that hit a 401 awaits
that one task (shielded, so a caller being cancelled never cancels the
refresh the others are waiting on).
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

SESSION_KEY = "session"


@dataclass
class Session:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    user: Optional[dict] = None
    refresh_task: Optional[asyncio.Task] = field(default=None, repr=False)
    failure: Optional[Exception] = field(default=None, repr=False)

    @property
    def refresh_in_flight(self) -> bool:
        return self.refresh_task is not None and not self.refresh_task.done()

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "user": self.user,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            user=data.get("user"),
        )


class SessionRepository:
    """Typed access to the persisted session record."""

    def __init__(self, storage):
        self.storage = storage

    def load(self) -> Optional[Session]:
        data = self.storage.get(SESSION_KEY)
        if not data:
            return None
        try:
            return Session.from_dict(data)
        except (KeyError, TypeError):
            return None

    def save(self, session: Session) -> None:
        self.storage.set(SESSION_KEY, session.to_dict())

    def clear(self) -> None:
        self.storage.delete(SESSION_KEY)
