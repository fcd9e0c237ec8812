from __future__ import annotations

import secrets
import time
from dataclasses import dataclass

from .models import ParticipantKind, ProfileRef
from .sqlite_backend import SQLiteBackend

DEFAULT_TTL_MS = 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_token() -> str:
    return f"st_{secrets.token_urlsafe(16)}"


@dataclass
class Session:
    session_token: str
    profile: ProfileRef
    expires_at_ms: int

    @property
    def user_id(self) -> str:
        return self.profile.uid


class SessionStore:
    """Bearer sessions for the web gateway, held in memory."""

    def __init__(self, ttl_ms: int = DEFAULT_TTL_MS) -> None:
        self._ttl_ms = ttl_ms
        self._by_token: dict[str, Session] = {}

    def create(self, profile: ProfileRef) -> Session:
        session = Session(session_token=_new_token(), profile=profile, expires_at_ms=_now_ms() + self._ttl_ms)
        self._by_token[session.session_token] = session
        return session

    def get(self, session_token: str) -> Session | None:
        session = self._by_token.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= _now_ms():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._by_token.pop(session.session_token, None)


class SQLiteSessionStore(SessionStore):
    """Durable session store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, ttl_ms: int = DEFAULT_TTL_MS) -> None:
        super().__init__(ttl_ms)
        self._backend = backend

    def create(self, profile: ProfileRef) -> Session:
        session = Session(session_token=_new_token(), profile=profile, expires_at_ms=_now_ms() + self._ttl_ms)
        with self._backend.lock:
            self._backend.connection.execute(
                "INSERT INTO sessions (session_token, user_id, role, expires_at_ms) VALUES (?, ?, ?, ?)",
                (session.session_token, profile.uid, profile.kind.value, session.expires_at_ms),
            )
        return session

    def get(self, session_token: str) -> Session | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT session_token, user_id, role, expires_at_ms FROM sessions WHERE session_token=?",
                (session_token,),
            ).fetchone()
        if row is None:
            return None
        session = Session(
            session_token=row[0],
            profile=ProfileRef(row[1], ParticipantKind.parse(row[2])),
            expires_at_ms=row[3],
        )
        if session.expires_at_ms <= _now_ms():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                "DELETE FROM sessions WHERE session_token=?",
                (session.session_token,),
            )
