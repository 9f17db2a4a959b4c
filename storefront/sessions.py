"""Session stores backing the login cookie.

The cookie only carries an opaque random id. A store maps that id to a user
id until it expires. Two backends exist: a process-local dictionary (single
worker deployments and tests) and the shared ``user_sessions`` table, which
every API worker can read.
"""
import hashlib
import secrets
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from . import config
from .database import utcnow
from .models import UserSession


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def hash_session_id(session_id: str) -> str:
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()


class SessionStore(ABC):
    def __init__(self, ttl: Optional[timedelta] = None):
        self.ttl = ttl or timedelta(hours=config.SESSION_TTL_HOURS)

    @abstractmethod
    def create(self, db: Session, user_id: int) -> str:
        """Open a session for ``user_id`` and return the cookie value."""

    @abstractmethod
    def get(self, db: Session, session_id: str) -> Optional[int]:
        """Return the user id behind ``session_id``, or None if unknown or expired."""

    @abstractmethod
    def delete(self, db: Session, session_id: str) -> None:
        ...


class InMemorySessionStore(SessionStore):
    def __init__(self, ttl: Optional[timedelta] = None):
        super().__init__(ttl)
        self._sessions: Dict[str, Tuple[int, object]] = {}
        self._lock = threading.Lock()

    def create(self, db, user_id):
        session_id = new_session_id()
        now = utcnow()
        with self._lock:
            self._prune(now)
            self._sessions[hash_session_id(session_id)] = (user_id, now + self.ttl)
        return session_id

    def _prune(self, now):
        # caller holds the lock
        expired = [key for key, (_, expires_at) in self._sessions.items() if expires_at <= now]
        for key in expired:
            del self._sessions[key]

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def get(self, db, session_id):
        key = hash_session_id(session_id)
        with self._lock:
            entry = self._sessions.get(key)
            if entry is None:
                return None
            user_id, expires_at = entry
            if expires_at <= utcnow():
                del self._sessions[key]
                return None
            return user_id

    def delete(self, db, session_id):
        with self._lock:
            self._sessions.pop(hash_session_id(session_id), None)


class DatabaseSessionStore(SessionStore):
    def create(self, db, user_id):
        session_id = new_session_id()
        db.add(UserSession(id=hash_session_id(session_id), user_id=user_id, expires_at=utcnow() + self.ttl))
        db.commit()
        return session_id

    def get(self, db, session_id):
        row = db.get(UserSession, hash_session_id(session_id))
        if row is None or row.expires_at <= utcnow():
            return None
        return row.user_id

    def delete(self, db, session_id):
        db.query(UserSession).filter(UserSession.id == hash_session_id(session_id)).delete()
        db.commit()


def build_session_store(backend: Optional[str] = None) -> SessionStore:
    backend = backend or config.SESSION_BACKEND
    if backend == "database":
        return DatabaseSessionStore()
    if backend == "memory":
        return InMemorySessionStore()
    raise ValueError(f"Unknown session backend: {backend}")


_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    global _store
    if _store is None:
        _store = build_session_store()
    return _store
