import secrets
import threading
from dataclasses import dataclass, field
from time import time
from typing import Dict, Iterator, Optional

from perfstat.engine.session import FormSession


@dataclass
class StoredSession:
    form: FormSession
    expires_at: Optional[float] = None
    touched_at: float = field(default_factory=time)

    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at < time()


class FormSessionStore:
    """
    Lightweight in-memory store for open form sessions with a sliding TTL.
    Intended for single-process deployments.
    """

    def __init__(self, ttl_seconds: int = 3600):
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, StoredSession] = {}
        self._lock = threading.Lock()

    def add(self, form: FormSession) -> str:
        session_id = secrets.token_urlsafe(16)
        with self._lock:
            self._sessions[session_id] = StoredSession(form=form, expires_at=self._expiry())
            self._purge()
        return session_id

    def get(self, session_id: Optional[str]) -> Optional[FormSession]:
        if not session_id:
            return None
        with self._lock:
            self._purge()
            stored = self._sessions.get(session_id)
            if not stored:
                return None
            # Sliding expiry: every access extends the session.
            stored.expires_at = self._expiry()
            stored.touched_at = time()
            return stored.form

    def pop(self, session_id: str) -> Optional[FormSession]:
        with self._lock:
            stored = self._sessions.pop(session_id, None)
        return stored.form if stored else None

    def items(self) -> Iterator[tuple[str, FormSession]]:
        with self._lock:
            self._purge()
            snapshot = [(sid, s.form) for sid, s in self._sessions.items()]
        return iter(snapshot)

    def for_user(self, user_id: int) -> list[FormSession]:
        return [form for _, form in self.items() if form.user.id == user_id]

    def __len__(self) -> int:
        with self._lock:
            self._purge()
            return len(self._sessions)

    def _expiry(self) -> Optional[float]:
        return time() + self.ttl_seconds if self.ttl_seconds else None

    def _purge(self) -> None:
        expired = [sid for sid, s in self._sessions.items() if s.is_expired()]
        for sid in expired:
            self._sessions.pop(sid, None)
