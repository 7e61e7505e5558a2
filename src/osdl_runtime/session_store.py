from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict

from .page_runtime import PageRuntime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PreviewSession:
    id: str
    page_id: str
    runtime: PageRuntime
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


class PreviewSessionStore:
    def __init__(self) -> None:
        self._sessions: Dict[str, PreviewSession] = {}
        self._lock = threading.Lock()

    def create_session(self, runtime: PageRuntime) -> PreviewSession:
        with self._lock:
            session_id = self._generate_id(runtime.page.id)
            session = PreviewSession(id=session_id, page_id=runtime.page.id, runtime=runtime)
            self._sessions[session_id] = session
            return session

    def get_session(self, session_id: str) -> PreviewSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def touch(self, session_id: str) -> PreviewSession:
        with self._lock:
            session = self._sessions[session_id]
            session.updated_at = _utcnow()
            return session

    def delete_session(self, session_id: str) -> PreviewSession | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def _generate_id(self, page_id: str) -> str:
        suffix = uuid.uuid4().hex[:6]
        safe = page_id.replace("/", "-")
        return f"preview_{safe}_{suffix}"


__all__ = ["PreviewSession", "PreviewSessionStore"]
