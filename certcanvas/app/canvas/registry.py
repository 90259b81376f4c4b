"""
Registry of live editing sessions.

The registry only tracks in-memory sessions. Saved state lives with the
persistence collaborator; a session that is not live can be rebuilt from
its current save via the pipeline's reload operation.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional
from uuid import uuid4

from certcanvas.app.canvas.session import CanvasSession
from certcanvas.app.errors import NotFoundError
from certcanvas.app.schemas.canvas import CanvasDesign
from certcanvas.app.schemas.records import CallerIdentity


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, CanvasSession] = {}
        self._lock = threading.Lock()

    def create(
        self,
        owner: CallerIdentity,
        *,
        width: int = 800,
        height: int = 600,
        background: str = "#ffffff",
    ) -> CanvasSession:
        session = CanvasSession(
            session_id=uuid4().hex,
            owner_id=owner.user_id,
            design=CanvasDesign(
                width=width,
                height=height,
                background=background,
            ),
        )
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Optional[CanvasSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def require(
        self,
        session_id: str,
        caller: CallerIdentity,
    ) -> CanvasSession:
        """Return a live session owned by the caller."""
        session = self.get(session_id)
        if session is None:
            raise NotFoundError(f"Canvas '{session_id}' not found.")
        session.require_owner(caller)
        return session

    def replace(self, session: CanvasSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def list_for(self, owner: CallerIdentity) -> List[CanvasSession]:
        """Sessions owned by the caller, most recently changed first."""
        with self._lock:
            owned = [
                s for s in self._sessions.values()
                if s.owner_id == owner.user_id
            ]
        return sorted(owned, key=lambda s: s.updated_at, reverse=True)

    def remove(self, session_id: str) -> Optional[CanvasSession]:
        with self._lock:
            return self._sessions.pop(session_id, None)
