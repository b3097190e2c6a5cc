"""
Registry of orchestrated sessions.

The orchestrator owns session state; the Control Plane only keeps handles so
the read API can find sessions by id or LiveKit room. Sessions come in two
flavours:
- in-process sessions (registered directly, e.g. by tests or an embedded
  orchestrator), read live
- reported sessions, pushed by LiveKit workers over HTTP
  (POST /control/sessions/{session_id}/report), read from the last snapshot
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from orchestrator.session import RealtimeSession, SessionStatus


@dataclass
class ReportedSession:
    """Last known state of a session running in a LiveKit worker."""

    session_id: str
    snapshot: Dict[str, Any]
    livekit_room: Optional[str] = None
    reported_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> SessionStatus:
        return SessionStatus(self.snapshot.get("status", SessionStatus.DISCONNECTED.value))

    def mark_disconnected(self, reason: str) -> None:
        """Record a disconnect the Control Plane applied (the worker reports its own state later)."""
        if self.status == SessionStatus.DISCONNECTED:
            return
        self.snapshot = {
            **self.snapshot,
            "status": SessionStatus.DISCONNECTED.value,
            "disconnected_at": datetime.now(timezone.utc).isoformat(),
            "disconnect_reason": reason,
        }


SessionHandle = Union[RealtimeSession, ReportedSession]


class SessionManager:
    """Tracks orchestrated sessions for the Control Plane."""

    def __init__(self):
        self._sessions: Dict[str, SessionHandle] = {}
        self._rooms: Dict[str, str] = {}

    def register(self, session: RealtimeSession, livekit_room: Optional[str] = None) -> RealtimeSession:
        """Track an in-process session. Registering the same session_id twice is an error."""
        if session.session_id in self._sessions:
            raise ValueError(f"Session {session.session_id} is already registered")
        self._sessions[session.session_id] = session
        if livekit_room:
            self._rooms[livekit_room] = session.session_id
        return session

    def report(self, snapshot: Dict[str, Any], livekit_room: Optional[str] = None) -> ReportedSession:
        """
        Create or refresh a reported session from a worker snapshot.

        Raises ValueError when the id belongs to an in-process session.
        """
        session_id = snapshot["session_id"]
        existing = self._sessions.get(session_id)
        if isinstance(existing, RealtimeSession):
            raise ValueError(f"Session {session_id} is an in-process session")

        if existing is None:
            existing = ReportedSession(session_id=session_id, snapshot=snapshot, livekit_room=livekit_room)
            self._sessions[session_id] = existing
        else:
            if existing.status == SessionStatus.DISCONNECTED and snapshot.get("status") != SessionStatus.DISCONNECTED.value:
                # A disconnect applied here stands until the worker confirms it
                kept = ("status", "disconnected_at", "disconnect_reason")
                snapshot = {**snapshot, **{k: existing.snapshot.get(k) for k in kept}}
            existing.snapshot = snapshot
            existing.livekit_room = livekit_room or existing.livekit_room
            existing.reported_at = datetime.now(timezone.utc)

        if existing.livekit_room:
            self._rooms[existing.livekit_room] = session_id
        return existing

    def unregister(self, session_id: str) -> Optional[SessionHandle]:
        session = self._sessions.pop(session_id, None)
        for room, sid in list(self._rooms.items()):
            if sid == session_id:
                del self._rooms[room]
        return session

    def get_session(self, session_id: str) -> Optional[SessionHandle]:
        """Get session by ID."""
        return self._sessions.get(session_id)

    def get_session_by_room(self, room_name: str) -> Optional[SessionHandle]:
        """Get session by LiveKit room name."""
        session_id = self._rooms.get(room_name)
        return self._sessions.get(session_id) if session_id else None

    def livekit_room_for(self, session_id: str) -> Optional[str]:
        for room, sid in self._rooms.items():
            if sid == session_id:
                return room
        return None

    def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        agent_set: Optional[str] = None,
    ) -> list[SessionHandle]:
        """List sessions with optional filters."""
        sessions = list(self._sessions.values())

        if status:
            sessions = [s for s in sessions if s.status == status]
        if agent_set:
            sessions = [s for s in sessions if snapshot_of(s)["agent_set"] == agent_set]

        return sessions

    def clear(self) -> None:
        self._sessions.clear()
        self._rooms.clear()


def snapshot_of(session: SessionHandle) -> Dict[str, Any]:
    """Current view of a session, live for in-process sessions."""
    if isinstance(session, RealtimeSession):
        return session.snapshot()
    return session.snapshot


# Global session manager
session_manager = SessionManager()
