"""
Control Plane API.

This module exposes:
- Read API: list sessions, session details, transcript with guardrail
  verdicts, structured events
- Report API: LiveKit workers push session snapshots and events
- Write API: disconnect a session

Every command emits auditable events: control.command_received and
control.command_applied.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from livekit import api

from logging_setup import Component, get_logger
from orchestrator.config import get_config
from orchestrator.session import SessionStatus
from orchestrator.transcript import ItemKind
from .session import ReportedSession, SessionHandle, session_manager, snapshot_of
from observability.events import Component as ObsComponent, EventEmitter, Severity
from observability.event_store import event_store


logger = get_logger(Component.CONTROL_PLANE)

router = APIRouter(prefix="/control", tags=["control"])
emitter = EventEmitter(ObsComponent.CONTROL_PLANE)


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"


def _parse_timestamp(value: Optional[str], name: str) -> Optional[datetime]:
    """
    Parse an ISO timestamp query parameter.

    A URL-decoded '+' may arrive as a space; values without an offset are
    taken as UTC.
    """
    if not value:
        return None
    try:
        cleaned = value.replace(" ", "+").replace("Z", "+00:00")
        if "+" not in cleaned and "-" not in cleaned[-6:]:
            cleaned += "+00:00"
        return datetime.fromisoformat(cleaned)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")


async def _delete_room(room_name: str) -> None:
    """
    End the call for all participants by deleting the LiveKit room.
    """
    config = get_config()
    if not (config.livekit_url and config.livekit_api_key and config.livekit_api_secret):
        raise RuntimeError("LiveKit credentials are not configured")
    lk = api.LiveKitAPI(
        url=config.livekit_url,
        api_key=config.livekit_api_key,
        api_secret=config.livekit_api_secret,
    )
    try:
        await lk.room.delete_room(api.DeleteRoomRequest(room=room_name))
    finally:
        await lk.aclose()


def _require_session(session_id: str) -> SessionHandle:
    session = session_manager.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# --- Models ---


class SessionSummary(BaseModel):
    """Session summary for list endpoint."""
    session_id: str
    status: str
    agent_set: str
    active_agent: Optional[str] = None
    created_at: str
    disconnected_at: Optional[str] = None
    disconnect_reason: Optional[str] = None
    reported: bool = False


class SessionDetail(SessionSummary):
    """Full session details."""
    livekit_room: Optional[str] = None
    connected_at: Optional[str] = None
    reported_at: Optional[str] = None
    sequence_counter: int = 0
    transcript_items: int = 0
    agents: List[str] = Field(default_factory=list)
    reachable_agents: List[str] = Field(default_factory=list)
    pending_background_tasks: int = 0
    unresolved_tool_calls: List[str] = Field(default_factory=list)


class TranscriptItemView(BaseModel):
    item_id: str
    kind: str
    status: str
    created_seq: int
    created_at: str
    agent_name: Optional[str] = None
    payload: Any = None
    tool_call: Optional[dict] = None
    guardrail: Optional[dict] = None
    safe_to_display: bool


class TranscriptResponse(BaseModel):
    session_id: str
    items: List[TranscriptItemView]
    count: int


class SessionReport(BaseModel):
    """Snapshot pushed by a LiveKit worker, plus the events emitted since its last report."""
    livekit_room: Optional[str] = None
    session: Dict[str, Any]
    events: List[Dict[str, Any]] = Field(default_factory=list)


class ReportResponse(BaseModel):
    status: str
    events_stored: int


class DisconnectResponse(BaseModel):
    status: str
    session_status: str


def _summary(session: SessionHandle) -> SessionSummary:
    return SessionSummary(**snapshot_of(session), reported=isinstance(session, ReportedSession))


# --- Read API ---


@router.get("/sessions", response_model=List[SessionSummary])
async def list_sessions(
    status: Optional[str] = Query(None, description="Filter by status (DISCONNECTED, CONNECTING, CONNECTED)"),
    agent_set: Optional[str] = Query(None, description="Filter by agent set name"),
) -> List[SessionSummary]:
    """List sessions with optional filters."""
    status_filter: Optional[SessionStatus] = None
    if status:
        try:
            status_filter = SessionStatus(status.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    sessions = session_manager.list_sessions(status=status_filter, agent_set=agent_set)
    return [_summary(s) for s in sessions]


@router.get("/sessions/{session_id}", response_model=SessionDetail)
async def get_session(session_id: str) -> SessionDetail:
    """Get session details by session_id."""
    session = _require_session(session_id)
    snapshot = snapshot_of(session)
    reported = isinstance(session, ReportedSession)
    return SessionDetail(
        **snapshot,
        reported=reported,
        reported_at=session.reported_at.isoformat() if reported else None,
        livekit_room=session_manager.livekit_room_for(session_id),
        transcript_items=len(snapshot["transcript"]),
    )


@router.get("/sessions/{session_id}/transcript", response_model=TranscriptResponse)
async def get_session_transcript(
    session_id: str,
    kind: Optional[str] = Query(None, description="Filter by kind (USER_MESSAGE, ASSISTANT_MESSAGE, BREADCRUMB)"),
    since_seq: Optional[int] = Query(None, ge=0, description="Only items created after this sequence number"),
) -> TranscriptResponse:
    """
    Transcript items in order, each with its guardrail verdict.

    `safe_to_display` is only true for assistant messages with a PASS verdict
    (and always for user messages and breadcrumbs).
    """
    session = _require_session(session_id)

    kind_filter: Optional[ItemKind] = None
    if kind:
        try:
            kind_filter = ItemKind(kind.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid kind: {kind}")

    items = []
    for item in snapshot_of(session)["transcript"]:
        if kind_filter and item["kind"] != kind_filter.value:
            continue
        if since_seq is not None and item["created_seq"] <= since_seq:
            continue
        items.append(TranscriptItemView(**item))

    return TranscriptResponse(session_id=session_id, items=items, count=len(items))


@router.get("/sessions/{session_id}/events")
async def get_session_events(
    session_id: str,
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    component: Optional[str] = Query(None, description="Filter by component"),
    correlation_id: Optional[str] = Query(None, description="Filter by correlation_id (tool call or item id)"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> dict:
    """Query structured events for a session."""
    _require_session(session_id)

    events = event_store.query(
        session_id=session_id,
        event_type=event_type,
        component=component,
        correlation_id=correlation_id,
        since=_parse_timestamp(since, "since"),
        until=_parse_timestamp(until, "until"),
        limit=limit,
    )

    return {
        "session_id": session_id,
        "events": events,
        "count": len(events),
    }


# --- Worker reports ---


@router.post("/sessions/{session_id}/report", response_model=ReportResponse)
async def report_session(session_id: str, report: SessionReport) -> ReportResponse:
    """
    Accept a session snapshot from a LiveKit worker.

    The snapshot replaces the previous one; events are appended to the event
    store so the events endpoint sees them.
    """
    if report.session.get("session_id") != session_id:
        raise HTTPException(status_code=400, detail="session_id mismatch")
    try:
        SessionStatus(report.session.get("status", ""))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status: {report.session.get('status')}")
    missing = [k for k in ("agent_set", "created_at", "transcript") if k not in report.session]
    if missing:
        raise HTTPException(status_code=400, detail=f"Snapshot is missing: {', '.join(missing)}")

    is_new = session_manager.get_session(session_id) is None
    try:
        session_manager.report(report.session, livekit_room=report.livekit_room)
    except ValueError:
        raise HTTPException(status_code=409, detail="Session is owned by this process")

    stored = 0
    for event in report.events:
        if event.get("session_id") != session_id:
            continue
        event_store.store(event)
        stored += 1

    if is_new:
        logger.info(
            "Worker session registered",
            session_id=session_id,
            livekit_room=report.livekit_room,
            agent_set=report.session.get("agent_set"),
        )

    return ReportResponse(status="ok", events_stored=stored)


# --- Write API ---


@router.post("/sessions/{session_id}/disconnect", response_model=DisconnectResponse)
async def disconnect_session(
    session_id: str,
    end_room: bool = Query(False, description="Also delete the LiveKit room, ending the call for the user"),
) -> DisconnectResponse:
    """
    Disconnect a session: background work is cancelled and late results are dropped.

    Sessions reported by a LiveKit worker are disconnected by deleting their
    room; the worker's session ends when the room closes. Disconnecting an
    already disconnected session is accepted and changes nothing.
    """
    session = _require_session(session_id)
    correlation_id = _new_correlation_id()
    room = session_manager.livekit_room_for(session_id)
    reported = isinstance(session, ReportedSession)

    if reported and not room and session.status != SessionStatus.DISCONNECTED:
        raise HTTPException(status_code=409, detail="Reported session has no LiveKit room")

    emitter.emit(
        "control.command_received",
        session_id=session_id,
        severity=Severity.INFO,
        correlation_id=correlation_id,
        command="session.disconnect",
        end_room=end_room,
    )

    try:
        if reported:
            if session.status != SessionStatus.DISCONNECTED:
                await _delete_room(room)
                session.mark_disconnected("control_api")
        else:
            await session.disconnect("control_api")
            if end_room and room:
                await _delete_room(room)
    except Exception as e:
        # Stable error surface: no internal traces
        logger.warning(
            "Disconnect failed",
            session_id=session_id,
            error_type=type(e).__name__,
        )
        emitter.emit(
            "control.command_applied",
            session_id=session_id,
            severity=Severity.ERROR,
            correlation_id=correlation_id,
            command="session.disconnect",
            result="error",
            error_class=type(e).__name__,
        )
        raise HTTPException(status_code=502, detail="disconnect_failed")

    emitter.emit(
        "control.command_applied",
        session_id=session_id,
        severity=Severity.INFO,
        correlation_id=correlation_id,
        command="session.disconnect",
        result="ok",
    )

    return DisconnectResponse(status="ok", session_status=session.status.value)
