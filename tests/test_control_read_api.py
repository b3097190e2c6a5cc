"""
Tests for the Control Plane read API.

Verifies:
- GET /control/sessions (list with filters)
- GET /control/sessions/{session_id} (session details)
- GET /control/sessions/{session_id}/transcript (items with guardrail verdicts)
- GET /control/sessions/{session_id}/events (structured events)
"""
import asyncio

import pytest
from fastapi.testclient import TestClient

from control_plane.server import app
from control_plane.session import session_manager
from observability.events import Component, EventEmitter, Severity
from orchestrator.transcript import (
    GuardrailCategory,
    GuardrailResult,
    ItemKind,
    ItemStatus,
    TranscriptItem,
)


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(app)


@pytest.fixture
def sample_session(make_session):
    """A connected simple_handoff session with a short transcript."""
    session, _ = make_session("simple_handoff", session_id="sess_sample")
    asyncio.run(session.connect())

    transcript = session.transcript
    transcript.append(TranscriptItem("u1", ItemKind.USER_MESSAGE, 1, ItemStatus.DONE, "hi", "greeter"))
    passed = GuardrailResult()
    passed.settle(GuardrailCategory.NONE, "fine")
    transcript.append(TranscriptItem(
        "a1", ItemKind.ASSISTANT_MESSAGE, 2, ItemStatus.DONE, "Hello! Want a haiku?", "greeter", guardrail=passed,
    ))
    transcript.add_breadcrumb("Agent transfer: greeter -> haikuWriter", seq=3, agent_name="greeter")
    failed = GuardrailResult()
    failed.settle(GuardrailCategory.OFF_BRAND, "off topic")
    transcript.append(TranscriptItem(
        "a2", ItemKind.ASSISTANT_MESSAGE, 4, ItemStatus.DONE, "Try OtherTel.", "haikuWriter", guardrail=failed,
    ))

    session_manager.register(session, livekit_room="room-sample")
    return session


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_list_sessions_empty(client):
    response = client.get("/control/sessions")
    assert response.status_code == 200
    assert response.json() == []


def test_list_sessions_filters(client, sample_session, make_session):
    other, _ = make_session("chat_supervisor", session_id="sess_other")
    session_manager.register(other)

    response = client.get("/control/sessions")
    assert {s["session_id"] for s in response.json()} == {"sess_sample", "sess_other"}

    response = client.get("/control/sessions?status=connected")
    data = response.json()
    assert [s["session_id"] for s in data] == ["sess_sample"]
    assert data[0]["active_agent"] == "greeter"

    response = client.get("/control/sessions?agent_set=chat_supervisor")
    assert [s["session_id"] for s in response.json()] == ["sess_other"]


def test_list_sessions_invalid_status(client):
    response = client.get("/control/sessions?status=sleeping")
    assert response.status_code == 400
    assert "Invalid status" in response.json()["detail"]


def test_get_session_details(client, sample_session):
    response = client.get("/control/sessions/sess_sample")
    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "CONNECTED"
    assert data["agent_set"] == "simple_handoff"
    assert data["livekit_room"] == "room-sample"
    assert data["transcript_items"] == 4
    assert data["agents"] == ["greeter", "haikuWriter"]
    assert data["reachable_agents"] == ["greeter", "haikuWriter"]
    assert data["unresolved_tool_calls"] == []
    assert data["connected_at"] is not None


def test_get_session_not_found(client):
    response = client.get("/control/sessions/nonexistent")
    assert response.status_code == 404
    assert "not found" in response.json()["detail"].lower()


def test_transcript_with_guardrail_verdicts(client, sample_session):
    response = client.get("/control/sessions/sess_sample/transcript")
    assert response.status_code == 200
    data = response.json()

    assert data["count"] == 4
    items = {i["item_id"]: i for i in data["items"] if i["kind"] != "BREADCRUMB"}
    assert items["a1"]["guardrail"]["status"] == "PASS"
    assert items["a1"]["safe_to_display"] is True
    assert items["a2"]["guardrail"]["category"] == "OFF_BRAND"
    assert items["a2"]["safe_to_display"] is False
    assert [i["created_seq"] for i in data["items"]] == [1, 2, 3, 4]


def test_transcript_filters(client, sample_session):
    response = client.get("/control/sessions/sess_sample/transcript?kind=breadcrumb")
    data = response.json()
    assert data["count"] == 1
    assert data["items"][0]["payload"]["title"] == "Agent transfer: greeter -> haikuWriter"

    response = client.get("/control/sessions/sess_sample/transcript?since_seq=2")
    assert [i["created_seq"] for i in response.json()["items"]] == [3, 4]

    response = client.get("/control/sessions/sess_sample/transcript?kind=memo")
    assert response.status_code == 400


def test_get_session_events(client, sample_session):
    response = client.get("/control/sessions/sess_sample/events")
    assert response.status_code == 200
    data = response.json()

    event_types = [e["event_type"] for e in data["events"]]
    assert event_types == ["session.status_changed", "session.status_changed"]
    assert data["count"] == 2


def test_get_session_events_filters(client, sample_session):
    emitter = EventEmitter(Component.HANDOFF)
    for i in range(3):
        emitter.emit(
            "handoff.applied",
            session_id="sess_sample",
            severity=Severity.INFO,
            correlation_id=f"call_{i}",
        )

    response = client.get("/control/sessions/sess_sample/events?event_type=handoff.applied")
    assert response.json()["count"] == 3

    response = client.get("/control/sessions/sess_sample/events?component=orchestrator")
    assert response.json()["count"] == 2

    response = client.get("/control/sessions/sess_sample/events?correlation_id=call_1")
    assert [e["correlation_id"] for e in response.json()["events"]] == ["call_1"]

    response = client.get("/control/sessions/sess_sample/events?limit=1")
    assert response.json()["count"] == 1


def test_get_session_events_filter_by_time(client, sample_session):
    since = "2000-01-01T00:00:00+00:00"
    response = client.get(f"/control/sessions/sess_sample/events?since={since}")
    assert response.status_code == 200, f"Response: {response.text}"
    assert response.json()["count"] == 2

    future = "2099-01-01T00:00:00+00:00"
    response = client.get(f"/control/sessions/sess_sample/events?since={future}")
    assert response.json()["count"] == 0


def test_get_session_events_invalid_timestamp(client, sample_session):
    response = client.get("/control/sessions/sess_sample/events?since=invalid")
    assert response.status_code == 400
    assert "Invalid since timestamp" in response.json()["detail"]


def test_get_session_events_not_found(client):
    response = client.get("/control/sessions/nonexistent/events")
    assert response.status_code == 404
