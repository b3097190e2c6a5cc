"""
Tests for sessions reported by LiveKit workers.

Verifies:
- SessionReporter pushes snapshots and new events over HTTP
- POST /control/sessions/{session_id}/report makes the session readable
- disconnecting a reported session deletes its LiveKit room
"""
import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from fastapi.testclient import TestClient

from control_plane import control_api
from control_plane.server import app
from control_plane.session import session_manager
from observability.event_store import event_store
from orchestrator.transcript import ItemKind, ItemStatus, TranscriptItem
from voice_pipeline.control_plane_client import SessionReporter

from fakes import wait_until


@pytest.fixture
def client():
    return TestClient(app)


class FakeControlPlane:
    """Records report bodies; answers with the scripted status codes, then 200."""

    def __init__(self, statuses=()):
        self.statuses = list(statuses)
        self.reports = []
        self.server = None

    async def _report(self, request):
        body = await request.json()
        self.reports.append({"path": request.path, "body": body})
        status = self.statuses.pop(0) if self.statuses else 200
        return web.json_response({"status": "ok"}, status=status)

    async def __aenter__(self):
        app = web.Application()
        app.router.add_post("/control/sessions/{session_id}/report", self._report)
        self.server = TestServer(app)
        await self.server.start_server()
        return self

    async def __aexit__(self, *exc):
        await self.server.close()

    @property
    def base_url(self):
        return str(self.server.make_url(""))


def _worker_report(make_session, session_id="sess_worker"):
    """Run a session the way a worker would and capture what it reports."""
    session, _ = make_session("simple_handoff", session_id=session_id)

    async def _run():
        await session.connect()
        session.transcript.append(TranscriptItem(
            "u1", ItemKind.USER_MESSAGE, 1, ItemStatus.DONE, "hi", "greeter",
        ))
        async with FakeControlPlane() as control_plane:
            reporter = SessionReporter(session, control_plane.base_url, livekit_room="room-worker")
            assert await reporter.report()
        await session.disconnect()
        return control_plane.reports[0]

    return asyncio.run(_run())


class TestReporter:

    @pytest.mark.asyncio
    async def test_report_body(self, make_session):
        session, _ = make_session("simple_handoff", session_id="sess_worker")
        await session.connect()

        async with FakeControlPlane() as control_plane:
            reporter = SessionReporter(session, control_plane.base_url, livekit_room="room-worker")
            assert await reporter.report()

        report = control_plane.reports[0]
        assert report["path"] == "/control/sessions/sess_worker/report"
        assert report["body"]["livekit_room"] == "room-worker"
        assert report["body"]["session"]["status"] == "CONNECTED"
        assert report["body"]["session"]["active_agent"] == "greeter"
        assert [e["event_type"] for e in report["body"]["events"]] == [
            "session.status_changed", "session.status_changed",
        ]
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_events_sent_once_and_resent_after_failure(self, make_session):
        session, _ = make_session("simple_handoff", session_id="sess_worker")
        await session.connect()

        async with FakeControlPlane(statuses=[503]) as control_plane:
            reporter = SessionReporter(session, control_plane.base_url)
            assert not await reporter.report()
            assert await reporter.report()
            assert await reporter.report()

        sent = [len(r["body"]["events"]) for r in control_plane.reports]
        assert sent == [2, 2, 0]
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_unreachable_control_plane(self, make_session):
        session, _ = make_session("simple_handoff")
        await session.connect()

        reporter = SessionReporter(session, "http://127.0.0.1:9", request_timeout_seconds=0.5)

        assert await reporter.report() is False
        assert session.is_live
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_run_reports_until_disconnected(self, make_session):
        session, _ = make_session("simple_handoff")
        await session.connect()

        async with FakeControlPlane() as control_plane:
            reporter = SessionReporter(session, control_plane.base_url, interval_seconds=0.01)
            task = asyncio.create_task(reporter.run())
            await wait_until(lambda: len(control_plane.reports) >= 2)
            await session.disconnect()
            await asyncio.wait_for(task, timeout=1.0)

        assert control_plane.reports[-1]["body"]["session"]["status"] == "DISCONNECTED"


class TestReportAPI:

    def test_reported_session_is_readable(self, client, make_session):
        report = _worker_report(make_session)
        # The worker's events live in its own process
        event_store.clear()

        res = client.post("/control/sessions/sess_worker/report", json=report["body"])
        assert res.status_code == 200
        assert res.json() == {"status": "ok", "events_stored": 2}

        sessions = client.get("/control/sessions").json()
        assert [(s["session_id"], s["reported"]) for s in sessions] == [("sess_worker", True)]

        detail = client.get("/control/sessions/sess_worker").json()
        assert detail["status"] == "CONNECTED"
        assert detail["livekit_room"] == "room-worker"
        assert detail["agents"] == ["greeter", "haikuWriter"]
        assert detail["transcript_items"] == 1
        assert detail["reported_at"] is not None

        transcript = client.get("/control/sessions/sess_worker/transcript").json()
        assert [i["item_id"] for i in transcript["items"]] == ["u1"]

        events = client.get("/control/sessions/sess_worker/events").json()
        assert events["count"] == 2

    def test_later_report_replaces_snapshot(self, client, make_session):
        report = _worker_report(make_session)
        client.post("/control/sessions/sess_worker/report", json=report["body"])

        body = dict(report["body"], session={**report["body"]["session"], "active_agent": "haikuWriter"})
        client.post("/control/sessions/sess_worker/report", json=body)

        assert client.get("/control/sessions/sess_worker").json()["active_agent"] == "haikuWriter"
        assert len(client.get("/control/sessions").json()) == 1

    def test_session_id_mismatch(self, client, make_session):
        report = _worker_report(make_session)

        res = client.post("/control/sessions/sess_other/report", json=report["body"])
        assert res.status_code == 400

    def test_invalid_snapshot(self, client):
        res = client.post("/control/sessions/sess_x/report", json={
            "session": {"session_id": "sess_x", "status": "SLEEPING"},
        })
        assert res.status_code == 400

        res = client.post("/control/sessions/sess_x/report", json={
            "session": {"session_id": "sess_x", "status": "CONNECTED"},
        })
        assert res.status_code == 400
        assert "missing" in res.json()["detail"]

    def test_in_process_session_not_overwritten(self, client, make_session):
        session, _ = make_session("simple_handoff", session_id="sess_local")
        session_manager.register(session)

        res = client.post("/control/sessions/sess_local/report", json={
            "session": {**session.snapshot(), "status": "CONNECTED"},
        })
        assert res.status_code == 409


class TestReportedDisconnect:

    def test_disconnect_deletes_room(self, client, make_session, monkeypatch):
        deleted = []

        async def _fake_delete_room(room_name: str) -> None:
            deleted.append(room_name)

        monkeypatch.setattr(control_api, "_delete_room", _fake_delete_room)
        report = _worker_report(make_session)
        client.post("/control/sessions/sess_worker/report", json=report["body"])

        res = client.post("/control/sessions/sess_worker/disconnect")
        assert res.status_code == 200
        assert res.json() == {"status": "ok", "session_status": "DISCONNECTED"}
        assert deleted == ["room-worker"]

        # A report sent before the room closed does not bring the session back
        client.post("/control/sessions/sess_worker/report", json=report["body"])
        detail = client.get("/control/sessions/sess_worker").json()
        assert detail["status"] == "DISCONNECTED"
        assert detail["disconnect_reason"] == "control_api"

        assert client.post("/control/sessions/sess_worker/disconnect").status_code == 200
        assert deleted == ["room-worker"]

    def test_disconnect_without_room(self, client, make_session):
        report = _worker_report(make_session)
        body = dict(report["body"], livekit_room=None)
        client.post("/control/sessions/sess_worker/report", json=body)

        res = client.post("/control/sessions/sess_worker/disconnect")
        assert res.status_code == 409

    def test_room_deletion_failure(self, client, make_session, monkeypatch):
        async def _fake_delete_room(_room_name: str) -> None:
            raise RuntimeError("livekit down")

        monkeypatch.setattr(control_api, "_delete_room", _fake_delete_room)
        report = _worker_report(make_session)
        client.post("/control/sessions/sess_worker/report", json=report["body"])

        res = client.post("/control/sessions/sess_worker/disconnect")
        assert res.status_code == 502
        assert res.json()["detail"] == "disconnect_failed"
        assert client.get("/control/sessions/sess_worker").json()["status"] == "CONNECTED"
