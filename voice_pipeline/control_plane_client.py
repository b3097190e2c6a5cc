"""
Voice Pipeline -> Control Plane client.

LiveKit runs each job in its own process, so the Control Plane never sees the
worker's sessions directly. The worker pushes a snapshot of its session (and
the events emitted since the previous push) to
POST /control/sessions/{session_id}/report while the session is live, and a
final one once it ends. Reporting is best-effort: a Control Plane outage never
affects the conversation.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

import aiohttp

from logging_setup import get_logger, Component as LogComponent
from observability.event_store import event_store
from orchestrator.session import RealtimeSession


logger = get_logger(LogComponent.VOICE_PIPELINE)


class SessionReporter:
    """Pushes one session's state to the Control Plane."""

    def __init__(
        self,
        session: RealtimeSession,
        base_url: str,
        *,
        livekit_room: Optional[str] = None,
        interval_seconds: float = 2.0,
        request_timeout_seconds: float = 5.0,
    ):
        self.session = session
        self.endpoint = f"{base_url.rstrip('/')}/control/sessions/{session.session_id}/report"
        self.livekit_room = livekit_room
        self.interval_seconds = interval_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self._events_sent = 0
        self.log = logger.with_session(session.session_id)

    async def report(self) -> bool:
        """
        Send the current snapshot and any new events.

        Returns True if the Control Plane accepted the report (2xx), False otherwise.
        """
        events = event_store.query(session_id=self.session.session_id)
        new_events = events[self._events_sent:]
        body = {
            "livekit_room": self.livekit_room,
            "session": self.session.snapshot(),
            "events": new_events,
        }

        start_ts = time.time()
        try:
            async with aiohttp.ClientSession() as s:
                async with s.post(
                    self.endpoint,
                    json=body,
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout_seconds),
                ) as resp:
                    ok = 200 <= resp.status < 300
                    self.log.debug(
                        "Control Plane report response",
                        endpoint=self.endpoint,
                        status=resp.status,
                        ok=ok,
                        events=len(new_events),
                        latency_ms=int((time.time() - start_ts) * 1000),
                    )
        except Exception as e:
            self.log.warning(
                "Control Plane report failed",
                endpoint=self.endpoint,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            return False

        if ok:
            self._events_sent = len(events)
        return ok

    async def run(self) -> None:
        """Report every `interval_seconds` while the session is live, then once more."""
        while self.session.is_live:
            await self.report()
            await asyncio.sleep(self.interval_seconds)
        await self.report()
