"""
Structured JSON event emission (shared).

Every state change the orchestrator makes that an operator may need to audit
(session status, handoffs, tool calls, escalations, guardrail decisions,
control commands) is emitted as one JSON envelope per line on stdout and kept
in the in-memory event store for the Control Plane read API.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Components that emit events."""

    ORCHESTRATOR = "orchestrator"
    DISPATCHER = "dispatcher"
    HANDOFF = "handoff"
    TOOL_EXECUTOR = "tool_executor"
    SUPERVISOR = "supervisor"
    GUARDRAIL = "guardrail"
    CONTROL_PLANE = "control_plane"
    VOICE_PIPELINE = "voice_pipeline"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}


def text_pii(*fields: str) -> Dict[str, Any]:
    """PII descriptor for events that carry conversation text."""
    return {"contains_pii": True, "fields": list(fields), "handling": "redact_in_export"}


class EventEmitter:
    """Emits structured JSON events."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        """
        Emit a structured JSON event.

        Args:
            event_type: Stable event type string (e.g. "handoff.applied")
            session_id: Opaque session identifier
            severity: Event severity level
            correlation_id: Optional correlation ID (tool call id, item id)
            pii: PII metadata dict with contains_pii, fields, handling
            **kwargs: Additional event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }

        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)
