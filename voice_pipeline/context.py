"""
Voice Pipeline dispatch context.

LiveKit job metadata is a freeform string on JobContext and is commonly JSON.
This module parses it safely and resolves which session id and agent set a
dispatched job should run with.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class DispatchContext:
    """Parsed context derived from a LiveKit dispatch / participant."""

    session_id: str
    agent_set: Optional[str] = None
    metadata_raw: Optional[str] = None


def parse_job_metadata(metadata: Optional[str]) -> dict[str, Any]:
    """
    Parse JobContext.job.metadata.

    Returns {} if metadata is missing or not a JSON object.
    """
    if not metadata:
        return {}
    try:
        parsed = json.loads(metadata)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return parsed


def _non_empty(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_session_id(
    *,
    room_name: str,
    job_metadata: Optional[str],
    participant_attributes: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Resolve the session_id.

    Priority:
    1) job metadata JSON key "session_id"
    2) participant attributes key "session_id"
    3) fallback: room name
    """
    md_session_id = _non_empty(parse_job_metadata(job_metadata).get("session_id"))
    if md_session_id:
        return md_session_id

    if participant_attributes:
        attr_session_id = _non_empty(participant_attributes.get("session_id"))
        if attr_session_id:
            return attr_session_id

    # Room names are opaque and correlate well across systems.
    return room_name or "unknown"


def build_dispatch_context(
    *,
    room_name: str,
    job_metadata: Optional[str],
    participant_attributes: Optional[Mapping[str, str]] = None,
) -> DispatchContext:
    """
    Build the context object used by the worker entrypoint.

    The agent set comes from metadata key "agent_set", falling back to "flow".
    """
    md = parse_job_metadata(job_metadata)
    session_id = resolve_session_id(
        room_name=room_name,
        job_metadata=job_metadata,
        participant_attributes=participant_attributes,
    )
    agent_set = _non_empty(md.get("agent_set")) or _non_empty(md.get("flow"))
    return DispatchContext(session_id=session_id, agent_set=agent_set, metadata_raw=job_metadata)
