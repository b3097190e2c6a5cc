"""
Wire envelopes for the realtime event channel.

Inbound envelopes are JSON objects with a "type" field. They are normalized
into typed events here, before anything touches session state. Outbound
commands are plain dicts built by the helpers at the bottom of the module.

Inbound:
    session.status              {"status": "CONNECTING" | "CONNECTED" | "ERROR", "detail"?}
    conversation.item.created   {"item_id", "role": "user" | "assistant", "text"?}
    conversation.item.delta     {"item_id", "delta"}
    conversation.item.done      {"item_id", "text"?}
    tool_call.requested         {"call_id", "name", "arguments": object | JSON string}
    tool_call.result.sent       {"call_id"}
    error                       {"error": {"message", "code"?} | "message"}

Outbound:
    session.update              {"session": {"agent", "instructions", "tools"}}
    tool_call.result            {"call_id", "output": JSON string}
    conversation.item.create    {"item": {"role", "text"}}
    response.create             {}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import MalformedEnvelope


class EnvelopeType:
    """Inbound envelope type strings."""

    SESSION_STATUS = "session.status"
    ITEM_CREATED = "conversation.item.created"
    ITEM_DELTA = "conversation.item.delta"
    ITEM_DONE = "conversation.item.done"
    TOOL_CALL_REQUESTED = "tool_call.requested"
    TOOL_RESULT_SENT = "tool_call.result.sent"
    ERROR = "error"


class CommandType:
    """Outbound command type strings."""

    SESSION_UPDATE = "session.update"
    TOOL_CALL_RESULT = "tool_call.result"
    ITEM_CREATE = "conversation.item.create"
    RESPONSE_CREATE = "response.create"


RawEnvelope = Union[bytes, str, Mapping[str, Any]]


@dataclass
class DomainEvent:
    """Base for normalized inbound events. `seq` is assigned on dispatch."""

    seq: int = field(default=0, init=False)

    @property
    def type(self) -> str:
        raise NotImplementedError


@dataclass
class SessionStatusEvent(DomainEvent):
    status: str = ""
    detail: Optional[str] = None

    @property
    def type(self) -> str:
        return EnvelopeType.SESSION_STATUS


@dataclass
class ItemCreatedEvent(DomainEvent):
    item_id: str = ""
    role: str = "user"
    text: str = ""

    @property
    def type(self) -> str:
        return EnvelopeType.ITEM_CREATED


@dataclass
class ItemDeltaEvent(DomainEvent):
    item_id: str = ""
    delta: str = ""

    @property
    def type(self) -> str:
        return EnvelopeType.ITEM_DELTA


@dataclass
class ItemDoneEvent(DomainEvent):
    item_id: str = ""
    text: Optional[str] = None

    @property
    def type(self) -> str:
        return EnvelopeType.ITEM_DONE


@dataclass
class ToolCallRequestedEvent(DomainEvent):
    call_id: str = ""
    name: str = ""
    arguments: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return EnvelopeType.TOOL_CALL_REQUESTED


@dataclass
class ToolResultAckEvent(DomainEvent):
    call_id: str = ""

    @property
    def type(self) -> str:
        return EnvelopeType.TOOL_RESULT_SENT


@dataclass
class ChannelErrorEvent(DomainEvent):
    message: str = ""
    code: Optional[str] = None

    @property
    def type(self) -> str:
        return EnvelopeType.ERROR


_SESSION_STATUSES = ("CONNECTING", "CONNECTED", "ERROR")
_ROLES = ("user", "assistant")


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedEnvelope(f"{data.get('type')}: missing or empty '{key}'")
    return value


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """Tool arguments arrive either as an object or as a JSON-encoded string."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedEnvelope(f"tool arguments are not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise MalformedEnvelope("tool arguments must decode to an object")
        return parsed
    raise MalformedEnvelope(f"unsupported tool arguments type: {type(raw).__name__}")


def parse_envelope(raw: RawEnvelope) -> DomainEvent:
    """
    Normalize one inbound envelope into a typed event.

    Raises MalformedEnvelope for undecodable input, unknown types or missing
    required fields.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEnvelope(f"envelope is not UTF-8: {e}") from e
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedEnvelope(f"envelope is not valid JSON: {e}") from e
    if not isinstance(raw, Mapping):
        raise MalformedEnvelope("envelope must be a JSON object")

    data = raw
    kind = data.get("type")

    if kind == EnvelopeType.SESSION_STATUS:
        status = str(data.get("status", "")).upper()
        if status not in _SESSION_STATUSES:
            raise MalformedEnvelope(f"session.status: unknown status {data.get('status')!r}")
        return SessionStatusEvent(status=status, detail=data.get("detail"))

    if kind == EnvelopeType.ITEM_CREATED:
        role = data.get("role")
        if role not in _ROLES:
            raise MalformedEnvelope(f"conversation.item.created: unknown role {role!r}")
        return ItemCreatedEvent(
            item_id=_require_str(data, "item_id"),
            role=role,
            text=data.get("text") or "",
        )

    if kind == EnvelopeType.ITEM_DELTA:
        delta = data.get("delta")
        if not isinstance(delta, str):
            raise MalformedEnvelope("conversation.item.delta: missing 'delta'")
        return ItemDeltaEvent(item_id=_require_str(data, "item_id"), delta=delta)

    if kind == EnvelopeType.ITEM_DONE:
        text = data.get("text")
        return ItemDoneEvent(
            item_id=_require_str(data, "item_id"),
            text=text if isinstance(text, str) else None,
        )

    if kind == EnvelopeType.TOOL_CALL_REQUESTED:
        return ToolCallRequestedEvent(
            call_id=_require_str(data, "call_id"),
            name=_require_str(data, "name"),
            arguments=parse_arguments(data.get("arguments")),
        )

    if kind == EnvelopeType.TOOL_RESULT_SENT:
        return ToolResultAckEvent(call_id=_require_str(data, "call_id"))

    if kind == EnvelopeType.ERROR:
        error = data.get("error")
        if isinstance(error, Mapping):
            return ChannelErrorEvent(
                message=str(error.get("message", "")),
                code=error.get("code"),
            )
        return ChannelErrorEvent(message=str(error or data.get("message", "")))

    raise MalformedEnvelope(f"unknown envelope type {kind!r}")


# --- Outbound commands ---


def session_update(agent_name: str, instructions: str, tools: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "type": CommandType.SESSION_UPDATE,
        "session": {
            "agent": agent_name,
            "instructions": instructions,
            "tools": tools,
        },
    }


def tool_call_result(call_id: str, output: Any) -> Dict[str, Any]:
    """Tool output is always sent as a JSON string."""
    return {
        "type": CommandType.TOOL_CALL_RESULT,
        "call_id": call_id,
        "output": output if isinstance(output, str) else json.dumps(output, ensure_ascii=False, default=str),
    }


def conversation_item_create(text: str, role: str = "user") -> Dict[str, Any]:
    return {
        "type": CommandType.ITEM_CREATE,
        "item": {"role": role, "text": text},
    }


def response_create() -> Dict[str, Any]:
    return {"type": CommandType.RESPONSE_CREATE}
