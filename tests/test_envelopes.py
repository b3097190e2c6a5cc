"""
Envelope parsing and outbound command tests.
"""
import json

import pytest

from orchestrator.envelopes import (
    ChannelErrorEvent,
    CommandType,
    ItemCreatedEvent,
    ItemDeltaEvent,
    ItemDoneEvent,
    SessionStatusEvent,
    ToolCallRequestedEvent,
    ToolResultAckEvent,
    parse_arguments,
    parse_envelope,
    response_create,
    session_update,
    tool_call_result,
)
from orchestrator.errors import MalformedEnvelope


class TestParseEnvelope:

    def test_session_status(self):
        event = parse_envelope({"type": "session.status", "status": "connected"})
        assert isinstance(event, SessionStatusEvent)
        assert event.status == "CONNECTED"

    def test_item_lifecycle(self):
        created = parse_envelope(b'{"type": "conversation.item.created", "item_id": "a1", "role": "assistant"}')
        delta = parse_envelope('{"type": "conversation.item.delta", "item_id": "a1", "delta": "Hi"}')
        done = parse_envelope({"type": "conversation.item.done", "item_id": "a1"})

        assert isinstance(created, ItemCreatedEvent) and created.role == "assistant" and created.text == ""
        assert isinstance(delta, ItemDeltaEvent) and delta.delta == "Hi"
        assert isinstance(done, ItemDoneEvent) and done.text is None

    def test_tool_call_with_string_arguments(self):
        event = parse_envelope({
            "type": "tool_call.requested",
            "call_id": "call_1",
            "name": "lookupOrders",
            "arguments": '{"phone_number": "(206) 135-1246"}',
        })

        assert isinstance(event, ToolCallRequestedEvent)
        assert event.arguments == {"phone_number": "(206) 135-1246"}

    def test_tool_result_ack(self):
        event = parse_envelope({"type": "tool_call.result.sent", "call_id": "call_1"})
        assert isinstance(event, ToolResultAckEvent)

    def test_error_envelope(self):
        nested = parse_envelope({"type": "error", "error": {"message": "rate limited", "code": "429"}})
        flat = parse_envelope({"type": "error", "message": "oops"})

        assert isinstance(nested, ChannelErrorEvent)
        assert nested.code == "429"
        assert flat.message == "oops"

    def test_seq_starts_unassigned(self):
        assert parse_envelope({"type": "tool_call.result.sent", "call_id": "c"}).seq == 0

    @pytest.mark.parametrize("raw", [
        b"\xff\xfe",
        "not json",
        "[1, 2]",
        {"type": "mystery"},
        {"type": "session.status", "status": "SLEEPING"},
        {"type": "conversation.item.created", "item_id": "x", "role": "system"},
        {"type": "conversation.item.created", "role": "user"},
        {"type": "conversation.item.delta", "item_id": "x"},
        {"type": "tool_call.requested", "call_id": "c", "name": "t", "arguments": "{bad"},
        {"type": "tool_call.requested", "call_id": "", "name": "t"},
    ])
    def test_malformed(self, raw):
        with pytest.raises(MalformedEnvelope):
            parse_envelope(raw)


class TestParseArguments:

    def test_empty(self):
        assert parse_arguments(None) == {}
        assert parse_arguments("") == {}

    def test_non_object_rejected(self):
        with pytest.raises(MalformedEnvelope):
            parse_arguments("[1]")
        with pytest.raises(MalformedEnvelope):
            parse_arguments(42)


class TestCommands:

    def test_session_update(self):
        command = session_update("greeter", "Be nice.", [{"type": "function", "name": "x"}])

        assert command["type"] == CommandType.SESSION_UPDATE
        assert command["session"]["agent"] == "greeter"
        assert command["session"]["tools"][0]["name"] == "x"

    def test_tool_result_output_is_json_string(self):
        command = tool_call_result("call_1", {"nextResponse": "Sure."})

        assert command["type"] == CommandType.TOOL_CALL_RESULT
        assert json.loads(command["output"]) == {"nextResponse": "Sure."}
        assert tool_call_result("call_2", "plain")["output"] == "plain"

    def test_response_create(self):
        assert response_create() == {"type": "response.create"}
