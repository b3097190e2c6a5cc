"""
Transcript store tests: ordering, one-way status transitions and guardrail
verdicts.
"""
import pytest

from orchestrator.transcript import (
    GuardrailCategory,
    GuardrailResult,
    GuardrailStatus,
    ItemKind,
    ItemStatus,
    ToolCall,
    TranscriptItem,
    TranscriptStore,
)


def _message(item_id, seq, kind=ItemKind.USER_MESSAGE, text="", status=ItemStatus.IN_PROGRESS):
    return TranscriptItem(item_id=item_id, kind=kind, created_seq=seq, status=status, payload=text)


class TestOrdering:

    def test_append_keeps_order(self):
        store = TranscriptStore()
        store.append(_message("u1", 1))
        store.append(_message("a1", 3, ItemKind.ASSISTANT_MESSAGE))

        assert [i.item_id for i in store] == ["u1", "a1"]
        assert store.last_seq == 3
        assert "a1" in store
        assert len(store) == 2

    def test_sequence_must_increase(self):
        store = TranscriptStore()
        store.append(_message("u1", 2))

        with pytest.raises(ValueError):
            store.append(_message("u2", 2))
        with pytest.raises(ValueError):
            store.append(_message("u3", 1))

    def test_duplicate_item_id_rejected(self):
        store = TranscriptStore()
        store.append(_message("u1", 1))

        with pytest.raises(ValueError, match="already exists"):
            store.append(_message("u1", 2))


class TestStatusTransitions:

    def test_deltas_accumulate_until_done(self):
        store = TranscriptStore()
        store.append(_message("a1", 1, ItemKind.ASSISTANT_MESSAGE))

        assert store.append_delta("a1", "Hel")
        assert store.append_delta("a1", "lo")
        assert store.get("a1").text == "Hello"

        item = store.mark_done("a1")
        assert item.status == ItemStatus.DONE
        assert not store.append_delta("a1", "!")
        assert store.get("a1").text == "Hello"

    def test_done_is_one_way(self):
        store = TranscriptStore()
        store.append(_message("a1", 1, ItemKind.ASSISTANT_MESSAGE, text="draft"))

        assert store.mark_done("a1", final_text="final") is not None
        assert store.mark_done("a1", final_text="changed") is None
        assert store.get("a1").text == "final"

    def test_unknown_items_ignored(self):
        store = TranscriptStore()

        assert not store.append_delta("ghost", "x")
        assert store.mark_done("ghost") is None


class TestBreadcrumbs:

    def test_breadcrumb_payload(self):
        store = TranscriptStore()
        crumb = store.add_breadcrumb("Agent transfer: greeter -> haikuWriter", seq=4, data={"rationale": "asked"})

        assert crumb.kind == ItemKind.BREADCRUMB
        assert crumb.is_done
        assert crumb.item_id.startswith("crumb_")
        assert crumb.payload == {
            "title": "Agent transfer: greeter -> haikuWriter",
            "data": {"rationale": "asked"},
        }

    def test_complete_breadcrumb(self):
        store = TranscriptStore()
        call = ToolCall("call_1", "lookupOrders", {"phone": "555"})
        crumb = store.add_breadcrumb(
            "Tool call: lookupOrders", seq=1, status=ItemStatus.IN_PROGRESS, tool_call=call
        )

        done = store.complete_breadcrumb(crumb.item_id, {"result": {"orders": []}})
        assert done.is_done
        assert done.payload["data"] == {"result": {"orders": []}}
        assert store.complete_breadcrumb(crumb.item_id, {"result": "again"}) is None
        assert store.find_by_call_id("call_1") is crumb

    def test_breadcrumbs_excluded_from_history(self):
        store = TranscriptStore()
        store.append(_message("u1", 1, text="hi", status=ItemStatus.DONE))
        store.add_breadcrumb("Agent transfer: a -> b", seq=2)
        store.append(_message("a1", 3, ItemKind.ASSISTANT_MESSAGE, text="hello", status=ItemStatus.DONE))

        assert [i.item_id for i in store.messages()] == ["u1", "a1"]
        assert store.conversation_history() == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]


class TestRecentContext:

    def test_window_before_item(self):
        store = TranscriptStore()
        for seq, (item_id, kind) in enumerate([
            ("u1", ItemKind.USER_MESSAGE),
            ("a1", ItemKind.ASSISTANT_MESSAGE),
            ("u2", ItemKind.USER_MESSAGE),
            ("a2", ItemKind.ASSISTANT_MESSAGE),
        ], start=1):
            store.append(_message(item_id, seq, kind, text=item_id))

        assert store.recent_context("a2", 2) == [
            {"role": "assistant", "content": "a1"},
            {"role": "user", "content": "u2"},
        ]
        assert store.recent_context("a2", 0) == []
        assert len(store.recent_context("a2", 10)) == 3


class TestGuardrailResult:

    def test_none_passes(self):
        result = GuardrailResult()
        assert result.settle(GuardrailCategory.NONE, "fine")
        assert result.status == GuardrailStatus.PASS
        assert result.decided_at is not None

    @pytest.mark.parametrize("category", [
        GuardrailCategory.OFFENSIVE, GuardrailCategory.OFF_BRAND, GuardrailCategory.VIOLENCE, None,
    ])
    def test_everything_else_fails(self, category):
        result = GuardrailResult()
        result.settle(category)
        assert result.status == GuardrailStatus.FAIL
        assert result.category == category

    def test_terminal_verdict_is_final(self):
        result = GuardrailResult()
        result.settle(GuardrailCategory.VIOLENCE)

        assert not result.settle(GuardrailCategory.NONE)
        assert result.status == GuardrailStatus.FAIL

    def test_safe_to_display(self):
        message = _message("a1", 1, ItemKind.ASSISTANT_MESSAGE, status=ItemStatus.DONE)
        assert not message.safe_to_display

        message.guardrail = GuardrailResult()
        assert not message.safe_to_display

        message.guardrail.status = GuardrailStatus.DONE
        assert message.guardrail.is_settled
        assert not message.safe_to_display

        message.guardrail = GuardrailResult()
        message.guardrail.settle(GuardrailCategory.NONE)
        assert message.safe_to_display
        assert message.to_dict()["safe_to_display"] is True

        assert _message("u1", 2).safe_to_display


class TestToolCall:

    def test_resolves_once(self):
        call = ToolCall("call_1", "lookupOrders")

        assert call.resolve({"orders": []}, locally=True)
        assert not call.resolve({"orders": ["x"]}, locally=True)
        assert call.result == {"orders": []}
        assert call.resolved_locally
