"""
Transcript and breadcrumb store.

Append-only, ordered record of one session's conversation: user and
assistant messages plus local-only breadcrumbs (agent transfers, tool call
records). Items move IN_PROGRESS -> DONE exactly once and a DONE payload is
never changed again. Items are never reordered or deleted.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from logging_setup import Component, get_logger


logger = get_logger(Component.TRANSCRIPT)


class ItemKind(str, Enum):
    USER_MESSAGE = "USER_MESSAGE"
    ASSISTANT_MESSAGE = "ASSISTANT_MESSAGE"
    BREADCRUMB = "BREADCRUMB"


class ItemStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class GuardrailCategory(str, Enum):
    NONE = "NONE"
    OFFENSIVE = "OFFENSIVE"
    OFF_BRAND = "OFF_BRAND"
    VIOLENCE = "VIOLENCE"


class GuardrailStatus(str, Enum):
    """
    Guardrail verdict lifecycle.

    The pipeline only ever writes IN_PROGRESS, then PASS or FAIL. DONE is kept
    for producers that report "classified" without a verdict; consumers treat
    it as settled but not as PASS.
    """

    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAIL = "FAIL"
    PASS = "PASS"


_SETTLED = (GuardrailStatus.DONE, GuardrailStatus.PASS, GuardrailStatus.FAIL)


@dataclass
class GuardrailResult:
    """Moderation verdict attached to one finalized assistant message."""

    status: GuardrailStatus = GuardrailStatus.IN_PROGRESS
    category: Optional[GuardrailCategory] = None
    rationale: Optional[str] = None
    decided_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (GuardrailStatus.PASS, GuardrailStatus.FAIL)

    @property
    def is_settled(self) -> bool:
        return self.status in _SETTLED

    def settle(self, category: Optional[GuardrailCategory], rationale: Optional[str] = None) -> bool:
        """
        Move to PASS (category NONE) or FAIL (anything else, including no category).

        Returns False without changing anything when a verdict is already set.
        """
        if self.is_terminal:
            return False
        self.category = category
        self.status = GuardrailStatus.PASS if category == GuardrailCategory.NONE else GuardrailStatus.FAIL
        self.rationale = rationale
        self.decided_at = datetime.now(timezone.utc)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "category": self.category.value if self.category else None,
            "rationale": self.rationale,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }


@dataclass
class ToolCall:
    """One tool invocation requested by the remote model."""

    call_id: str
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    resolved_once: bool = False
    resolved_locally: bool = False
    acknowledged: bool = False

    def resolve(self, result: Any, *, locally: bool, error: Optional[str] = None) -> bool:
        """Record the single authoritative result. Returns False if already resolved."""
        if self.resolved_once:
            return False
        self.result = result
        self.error = error
        self.resolved_locally = locally
        self.resolved_once = True
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "result": self.result,
            "error": self.error,
            "resolved_once": self.resolved_once,
            "resolved_locally": self.resolved_locally,
            "acknowledged": self.acknowledged,
        }


@dataclass
class TranscriptItem:
    """One entry of the conversation record."""

    item_id: str
    kind: ItemKind
    created_seq: int
    status: ItemStatus = ItemStatus.IN_PROGRESS
    payload: Any = ""
    agent_name: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    guardrail: Optional[GuardrailResult] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_done(self) -> bool:
        return self.status == ItemStatus.DONE

    @property
    def text(self) -> str:
        if isinstance(self.payload, str):
            return self.payload
        return ""

    @property
    def safe_to_display(self) -> bool:
        """
        Whether a consumer may show this message as vetted.

        Assistant messages need a PASS verdict. Other kinds are never moderated.
        """
        if self.kind != ItemKind.ASSISTANT_MESSAGE:
            return True
        return self.guardrail is not None and self.guardrail.status == GuardrailStatus.PASS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "created_seq": self.created_seq,
            "created_at": self.created_at.isoformat(),
            "agent_name": self.agent_name,
            "payload": self.payload,
            "tool_call": self.tool_call.to_dict() if self.tool_call else None,
            "guardrail": self.guardrail.to_dict() if self.guardrail else None,
            "safe_to_display": self.safe_to_display,
        }


class TranscriptStore:
    """Append-only transcript for one session."""

    def __init__(self, session_id: str = ""):
        self._items: List[TranscriptItem] = []
        self._by_id: Dict[str, TranscriptItem] = {}
        self._last_seq = 0
        self.log = logger.with_session(session_id) if session_id else logger

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[TranscriptItem]:
        return iter(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._by_id

    @property
    def last_seq(self) -> int:
        return self._last_seq

    def items(self) -> List[TranscriptItem]:
        return list(self._items)

    def get(self, item_id: str) -> Optional[TranscriptItem]:
        return self._by_id.get(item_id)

    def append(self, item: TranscriptItem) -> TranscriptItem:
        """Append a new item. Sequence numbers must strictly increase."""
        if item.item_id in self._by_id:
            raise ValueError(f"Transcript item {item.item_id} already exists")
        if item.created_seq <= self._last_seq:
            raise ValueError(
                f"Sequence {item.created_seq} is not after last sequence {self._last_seq}"
            )
        self._items.append(item)
        self._by_id[item.item_id] = item
        self._last_seq = item.created_seq
        return item

    def append_delta(self, item_id: str, delta: str) -> bool:
        """
        Append streamed text to an IN_PROGRESS message.

        Deltas for unknown or DONE items are ignored (returns False).
        """
        item = self._by_id.get(item_id)
        if item is None:
            self.log.warning("Delta for unknown item ignored", item_id=item_id)
            return False
        if item.is_done:
            self.log.warning("Delta for finalized item ignored", item_id=item_id)
            return False
        item.payload = f"{item.text}{delta}"
        return True

    def mark_done(self, item_id: str, final_text: Optional[str] = None) -> Optional[TranscriptItem]:
        """
        Finalize an item. `final_text`, when given, replaces the streamed text.

        Returns the item when this call performed the transition, None when the
        item is unknown or already DONE.
        """
        item = self._by_id.get(item_id)
        if item is None:
            self.log.warning("Done for unknown item ignored", item_id=item_id)
            return None
        if item.is_done:
            self.log.debug("Duplicate done ignored", item_id=item_id)
            return None
        if final_text is not None:
            item.payload = final_text
        item.status = ItemStatus.DONE
        return item

    def add_breadcrumb(
        self,
        title: str,
        seq: int,
        data: Optional[Dict[str, Any]] = None,
        agent_name: Optional[str] = None,
        status: ItemStatus = ItemStatus.DONE,
        tool_call: Optional[ToolCall] = None,
    ) -> TranscriptItem:
        """Append a local-only breadcrumb (never sent to the remote model)."""
        payload: Dict[str, Any] = {"title": title}
        if data:
            payload["data"] = dict(data)
        return self.append(TranscriptItem(
            item_id=f"crumb_{uuid.uuid4().hex[:12]}",
            kind=ItemKind.BREADCRUMB,
            created_seq=seq,
            status=status,
            payload=payload,
            agent_name=agent_name,
            tool_call=tool_call,
        ))

    def complete_breadcrumb(self, item_id: str, data: Optional[Dict[str, Any]] = None) -> Optional[TranscriptItem]:
        """Fill in an IN_PROGRESS breadcrumb's data and mark it DONE."""
        item = self._by_id.get(item_id)
        if item is None or item.kind != ItemKind.BREADCRUMB or item.is_done:
            return None
        if data:
            payload = dict(item.payload) if isinstance(item.payload, dict) else {}
            payload["data"] = {**payload.get("data", {}), **data}
            item.payload = payload
        item.status = ItemStatus.DONE
        return item

    def find_by_call_id(self, call_id: str) -> Optional[TranscriptItem]:
        for item in reversed(self._items):
            if item.tool_call is not None and item.tool_call.call_id == call_id:
                return item
        return None

    def messages(self) -> List[TranscriptItem]:
        return [i for i in self._items if i.kind != ItemKind.BREADCRUMB]

    def conversation_history(self) -> List[Dict[str, str]]:
        """User and assistant messages in order, as role/content pairs."""
        history = []
        for item in self.messages():
            if not item.text:
                continue
            role = "user" if item.kind == ItemKind.USER_MESSAGE else "assistant"
            history.append({"role": role, "content": item.text})
        return history

    def recent_context(self, before_item_id: str, window: int) -> List[Dict[str, str]]:
        """The `window` messages preceding `before_item_id`, oldest first."""
        if window <= 0:
            return []
        preceding: List[TranscriptItem] = []
        for item in self.messages():
            if item.item_id == before_item_id:
                break
            preceding.append(item)
        return [
            {
                "role": "user" if i.kind == ItemKind.USER_MESSAGE else "assistant",
                "content": i.text,
            }
            for i in preceding[-window:]
            if i.text
        ]
