"""
Event dispatcher.

Two halves:
- `dispatch()` runs on the channel reader. It normalizes an envelope, stamps
  the session's next sequence number and queues it. It never waits on
  downstream work.
- `process()` drains the queue in dispatch order and routes each event to
  exactly one of: the transcript store, the tool executor, the handoff state
  machine, or nothing. Slow work (tool handlers, escalation, moderation) is
  started as session background tasks.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Type

from logging_setup import Component, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .agents import Agent
from .envelopes import (
    ChannelErrorEvent,
    DomainEvent,
    ItemCreatedEvent,
    ItemDeltaEvent,
    ItemDoneEvent,
    RawEnvelope,
    SessionStatusEvent,
    ToolCallRequestedEvent,
    ToolResultAckEvent,
    parse_envelope,
    response_create,
    tool_call_result,
)
from .errors import MalformedEnvelope, TransportError, TransportErrorHandler
from .handoff import is_transfer_call
from .transcript import ItemKind, ItemStatus, ToolCall, TranscriptItem

if TYPE_CHECKING:
    from .session import RealtimeSession


logger = get_logger(Component.DISPATCHER)
emitter = EventEmitter(ObsComponent.DISPATCHER)


class EventDispatcher:
    """Ordered inbound event router for one session."""

    def __init__(self, session: "RealtimeSession"):
        self.session = session
        self.log = logger.with_session(session.session_id)
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._routes: Dict[Type[DomainEvent], Callable[[DomainEvent], Awaitable[None]]] = {
            SessionStatusEvent: self._on_session_status,
            ItemCreatedEvent: self._on_item_created,
            ItemDeltaEvent: self._on_item_delta,
            ItemDoneEvent: self._on_item_done,
            ToolCallRequestedEvent: self._on_tool_call,
            ToolResultAckEvent: self._on_tool_result_ack,
            ChannelErrorEvent: self._on_error,
        }

    def dispatch(self, raw: RawEnvelope) -> Optional[DomainEvent]:
        """Normalize, sequence and queue one envelope. Malformed envelopes are dropped."""
        try:
            event = parse_envelope(raw)
        except MalformedEnvelope as e:
            self.dropped += 1
            self.log.warning("Envelope dropped", reason=str(e))
            emitter.emit(
                "envelope.dropped",
                session_id=self.session.session_id,
                severity=Severity.WARN,
                reason=str(e),
            )
            return None

        event.seq = self.session.next_sequence()
        self._queue.put_nowait(event)
        return event

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    def discard_pending(self) -> int:
        """Drop queued events that will never be processed (after teardown)."""
        discarded = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            discarded += 1
        return discarded

    async def process(self) -> None:
        """Route queued events forever, in order. Cancelled by the session on teardown."""
        while True:
            event = await self._queue.get()
            try:
                await self._process_one(event)
            finally:
                self._queue.task_done()

    async def _process_one(self, event: DomainEvent) -> None:
        session = self.session
        if not session.is_live:
            self.log.debug("Event after disconnect ignored", seq=event.seq, event_type=event.type)
            return
        try:
            async with session.commit() as live:
                if not live:
                    self.log.debug("Event after disconnect ignored", seq=event.seq, event_type=event.type)
                    return
                await self.route(event)
        except TransportError as e:
            await session.disconnect(TransportErrorHandler.classify_error(e), error=e)
        except Exception:
            self.log.exception("Event handler failed", seq=event.seq, event_type=event.type)

    async def route(self, event: DomainEvent) -> None:
        """Apply one event. Callers hold the session's state lock."""
        handler = self._routes.get(type(event))
        if handler is None:
            self.log.warning("No route for event", event_type=event.type, seq=event.seq)
            return
        await handler(event)

    # --- routes ---

    async def _on_session_status(self, event: SessionStatusEvent) -> None:
        if event.status == "ERROR":
            raise TransportError(event.detail or "remote reported a session error")
        self.log.debug("Remote session status", status=event.status, seq=event.seq)

    async def _on_item_created(self, event: ItemCreatedEvent) -> None:
        transcript = self.session.transcript
        if event.item_id in transcript:
            self.log.debug("Duplicate item ignored", item_id=event.item_id, seq=event.seq)
            return
        kind = ItemKind.USER_MESSAGE if event.role == "user" else ItemKind.ASSISTANT_MESSAGE
        transcript.append(TranscriptItem(
            item_id=event.item_id,
            kind=kind,
            created_seq=event.seq,
            payload=event.text,
            agent_name=self._agent_name(),
        ))

    async def _on_item_delta(self, event: ItemDeltaEvent) -> None:
        self.session.transcript.append_delta(event.item_id, event.delta)

    async def _on_item_done(self, event: ItemDoneEvent) -> None:
        item = self.session.transcript.mark_done(event.item_id, event.text)
        if item is None:
            return
        self.log.debug_pii("Message finalized", item_id=item.item_id, kind=item.kind.value, text=item.text)
        if item.kind == ItemKind.ASSISTANT_MESSAGE:
            self.session.guardrails.submit(self.session, item)

    async def _on_tool_call(self, event: ToolCallRequestedEvent) -> None:
        session = self.session
        executor = session.executor
        if executor.get(event.call_id) is not None:
            self.log.info("Duplicate tool call dropped", call_id=event.call_id, seq=event.seq)
            emitter.emit(
                "tool_call.duplicate_dropped",
                session_id=session.session_id,
                correlation_id=event.call_id,
                tool_name=event.name,
                seq=event.seq,
            )
            return

        if is_transfer_call(event.name):
            await session.handoffs.apply(session, event)
            return

        agent = session.active_agent
        call = ToolCall(call_id=event.call_id, tool_name=event.name, arguments=event.arguments)
        local = executor.has_local_handler(agent, event.name)
        emitter.emit(
            "tool_call.requested",
            session_id=session.session_id,
            correlation_id=event.call_id,
            tool_name=event.name,
            agent=agent.name,
            local=local,
            seq=event.seq,
        )

        if not local:
            executor.record_remote(call)
            session.transcript.add_breadcrumb(
                f"Tool call: {event.name}",
                seq=event.seq,
                data={"arguments": event.arguments, "resolved": "remote"},
                agent_name=agent.name,
                tool_call=call,
            )
            return

        executor.register(call)
        item = session.transcript.add_breadcrumb(
            f"Tool call: {event.name}",
            seq=event.seq,
            data={"arguments": event.arguments},
            agent_name=agent.name,
            status=ItemStatus.IN_PROGRESS,
            tool_call=call,
        )
        session.spawn(self._run_tool(call, item, agent), name=f"tool:{event.call_id}")

    async def _on_tool_result_ack(self, event: ToolResultAckEvent) -> None:
        call = self.session.executor.get(event.call_id)
        if call is None:
            self.log.debug("Ack for unknown tool call", call_id=event.call_id)
            return
        call.acknowledged = True

    async def _on_error(self, event: ChannelErrorEvent) -> None:
        self.log.warning("Remote error reported", code=event.code, detail=event.message, seq=event.seq)
        emitter.emit(
            "channel.error",
            session_id=self.session.session_id,
            severity=Severity.WARN,
            code=event.code,
            detail=event.message,
            fatal=False,
        )

    # --- background work ---

    async def _run_tool(self, call: ToolCall, item: TranscriptItem, agent: Agent) -> None:
        session = self.session
        result = await session.executor.execute(call, agent, session)

        failure: Optional[TransportError] = None
        async with session.commit() as live:
            if not live:
                self.log.info("Tool result discarded after disconnect", call_id=call.call_id)
                return
            session.transcript.complete_breadcrumb(item.item_id, {"result": result})
            try:
                await session.send(tool_call_result(call.call_id, result))
                await session.send(response_create())
            except TransportError as e:
                failure = e
        if failure is not None:
            await session.disconnect(TransportErrorHandler.classify_error(failure), error=failure)

    def _agent_name(self) -> Optional[str]:
        agent = self.session.active_agent
        return agent.name if agent else None
