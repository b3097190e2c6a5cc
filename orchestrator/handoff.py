"""
Agent handoff state machine.

A transfer is a tool call following one of two conventions:
- the reserved `transferAgents` tool with a `destination_agent` argument
- a tool named `transfer_to_<agent>`

A valid transfer records a breadcrumb, swaps the session's active agent and
then tells the remote side about the new agent. An invalid one leaves the
active agent untouched and answers the call with an InvalidHandoff result, so
the current agent can explain or try again. Transfers are applied from the
ordered event processor, so two transfers in flight are evaluated one after
the other.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from logging_setup import Component, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .agents import Agent, AgentRegistry, ToolSpec
from .envelopes import ToolCallRequestedEvent, response_create, session_update, tool_call_result
from .errors import InvalidHandoff
from .transcript import ToolCall, TranscriptItem

if TYPE_CHECKING:
    from .session import RealtimeSession


logger = get_logger(Component.HANDOFF)
emitter = EventEmitter(ObsComponent.HANDOFF)

TRANSFER_TOOL_NAME = "transferAgents"
TRANSFER_TOOL_PREFIX = "transfer_to_"


def is_transfer_call(tool_name: str) -> bool:
    return tool_name == TRANSFER_TOOL_NAME or tool_name.startswith(TRANSFER_TOOL_PREFIX)


def transfer_target(tool_name: str, arguments: Dict[str, Any]) -> Optional[str]:
    """Destination agent named by a transfer call, or None if this is not a transfer."""
    if tool_name == TRANSFER_TOOL_NAME:
        destination = arguments.get("destination_agent")
        return destination if isinstance(destination, str) else ""
    if tool_name.startswith(TRANSFER_TOOL_PREFIX):
        return tool_name[len(TRANSFER_TOOL_PREFIX):]
    return None


def transfer_tool_spec(agent: Agent, registry: AgentRegistry) -> Optional[ToolSpec]:
    """The transfer tool advertised while `agent` is active (None without handoffs)."""
    if not agent.handoffs:
        return None
    destinations = sorted(agent.handoffs)
    lines = []
    for name in destinations:
        target = registry.get(name)
        description = target.handoff_description if target else ""
        lines.append(f"- {name}: {description}" if description else f"- {name}")
    return ToolSpec(
        name=TRANSFER_TOOL_NAME,
        description=(
            "Triggers a transfer of the user to a more specialized agent. "
            "Only call this after one of the agents below is clearly a better fit.\n"
            "Available agents:\n" + "\n".join(lines)
        ),
        parameters={
            "type": "object",
            "properties": {
                "rationale_for_transfer": {
                    "type": "string",
                    "description": "The reasoning why this transfer is needed.",
                },
                "conversation_context": {
                    "type": "string",
                    "description": "Relevant context from the conversation for the receiving agent.",
                },
                "destination_agent": {
                    "type": "string",
                    "description": "The agent that should handle the user's request.",
                    "enum": destinations,
                },
            },
            "required": ["rationale_for_transfer", "conversation_context", "destination_agent"],
        },
    )


def advertised_tools(agent: Agent, registry: AgentRegistry) -> List[Dict[str, Any]]:
    tools = [t.to_schema() for t in agent.tools]
    transfer = transfer_tool_spec(agent, registry)
    if transfer is not None:
        tools.append(transfer.to_schema())
    return tools


def build_session_update(agent: Agent, registry: AgentRegistry) -> Dict[str, Any]:
    return session_update(agent.name, agent.instructions, advertised_tools(agent, registry))


@dataclass
class HandoffOutcome:
    accepted: bool
    source: str
    target: Optional[str]
    breadcrumb: TranscriptItem
    result: Dict[str, Any]


class HandoffStateMachine:
    """Applies transfer tool calls to a session. Callers hold the session's state lock."""

    def __init__(self, registry: AgentRegistry):
        self.registry = registry

    def validate(self, source: Agent, target: Optional[str]) -> Agent:
        """Return the target agent or raise InvalidHandoff."""
        if not target or target not in self.registry or not source.can_hand_off_to(target):
            raise InvalidHandoff(source.name, target, source.handoffs)
        return self.registry[target]

    async def apply(self, session: "RealtimeSession", event: ToolCallRequestedEvent) -> HandoffOutcome:
        source = session.active_agent
        if source is None:
            raise RuntimeError("handoff requested before an agent was activated")
        target_name = transfer_target(event.name, event.arguments)
        log = logger.with_session(session.session_id)

        call = ToolCall(call_id=event.call_id, tool_name=event.name, arguments=event.arguments)
        session.executor.register(call)

        try:
            target = self.validate(source, target_name)
        except InvalidHandoff as e:
            result = e.to_result()
            call.resolve(result, locally=True, error=str(e))
            crumb = session.transcript.add_breadcrumb(
                f"Agent transfer rejected: {source.name} -> {target_name or '?'}",
                seq=event.seq,
                data={
                    "from_agent": source.name,
                    "to_agent": target_name,
                    "accepted": False,
                    "reason": str(e),
                },
                agent_name=source.name,
                tool_call=call,
            )
            log.warning(
                "Handoff rejected",
                call_id=event.call_id,
                from_agent=source.name,
                to_agent=target_name,
                allowed=e.allowed,
            )
            emitter.emit(
                "handoff.rejected",
                session_id=session.session_id,
                severity=Severity.WARN,
                correlation_id=event.call_id,
                from_agent=source.name,
                to_agent=target_name,
                allowed=e.allowed,
                seq=event.seq,
            )
            await session.send(tool_call_result(event.call_id, result))
            await session.send(response_create())
            return HandoffOutcome(False, source.name, target_name, crumb, result)

        crumb = session.transcript.add_breadcrumb(
            f"Agent transfer: {source.name} -> {target.name}",
            seq=event.seq,
            data={
                "from_agent": source.name,
                "to_agent": target.name,
                "accepted": True,
                "rationale": event.arguments.get("rationale_for_transfer"),
                "conversation_context": event.arguments.get("conversation_context"),
            },
            agent_name=source.name,
            tool_call=call,
        )
        session.set_active_agent(target)
        result = {"destination_agent": target.name, "did_transfer": True}
        call.resolve(result, locally=True)

        log.info(
            "Handoff applied",
            call_id=event.call_id,
            from_agent=source.name,
            to_agent=target.name,
            seq=event.seq,
        )
        emitter.emit(
            "handoff.applied",
            session_id=session.session_id,
            correlation_id=event.call_id,
            from_agent=source.name,
            to_agent=target.name,
            seq=event.seq,
        )

        await session.send(build_session_update(target, self.registry))
        await session.send(tool_call_result(event.call_id, result))
        await session.send(response_create())
        return HandoffOutcome(True, source.name, target.name, crumb, result)
