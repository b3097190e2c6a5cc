"""
Supervisor escalation.

The fast conversational agent calls `getNextResponseFromSupervisor` when a
request needs more than small talk. The handler hands the whole conversation
plus the fast agent's notes to the escalated agent in a single non-streaming
exchange, resolves any tools the escalated agent calls through the session's
tool executor, and returns the text the fast agent should say next.

Any failure degrades to an apology. The conversation keeps going either way.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List, Optional, Protocol

from logging_setup import Component, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .agents import Agent, AgentRegistry
from .errors import EscalationFailure
from .llm_client import ChatCompletion, LLMRequestError
from .tools import ToolBackend, ToolContext


logger = get_logger(Component.SUPERVISOR)
emitter = EventEmitter(ObsComponent.SUPERVISOR)

ESCALATION_TOOL_NAME = "getNextResponseFromSupervisor"
CONTEXT_ARGUMENT = "relevantContextFromLastUserMessage"

DEFAULT_APOLOGY = (
    "I'm sorry, I'm having trouble answering that right now. "
    "Could you give me a moment and ask again?"
)


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> ChatCompletion:
        ...


def build_escalation_prompt(history: List[Dict[str, str]], relevant_context: str) -> str:
    return (
        "==== Conversation History ====\n"
        f"{json.dumps(history, ensure_ascii=False, indent=2)}\n\n"
        "==== Relevant Context From Last User Message ====\n"
        f"{relevant_context or '(none)'}\n"
    )


class SupervisorEscalation:
    """Handler for the reserved escalation tool."""

    def __init__(
        self,
        registry: AgentRegistry,
        supervisor_agent: str,
        client: CompletionClient,
        *,
        timeout_seconds: float = 20.0,
        max_rounds: int = 10,
        apology: str = DEFAULT_APOLOGY,
    ):
        if supervisor_agent not in registry:
            raise ValueError(f"Unknown supervisor agent '{supervisor_agent}'")
        self.registry = registry
        self.supervisor_agent = supervisor_agent
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.max_rounds = max_rounds
        self.apology = apology

    def install(self, backend: ToolBackend) -> None:
        # The handler enforces its own deadline; the executor limit only catches a stuck handler.
        backend.register(ESCALATION_TOOL_NAME, self.handle, timeout_seconds=self.timeout_seconds + 1.0)

    async def handle(self, arguments: Dict[str, Any], ctx: ToolContext) -> Dict[str, str]:
        session_id = ctx.session.session_id
        log = logger.with_session(session_id)
        relevant_context = str(arguments.get(CONTEXT_ARGUMENT) or "")
        started = time.perf_counter()

        emitter.emit(
            "escalation.started",
            session_id=session_id,
            correlation_id=ctx.call_id,
            from_agent=ctx.agent.name,
            supervisor=self.supervisor_agent,
            depth=ctx.depth,
        )

        try:
            text = await asyncio.wait_for(
                self.escalate(ctx, relevant_context, max_rounds=self.max_rounds),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._fail(ctx, "timeout", f"no answer within {self.timeout_seconds}s", started)
        except (EscalationFailure, LLMRequestError) as e:
            return self._fail(ctx, type(e).__name__, str(e), started)
        except Exception as e:
            log.exception("Unexpected escalation error", call_id=ctx.call_id)
            return self._fail(ctx, type(e).__name__, str(e), started)

        latency_ms = int((time.perf_counter() - started) * 1000)
        log.info("Escalation completed", call_id=ctx.call_id, latency_ms=latency_ms)
        emitter.emit(
            "escalation.completed",
            session_id=session_id,
            correlation_id=ctx.call_id,
            supervisor=self.supervisor_agent,
            latency_ms=latency_ms,
        )
        return {"nextResponse": text}

    async def escalate(self, ctx: ToolContext, relevant_context: str, *, max_rounds: int) -> str:
        """
        Run the exchange with the escalated agent.

        Each round either ends with a text answer or with tool calls whose
        results are fed back for the next round. Raises EscalationFailure
        when `max_rounds` rounds pass without a final answer.
        """
        supervisor: Agent = self.registry[self.supervisor_agent]
        history = ctx.session.transcript.conversation_history()
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": supervisor.instructions},
            {"role": "user", "content": build_escalation_prompt(history, relevant_context)},
        ]
        tools = [t.to_chat_schema() for t in supervisor.tools] or None

        for round_no in range(1, max_rounds + 1):
            completion = await self.client.complete(messages, tools=tools)
            if not completion.tool_calls:
                text = completion.text.strip()
                if not text:
                    raise EscalationFailure("supervisor returned an empty answer")
                return text

            messages.append(completion.assistant_message())
            for call in completion.tool_calls:
                result = await ctx.executor.execute_nested(
                    call.name,
                    call.arguments,
                    agent=supervisor,
                    session=ctx.session,
                    parent_call_id=ctx.call_id,
                    sub_call_id=f"{round_no}:{call.id}",
                    depth=ctx.depth + 1,
                )
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": json.dumps(result, ensure_ascii=False, default=str),
                })

        raise EscalationFailure(f"no final answer after {max_rounds} rounds")

    def _fail(self, ctx: ToolContext, reason: str, detail: str, started: float) -> Dict[str, str]:
        latency_ms = int((time.perf_counter() - started) * 1000)
        logger.with_session(ctx.session.session_id).warning(
            "Escalation failed, answering with apology",
            call_id=ctx.call_id,
            reason=reason,
            detail=detail,
            latency_ms=latency_ms,
        )
        emitter.emit(
            "escalation.failed",
            session_id=ctx.session.session_id,
            severity=Severity.WARN,
            correlation_id=ctx.call_id,
            supervisor=self.supervisor_agent,
            reason=reason,
            latency_ms=latency_ms,
        )
        return {"nextResponse": self.apology}
