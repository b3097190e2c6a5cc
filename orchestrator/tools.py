"""
Tool invocation executor.

Resolves tool calls requested by the remote model against the active agent's
local handlers. Every call id executes at most once: a replayed call id gets
the cached result, and a concurrent duplicate awaits the same in-flight
execution. Handler failures never escape; they become a structured error
result the model can read.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple

from logging_setup import Component, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .agents import Agent
from .errors import ToolExecutionError
from .transcript import ToolCall

if TYPE_CHECKING:
    from .session import RealtimeSession


logger = get_logger(Component.TOOL_EXECUTOR)
emitter = EventEmitter(ObsComponent.TOOL_EXECUTOR)

ToolHandler = Callable[[Dict[str, Any], "ToolContext"], Any]


@dataclass
class ToolContext:
    """What a handler gets besides its arguments."""

    session: "RealtimeSession"
    agent: Agent
    call_id: str
    depth: int
    executor: "ToolExecutor"


@dataclass(frozen=True)
class ToolRegistration:
    handler: ToolHandler
    timeout_seconds: Optional[float] = None


async def _call_handler(handler: ToolHandler, arguments: Dict[str, Any], context: ToolContext) -> Any:
    """Await coroutine handlers; plain functions run in a worker thread."""
    if inspect.iscoroutinefunction(handler):
        return await handler(arguments, context)
    outcome = await asyncio.to_thread(handler, arguments, context)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


class ToolBackend:
    """
    Local tool handlers by tool name.

    Handlers take (arguments, context) and may be plain functions or
    coroutines; plain functions run in a worker thread. Can be used as a
    decorator:

        backend = ToolBackend()

        @backend.register("lookupOrders")
        async def lookup_orders(args, ctx):
            ...
    """

    def __init__(self, handlers: Optional[Mapping[str, ToolHandler]] = None):
        self._handlers: Dict[str, ToolRegistration] = {}
        for name, handler in (handlers or {}).items():
            self.register(name, handler)

    def register(self, name: str, handler: Optional[ToolHandler] = None, *, timeout_seconds: Optional[float] = None):
        if handler is None:
            def decorator(fn: ToolHandler) -> ToolHandler:
                self.register(name, fn, timeout_seconds=timeout_seconds)
                return fn
            return decorator
        self._handlers[name] = ToolRegistration(handler, timeout_seconds)
        return handler

    def registration_for(self, name: str) -> Optional[ToolRegistration]:
        return self._handlers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def names(self) -> List[str]:
        return list(self._handlers)


class ToolExecutor:
    """At-most-once tool execution for one session."""

    def __init__(
        self,
        backend: ToolBackend,
        *,
        timeout_seconds: float = 10.0,
        max_depth: int = 3,
        session_id: str = "",
    ):
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.max_depth = max_depth
        self._calls: Dict[str, ToolCall] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self.log = logger.with_session(session_id) if session_id else logger

    def get(self, call_id: str) -> Optional[ToolCall]:
        return self._calls.get(call_id)

    def calls(self) -> List[ToolCall]:
        return list(self._calls.values())

    def register(self, call: ToolCall) -> bool:
        """Track a new call id. False when the id was already seen."""
        if call.call_id in self._calls:
            return False
        self._calls[call.call_id] = call
        return True

    def has_local_handler(self, agent: Agent, tool_name: str) -> bool:
        """A call runs locally only if the agent declares the tool and a handler exists."""
        return agent.tool(tool_name) is not None and tool_name in self.backend

    def record_remote(self, call: ToolCall) -> ToolCall:
        """Record a call that is resolved on the remote side, without executing anything."""
        self.register(call)
        call.resolve(None, locally=False)
        self.log.debug("Tool call recorded as remote", call_id=call.call_id, tool_name=call.tool_name)
        return call

    async def execute(self, call: ToolCall, agent: Agent, session: "RealtimeSession", depth: int = 0) -> Any:
        """
        Run the local handler for `call` at most once and return its result.

        Failures are returned as `{"error": {...}}` payloads, never raised.
        Cancellation (session teardown) propagates and leaves the call
        unresolved.
        """
        tracked = self._calls.setdefault(call.call_id, call)
        if tracked.resolved_once:
            self.log.debug("Tool call replayed from cache", call_id=call.call_id)
            return tracked.result

        inflight = self._inflight.get(call.call_id)
        if inflight is not None:
            return await asyncio.shield(inflight)

        future = asyncio.get_running_loop().create_future()
        self._inflight[call.call_id] = future
        try:
            result, error = await self._invoke(tracked, agent, session, depth)
        except BaseException:
            future.cancel()
            raise
        finally:
            self._inflight.pop(call.call_id, None)

        tracked.resolve(result, locally=True, error=error)
        future.set_result(result)
        return result

    async def execute_nested(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        *,
        agent: Agent,
        session: "RealtimeSession",
        parent_call_id: str,
        sub_call_id: str,
        depth: int,
    ) -> Any:
        """Resolve a tool call made inside another handler (e.g. by an escalated agent)."""
        call = ToolCall(
            call_id=f"{parent_call_id}/{sub_call_id}",
            tool_name=tool_name,
            arguments=arguments,
        )
        return await self.execute(call, agent, session, depth=depth)

    async def _invoke(
        self,
        call: ToolCall,
        agent: Agent,
        session: "RealtimeSession",
        depth: int,
    ) -> Tuple[Any, Optional[str]]:
        started = time.perf_counter()
        try:
            result = await self._run_handler(call, agent, session, depth)
            error = None
        except ToolExecutionError as e:
            result, error = e.to_result(), str(e)
        except Exception as e:
            wrapped = ToolExecutionError(call.tool_name, f"{type(e).__name__}: {e}")
            result, error = wrapped.to_result(), str(wrapped)

        latency_ms = int((time.perf_counter() - started) * 1000)
        if error:
            self.log.warning(
                "Tool call failed",
                call_id=call.call_id,
                tool_name=call.tool_name,
                depth=depth,
                error=error,
                latency_ms=latency_ms,
            )
        else:
            self.log.info(
                "Tool call resolved",
                call_id=call.call_id,
                tool_name=call.tool_name,
                depth=depth,
                latency_ms=latency_ms,
            )
        emitter.emit(
            "tool_call.resolved",
            session_id=session.session_id,
            severity=Severity.WARN if error else Severity.INFO,
            correlation_id=call.call_id,
            tool_name=call.tool_name,
            agent=agent.name,
            depth=depth,
            result="error" if error else "ok",
            latency_ms=latency_ms,
        )
        return result, error

    async def _run_handler(self, call: ToolCall, agent: Agent, session: "RealtimeSession", depth: int) -> Any:
        if depth > self.max_depth:
            raise ToolExecutionError(
                call.tool_name, f"maximum tool nesting depth {self.max_depth} exceeded"
            )
        registration = self.backend.registration_for(call.tool_name)
        if registration is None or agent.tool(call.tool_name) is None:
            raise ToolExecutionError(
                call.tool_name, f"no local handler for '{call.tool_name}' on agent '{agent.name}'"
            )

        context = ToolContext(
            session=session,
            agent=agent,
            call_id=call.call_id,
            depth=depth,
            executor=self,
        )
        timeout = registration.timeout_seconds or self.timeout_seconds
        try:
            return await asyncio.wait_for(
                _call_handler(registration.handler, dict(call.arguments), context), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise ToolExecutionError(call.tool_name, f"timed out after {timeout}s") from None
