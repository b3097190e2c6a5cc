"""
Realtime conversation session.

One session owns its transcript, its tool executor (and with it the set of
resolved call ids), its active agent and its background tasks. All state
changes go through the session's state lock. Once the session is
DISCONNECTED nothing is applied any more: background tasks are cancelled
and late results are dropped.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine, Dict, Optional, Set

from logging_setup import Component, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .agents import Agent, AgentSet, load_agent_set
from .channel import Channel
from .config import OrchestratorConfig, get_config
from .dispatcher import EventDispatcher
from .envelopes import conversation_item_create, response_create
from .errors import CredentialRejected, TransportError, TransportErrorHandler
from .guardrails import Classifier, GuardrailPipeline, LLMGuardrailClassifier
from .handoff import HandoffStateMachine, build_session_update
from .llm_client import ChatCompletionClient
from .supervisor import CompletionClient, SupervisorEscalation
from .tool_backends import backend_for
from .tools import ToolBackend, ToolExecutor
from .transcript import TranscriptStore


logger = get_logger(Component.ORCHESTRATOR)
emitter = EventEmitter(ObsComponent.ORCHESTRATOR)

CredentialProvider = Callable[[], Awaitable[str]]


class SessionStatus(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class RealtimeSession:
    """A live conversation between one user and the agents of one agent set."""

    def __init__(
        self,
        *,
        agent_set: AgentSet,
        channel: Channel,
        executor: ToolExecutor,
        guardrails: GuardrailPipeline,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"
        self.agent_set = agent_set
        self.registry = agent_set.registry
        self.channel = channel
        self.executor = executor
        self.guardrails = guardrails
        self.handoffs = HandoffStateMachine(agent_set.registry)
        self.transcript = TranscriptStore(self.session_id)

        self.status = SessionStatus.DISCONNECTED
        self.active_agent: Optional[Agent] = None
        self.sequence_counter = 0
        self.state_lock = asyncio.Lock()

        self.created_at = datetime.now(timezone.utc)
        self.connected_at: Optional[datetime] = None
        self.disconnected_at: Optional[datetime] = None
        self.disconnect_reason: Optional[str] = None

        self.dispatcher = EventDispatcher(self)
        self._tasks: Set[asyncio.Task] = set()
        self.log = logger.with_session(self.session_id)

    # --- state ---

    @property
    def is_live(self) -> bool:
        return self.status != SessionStatus.DISCONNECTED

    def next_sequence(self) -> int:
        self.sequence_counter += 1
        return self.sequence_counter

    def set_active_agent(self, agent: Agent) -> None:
        if agent.name not in self.registry:
            raise ValueError(f"Agent '{agent.name}' is not part of agent set '{self.agent_set.name}'")
        self.active_agent = agent

    def snapshot(self) -> Dict[str, Any]:
        """Plain, JSON-ready view of the session for the Control Plane."""
        active = self.active_agent
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "agent_set": self.agent_set.name,
            "active_agent": active.name if active else None,
            "created_at": self.created_at.isoformat(),
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "disconnected_at": self.disconnected_at.isoformat() if self.disconnected_at else None,
            "disconnect_reason": self.disconnect_reason,
            "sequence_counter": self.sequence_counter,
            "agents": self.registry.names(),
            "reachable_agents": sorted(self.registry.reachable_from(active.name)) if active else [],
            "pending_background_tasks": self.background_tasks,
            "unresolved_tool_calls": [c.call_id for c in self.executor.calls() if not c.resolved_once],
            "transcript": [item.to_dict() for item in self.transcript.items()],
        }

    def _transition(self, new_status: SessionStatus, reason: Optional[str] = None) -> SessionStatus:
        old_status = self.status
        self.status = new_status
        self.log.info(
            "Session status changed",
            from_status=old_status.value,
            to_status=new_status.value,
            reason=reason,
        )
        emitter.emit(
            "session.status_changed",
            session_id=self.session_id,
            from_status=old_status.value,
            to_status=new_status.value,
            reason=reason,
            agent_set=self.agent_set.name,
        )
        return old_status

    @asynccontextmanager
    async def commit(self) -> AsyncIterator[bool]:
        """Hold the state lock; yields whether changes may still be applied."""
        async with self.state_lock:
            yield self.is_live

    # --- lifecycle ---

    async def connect(self, credentials: Optional[CredentialProvider] = None) -> None:
        """
        Open the channel and activate the initial agent.

        Raises TransportError (or CredentialRejected) and returns to
        DISCONNECTED when the credential is refused or the channel fails.
        """
        if self.status != SessionStatus.DISCONNECTED:
            raise RuntimeError(f"connect() called in status {self.status.value}")
        self._transition(SessionStatus.CONNECTING)

        try:
            credential = await credentials() if credentials is not None else None
            await self.channel.open(credential)
        except TransportError as e:
            self._fail_connect(e)
            raise
        except Exception as e:
            error = TransportError(f"channel open failed: {type(e).__name__}: {e}")
            self._fail_connect(error)
            raise error from e

        initial = self.registry[self.agent_set.initial_agent]
        async with self.state_lock:
            self.set_active_agent(initial)
            self.connected_at = datetime.now(timezone.utc)
            self._transition(SessionStatus.CONNECTED, reason="channel_open")
        try:
            await self.send(build_session_update(initial, self.registry))
        except TransportError as e:
            await self.disconnect(TransportErrorHandler.classify_error(e), error=e)
            raise

    def _fail_connect(self, error: TransportError) -> None:
        category = TransportErrorHandler.classify_error(error)
        self.log.warning(
            "Session connect failed",
            category=category,
            credential_rejected=isinstance(error, CredentialRejected),
            detail=TransportErrorHandler.redacted_detail(error),
        )
        self.disconnect_reason = category
        self.disconnected_at = datetime.now(timezone.utc)
        self._transition(SessionStatus.DISCONNECTED, reason=category)

    async def run(self) -> None:
        """Read the channel until it ends or fails, then tear the session down."""
        if self.status != SessionStatus.CONNECTED:
            raise RuntimeError("run() requires a connected session")

        processor = asyncio.create_task(self.dispatcher.process(), name=f"dispatch:{self.session_id}")
        reason = "remote_closed"
        error: Optional[BaseException] = None
        try:
            async for raw in self.channel:
                self.dispatcher.dispatch(raw)
                if not self.is_live:
                    break
            if self.is_live:
                await self.dispatcher.drain()
        except Exception as e:
            reason = TransportErrorHandler.classify_error(e)
            error = e
        finally:
            processor.cancel()
            try:
                await processor
            except asyncio.CancelledError:
                pass
            discarded = self.dispatcher.discard_pending()
            if discarded:
                self.log.debug("Queued events discarded at teardown", count=discarded)
            await self.disconnect(reason, error=error)

    async def disconnect(self, reason: str = "client_disconnect", error: Optional[BaseException] = None) -> None:
        """
        Tear down: DISCONNECTED, background tasks cancelled, channel closed.

        Outstanding tool calls stay unresolved. Calling it again is a no-op.
        """
        if self.status == SessionStatus.DISCONNECTED:
            return
        self.disconnect_reason = reason
        self.disconnected_at = datetime.now(timezone.utc)
        self._transition(SessionStatus.DISCONNECTED, reason=reason)

        if error is not None:
            emitter.emit(
                "channel.error",
                session_id=self.session_id,
                severity=Severity.ERROR,
                category=reason,
                detail=TransportErrorHandler.redacted_detail(error),
                fatal=True,
            )

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        try:
            await self.channel.close()
        except Exception as e:
            self.log.warning("Channel close failed", error=str(e), error_type=type(e).__name__)

        unresolved = [c.call_id for c in self.executor.calls() if not c.resolved_once]
        if unresolved:
            self.log.info("Tool calls left unresolved", call_ids=unresolved)

    # --- outbound ---

    async def send(self, command: Dict[str, Any]) -> None:
        """Send one outbound command. Channel failures become TransportError."""
        if not self.is_live:
            raise TransportError("session is disconnected")
        try:
            await self.channel.send(command)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"send failed: {type(e).__name__}: {e}") from e

    async def send_user_text(self, text: str) -> None:
        """Inject a user turn (e.g. a simulated first message) and ask for a response."""
        await self.send(conversation_item_create(text, role="user"))
        await self.send(response_create())

    # --- background work ---

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> Optional[asyncio.Task]:
        """Start tracked background work. Nothing starts once disconnected."""
        if not self.is_live:
            coro.close()
            return None
        task = asyncio.create_task(coro, name=f"{name}:{self.session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error(
                "Background task failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    @property
    def background_tasks(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def wait_idle(self) -> None:
        """Wait for queued events and background work to finish (tests, graceful shutdown)."""
        while True:
            if self.is_live:
                await self.dispatcher.drain()
            pending = [t for t in self._tasks if not t.done()]
            if not pending and (not self.is_live or not self.dispatcher.pending):
                return
            await asyncio.gather(*pending, return_exceptions=True)


def build_session(
    channel: Channel,
    *,
    agent_set: Optional[AgentSet] = None,
    config: Optional[OrchestratorConfig] = None,
    backend: Optional[ToolBackend] = None,
    supervisor_client: Optional[CompletionClient] = None,
    classifier: Optional[Classifier] = None,
    session_id: Optional[str] = None,
) -> RealtimeSession:
    """Wire a session from config: agent set, tool backend, escalation and guardrails."""
    config = config or get_config()
    agent_set = agent_set or load_agent_set(config.agent_set)
    backend = backend if backend is not None else backend_for(agent_set.name)
    session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"

    if agent_set.supervisor_agent:
        client = supervisor_client or ChatCompletionClient(
            config.llm_api_base,
            config.llm_api_key,
            config.supervisor_model,
            timeout_seconds=config.escalation_timeout_seconds,
        )
        SupervisorEscalation(
            agent_set.registry,
            agent_set.supervisor_agent,
            client,
            timeout_seconds=config.escalation_timeout_seconds,
            max_rounds=config.escalation_max_rounds,
        ).install(backend)

    if classifier is None:
        classifier = LLMGuardrailClassifier(
            ChatCompletionClient(
                config.llm_api_base,
                config.llm_api_key,
                config.guardrail_model,
                timeout_seconds=config.guardrail_timeout_seconds,
                temperature=0.0,
            ),
            company_name=config.company_name,
        )

    executor = ToolExecutor(
        backend,
        timeout_seconds=config.tool_timeout_seconds,
        max_depth=config.max_tool_depth,
        session_id=session_id,
    )
    guardrails = GuardrailPipeline(
        classifier,
        timeout_seconds=config.guardrail_timeout_seconds,
        context_window=config.guardrail_context_window,
    )
    return RealtimeSession(
        agent_set=agent_set,
        channel=channel,
        executor=executor,
        guardrails=guardrails,
        session_id=session_id,
    )
