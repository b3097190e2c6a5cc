"""
Realtime agent orchestration engine.

Turns the inbound event stream of a live voice conversation into ordered
conversation state, keeps exactly one active agent per session, executes
tool calls and agent handoffs at most once, escalates hard questions to a
supervisor agent and moderates every finalized assistant message.

Audio I/O, UI rendering and credential minting live outside this package;
the realtime transport is consumed through the Channel protocol.
"""

from .agents import Agent, AgentRegistry, AgentSet, CapabilityTier, ToolSpec, load_agent_set
from .channel import Channel, InMemoryChannel
from .config import OrchestratorConfig, get_config
from .errors import (
    ClassificationError,
    CredentialRejected,
    EscalationFailure,
    InvalidHandoff,
    MalformedEnvelope,
    OrchestrationError,
    ToolExecutionError,
    TransportError,
)
from .session import RealtimeSession, SessionStatus, build_session
from .transcript import (
    GuardrailCategory,
    GuardrailResult,
    GuardrailStatus,
    ItemKind,
    ItemStatus,
    ToolCall,
    TranscriptItem,
    TranscriptStore,
)

__all__ = [
    "Agent",
    "AgentRegistry",
    "AgentSet",
    "CapabilityTier",
    "Channel",
    "ClassificationError",
    "CredentialRejected",
    "EscalationFailure",
    "GuardrailCategory",
    "GuardrailResult",
    "GuardrailStatus",
    "InMemoryChannel",
    "InvalidHandoff",
    "ItemKind",
    "ItemStatus",
    "MalformedEnvelope",
    "OrchestrationError",
    "OrchestratorConfig",
    "RealtimeSession",
    "SessionStatus",
    "ToolCall",
    "ToolExecutionError",
    "ToolSpec",
    "TranscriptItem",
    "TranscriptStore",
    "TransportError",
    "build_session",
    "get_config",
    "load_agent_set",
]
