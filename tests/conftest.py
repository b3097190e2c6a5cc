"""
Shared fixtures: clean global stores and session factories.
"""
import pytest

from control_plane.session import session_manager
from observability.event_store import event_store
from orchestrator.agents import load_agent_set
from orchestrator.channel import InMemoryChannel
from orchestrator.config import OrchestratorConfig
from orchestrator.session import build_session

from fakes import FakeClassifier, ScriptedCompletionClient, text_reply


@pytest.fixture(autouse=True)
def cleanup():
    """Clean up sessions and events between tests."""
    yield
    session_manager.clear()
    event_store.clear()


@pytest.fixture
def test_config():
    """Short deadlines so timeout paths run fast."""
    return OrchestratorConfig(
        llm_api_key="test-key",
        tool_timeout_seconds=0.5,
        max_tool_depth=3,
        escalation_timeout_seconds=0.3,
        escalation_max_rounds=10,
        guardrail_timeout_seconds=0.2,
        guardrail_context_window=4,
    )


@pytest.fixture
def make_session(test_config):
    """
    Build an unconnected session over an InMemoryChannel.

    Returns (session, channel). Guardrails default to a PASS classifier and
    escalation to a client answering "Supervisor says hi".
    """
    def _make(
        agent_set: str = "simple_handoff",
        *,
        classifier=None,
        supervisor_client=None,
        backend=None,
        config=None,
        session_id=None,
    ):
        channel = InMemoryChannel()
        session = build_session(
            channel,
            agent_set=load_agent_set(agent_set),
            config=config or test_config,
            backend=backend,
            classifier=classifier or FakeClassifier(),
            supervisor_client=supervisor_client or ScriptedCompletionClient([text_reply("Supervisor says hi")]),
            session_id=session_id,
        )
        return session, channel

    return _make
