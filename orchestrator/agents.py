"""
Agent definitions, the agent registry and agent-set loading.

Agents are data: a name, instructions, the tools the remote model may call
while the agent is active and the names of agents it may hand off to. They
are immutable once registered and the registry is frozen before the first
session starts, so sessions share it without locking.

Agent sets are stored as YAML (preferred) or JSON in `agent_sets/` and
loaded with PyYAML's safe_load, which parses both formats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import yaml


class CapabilityTier(str, Enum):
    """FAST agents hold the live conversation; ESCALATED agents answer supervisor requests."""

    FAST = "fast"
    ESCALATED = "escalated"


@dataclass(frozen=True)
class ToolSpec:
    """A tool the remote model can call, described as a JSON schema."""

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_schema(self) -> Dict[str, Any]:
        """Function-tool schema as advertised in session.update."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
        }

    def to_chat_schema(self) -> Dict[str, Any]:
        """Function-tool schema for chat completions requests."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }


@dataclass(frozen=True)
class Agent:
    """One agent configuration."""

    name: str
    instructions: str
    tools: Tuple[ToolSpec, ...] = ()
    handoffs: FrozenSet[str] = frozenset()
    capability_tier: CapabilityTier = CapabilityTier.FAST
    handoff_description: str = ""

    def __post_init__(self):
        if not self.name:
            raise ValueError("agent name is required")
        names = [t.name for t in self.tools]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Agent '{self.name}' declares duplicate tools: {', '.join(duplicates)}")

    def tool(self, name: str) -> Optional[ToolSpec]:
        for spec in self.tools:
            if spec.name == name:
                return spec
        return None

    def can_hand_off_to(self, target: str) -> bool:
        return target in self.handoffs

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Agent":
        tools = tuple(
            ToolSpec(
                name=t["name"],
                description=t.get("description", "").strip(),
                parameters=t.get("parameters") or {"type": "object", "properties": {}},
            )
            for t in data.get("tools") or []
        )
        return cls(
            name=data["name"],
            instructions=(data.get("instructions") or "").strip(),
            tools=tools,
            handoffs=frozenset(data.get("handoffs") or []),
            capability_tier=CapabilityTier(data.get("capability_tier", CapabilityTier.FAST.value)),
            handoff_description=(data.get("handoff_description") or "").strip(),
        )


class AgentRegistry:
    """Name-keyed collection of agents. Read-only after freeze()."""

    def __init__(self, agents: Iterable[Agent] = ()):
        self._agents: Dict[str, Agent] = {}
        self._frozen = False
        for agent in agents:
            self.register(agent)

    def register(self, agent: Agent) -> None:
        if self._frozen:
            raise RuntimeError("AgentRegistry is frozen")
        if agent.name in self._agents:
            raise ValueError(f"Agent '{agent.name}' is already registered")
        self._agents[agent.name] = agent

    def freeze(self) -> "AgentRegistry":
        """Validate handoff targets and make the registry read-only."""
        for agent in self._agents.values():
            unknown = sorted(t for t in agent.handoffs if t not in self._agents)
            if unknown:
                raise ValueError(
                    f"Agent '{agent.name}' hands off to unknown agents: {', '.join(unknown)}"
                )
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[Agent]:
        return self._agents.get(name)

    def __getitem__(self, name: str) -> Agent:
        return self._agents[name]

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def names(self) -> List[str]:
        return list(self._agents)

    def escalated(self) -> List[Agent]:
        return [a for a in self._agents.values() if a.capability_tier == CapabilityTier.ESCALATED]

    def reachable_from(self, name: str) -> FrozenSet[str]:
        """All agents reachable from `name` through handoff edges (including itself)."""
        seen = set()
        stack = [name]
        while stack:
            current = stack.pop()
            if current in seen or current not in self._agents:
                continue
            seen.add(current)
            stack.extend(self._agents[current].handoffs)
        return frozenset(seen)


@dataclass(frozen=True)
class AgentSet:
    """A registry plus the agent each session starts with."""

    name: str
    registry: AgentRegistry
    initial_agent: str
    supervisor_agent: Optional[str] = None


def _get_agent_sets_dir() -> Path:
    return Path(__file__).parent / "agent_sets"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Agent set file {path} must contain a mapping at top-level")
        return data


def load_agent_set_data(name: str) -> Dict[str, Any]:
    """
    Load raw agent-set configuration.

    Resolution order:
    1) <name>.yaml
    2) <name>.yml
    3) <name>.json
    4) default.yaml / default.yml / default.json
    """
    sets_dir = _get_agent_sets_dir()
    for stem in (name, "default"):
        for suffix in (".yaml", ".yml", ".json"):
            candidate = sets_dir / f"{stem}{suffix}"
            if candidate.exists():
                return _load_file(candidate)
    raise FileNotFoundError(f"No agent set named '{name}' and no default agent set in {sets_dir}")


def build_agent_set(data: Mapping[str, Any]) -> AgentSet:
    """Build and freeze a registry from agent-set configuration."""
    agents = [Agent.from_dict(a) for a in data.get("agents") or []]
    if not agents:
        raise ValueError(f"Agent set '{data.get('name')}' defines no agents")
    registry = AgentRegistry(agents).freeze()

    initial = data.get("initial_agent") or agents[0].name
    if initial not in registry:
        raise ValueError(f"initial_agent '{initial}' is not defined")

    supervisor = data.get("supervisor_agent")
    if supervisor is not None:
        agent = registry.get(supervisor)
        if agent is None:
            raise ValueError(f"supervisor_agent '{supervisor}' is not defined")
        if agent.capability_tier != CapabilityTier.ESCALATED:
            raise ValueError(f"supervisor_agent '{supervisor}' must have capability_tier 'escalated'")

    return AgentSet(
        name=data.get("name", "unnamed"),
        registry=registry,
        initial_agent=initial,
        supervisor_agent=supervisor,
    )


def load_agent_set(name: str) -> AgentSet:
    return build_agent_set(load_agent_set_data(name))
