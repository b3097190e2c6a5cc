"""
Orchestrator configuration.

Loads model endpoints, deadlines and transport settings from environment
variables. Local development values can be kept in `.env_local` / `.env.local`
at the repository root; they never override variables that are already set.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def load_env_files(root: Optional[Path] = None) -> None:
    """Best-effort loading of local env files (no override)."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _clean_env(key: str) -> Optional[str]:
    """
    Read an environment variable, stripping comments and whitespace.

    Handles cases like:
    - "30  # seconds" -> "30"
    - "   " -> None
    """
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class OrchestratorConfig:
    """Realtime orchestrator configuration."""

    # Agent set loaded at startup (orchestrator/agent_sets/<name>.yaml)
    agent_set: str = "chat_supervisor"
    company_name: str = "NewTelco"

    # OpenAI-compatible chat completions endpoint (supervisor + guardrail classifier)
    llm_api_base: str = "https://api.groq.com/openai/v1"
    llm_api_key: Optional[str] = None
    supervisor_model: str = "openai/gpt-oss-120b"
    guardrail_model: str = "llama-3.1-8b-instant"

    # Tool execution
    tool_timeout_seconds: float = 10.0
    max_tool_depth: int = 3

    # Supervisor escalation
    escalation_timeout_seconds: float = 20.0
    escalation_max_rounds: int = 10

    # Guardrails
    guardrail_timeout_seconds: float = 5.0
    guardrail_context_window: int = 4

    # LiveKit transport
    livekit_url: Optional[str] = None
    livekit_api_key: Optional[str] = None
    livekit_api_secret: Optional[str] = None
    livekit_data_topic: str = "realtime-events"

    # Control Plane API
    control_plane_host: str = "0.0.0.0"
    control_plane_port: int = 8000
    # Where LiveKit workers report their sessions (e.g. http://127.0.0.1:8000)
    control_plane_url: Optional[str] = None
    control_plane_report_interval_seconds: float = 2.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self):
        if self.escalation_max_rounds < 1:
            raise ValueError("escalation_max_rounds must be >= 1")
        if self.max_tool_depth < 1:
            raise ValueError("max_tool_depth must be >= 1")
        if self.guardrail_context_window < 0:
            raise ValueError("guardrail_context_window must be >= 0")

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load configuration from environment variables."""
        return cls(
            agent_set=os.environ.get("AGENT_SET", "chat_supervisor"),
            company_name=os.environ.get("COMPANY_NAME", "NewTelco"),
            llm_api_base=os.environ.get("LLM_API_BASE", "https://api.groq.com/openai/v1").rstrip("/"),
            llm_api_key=os.environ.get("LLM_API_KEY") or os.environ.get("GROQ_API_KEY"),
            supervisor_model=os.environ.get("SUPERVISOR_MODEL", "openai/gpt-oss-120b"),
            guardrail_model=os.environ.get("GUARDRAIL_MODEL", "llama-3.1-8b-instant"),
            tool_timeout_seconds=_parse_float_env("TOOL_TIMEOUT_SECONDS", default=10.0),
            max_tool_depth=_parse_int_env("MAX_TOOL_DEPTH", default=3),
            escalation_timeout_seconds=_parse_float_env("ESCALATION_TIMEOUT_SECONDS", default=20.0),
            escalation_max_rounds=_parse_int_env("ESCALATION_MAX_ROUNDS", default=10),
            guardrail_timeout_seconds=_parse_float_env("GUARDRAIL_TIMEOUT_SECONDS", default=5.0),
            guardrail_context_window=_parse_int_env("GUARDRAIL_CONTEXT_WINDOW", default=4),
            livekit_url=os.environ.get("LIVEKIT_URL"),
            livekit_api_key=os.environ.get("LIVEKIT_API_KEY"),
            livekit_api_secret=os.environ.get("LIVEKIT_API_SECRET"),
            livekit_data_topic=os.environ.get("LIVEKIT_DATA_TOPIC", "realtime-events"),
            control_plane_host=os.environ.get("CONTROL_PLANE_HOST", "0.0.0.0"),
            control_plane_port=_parse_int_env("CONTROL_PLANE_PORT", default=8000),
            control_plane_url=(_clean_env("CONTROL_PLANE_URL") or "").rstrip("/") or None,
            control_plane_report_interval_seconds=_parse_float_env("CONTROL_PLANE_REPORT_INTERVAL_SECONDS", default=2.0),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_json=_parse_bool_env("LOG_JSON", default=True),
        )


def get_config() -> OrchestratorConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = OrchestratorConfig.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached config (tests, reload after env change)."""
    global _config
    _config = None


# Global config instance (lazy loaded)
_config: Optional[OrchestratorConfig] = None
