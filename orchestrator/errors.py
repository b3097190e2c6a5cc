"""
Error taxonomy for the realtime orchestrator.

Only TransportError tears a session down. Every other error is recovered
where it happens and surfaced as data: a synthetic tool result, a breadcrumb,
an apology response or a FAIL guardrail verdict.
"""
from typing import Any, Dict, Optional, Sequence


class OrchestrationError(Exception):
    """Base class for orchestrator errors."""

    kind = "OrchestrationError"

    def to_result(self) -> Dict[str, Any]:
        """Structured payload used as a tool result when this error is surfaced to a model."""
        return {"error": {"type": self.kind, "message": str(self)}}


class TransportError(OrchestrationError):
    """The event channel dropped or rejected us. Fatal for the session."""

    kind = "TransportError"


class CredentialRejected(TransportError):
    """The ephemeral credential was refused before the channel opened."""

    kind = "CredentialRejected"


class MalformedEnvelope(OrchestrationError):
    """An inbound envelope could not be parsed into a known event."""

    kind = "MalformedEnvelope"


class InvalidHandoff(OrchestrationError):
    """A transfer named an agent outside the current agent's handoff set."""

    kind = "InvalidHandoff"

    def __init__(self, source: str, target: Optional[str], allowed: Sequence[str]):
        self.source = source
        self.target = target
        self.allowed = sorted(allowed)
        super().__init__(
            f"Agent '{source}' cannot transfer to '{target}'"
            f" (allowed: {', '.join(self.allowed) or 'none'})"
        )

    def to_result(self) -> Dict[str, Any]:
        result = super().to_result()
        result["error"]["allowed_destinations"] = self.allowed
        result["did_transfer"] = False
        return result


class ToolExecutionError(OrchestrationError):
    """A local tool handler failed, timed out or exceeded the nesting depth."""

    kind = "ToolExecutionError"

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(message)

    def to_result(self) -> Dict[str, Any]:
        result = super().to_result()
        result["error"]["tool_name"] = self.tool_name
        return result


class EscalationFailure(OrchestrationError):
    """The escalated agent did not produce a usable answer."""

    kind = "EscalationFailure"


class ClassificationError(OrchestrationError):
    """The guardrail classifier failed or returned an unknown category."""

    kind = "ClassificationError"


class TransportErrorCategory:
    """Stable transport error categories used in events and logs."""

    AUTH_FAILED = "transport.auth_failed"
    NETWORK_ERROR = "transport.network_error"
    CLOSED = "transport.closed"
    UNKNOWN_ERROR = "transport.unknown_error"


class TransportErrorHandler:
    """Maps transport failures to stable categories without raising."""

    @staticmethod
    def classify_error(error: BaseException) -> str:
        """Classify a transport failure into a stable category string."""
        if isinstance(error, CredentialRejected):
            return TransportErrorCategory.AUTH_FAILED

        error_str = str(error).lower()

        if "auth" in error_str or "unauthorized" in error_str or "401" in error_str or "token" in error_str:
            return TransportErrorCategory.AUTH_FAILED

        if isinstance(error, (ConnectionError, TimeoutError)):
            return TransportErrorCategory.NETWORK_ERROR
        if "network" in error_str or "timeout" in error_str or "connection" in error_str:
            return TransportErrorCategory.NETWORK_ERROR

        if "closed" in error_str or "disconnected" in error_str or "eof" in error_str:
            return TransportErrorCategory.CLOSED

        return TransportErrorCategory.UNKNOWN_ERROR

    @staticmethod
    def redacted_detail(error: BaseException) -> str:
        """Error text safe to put in events (no credentials)."""
        detail = str(error)
        lowered = detail.lower()
        if "secret" in lowered or "password" in lowered or "key" in lowered or "token" in lowered:
            return "[redacted: potential secret]"
        return detail
