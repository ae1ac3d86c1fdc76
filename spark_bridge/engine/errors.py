"""Exception hierarchy for the bridge engine.

Specific exceptions for each failure mode. Agent-call errors are
converted into failed AgentResult values at the session boundary,
so most of these never reach the socket handler.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ConfigError(BridgeError):
    """Configuration file or value could not be used."""


class SessionNotReadyError(BridgeError):
    """Agent call attempted before the session was started."""
    def __init__(self, reason: str = "Codex MCP server not connected"):
        self.reason = reason
        super().__init__(reason)


class AgentCallTimeoutError(BridgeError):
    """Idle watchdog aborted an in-flight agent call."""
    def __init__(self, tool_name: str, idle_seconds: float):
        self.tool_name = tool_name
        self.idle_seconds = idle_seconds
        super().__init__(
            f"Codex call '{tool_name}' timed out after "
            f"{idle_seconds:.0f}s without activity"
        )


class AgentTransportError(BridgeError):
    """Subprocess or JSON-RPC transport failure."""


class JobNotFoundError(BridgeError):
    """A continuation or apply referenced an unknown job id."""
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Request {job_id} not found. It may have expired.")


class ImageServiceConfigError(BridgeError):
    """Image generation requested without a credential."""
    def __init__(self) -> None:
        super().__init__(
            "No Gemini API key. Enter it in the overlay panel "
            "or set GEMINI_API_KEY."
        )


class ImageGenerationError(BridgeError):
    """The image generation service failed or returned nothing usable."""
