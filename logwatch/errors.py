from __future__ import annotations

from typing import Any, Dict, List, Optional


class AgentError(RuntimeError):
    """Base class for every error raised by the agent runtime."""


class BadUsage(AgentError):
    """Raised when the runtime is configured or called incorrectly."""


class ConversationError(AgentError):
    """Raised when the conversation breaks a structural invariant."""


class ToolNotFoundError(ConversationError):
    """Raised when the model requests a tool that is not registered."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' missing")


class MaxStepHitError(AgentError):
    """Raised when `max_step` completions were generated without reaching a final answer."""


class ToolArgumentsError(AgentError):
    """
    Raised when the arguments of a tool call cannot be parsed or validated.

    `details` mirrors the validation error list used in error envelopes:
    a list of `{"path": [...], "message": "..."}` dicts.
    """

    def __init__(self, tool_name: str, message: str, details: Optional[List[Dict[str, Any]]] = None):
        self.tool_name = tool_name
        self.details = details or []
        super().__init__(f"Tool '{tool_name}' arguments parsing fail: {message}")


class CompletionCancelled(AgentError):
    """Raised by a transport when the completion request was cancelled."""


class WatcherError(RuntimeError):
    """Raised when the log watcher is misconfigured."""
