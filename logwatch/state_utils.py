from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import AgentState, AssistantMessage, ToolCall, ToolMessage


@dataclass(frozen=True)
class StateUtils:
    state: AgentState

    def tool_call_origin(self, message: ToolMessage) -> Optional[ToolCall]:
        """Return the tool call, requested by the model, that `message` answers."""
        for candidate in self.state.conversation:
            if isinstance(candidate, AssistantMessage) and candidate.tool_calls:
                for call in candidate.tool_calls:
                    if call.id == message.tool_call_id:
                        return call
        return None

    def final_output(self) -> Optional[AssistantMessage]:
        """
        The final assistant answer: the last message when it is an assistant
        message without tool calls and the agent is idle.
        """
        if not self.state.conversation or self.state.status != "idle":
            return None
        last = self.state.conversation[-1]
        if isinstance(last, AssistantMessage) and not last.tool_calls:
            return last
        return None


def create_state_utils(state: AgentState) -> StateUtils:
    return StateUtils(state)
