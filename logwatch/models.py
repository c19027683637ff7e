"""
Data models for the agent runtime.

Defines the conversation message variants, tool calls, stream fragments,
AgentState and the completion request sent to a transport.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Status = Literal["idle", "generating", "waiting"]


class FunctionCall(BaseModel):
    name: str
    arguments: str = ""  # serialized JSON, possibly partial while streaming


class ToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: Union[str, List[Dict[str, Any]]]
    name: Optional[str] = None
    meta: Any = None


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: Optional[str] = None
    name: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    refusal: Optional[str] = None
    meta: Any = None


class ToolMessage(BaseModel):
    role: Literal["tool"] = "tool"
    content: str
    tool_call_id: str
    meta: Any = None


class SystemMessage(BaseModel):
    role: Literal["system"] = "system"
    content: str
    name: Optional[str] = None
    meta: Any = None


class DeveloperMessage(BaseModel):
    role: Literal["developer"] = "developer"
    content: str
    name: Optional[str] = None
    meta: Any = None


ConversationMessage = Annotated[
    Union[UserMessage, AssistantMessage, ToolMessage, SystemMessage, DeveloperMessage],
    Field(discriminator="role"),
]

_conversation_adapter: TypeAdapter[List[ConversationMessage]] = TypeAdapter(List[ConversationMessage])
_message_adapter: TypeAdapter[ConversationMessage] = TypeAdapter(ConversationMessage)


def parse_message(raw: Any) -> BaseModel:
    """Accept a message model or an OpenAI-style dict."""
    if isinstance(raw, BaseModel):
        return raw
    return _message_adapter.validate_python(raw)


def parse_conversation(raw: Optional[List[Any]]) -> List[Any]:
    if not raw:
        return []
    return _conversation_adapter.validate_python([m.model_dump() if isinstance(m, BaseModel) else m for m in raw])


def strip_meta(message: BaseModel) -> Dict[str, Any]:
    """Wire form of a message: `meta` removed, unset optional fields dropped."""
    return message.model_dump(exclude={"meta"}, exclude_none=True)


def strip_conversation_meta(conversation: List[Any]) -> List[Dict[str, Any]]:
    return [strip_meta(message) for message in conversation]


class AgentState(BaseModel):
    conversation: List[ConversationMessage] = Field(default_factory=list)
    step_count: int = Field(default=0, ge=0)
    status: Status = "idle"


# --- stream fragments -----------------------------------------------------


class FunctionDelta(BaseModel):
    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallDelta(BaseModel):
    index: int = 0
    id: Optional[str] = None
    type: Optional[Literal["function"]] = None
    function: Optional[FunctionDelta] = None


class ChunkDelta(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCallDelta]] = None


class CompletionChunk(BaseModel):
    """One incremental fragment of a streamed completion (first choice only)."""

    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: Optional[str] = None

    @classmethod
    def from_openai(cls, data: Dict[str, Any]) -> "CompletionChunk":
        choices = data.get("choices") or []
        if not choices:
            return cls()
        choice = choices[0]
        return cls(delta=ChunkDelta.model_validate(choice.get("delta") or {}), finish_reason=choice.get("finish_reason"))


# --- requests -------------------------------------------------------------


class CompletionRequest(BaseModel):
    """Everything a transport needs to issue one chat completion."""

    model_config = ConfigDict(protected_namespaces=())

    instructions: Union[SystemMessage, DeveloperMessage]
    messages: List[ConversationMessage] = Field(default_factory=list)
    tools: Optional[List[Dict[str, Any]]] = None
    model_settings: Dict[str, Any] = Field(default_factory=dict)

    @property
    def stream(self) -> bool:
        return bool(self.model_settings.get("stream"))

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            **self.model_settings,
            "messages": [strip_meta(self.instructions)] + strip_conversation_meta(self.messages),
        }
        if self.tools:
            body["tools"] = self.tools
        return body
