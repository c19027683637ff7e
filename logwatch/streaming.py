from __future__ import annotations

from typing import Optional

from .models import AssistantMessage, CompletionChunk, FunctionCall, ToolCall


def fold_chunk(chunk: CompletionChunk, partial: Optional[AssistantMessage] = None) -> AssistantMessage:
    """
    Fold one stream fragment into the partial assistant message.

    Content is appended, never replaced. A tool-call fragment carrying an id
    starts a new call; one without an id extends the arguments of the most
    recently started call. `partial` is never mutated: a new message is returned.
    """
    message = partial.model_copy(deep=True) if partial is not None else AssistantMessage(content="")
    delta = chunk.delta

    if delta.role and delta.role != message.role:
        # Only assistant fragments are accumulated here.
        raise ValueError(f"Unexpected role '{delta.role}' in assistant stream")

    if delta.content:
        message.content = (message.content or "") + delta.content
    elif message.content is None:
        message.content = ""

    if delta.tool_calls:
        fragment = delta.tool_calls[-1]
        function = fragment.function
        tool_calls = list(message.tool_calls or [])
        if fragment.id:
            tool_calls.append(
                ToolCall(
                    id=fragment.id,
                    function=FunctionCall(
                        name=(function.name if function else None) or "",
                        arguments=(function.arguments if function else None) or "",
                    ),
                )
            )
        elif tool_calls and function and function.arguments:
            last = tool_calls[-1]
            tool_calls[-1] = last.model_copy(
                update={"function": FunctionCall(name=last.function.name, arguments=last.function.arguments + function.arguments)}
            )
        message.tool_calls = tool_calls or None

    return message
