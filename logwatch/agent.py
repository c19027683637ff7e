"""
Agent runtime: conversation state, the step/tool-call loop and the public
control surface (send_user_message, step, stop, reset, set_options, on).

One step call runs turns until the conversation needs nothing more from the
model, a stop is requested, or `max_step` completions were generated. A turn
either requests a completion or answers the pending tool calls of the last
assistant message, then loops.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .errors import BadUsage, CompletionCancelled, ConversationError, MaxStepHitError, ToolNotFoundError
from .events import (
    REASON_AI_MESSAGE,
    REASON_PARTIAL_AI_MESSAGE,
    REASON_TOOL_CALL,
    REASON_USER_MESSAGE,
    EventKind,
    EventRegistry,
    is_skip,
    resolve,
)
from .models import (
    AgentState,
    AssistantMessage,
    CompletionChunk,
    CompletionRequest,
    DeveloperMessage,
    Status,
    SystemMessage,
    ToolCall,
    ToolMessage,
    UserMessage,
    parse_conversation,
    parse_message,
)
from .providers import BaseTransport, CancelToken
from .store import Store
from .streaming import fold_chunk
from .tools import Tool, parse_arguments, stringify_result, tools_to_params

logger = logging.getLogger("logwatch")

DEFAULT_SKIP_TOOL_STRING = (
    "Info: this tool execution has been canceled. "
    "Do not assume it has been processed and inform the user that you are aware of it."
)

ProcessChunk = Callable[[CompletionChunk, AssistantMessage], Union[CompletionChunk, Awaitable[CompletionChunk]]]


@dataclass(frozen=True)
class StepOptions:
    """
    Options controlling one step call.

    max_step: completions allowed before MaxStepHitError (default 10).
    reset_step_count_after_user_message: reset `step_count` when the last
        message is from the user; recommended for conversational agents.
    unanswered_tool_behaviour: "answer" leaves tool calls interrupted by
        `stop()` pending; "skip" answers them with `skip_tool_string`.
    """

    max_step: int = 10
    reset_step_count_after_user_message: bool = True
    unanswered_tool_behaviour: str = "answer"
    skip_tool_string: str = DEFAULT_SKIP_TOOL_STRING

    def validate(self) -> "StepOptions":
        if self.max_step <= 0:
            raise BadUsage(f"field 'max_step' of 'StepOptions' cannot be less than or equal to 0. Received '{self.max_step}'")
        if self.unanswered_tool_behaviour not in ("answer", "skip"):
            raise BadUsage(
                f"field 'unanswered_tool_behaviour' must be 'answer' or 'skip'. Received '{self.unanswered_tool_behaviour}'"
            )
        return self


def merge_step_options(base: StepOptions, overrides: Dict[str, Any]) -> StepOptions:
    known = {f.name for f in fields(StepOptions)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise BadUsage(f"Unknown step options: {', '.join(unknown)}")
    return replace(base, **overrides).validate()


@dataclass
class AgentOptions:
    name: str
    instructions: str
    tools: List[Tool] = field(default_factory=list)
    # Request settings sent with every completion (model, temperature, stream, ...).
    model_settings: Dict[str, Any] = field(default_factory=dict)
    use_developer_role: bool = False
    step_options: Union[StepOptions, Dict[str, Any]] = field(default_factory=StepOptions)
    store: Optional[Store] = None
    initial_conversation: Optional[List[Any]] = None


SETTABLE_OPTIONS = ("instructions", "tools", "model_settings", "use_developer_role", "step_options")


class AgentContext:
    """
    Context of the agent which triggered the event or tool.

    Read accessors always reflect the agent's current state and options.
    Mutations go through the setters the owning agent injected.
    """

    def __init__(
        self,
        get_state: Callable[[], AgentState],
        get_options: Callable[[], AgentOptions],
        store: Optional[Store],
        global_store: Optional[Store],
        set_instructions: Callable[[str], None],
        set_options: Callable[..., None],
        stop: Callable[[], None],
    ) -> None:
        self._get_state = get_state
        self._get_options = get_options
        self._store = store
        self._global_store = global_store
        self._set_instructions = set_instructions
        self._set_options = set_options
        self._stop = stop

    @property
    def state(self) -> AgentState:
        return self._get_state()

    @property
    def options(self) -> AgentOptions:
        return self._get_options()

    @property
    def store(self) -> Optional[Store]:
        """The agent's local store."""
        return self._store

    @property
    def global_store(self) -> Optional[Store]:
        """The store shared by every agent of the same Runtime."""
        return self._global_store

    def set_instructions(self, instructions: str) -> None:
        self._set_instructions(instructions)

    def set_options(self, **options: Any) -> None:
        """Update the agent's options (`name` and `store` cannot be changed)."""
        self._set_options(**options)

    def stop(self) -> None:
        self._stop()


@dataclass(frozen=True)
class RawMethods:
    set_idle: Callable[[], Awaitable[None]]
    set_waiting: Callable[[], Awaitable[None]]
    set_generating: Callable[[], Awaitable[None]]
    dispatch_state: Callable[[AgentState], Awaitable[None]]


class AgentRawContext(AgentContext):
    """Context handed to `Agent.raw` callbacks, with privileged state access."""

    def __init__(self, *args: Any, raw: RawMethods) -> None:
        super().__init__(*args)
        self._raw = raw

    @property
    def raw(self) -> RawMethods:
        return self._raw


class _Generation:
    """Tracks the assistant message committed by `call_api` during one turn."""

    def __init__(self) -> None:
        self.message: Optional[AssistantMessage] = None


class Agent:
    def __init__(
        self,
        options: AgentOptions,
        transport: BaseTransport,
        global_store: Optional[Store] = None,
    ) -> None:
        step_options = options.step_options
        if isinstance(step_options, dict):
            step_options = merge_step_options(StepOptions(), step_options)
        else:
            step_options.validate()
        tools = list(options.tools or [])
        _check_tool_names(tools)

        self._options = replace(
            options,
            tools=tools,
            model_settings=dict(options.model_settings or {}),
            step_options=step_options,
            initial_conversation=None,
        )
        self._transport = transport
        self._global_store = global_store
        self._events = EventRegistry()
        self._tool_params = tools_to_params(tools)
        self._state = AgentState(conversation=parse_conversation(options.initial_conversation))
        self._cancel: Optional[CancelToken] = None
        self._stop_requested = False
        self._running = False
        self._completions = 0
        self._context = AgentContext(*self._context_args())

    def _context_args(self) -> Tuple[Any, ...]:
        return (
            lambda: self._state,
            lambda: self._options,
            self._options.store,
            self._global_store,
            self._set_instructions,
            self._merge_options,
            self.stop,
        )

    # --- accessors ------------------------------------------------------------

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def options(self) -> AgentOptions:
        return self._options

    @property
    def context(self) -> AgentContext:
        return self._context

    @property
    def name(self) -> str:
        return self._options.name

    # --- options --------------------------------------------------------------

    def set_options(self, **options: Any) -> None:
        """
        Update the agent's options.

        Only allowed while the agent is idle. `name`, `store` and
        `initial_conversation` cannot be changed.
        """
        if self._state.status != "idle":
            raise BadUsage(
                f"Cannot change options while agent is '{self._state.status}'. "
                "Options can only be changed when agent status is 'idle'."
            )
        self._merge_options(**options)

    def _merge_options(self, **options: Any) -> None:
        unknown = sorted(set(options) - set(SETTABLE_OPTIONS))
        if unknown:
            raise BadUsage(f"Options cannot be set: {', '.join(unknown)}")

        if "step_options" in options:
            step_options = options["step_options"]
            if isinstance(step_options, dict):
                options["step_options"] = merge_step_options(self._options.step_options, step_options)
            else:
                step_options.validate()
        if "tools" in options:
            options["tools"] = list(options["tools"] or [])
            _check_tool_names(options["tools"])
            self._tool_params = tools_to_params(options["tools"])
        if "model_settings" in options:
            options["model_settings"] = dict(options["model_settings"] or {})
        self._options = replace(self._options, **options)

    def _set_instructions(self, instructions: str) -> None:
        self._options = replace(self._options, instructions=instructions)

    # --- events ---------------------------------------------------------------

    def on(self, kind: Union[EventKind, str], callback: Callable[..., Any]) -> Callable[[], None]:
        """
        Register a handler for a given event kind.
        Returns an unsubscribe function that removes the registered handler.
        """
        return self._events.on(kind, callback)

    def on_tool_call(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """`callback(params, tool, context)`: return the tool result or skip()."""
        return self.on(EventKind.TOOL_CALL, callback)

    def on_ai_message(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """`callback(message, is_partial, context)`: return a replacement message or skip()."""
        return self.on(EventKind.AI_MESSAGE, callback)

    def on_user_message(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """`callback(message, context)`: return a replacement message or skip()."""
        return self.on(EventKind.USER_MESSAGE, callback)

    def on_model_invocation(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """`callback(call_api, context)`: return the final assistant message or skip()."""
        return self.on(EventKind.MODEL_INVOCATION, callback)

    def on_after_state_update(self, callback: Callable[..., Any]) -> Callable[[], None]:
        return self.on(EventKind.AFTER_STATE_UPDATE, callback)

    def on_after_conversation_update(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """`callback(reason, context)`, run after every conversation change."""
        return self.on(EventKind.AFTER_CONVERSATION_UPDATE, callback)

    # --- state transitions ----------------------------------------------------

    async def _update_state(self, update: Callable[[AgentState], AgentState]) -> None:
        self._state = update(self._state)
        await self._events.notify(EventKind.AFTER_STATE_UPDATE, self._context)

    async def _set_status(self, status: Status) -> None:
        await self._update_state(lambda prev: prev.model_copy(update={"status": status}))

    async def _append(self, message: Any, reason: str, *, replace_last: bool = False, step_increment: int = 0) -> None:
        def apply(prev: AgentState) -> AgentState:
            conversation = list(prev.conversation)
            if replace_last:
                conversation = conversation[:-1]
            conversation.append(message)
            return prev.model_copy(update={"conversation": conversation, "step_count": prev.step_count + step_increment})

        await self._update_state(apply)
        await self._events.notify(EventKind.AFTER_CONVERSATION_UPDATE, reason, self._context)

    async def _commit(self, message: AssistantMessage, *, replace_last: bool = False) -> None:
        """Append a complete assistant message; counts as one step."""
        await self._append(message, REASON_AI_MESSAGE, replace_last=replace_last, step_increment=1)
        self._completions += 1

    # --- public control surface -----------------------------------------------

    def reset_step_count(self) -> None:
        self._state = self._state.model_copy(update={"step_count": 0})

    async def reset(self, initial_conversation: Optional[List[Any]] = None) -> AgentState:
        if self._state.status != "idle":
            raise BadUsage(
                f"Cannot reset while agent is '{self._state.status}'. "
                "Agent can only be reset when agent status is 'idle'."
            )
        conversation = parse_conversation(initial_conversation)
        await self._update_state(lambda _: AgentState(conversation=conversation, step_count=0, status="idle"))
        return self._state

    def stop(self) -> None:
        """
        Stop the current step call.

        Aborts an in-flight completion request and prevents further tool
        execution. Has no effect when no step call is running.
        """
        if not self._running:
            return
        self._stop_requested = True
        if self._cancel is not None:
            self._cancel.cancel()

    async def send_user_message(
        self,
        content: Any,
        *,
        name: Optional[str] = None,
        meta: Any = None,
        step: Optional[Dict[str, Any]] = None,
    ) -> AgentState:
        """
        Append a user message (after the userMessage chain) and step.

        A `stop()` issued from a userMessage callback keeps the message but
        prevents the completion.
        """
        self._running = True
        try:
            message = UserMessage(content=content, name=name, meta=meta)
            message = parse_message(await self._events.transform(EventKind.USER_MESSAGE, message, self._context))
            if not isinstance(message, UserMessage):
                raise BadUsage("'userMessage' events must return a user message or skip()")
            await self._append(message, REASON_USER_MESSAGE)
            return await self.step(**(step or {}))
        finally:
            self._running = False
            self._stop_requested = False

    async def step(self, by: Optional[int] = None, **overrides: Any) -> AgentState:
        """
        Run turns until no tool call is pending, a stop is requested or the
        step limit is hit.

        `by` limits the number of completions generated by this call; other
        keyword arguments override the agent's StepOptions for this call only.
        """
        if by is not None and by <= 0:
            raise BadUsage(f"field 'by' of 'step' cannot be less than or equal to 0. Received '{by}'")
        step_options = merge_step_options(self._options.step_options, overrides) if overrides else self._options.step_options

        if not self._state.conversation:
            return self._state

        start = self._completions

        def should_stop() -> bool:
            return by is not None and self._completions - start >= by

        self._running = True
        try:
            await self._run(step_options, should_stop)
        except BaseException:
            # Includes task cancellation (timeouts), which must not leave the agent busy.
            if self._state.status != "idle":
                await self._set_status("idle")
            raise
        finally:
            self._cancel = None
            self._stop_requested = False
            self._running = False
        return self._state

    async def raw(self, callback: Callable[..., Any]) -> AgentState:
        """
        Run `callback(transport, raw_context)` and adopt the AgentState it returns.

        The raw context can set the status and dispatch whole states, bypassing
        the step loop.
        """

        async def dispatch_state(state: AgentState) -> None:
            await self._update_state(lambda _: state)

        context = AgentRawContext(
            *self._context_args(),
            raw=RawMethods(
                set_idle=lambda: self._set_status("idle"),
                set_waiting=lambda: self._set_status("waiting"),
                set_generating=lambda: self._set_status("generating"),
                dispatch_state=dispatch_state,
            ),
        )
        new_state = await resolve(callback(self._transport, context))
        await dispatch_state(new_state)
        return self._state

    # --- step loop ------------------------------------------------------------

    async def _run(self, step_options: StepOptions, should_stop: Callable[[], bool]) -> None:
        turn = 0
        while True:
            if self._stop_requested:
                logger.debug("agent=%s stop requested before turn=%s", self.name, turn)
                return

            last = self._state.conversation[-1] if self._state.conversation else None
            if step_options.reset_step_count_after_user_message and isinstance(last, UserMessage) and self._state.step_count:
                await self._update_state(lambda prev: prev.model_copy(update={"step_count": 0}))
            if self._state.step_count >= step_options.max_step:
                raise MaxStepHitError(
                    f"Agent '{self.name}' reached max_step={step_options.max_step} without a final answer"
                )

            self._cancel = CancelToken()
            should_generate, pending = _plan_turn(self._state.conversation)
            logger.debug(
                "agent=%s turn=%s step_count=%s generate=%s pending=%s",
                self.name,
                turn,
                self._state.step_count,
                should_generate,
                len(pending),
            )

            if should_generate:
                try:
                    pending = await self._generate()
                except CompletionCancelled:
                    if not self._stop_requested:
                        raise
                    logger.warning("agent=%s completion cancelled", self.name)
                    await self._set_status("idle")
                    return

            if not pending:
                await self._set_status("idle")
                return

            await self._answer_tool_calls(pending, step_options)
            await self._set_status("idle")
            if should_stop():
                return
            turn += 1

    async def _generate(self) -> List[ToolCall]:
        generation = _Generation()

        async def call_api(
            process_chunk: Optional[ProcessChunk] = None,
            model_settings: Optional[Dict[str, Any]] = None,
            transport: Optional[BaseTransport] = None,
        ) -> AssistantMessage:
            message = await self._call_api(process_chunk, model_settings, transport)
            generation.message = message
            return message

        result = await self._events.first_result(EventKind.MODEL_INVOCATION, call_api, self._context)
        if is_skip(result):
            message = await call_api()
        else:
            message = parse_message(result)
            if not isinstance(message, AssistantMessage):
                raise BadUsage("'modelInvocation' events must return an assistant message or skip()")
            if generation.message is None:
                await self._commit(message)
            elif message is not generation.message:
                await self._append(message, REASON_AI_MESSAGE, replace_last=True)
        return list(message.tool_calls or [])

    async def _call_api(
        self,
        process_chunk: Optional[ProcessChunk],
        model_settings: Optional[Dict[str, Any]],
        transport: Optional[BaseTransport],
    ) -> AssistantMessage:
        instructions_cls = DeveloperMessage if self._options.use_developer_role else SystemMessage
        request = CompletionRequest(
            instructions=instructions_cls(content=self._options.instructions),
            messages=list(self._state.conversation),
            tools=self._tool_params or None,
            model_settings=self._options.model_settings if model_settings is None else model_settings,
        )
        if self._cancel is None:
            self._cancel = CancelToken()
        cancel = self._cancel

        await self._set_status("generating")
        response = await (transport or self._transport).create(request, cancel=cancel)

        if isinstance(response, (AssistantMessage, dict)):
            message = await self._transform_ai_message(parse_message(response), False)
            await self._commit(message)
            return message
        return await self._consume_stream(response, process_chunk, cancel)

    async def _consume_stream(self, stream: Any, process_chunk: Optional[ProcessChunk], cancel: CancelToken) -> AssistantMessage:
        partial: Optional[AssistantMessage] = None
        final: Optional[AssistantMessage] = None
        replace_last = False
        iterator = stream.__aiter__()
        try:
            while True:
                # Guarded so stop() aborts a stream waiting on its next fragment.
                chunk = await cancel.guard(_next_chunk(iterator))
                if chunk is None:
                    break
                if final is not None:
                    # Trailing fragments (usage reports) after the terminal one.
                    continue
                if process_chunk is not None:
                    chunk = await resolve(process_chunk(chunk, partial or AssistantMessage(content="")))
                partial = fold_chunk(chunk, partial)
                is_partial = chunk.finish_reason is None
                message = await self._transform_ai_message(partial, is_partial)
                if is_partial:
                    await self._append(message, REASON_PARTIAL_AI_MESSAGE, replace_last=replace_last)
                else:
                    await self._commit(message, replace_last=replace_last)
                    final = message
                replace_last = True
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if final is None:
            # Stream ended without a terminal fragment.
            message = await self._transform_ai_message(partial or AssistantMessage(content=""), False)
            await self._commit(message, replace_last=replace_last)
            final = message
        return final

    async def _transform_ai_message(self, message: AssistantMessage, is_partial: bool) -> AssistantMessage:
        result = parse_message(await self._events.transform(EventKind.AI_MESSAGE, message, is_partial, self._context))
        if not isinstance(result, AssistantMessage):
            raise BadUsage("'aiMessage' events must return an assistant message or skip()")
        return result

    async def _answer_tool_calls(self, pending: List[ToolCall], step_options: StepOptions) -> None:
        await self._set_status("waiting")
        for index, call in enumerate(pending):
            if self._stop_requested:
                remaining = pending[index:]
                logger.warning("agent=%s stop requested with %s unanswered tool calls", self.name, len(remaining))
                if step_options.unanswered_tool_behaviour == "skip":
                    for skipped in remaining:
                        await self._append(
                            ToolMessage(content=step_options.skip_tool_string, tool_call_id=skipped.id),
                            REASON_TOOL_CALL,
                        )
                break
            content = await self._execute_tool(call)
            await self._append(ToolMessage(content=stringify_result(content), tool_call_id=call.id), REASON_TOOL_CALL)

    async def _execute_tool(self, call: ToolCall) -> Any:
        target = next((item for item in self._options.tools if item.name == call.function.name), None)
        if target is None:
            raise ToolNotFoundError(call.function.name)

        params = parse_arguments(target, call.function.arguments)
        logger.info("agent=%s tool=%s call_id=%s", self.name, target.name, call.id)

        result = await self._events.first_result(EventKind.TOOL_CALL, params, target, self._context)
        if not is_skip(result):
            return result
        if target.is_external:
            if self._events.has(EventKind.TOOL_CALL):
                raise BadUsage(
                    "Tools with external handlers must have at least 1 'toolCall' event that produces a result. "
                    "(one or more events were found but returned skip)"
                )
            raise BadUsage("Tools with external handlers must have at least 1 'toolCall' event that produces a result.")
        return await resolve(target.handler.fn(params, self._context))


async def _next_chunk(iterator: AsyncIterator[CompletionChunk]) -> Optional[CompletionChunk]:
    """Next stream fragment, or None once the stream is exhausted."""
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


def _check_tool_names(tools: List[Tool]) -> None:
    seen = set()
    for item in tools:
        if item.name in seen:
            raise BadUsage(f"Tool names must be unique, '{item.name}' is registered twice")
        seen.add(item.name)


def _last_assistant(conversation: List[Any]) -> Optional[AssistantMessage]:
    for message in reversed(conversation):
        if isinstance(message, AssistantMessage):
            return message
    return None


def _plan_turn(conversation: List[Any]) -> Tuple[bool, List[ToolCall]]:
    """Decide whether the turn needs a completion, and which tool calls are pending."""
    last = conversation[-1] if conversation else None
    if isinstance(last, UserMessage):
        return True, []
    if isinstance(last, ToolMessage):
        last_ai = _last_assistant(conversation)
        if last_ai is None:
            raise ConversationError("Invalid conversation, found 'tool' role without previous 'assistant' role.")
        if not last_ai.tool_calls:
            raise ConversationError(
                "Invalid conversation, found 'tool' role but 'tool_calls' is empty in previous 'assistant' role."
            )
        answered = {message.tool_call_id for message in conversation if isinstance(message, ToolMessage)}
        unanswered = [call for call in last_ai.tool_calls if call.id not in answered]
        # Generation only happens once every requested tool has been answered.
        return not unanswered, unanswered
    if isinstance(last, AssistantMessage) and last.tool_calls:
        return False, list(last.tool_calls)
    return False, []
