import asyncio
from typing import Any, List

import pytest
from conftest import ScriptedTransport, text_chunks, tool_call_message
from pydantic import BaseModel

from logwatch.agent import DEFAULT_SKIP_TOOL_STRING, Agent, AgentOptions, StepOptions
from logwatch.errors import BadUsage, ConversationError, MaxStepHitError, ToolNotFoundError
from logwatch.events import skip
from logwatch.models import AgentState, AssistantMessage, CompletionChunk, ToolMessage, UserMessage
from logwatch.tools import EXTERNAL, tool


class WeatherParams(BaseModel):
    city: str


def _agent(transport: ScriptedTransport, **options: Any) -> Agent:
    return Agent(AgentOptions(name="test-agent", instructions="You are a helpful assistant.", **options), transport)


def _roles(agent: Agent) -> List[str]:
    return [message.role for message in agent.state.conversation]


def test_single_user_message_produces_one_answer() -> None:
    transport = ScriptedTransport([AssistantMessage(content="Hello!")])
    agent = _agent(transport)

    state = asyncio.run(agent.send_user_message("hi"))

    assert _roles(agent) == ["user", "assistant"]
    assert state.conversation[1].content == "Hello!"
    assert state.step_count == 1
    assert state.status == "idle"

    payload = transport.requests[0].payload()
    assert payload["messages"][0] == {"role": "system", "content": "You are a helpful assistant."}
    assert payload["messages"][1] == {"role": "user", "content": "hi"}
    assert "tools" not in payload


def test_tool_call_is_answered_and_followed_by_completion() -> None:
    calls = []

    def get_weather(params: WeatherParams, context) -> dict:
        calls.append(params.city)
        return {"tempC": 18}

    transport = ScriptedTransport(
        [
            tool_call_message({"id": "call_1", "name": "getWeather", "arguments": '{"city": "Paris"}'}),
            AssistantMessage(content="It is 18°C in Paris."),
        ]
    )
    agent = _agent(transport, tools=[tool("getWeather", "Current weather of a city", get_weather, WeatherParams)])

    state = asyncio.run(agent.send_user_message("Weather in Paris?"))

    assert calls == ["Paris"]
    assert _roles(agent) == ["user", "assistant", "tool", "assistant"]
    tool_message = state.conversation[2]
    assert tool_message.tool_call_id == "call_1"
    assert tool_message.content == '{"tempC":18}'
    assert state.step_count == 2
    assert state.status == "idle"

    assert len(transport.requests) == 2
    follow_up = transport.requests[1].payload()
    assert follow_up["messages"][-1] == {"role": "tool", "content": '{"tempC":18}', "tool_call_id": "call_1"}
    assert follow_up["tools"][0]["function"]["name"] == "getWeather"


def test_max_step_is_enforced() -> None:
    transport = ScriptedTransport([tool_call_message({"id": "call_1", "name": "ping"})])
    agent = _agent(
        transport,
        tools=[tool("ping", "ping", lambda params, ctx: "pong")],
        step_options={"max_step": 1},
    )

    with pytest.raises(MaxStepHitError):
        asyncio.run(agent.send_user_message("go"))

    assert _roles(agent) == ["user", "assistant", "tool"]
    assert agent.state.status == "idle"
    assert len(transport.requests) == 1


def test_non_positive_max_step_is_rejected() -> None:
    with pytest.raises(BadUsage):
        _agent(ScriptedTransport([]), step_options=StepOptions(max_step=0))


def test_step_count_resets_after_user_message() -> None:
    transport = ScriptedTransport([AssistantMessage(content="one"), AssistantMessage(content="two")])
    agent = _agent(transport, step_options={"max_step": 1})

    async def main() -> None:
        await agent.send_user_message("first")
        await agent.send_user_message("second")

    asyncio.run(main())
    assert agent.state.step_count == 1
    assert _roles(agent) == ["user", "assistant", "user", "assistant"]


def test_stop_inside_tool_leaves_remaining_calls_pending() -> None:
    executed = []

    def first(params, context) -> str:
        executed.append("a")
        context.stop()
        return "done"

    def second(params, context) -> str:
        executed.append("b")
        return "never"

    transport = ScriptedTransport(
        [tool_call_message({"id": "call_a", "name": "first"}, {"id": "call_b", "name": "second"})]
    )
    agent = _agent(transport, tools=[tool("first", "first", first), tool("second", "second", second)])

    state = asyncio.run(agent.send_user_message("go"))

    assert executed == ["a"]
    assert _roles(agent) == ["user", "assistant", "tool"]
    assert state.conversation[-1].tool_call_id == "call_a"
    assert state.status == "idle"
    assert len(transport.requests) == 1


def test_stop_with_skip_behaviour_answers_remaining_calls() -> None:
    def first(params, context) -> str:
        context.stop()
        return "done"

    transport = ScriptedTransport(
        [tool_call_message({"id": "call_a", "name": "first"}, {"id": "call_b", "name": "second"})]
    )
    agent = _agent(
        transport,
        tools=[tool("first", "first", first), tool("second", "second", lambda params, ctx: "never")],
        step_options={"unanswered_tool_behaviour": "skip"},
    )

    state = asyncio.run(agent.send_user_message("go"))

    assert _roles(agent) == ["user", "assistant", "tool", "tool"]
    assert state.conversation[-1].tool_call_id == "call_b"
    assert state.conversation[-1].content == DEFAULT_SKIP_TOOL_STRING


def test_stop_during_generation_cancels_the_request() -> None:
    holder: List[Agent] = []

    def interrupted(request, cancel):
        holder[0].stop()
        cancel.raise_if_cancelled()
        return AssistantMessage(content="unreachable")

    transport = ScriptedTransport([interrupted])
    agent = _agent(transport)
    holder.append(agent)

    state = asyncio.run(agent.send_user_message("hi"))

    assert _roles(agent) == ["user"]
    assert state.status == "idle"


def test_stop_without_running_step_has_no_effect() -> None:
    transport = ScriptedTransport([AssistantMessage(content="hello")])
    agent = _agent(transport)

    agent.stop()
    asyncio.run(agent.send_user_message("hi"))

    assert _roles(agent) == ["user", "assistant"]


def test_streamed_completion_updates_conversation_incrementally() -> None:
    reasons = []
    partial_flags = []
    transport = ScriptedTransport([text_chunks("Hel", "lo")])
    agent = _agent(transport, model_settings={"stream": True})
    agent.on_after_conversation_update(lambda reason, ctx: reasons.append(reason))

    def record(message, is_partial, ctx):
        partial_flags.append(is_partial)
        return skip()

    agent.on_ai_message(record)

    state = asyncio.run(agent.send_user_message("hi"))

    assert _roles(agent) == ["user", "assistant"]
    assert state.conversation[-1].content == "Hello"
    assert state.step_count == 1
    assert reasons == ["userMessage", "partialAiMessage", "partialAiMessage", "aiMessage"]
    assert partial_flags == [True, True, False]
    assert transport.requests[0].payload()["stream"] is True


def test_streamed_tool_call_is_executed() -> None:
    chunks = [
        {"delta": {"role": "assistant", "tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "getWeather", "arguments": ""}}]}},
        {"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"city":"Oslo"}'}}]}},
        {"delta": {}, "finish_reason": "tool_calls"},
    ]

    transport = ScriptedTransport(
        [[CompletionChunk.model_validate(chunk) for chunk in chunks], text_chunks("Cold.")]
    )
    agent = _agent(
        transport,
        tools=[tool("getWeather", "weather", lambda params, ctx: {"tempC": -3}, WeatherParams)],
        model_settings={"stream": True},
    )

    state = asyncio.run(agent.send_user_message("Oslo?"))

    assert _roles(agent) == ["user", "assistant", "tool", "assistant"]
    assert state.conversation[2].content == '{"tempC":-3}'
    assert state.conversation[-1].content == "Cold."
    assert state.step_count == 2


def test_user_message_chain_transforms_message() -> None:
    transport = ScriptedTransport([AssistantMessage(content="ok")])
    agent = _agent(transport)
    agent.on_user_message(lambda message, ctx: message.model_copy(update={"content": message.content.upper()}))
    agent.on_user_message(lambda message, ctx: skip())

    state = asyncio.run(agent.send_user_message("hi"))
    assert state.conversation[0].content == "HI"


def test_ai_message_chain_transforms_final_message() -> None:
    transport = ScriptedTransport([AssistantMessage(content="hello")])
    agent = _agent(transport)
    agent.on_ai_message(lambda message, is_partial, ctx: message.model_copy(update={"content": "[checked] " + message.content}))

    state = asyncio.run(agent.send_user_message("hi"))
    assert state.conversation[-1].content == "[checked] hello"


def test_model_invocation_result_replaces_default_request() -> None:
    transport = ScriptedTransport([])
    agent = _agent(transport)
    agent.on_model_invocation(lambda call_api, ctx: AssistantMessage(content="cached answer"))

    state = asyncio.run(agent.send_user_message("hi"))

    assert transport.requests == []
    assert state.conversation[-1].content == "cached answer"
    assert state.step_count == 1


def test_model_invocation_can_call_api_once() -> None:
    transport = ScriptedTransport([AssistantMessage(content="from model")])
    agent = _agent(transport)

    async def wrap(call_api, ctx):
        return await call_api(model_settings={"temperature": 0})

    agent.on_model_invocation(wrap)
    state = asyncio.run(agent.send_user_message("hi"))

    assert len(transport.requests) == 1
    assert transport.requests[0].payload()["temperature"] == 0
    assert _roles(agent) == ["user", "assistant"]
    assert state.conversation[-1].content == "from model"


def test_model_invocation_all_skip_calls_api_exactly_once() -> None:
    transport = ScriptedTransport([AssistantMessage(content="default")])
    agent = _agent(transport)
    agent.on_model_invocation(lambda call_api, ctx: skip())
    agent.on_model_invocation(lambda call_api, ctx: skip())

    state = asyncio.run(agent.send_user_message("hi"))

    assert len(transport.requests) == 1
    assert state.conversation[-1].content == "default"


def test_tool_call_event_answers_external_tool() -> None:
    seen = []

    def answer(params, target, ctx):
        seen.append((target.name, params))
        return {"rows": 2}

    transport = ScriptedTransport(
        [tool_call_message({"id": "call_1", "name": "query", "arguments": '{"sql": "select 1"}'}), AssistantMessage(content="2 rows")]
    )
    agent = _agent(transport, tools=[tool("query", "Run a query on the host", EXTERNAL)])
    agent.on_tool_call(lambda params, target, ctx: skip())
    agent.on_tool_call(answer)

    state = asyncio.run(agent.send_user_message("count"))

    assert seen == [("query", {"sql": "select 1"})]
    assert state.conversation[2].content == '{"rows":2}'


def test_external_tool_without_result_is_bad_usage() -> None:
    transport = ScriptedTransport([tool_call_message({"id": "call_1", "name": "query"})])
    agent = _agent(transport, tools=[tool("query", "host", EXTERNAL)])
    agent.on_tool_call(lambda params, target, ctx: skip())

    with pytest.raises(BadUsage):
        asyncio.run(agent.send_user_message("count"))
    assert agent.state.status == "idle"


def test_unknown_tool_raises() -> None:
    transport = ScriptedTransport([tool_call_message({"id": "call_1", "name": "missing"})])
    agent = _agent(transport)

    with pytest.raises(ToolNotFoundError) as exc:
        asyncio.run(agent.send_user_message("go"))
    assert exc.value.tool_name == "missing"
    assert agent.state.status == "idle"


def test_duplicate_tool_names_are_rejected() -> None:
    with pytest.raises(BadUsage):
        _agent(ScriptedTransport([]), tools=[tool("a", "a", EXTERNAL), tool("a", "again", EXTERNAL)])


def test_set_options_requires_idle_status() -> None:
    holder: List[Agent] = []

    def reconfigure(params, context) -> str:
        holder[0].set_options(instructions="changed")
        return "unreachable"

    transport = ScriptedTransport([tool_call_message({"id": "call_1", "name": "reconfigure"})])
    agent = _agent(transport, tools=[tool("reconfigure", "r", reconfigure)])
    holder.append(agent)

    with pytest.raises(BadUsage):
        asyncio.run(agent.send_user_message("go"))
    assert agent.state.status == "idle"


def test_context_can_change_instructions_mid_step() -> None:
    def switch(params, context) -> str:
        context.set_instructions("Answer in French.")
        return "ok"

    transport = ScriptedTransport([tool_call_message({"id": "call_1", "name": "switch"}), AssistantMessage(content="Bonjour")])
    agent = _agent(transport, tools=[tool("switch", "s", switch)])

    asyncio.run(agent.send_user_message("hi"))

    assert transport.requests[1].instructions.content == "Answer in French."
    assert agent.options.instructions == "Answer in French."


def test_set_options_recomputes_tools_and_validates_keys() -> None:
    transport = ScriptedTransport([AssistantMessage(content="ok")])
    agent = _agent(transport)

    agent.set_options(tools=[tool("ping", "ping", lambda params, ctx: "pong")], step_options={"max_step": 3})
    assert agent.options.step_options.max_step == 3
    assert agent.options.step_options.reset_step_count_after_user_message is True

    asyncio.run(agent.send_user_message("hi"))
    assert transport.requests[0].payload()["tools"][0]["function"]["name"] == "ping"

    with pytest.raises(BadUsage):
        agent.set_options(name="renamed")


def test_reset_is_idempotent_and_fires_state_update() -> None:
    updates = []
    transport = ScriptedTransport([AssistantMessage(content="hello")])
    agent = _agent(transport)

    async def main() -> None:
        await agent.send_user_message("hi")
        agent.on_after_state_update(lambda ctx: updates.append(ctx.state.status))
        first = await agent.reset()
        second = await agent.reset()
        assert first == second

    asyncio.run(main())
    assert agent.state == AgentState()
    assert updates == ["idle", "idle"]


def test_reset_with_initial_conversation() -> None:
    agent = _agent(ScriptedTransport([]))
    state = asyncio.run(agent.reset([{"role": "user", "content": "hello"}]))
    assert isinstance(state.conversation[0], UserMessage)
    assert state.step_count == 0


def test_reset_while_waiting_is_bad_usage() -> None:
    holder: List[Agent] = []

    async def reset_now(params, context) -> str:
        await holder[0].reset()
        return "unreachable"

    transport = ScriptedTransport([tool_call_message({"id": "call_1", "name": "reset_now"})])
    agent = _agent(transport, tools=[tool("reset_now", "r", reset_now)])
    holder.append(agent)

    with pytest.raises(BadUsage):
        asyncio.run(agent.send_user_message("go"))


def test_reset_step_count_fires_no_event() -> None:
    updates = []
    transport = ScriptedTransport([AssistantMessage(content="hello")])
    agent = _agent(transport)
    asyncio.run(agent.send_user_message("hi"))
    agent.on_after_state_update(lambda ctx: updates.append(ctx.state.step_count))

    agent.reset_step_count()

    assert agent.state.step_count == 0
    assert updates == []


def test_step_on_empty_conversation_is_a_no_op() -> None:
    transport = ScriptedTransport([])
    agent = _agent(transport)
    state = asyncio.run(agent.step())
    assert state.conversation == []
    assert transport.requests == []


def test_step_by_limits_completions() -> None:
    transport = ScriptedTransport(
        [
            tool_call_message({"id": "call_1", "name": "ping"}),
            tool_call_message({"id": "call_2", "name": "ping"}),
            AssistantMessage(content="done"),
        ]
    )
    agent = _agent(
        transport,
        tools=[tool("ping", "ping", lambda params, ctx: "pong")],
        initial_conversation=[{"role": "user", "content": "go"}],
    )

    async def main() -> None:
        await agent.step(by=1)
        assert _roles(agent) == ["user", "assistant", "tool"]
        assert len(transport.requests) == 1
        await agent.step()

    asyncio.run(main())
    assert _roles(agent) == ["user", "assistant", "tool", "assistant", "tool", "assistant"]
    assert agent.state.conversation[-1].content == "done"


def test_step_rejects_non_positive_by_and_unknown_overrides() -> None:
    agent = _agent(ScriptedTransport([]), initial_conversation=[{"role": "user", "content": "go"}])
    with pytest.raises(BadUsage):
        asyncio.run(agent.step(by=0))
    with pytest.raises(BadUsage):
        asyncio.run(agent.step(max_steps=2))


def test_step_overrides_apply_to_one_call() -> None:
    transport = ScriptedTransport([tool_call_message({"id": "call_1", "name": "ping"})])
    agent = _agent(
        transport,
        tools=[tool("ping", "ping", lambda params, ctx: "pong")],
        initial_conversation=[{"role": "user", "content": "go"}],
    )

    with pytest.raises(MaxStepHitError):
        asyncio.run(agent.step(max_step=1))
    assert agent.options.step_options.max_step == 10


def test_only_unanswered_tool_calls_are_executed() -> None:
    executed = []

    def record(params, context) -> str:
        executed.append(params["n"])
        return f"result {params['n']}"

    conversation = [
        {"role": "user", "content": "go"},
        tool_call_message(
            {"id": "call_a", "name": "record", "arguments": '{"n": 1}'},
            {"id": "call_b", "name": "record", "arguments": '{"n": 2}'},
        ),
        {"role": "tool", "content": "result 1", "tool_call_id": "call_a"},
    ]
    transport = ScriptedTransport([AssistantMessage(content="both done")])
    agent = _agent(transport, tools=[tool("record", "record", record)], initial_conversation=conversation)

    state = asyncio.run(agent.step())

    assert executed == [2]
    assert [m.tool_call_id for m in state.conversation if isinstance(m, ToolMessage)] == ["call_a", "call_b"]
    assert state.conversation[-1].content == "both done"


def test_tool_message_without_assistant_is_a_conversation_error() -> None:
    agent = _agent(
        ScriptedTransport([]),
        initial_conversation=[
            {"role": "user", "content": "go"},
            {"role": "tool", "content": "orphan", "tool_call_id": "x"},
        ],
    )
    with pytest.raises(ConversationError):
        asyncio.run(agent.step())


def test_state_updates_report_status_transitions() -> None:
    statuses = []
    transport = ScriptedTransport([tool_call_message({"id": "call_1", "name": "ping"}), AssistantMessage(content="done")])
    agent = _agent(transport, tools=[tool("ping", "ping", lambda params, ctx: "pong")])
    agent.on_after_state_update(lambda ctx: statuses.append(ctx.state.status))

    asyncio.run(agent.send_user_message("go"))

    assert "generating" in statuses
    assert "waiting" in statuses
    assert statuses[-1] == "idle"


def test_developer_role_and_meta_stripping() -> None:
    transport = ScriptedTransport([AssistantMessage(content="ok")])
    agent = _agent(transport, use_developer_role=True)

    state = asyncio.run(agent.send_user_message("hi", meta={"source": "api"}))

    payload = transport.requests[0].payload()
    assert payload["messages"][0]["role"] == "developer"
    assert "meta" not in payload["messages"][1]
    assert state.conversation[0].meta == {"source": "api"}


def test_raw_adopts_returned_state() -> None:
    statuses = []
    agent = _agent(ScriptedTransport([]))
    agent.on_after_state_update(lambda ctx: statuses.append(ctx.state.status))

    async def manual(transport, context):
        await context.raw.set_generating()
        return AgentState(conversation=[UserMessage(content="restored")], step_count=0, status="idle")

    state = asyncio.run(agent.raw(manual))

    assert statuses == ["generating", "idle"]
    assert state.conversation[0].content == "restored"


def test_cancelled_caller_leaves_agent_idle() -> None:
    async def slow(request, cancel):
        await asyncio.sleep(10)

    transport = ScriptedTransport([slow, AssistantMessage(content="again")])
    agent = _agent(transport)

    async def main() -> None:
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(agent.send_user_message("hi"), 0.05)
        assert agent.state.status == "idle"
        await agent.reset()
        await agent.send_user_message("hi again")

    asyncio.run(main())
    assert _roles(agent) == ["user", "assistant"]
    assert agent.state.conversation[-1].content == "again"


def test_stop_from_conversation_update_prevents_tool_execution() -> None:
    executed = []
    transport = ScriptedTransport([tool_call_message({"id": "call_1", "name": "ping"})])
    agent = _agent(transport, tools=[tool("ping", "ping", lambda params, ctx: executed.append("ping") or "pong")])
    agent.on_after_conversation_update(lambda reason, ctx: ctx.stop() if reason == "aiMessage" else None)

    state = asyncio.run(agent.send_user_message("go"))

    assert executed == []
    assert _roles(agent) == ["user", "assistant"]
    assert state.status == "idle"
    assert len(transport.requests) == 1


def test_ai_message_update_sees_incremented_step_count() -> None:
    seen = []
    transport = ScriptedTransport([AssistantMessage(content="hello")])
    agent = _agent(transport)

    def record(reason, ctx) -> None:
        if reason == "aiMessage":
            seen.append((ctx.state.step_count, ctx.state.conversation[-1].role))

    agent.on_after_conversation_update(record)
    asyncio.run(agent.send_user_message("hi"))

    assert seen == [(1, "assistant")]


def test_stop_from_user_message_event_keeps_message_without_completion() -> None:
    transport = ScriptedTransport([AssistantMessage(content="unreachable")])
    agent = _agent(transport)

    def halt(message, ctx):
        ctx.stop()
        return skip()

    unsubscribe = agent.on_user_message(halt)
    state = asyncio.run(agent.send_user_message("hi"))

    assert _roles(agent) == ["user"]
    assert transport.requests == []
    assert state.status == "idle"

    unsubscribe()
    asyncio.run(agent.send_user_message("hi again"))
    assert _roles(agent) == ["user", "user", "assistant"]
