"""Tests for the ReAct loop state machine."""

import json

import pytest
from conftest import (
    FailingMemory,
    FailingTool,
    RecordingTool,
    generic,
)

from agentloop.agent.model_client import ModelInvocationError
from agentloop.core.schema import (
    AgentSession,
    InteractionRecord,
    LoopState,
    ToolSpec,
)
from agentloop.memory.memory_store import (
    InMemoryConversationMemory,
    MemoryPersistenceError,
)

CALL_SEARCH = generic(thought="need data", action="Search", action_input="paris")
ANSWER = generic(thought="done", final_answer="Paris")


async def _session_with_memory(memory: InMemoryConversationMemory) -> AgentSession:
    conversation_id = await memory.create_session("test")
    root = await memory.append_interaction(
        conversation_id, None, InteractionRecord(question="What is the capital of France?")
    )
    return AgentSession(
        conversation_id=conversation_id,
        parent_interaction_id=root,
        question="What is the capital of France?",
    )


@pytest.mark.asyncio
async def test_immediate_final_answer(make_loop, search_tool) -> None:
    """A final answer on the first call ends the loop after one model call."""

    loop, client = make_loop([ANSWER])
    result = await loop.run()

    assert result.terminal_state is LoopState.FINAL
    assert result.final_answer == "Paris"
    assert result.iterations == 1
    assert len(client.calls) == 1
    assert search_tool.calls == []
    assert search_tool.close_count == 1


@pytest.mark.asyncio
async def test_tool_call_then_answer(make_loop, search_tool) -> None:
    """The observation is folded into the scratchpad of the next prompt."""

    loop, client = make_loop([CALL_SEARCH, ANSWER])
    result = await loop.run()

    assert result.terminal_state is LoopState.FINAL
    assert result.final_answer == "Paris"
    assert search_tool.calls[0]["input"] == "paris"
    assert search_tool.close_count == 1

    first, second = (call["prompt"] for call in client.calls)
    assert first == "Question: What is the capital of France?\n\n"
    assert second.startswith(first)
    assert "TOOL RESPONSE of Search:" in second
    assert "result for paris" in second
    assert '"action": "Search"' in second

    assert [step.trace_number for step in loop.trace] == [1, 2]
    assert [step.origin for step in loop.trace] == ["LLM", "ReAct"]
    assert loop.trace[1].response == "result for paris"


@pytest.mark.asyncio
async def test_default_output_items(make_loop) -> None:
    """The default result carries the answer and additional info as structured data."""

    loop, _ = make_loop([ANSWER])
    result = await loop.run()

    assert [item.name for item in result.outputs] == [
        "memory_id",
        "parent_interaction_id",
        "response",
    ]
    assert result.outputs[-1].data == {"response": "Paris", "additional_info": {}}


@pytest.mark.asyncio
async def test_verbose_output_items(make_loop) -> None:
    """Verbose mode returns the whole trace followed by the answer."""

    loop, _ = make_loop([CALL_SEARCH, ANSWER], params={"verbose": "true"})
    result = await loop.run()

    responses = [item.result for item in result.outputs if item.name == "response"]
    assert responses == [CALL_SEARCH["response"], "result for paris", "Paris"]


@pytest.mark.asyncio
async def test_single_iteration_never_runs_tool(make_loop, search_tool) -> None:
    """With one iteration a tool request ends the loop without running the tool."""

    loop, client = make_loop([CALL_SEARCH], params={"max_iteration": "1"})
    result = await loop.run()

    assert result.terminal_state is LoopState.MAX_ITERATIONS_REACHED
    assert result.final_answer == (
        "Agent reached maximum iterations (1) without completing the task. "
        "Last thought: need data"
    )
    assert len(client.calls) == 1
    assert search_tool.calls == []
    assert search_tool.close_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("budget", [2, 3, 5])
async def test_model_calls_never_exceed_budget(make_loop, search_tool, budget) -> None:
    """A model that always asks for tools gets exactly ``max_iteration`` calls."""

    loop, client = make_loop([CALL_SEARCH], params={"max_iteration": str(budget)}, repeat_last=True)
    result = await loop.run()

    assert result.terminal_state is LoopState.MAX_ITERATIONS_REACHED
    assert len(client.calls) == budget
    assert len(search_tool.calls) == budget - 1
    assert result.iterations == budget


@pytest.mark.asyncio
async def test_max_iterations_without_thought(make_loop) -> None:
    """Without a captured thought the answer only states the limit."""

    call = generic(action="Search", action_input="x")
    loop, _ = make_loop([call], params={"max_iteration": "1"})
    result = await loop.run()

    assert result.final_answer == "Agent reached maximum iterations (1) without completing the task"


@pytest.mark.asyncio
async def test_validation_failure_does_not_stall(make_loop, search_tool) -> None:
    """A rejected input becomes an observation and the loop carries on."""

    bad_call = generic(thought="try", action="Search", action_input="")
    loop, client = make_loop([bad_call, bad_call, bad_call], params={"max_iteration": "3"})
    result = await loop.run()

    assert result.terminal_state is LoopState.MAX_ITERATIONS_REACHED
    assert search_tool.calls == []
    assert "Failed to run the tool Search due to wrong input ." in client.calls[1]["prompt"]


@pytest.mark.asyncio
async def test_tool_exception_is_observed(make_loop) -> None:
    """A crashing tool is reported to the model, not to the caller."""

    broken = FailingTool(ToolSpec(type="FailingTool", name="Search"))
    loop, client = make_loop([CALL_SEARCH, ANSWER], tools={"Search": broken})
    result = await loop.run()

    assert result.final_answer == "Paris"
    assert (
        "Failed to run the tool Search with the error message index missing."
        in client.calls[1]["prompt"]
    )
    assert broken.close_count == 1


@pytest.mark.asyncio
async def test_unsupported_native_tool_consumes_iteration(make_loop, search_tool) -> None:
    """A provider tool call for an unknown tool is answered with an observation."""

    ghost_use = {"toolUse": {"name": "Ghost", "input": {}, "toolUseId": "t1"}}
    ghost_call = {
        "output": {"message": {"content": [ghost_use]}},
        "stopReason": "tool_use",
    }
    answer = {"output": {"message": {"content": [{"text": "Paris"}]}}, "stopReason": "end_turn"}
    loop, client = make_loop(
        [ghost_call, answer], params={"_llm_interface": "bedrock/converse/claude"}
    )
    result = await loop.run()

    assert result.final_answer == "Paris"
    assert result.iterations == 2
    assert "Failed to run the tool Ghost which is unsupported." in client.calls[1]["prompt"]
    assert search_tool.calls == []


@pytest.mark.asyncio
async def test_native_tool_results_are_sent_as_interactions(make_loop, search_tool) -> None:
    """With an adapter the assistant turn and the tool result are echoed to the model."""

    assistant = {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {"id": "call_1", "function": {"name": "Search", "arguments": '{"input": "paris"}'}}
        ],
    }
    tool_call = {"choices": [{"message": assistant, "finish_reason": "tool_calls"}]}
    answer = {"choices": [{"message": {"content": "Paris"}, "finish_reason": "stop"}]}
    loop, client = make_loop(
        [tool_call, answer], params={"_llm_interface": "openai/v1/chat/completions"}
    )
    result = await loop.run()

    assert result.final_answer == "Paris"
    assert search_tool.calls[0]["input"] == "paris"
    assert "_interactions" not in client.calls[0]

    interactions = client.calls[1]["_interactions"]
    assert interactions.startswith(", ")
    assert json.loads(interactions[2:].split(', {"role": "tool"')[0]) == assistant
    assert '"tool_call_id": "call_1"' in interactions
    assert '"content": "result for paris"' in interactions


@pytest.mark.asyncio
async def test_model_failure_is_fatal(make_loop, search_tool) -> None:
    """A failing model call surfaces to the caller and still releases the tools."""

    loop, _ = make_loop([CALL_SEARCH, ModelInvocationError("connection reset")])

    with pytest.raises(ModelInvocationError, match="connection reset"):
        await loop.run()
    assert search_tool.close_count == 1


@pytest.mark.asyncio
async def test_unexpected_model_error_is_wrapped(make_loop) -> None:
    """Any exception from the channel is reported as a model invocation failure."""

    loop, _ = make_loop([RuntimeError("boom")])

    with pytest.raises(ModelInvocationError, match="boom"):
        await loop.run()


@pytest.mark.asyncio
async def test_additional_info_collects_tool_outputs(make_loop) -> None:
    """Outputs of tools flagged for the agent response accumulate per tool."""

    tool = RecordingTool(
        ToolSpec(type="SearchTool", name="Search", include_output_in_agent_response=True)
    )
    loop, _ = make_loop([CALL_SEARCH, CALL_SEARCH, ANSWER], tools={"Search": tool})
    result = await loop.run()

    assert result.additional_info == {"Search.output": ["result for paris", "result for paris"]}
    assert result.outputs[-1].data["additional_info"] == result.additional_info


@pytest.mark.asyncio
async def test_answer_and_trace_are_persisted(make_loop) -> None:
    """Trace steps are saved in order and the root interaction gets the answer."""

    memory = InMemoryConversationMemory()
    session = await _session_with_memory(memory)
    loop, _ = make_loop([CALL_SEARCH, ANSWER], memory=memory, session=session)
    result = await loop.run()

    root = memory.interactions[session.parent_interaction_id]
    assert root.response == "Paris"
    assert root.additional_info == {}

    traces = await memory.get_traces(session.parent_interaction_id)
    assert [t.trace_number for t in traces] == [1, 2, 3]
    assert [t.origin for t in traces] == ["LLM", "ReAct", "LLM"]
    assert traces[-1].final_answer
    assert traces[-1].response == "Paris"

    assert result.outputs[0].result == session.conversation_id
    assert result.outputs[1].result == session.parent_interaction_id


@pytest.mark.asyncio
async def test_disabled_trace_still_saves_answer(make_loop) -> None:
    """Without tracing only the root interaction is updated."""

    memory = InMemoryConversationMemory()
    session = await _session_with_memory(memory)
    loop, _ = make_loop(
        [CALL_SEARCH, ANSWER], memory=memory, session=session, params={"disable_trace": "true"}
    )
    await loop.run()

    assert await memory.get_traces(session.parent_interaction_id) == []
    assert memory.interactions[session.parent_interaction_id].response == "Paris"


@pytest.mark.asyncio
async def test_answer_persistence_failure_is_fatal(make_loop, search_tool) -> None:
    """If the answer cannot be saved the caller gets an error, not the answer."""

    memory = FailingMemory()
    session = await _session_with_memory(memory)
    loop, _ = make_loop([ANSWER], memory=memory, session=session)

    with pytest.raises(MemoryPersistenceError, match="disk full"):
        await loop.run()
    assert search_tool.close_count == 1


class FlakyTraceMemory(InMemoryConversationMemory):
    """Memory that cannot store intermediate trace steps."""

    async def append_interaction(self, session_id, parent_id, record):
        if record.trace_number is not None and not record.final_answer:
            raise RuntimeError("trace index unavailable")
        return await super().append_interaction(session_id, parent_id, record)


@pytest.mark.asyncio
async def test_trace_failure_does_not_abort_session(make_loop, search_tool) -> None:
    """Any error while saving a trace step is logged and the session carries on."""

    memory = FlakyTraceMemory()
    session = await _session_with_memory(memory)
    loop, _ = make_loop([CALL_SEARCH, ANSWER], memory=memory, session=session)
    result = await loop.run()

    assert result.final_answer == "Paris"
    assert search_tool.calls[0]["input"] == "paris"
    (final,) = await memory.get_traces(session.parent_interaction_id)
    assert final.final_answer
    assert final.trace_number == 3
    assert memory.interactions[session.parent_interaction_id].response == "Paris"
