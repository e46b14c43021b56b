"""Tests for model output parsing across response dialects."""

import json

from agentloop.agent.function_calling import load_function_calling
from agentloop.agent.output_parser import (
    extract_json_text,
    match_tool_name,
    parse_llm_output,
)
from agentloop.config import (
    AgentConfig,
    ParserConfig,
)

GENERIC = ParserConfig()


def _provider_parser(interface: str) -> ParserConfig:
    adapter = load_function_calling(interface)
    assert adapter is not None
    return adapter.configure(AgentConfig()).parser


# ---------------------------------------------------------------------------
# Generic JSON-in-text dialect
# ---------------------------------------------------------------------------
def test_generic_tool_call() -> None:
    """A registered action yields a tool call and no final answer."""

    text = '{"thought":"t","action":"Search","action_input":"x"}'
    state = parse_llm_output({"response": text}, GENERIC, {"Search"})

    assert state.thought == "t"
    assert state.action == "Search"
    assert state.action_input == "x"
    assert state.final_answer is None
    assert state.thought_response == text
    assert not state.parse_degraded


def test_generic_final_answer() -> None:
    """A final answer is returned as-is, without an action."""

    state = parse_llm_output({"response": '{"thought":"t","final_answer":"done"}'}, GENERIC, set())

    assert state.thought == "t"
    assert state.final_answer == "done"
    assert state.action is None
    assert state.is_final
    assert not state.parse_degraded


def test_fenced_json_after_prose() -> None:
    """Prose and braces before a code fence are skipped."""

    text = (
        "This is the model response {not json}\n"
        '```json\n{"thought": "look it up", "action": "Search", "action_input": "paris"} \n```'
        " other content"
    )
    state = parse_llm_output({"response": text}, GENERIC, {"Search"})

    assert state.action == "Search"
    assert state.action_input == "paris"


def test_raw_newlines_inside_strings() -> None:
    """Multi-line string values are accepted."""

    text = '{"thought": "t", "final_answer": "line one\nline two"}'
    state = parse_llm_output({"response": text}, GENERIC, set())

    assert state.final_answer == "line one\nline two"


def test_unescaped_quotes_are_recovered() -> None:
    """Malformed JSON falls back to field-wise recovery."""

    text = (
        "---\n```json\n{\n"
        '  "thought": "Now I know the final answer",\n'
        '  "final_answer": "PPLTool generates such query ```source=iris | where name="Jack" ```."\n'
        "}\n```"
    )
    state = parse_llm_output({"response": text}, GENERIC, {"PPLTool"})

    assert state.thought == "Now I know the final answer"
    assert state.final_answer == (
        'PPLTool generates such query ```source=iris | where name="Jack" ```.'
    )
    assert not state.parse_degraded


def test_unterminated_object_is_recovered() -> None:
    """A reply cut off before the closing brace still yields its action."""

    text = '{"thought": "t", "action": "Search", "action_input": "x"'
    state = parse_llm_output({"response": text}, GENERIC, {"Search"})

    assert state.action == "Search"
    assert state.action_input == "x"


def test_object_action_input_is_compact_json() -> None:
    """Structured action inputs are serialized compactly."""

    text = '{"thought": "t", "action": "Search", "action_input": {"q": "x", "k": [1, 2]}}'
    state = parse_llm_output({"response": text}, GENERIC, {"Search"})

    assert state.action_input == '{"q":"x","k":[1,2]}'


def test_action_name_is_matched_leniently() -> None:
    """Case and surrounding words do not prevent a match."""

    tools = {"VectorDBTool", "Search"}
    assert match_tool_name("vectordbtool", tools) == "VectorDBTool"
    assert match_tool_name("Let me run VectorDBTool to get more data", tools) == "VectorDBTool"
    assert match_tool_name("Search", tools) == "Search"
    assert match_tool_name("Calculator", tools) is None


def test_longest_contained_name_wins() -> None:
    """When several names are contained, the longest one is chosen."""

    assert match_tool_name("use SearchIndex now", {"Search", "SearchIndex"}) == "SearchIndex"


def test_unknown_action_becomes_degraded_final_answer() -> None:
    """A hallucinated tool name turns the whole object into the answer."""

    text = '{"thought": "t", "action": "Calculator", "action_input": "1+1"}'
    state = parse_llm_output({"response": text}, GENERIC, {"Search"})

    assert state.action is None
    assert state.final_answer == text
    assert state.parse_degraded


def test_object_without_action_or_answer() -> None:
    """An unrecognised object is both the thought response and the answer."""

    text = '---\n{ "thought": "just thinking" \n }'
    state = parse_llm_output({"response": text}, GENERIC, {"Search"})

    assert state.thought == "just thinking"
    assert state.final_answer == '{ "thought": "just thinking" \n }'
    assert state.thought_response == state.final_answer
    assert state.parse_degraded


def test_plain_prose() -> None:
    """Text without JSON is the answer verbatim."""

    state = parse_llm_output("Final answer is I don't know", GENERIC, {"Search"})

    assert state.final_answer == "Final answer is I don't know"
    assert state.action is None
    assert state.parse_degraded


def test_structured_response_without_text_field() -> None:
    """A decoded response object is parsed as the decision itself."""

    state = parse_llm_output({"thought": "t", "extra": 1}, GENERIC, set())

    assert state.final_answer == '{"thought":"t","extra":1}'
    assert state.parse_degraded


def test_response_filter_selects_text() -> None:
    """The configured filter path picks the text out of a provider response."""

    config = ParserConfig(response_filter="$.output.text")
    response = {"output": {"text": '{"thought": "t", "final_answer": "42"}'}}

    assert parse_llm_output(response, config, set()).final_answer == "42"


def test_parsing_is_deterministic() -> None:
    """Identical input always gives an identical state."""

    response = {"response": "Let me think... {\"action\": \"search\", \"action_input\": \"x\"}"}
    first = parse_llm_output(response, GENERIC, {"Search", "SearchIndex"})
    second = parse_llm_output(response, GENERIC, {"Search", "SearchIndex"})

    assert first == second


def test_extract_json_text() -> None:
    """Braces inside strings do not end the object."""

    assert extract_json_text('x {"a": "}{", "b": {"c": 1}} y') == '{"a": "}{", "b": {"c": 1}}'
    assert extract_json_text("no json here") is None
    assert extract_json_text('{"open": 1') is None


# ---------------------------------------------------------------------------
# Provider-native tool calls
# ---------------------------------------------------------------------------
def _openai(message: dict, finish_reason: str) -> dict:
    return {"choices": [{"message": message, "finish_reason": finish_reason}]}


def test_openai_tool_call_without_text() -> None:
    """An empty text field gives an empty (not absent) thought."""

    response = _openai(
        {
            "tool_calls": [
                {
                    "id": "tool_2",
                    "function": {
                        "name": "IndexMappingTool",
                        "arguments": '{"index":["test_index"]}',
                    },
                }
            ]
        },
        "tool_calls",
    )
    parser = _provider_parser("openai/v1/chat/completions")
    state = parse_llm_output(response, parser, {"IndexMappingTool"})

    assert state.thought == ""
    assert state.action == "IndexMappingTool"
    assert state.action_input == '{"index":["test_index"]}'
    assert state.tool_call_id == "tool_2"
    assert state.final_answer is None


def test_openai_tool_call_with_text() -> None:
    """Text next to a tool call becomes the thought."""

    response = _openai(
        {
            "content": "I will use ListIndexTool",
            "tool_calls": [
                {
                    "id": "tool_1",
                    "function": {"name": "ListIndexTool", "arguments": '{"indices":[]}'},
                }
            ],
        },
        "tool_calls",
    )
    parser = _provider_parser("openai/v1/chat/completions")
    state = parse_llm_output(response, parser, {"ListIndexTool"})

    assert state.thought == "I will use ListIndexTool"
    assert state.action == "ListIndexTool"
    assert state.tool_call_id == "tool_1"


def test_openai_text_only() -> None:
    """A normal stop with text is a genuine final answer."""

    response = _openai({"content": "This is a test response"}, "stop")
    state = parse_llm_output(response, _provider_parser("openai/v1/chat/completions"), set())

    assert state.action is None
    assert state.action_input is None
    assert state.tool_call_id is None
    assert state.final_answer == "This is a test response"
    assert not state.parse_degraded


def test_tool_calls_ignored_without_tool_use_finish_reason() -> None:
    """Tool calls only count when the finish reason says so."""

    response = _openai(
        {
            "content": "done",
            "tool_calls": [{"id": "t", "function": {"name": "Search", "arguments": "{}"}}],
        },
        "stop",
    )
    state = parse_llm_output(response, _provider_parser("openai/v1/chat/completions"), {"Search"})

    assert state.final_answer == "done"
    assert state.action is None


def _claude(content: list, stop_reason: str) -> dict:
    message = {"role": "assistant", "content": content}
    return {"output": {"message": message}, "stopReason": stop_reason}


def test_claude_tool_use() -> None:
    """``toolUse`` blocks are found anywhere in the content list."""

    response = _claude(
        [
            {
                "toolUse": {
                    "input": {"index": ["test_index"]},
                    "name": "IndexMappingTool",
                    "toolUseId": "tool_2",
                }
            }
        ],
        "tool_use",
    )
    config = _provider_parser("bedrock/converse/claude")
    state = parse_llm_output(response, config, {"IndexMappingTool"})

    assert state.thought == ""
    assert state.action == "IndexMappingTool"
    assert state.action_input == '{"index":["test_index"]}'
    assert state.tool_call_id == "tool_2"


def test_claude_text_and_tool_use() -> None:
    """The leading text block is the thought of a tool call."""

    response = _claude(
        [
            {"text": "I will use ListIndexTool"},
            {"toolUse": {"input": {"indices": []}, "name": "ListIndexTool", "toolUseId": "tool_1"}},
        ],
        "tool_use",
    )
    config = _provider_parser("bedrock/converse/claude")
    state = parse_llm_output(response, config, {"ListIndexTool"})

    assert state.thought == "I will use ListIndexTool"
    assert state.action_input == '{"indices":[]}'
    assert state.tool_call_id == "tool_1"


def test_claude_text_only() -> None:
    """End of turn with text is the final answer."""

    response = _claude([{"text": "This is a test response"}], "end_turn")
    state = parse_llm_output(response, _provider_parser("bedrock/converse/claude"), set())

    assert state.final_answer == "This is a test response"
    assert state.action is None


def _deepseek(text: str) -> dict:
    return {"output": {"message": {"content": [{"text": text}]}}}


def test_deepseek_envelope_tool_call() -> None:
    """Tool calls are read out of the JSON envelope in the text."""

    envelope = {
        "stop_reason": "tool_use",
        "tool_calls": [{"id": "tool_1", "tool_name": "ListIndexTool", "input": {"indices": []}}],
    }
    response = _deepseek(json.dumps(envelope))
    parser = _provider_parser("bedrock/converse/deepseek_r1")
    state = parse_llm_output(response, parser, {"ListIndexTool"})

    assert state.thought == ""
    assert state.action == "ListIndexTool"
    assert state.action_input == '{"indices":[]}'
    assert state.tool_call_id == "tool_1"


def test_deepseek_envelope_final_answer() -> None:
    """An envelope that does not ask for tools falls back to the generic dialect."""

    response = _deepseek('<think>done</think>{"stop_reason": "end_turn", "final_answer": "42"}')
    state = parse_llm_output(response, _provider_parser("bedrock/converse/deepseek_r1"), set())

    assert state.final_answer == "42"
    assert state.action is None


def test_native_unknown_tool_is_kept_as_action() -> None:
    """Provider tool calls are not fuzzy-matched; the loop reports them as unsupported."""

    response = _claude([{"toolUse": {"input": {}, "name": "Ghost", "toolUseId": "t1"}}], "tool_use")
    config = _provider_parser("bedrock/converse/claude")
    state = parse_llm_output(response, config, {"Search"})

    assert state.action == "Ghost"
    assert state.final_answer is None
