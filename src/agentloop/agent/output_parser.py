"""
Model output parsing.

Turns a raw model response into an :class:`IterationState`.  Two dialects are supported:

* :class:`GenericDialect` - the model writes a JSON object (``thought`` / ``action`` /
  ``action_input`` / ``final_answer``) somewhere in its text, optionally inside a markdown fence.
  This is the default and the fallback of every other dialect.
* :class:`ToolCallDialect` - the provider returns native tool-call records; where to find them is
  described by a :class:`ParserConfig` (usually filled in by a function-calling adapter).

Parsing never fails: malformed or unrecognised output degrades to a final answer, flagged with
``parse_degraded`` so callers can tell it apart from a real one.
"""

import json
import logging
import re
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Collection,
    Dict,
    Mapping,
)

from agentloop.common import read_path
from agentloop.config import ParserConfig
from agentloop.core.schema import IterationState

logger = logging.getLogger(__name__)

LLM_RESPONSE_PATH_PREFIX = "_llm_response."
"""Paths with this prefix resolve against the JSON object embedded in the response text."""

_FENCE = re.compile(r"```(?:json)?")
_STRING_FIELD = r'"{}"\s*:\s*"((?:[^"\\]|\\.)*)"'
_FINAL_ANSWER_CLOSED = re.compile(r'"final_answer"\s*:\s*"([\s\S]*)"\s*\}')
_FINAL_ANSWER_OPEN = re.compile(r'"final_answer"\s*:\s*"([\s\S]*?)"?\s*$')
_ACTION_INPUT_START = re.compile(r'"action_input"\s*:\s*')


# ---------------------------------------------------------------------------
# JSON location helpers
# ---------------------------------------------------------------------------
def _match_brace(text: str, start: int) -> int | None:
    """Given ``text[start] == '{'``, return the index just past its matching ``}``."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def extract_json_text(text: str) -> str | None:
    """
    Return the first balanced ``{...}`` block of *text*, or *None*.

    When the text contains a markdown code fence the search starts inside the first fence, so
    prose before it (which may contain stray braces) is skipped.
    """
    start = -1
    fence = _FENCE.search(text)
    if fence:
        start = text.find("{", fence.end())
    if start < 0:
        start = text.find("{")
    if start < 0:
        return None
    end = _match_brace(text, start)
    return text[start:end] if end is not None else None


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"', strict=False)
    except json.JSONDecodeError:
        return value.replace('\\"', '"')


def _recover_fields(text: str) -> Dict[str, str]:
    """Field-wise extraction for JSON the decoder rejects (unescaped quotes, missing braces)."""
    fields: Dict[str, str] = {}
    for name in ("thought", "action"):
        match = re.search(_STRING_FIELD.format(name), text)
        if match:
            fields[name] = _unescape(match.group(1))

    match = _ACTION_INPUT_START.search(text)
    if match:
        pos = match.end()
        if text.startswith("{", pos):
            end = _match_brace(text, pos)
            fields["action_input"] = text[pos:end] if end else text[pos:]
        else:
            value = re.match(r'"((?:[^"\\]|\\.)*)"', text[pos:])
            if value:
                fields["action_input"] = _unescape(value.group(1))

    match = _FINAL_ANSWER_CLOSED.search(text) or _FINAL_ANSWER_OPEN.search(text)
    if match:
        fields["final_answer"] = _unescape(match.group(1))
    return fields


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def match_tool_name(action: str, tool_names: Collection[str]) -> str | None:
    """
    Map the model's declared action onto a registered tool name.

    Exact match first, then a case-insensitive one, then the longest registered name contained
    in the action text (models like to write "Let me run SearchTool").
    """
    if action in tool_names:
        return action
    lowered = action.strip().lower()
    for name in tool_names:
        if name.lower() == lowered:
            return name
    for name in sorted(tool_names, key=lambda n: (-len(n), n)):
        if name.lower() in lowered:
            return name
    return None


def response_text(response: Mapping[str, Any], config: ParserConfig) -> Any:
    """The free-text part of *response*: the configured filter, else its ``response`` field."""
    if config.response_filter:
        return read_path(response, config.response_filter)
    if "response" in response:
        return response["response"]
    return response


# ---------------------------------------------------------------------------
# Dialects
# ---------------------------------------------------------------------------
class ResponseDialect(ABC):
    """One way a provider expresses tool calls and answers."""

    @abstractmethod
    def parse(
        self, response: Mapping[str, Any], config: ParserConfig, tool_names: Collection[str]
    ) -> IterationState:
        """Classify *response* into an :class:`IterationState`."""


class GenericDialect(ResponseDialect):
    """JSON-in-text responses, with plain prose accepted as a final answer."""

    def parse(
        self, response: Mapping[str, Any], config: ParserConfig, tool_names: Collection[str]
    ) -> IterationState:
        text = response_text(response, config)
        if isinstance(text, Mapping):
            obj = dict(text)
            return self.from_object(obj, _as_text(obj) or "{}", tool_names)
        if text is None:
            logger.warning("Model response has no text at the configured location")
            return IterationState(final_answer="", parse_degraded=True)
        return self.parse_text(str(text), tool_names)

    def parse_text(self, text: str, tool_names: Collection[str]) -> IterationState:
        """Parse free text that may embed a JSON decision object."""
        json_text = extract_json_text(text)
        if json_text is not None:
            try:
                obj = json.loads(json_text, strict=False)
            except json.JSONDecodeError:
                obj = None
            if isinstance(obj, dict):
                return self.from_object(obj, json_text, tool_names)

        fields = _recover_fields(json_text or text)
        if "action" in fields or "final_answer" in fields:
            logger.debug("Recovered fields from malformed JSON: %s", sorted(fields))
            return self.from_object(fields, json_text or text, tool_names)

        # plain prose
        return IterationState(final_answer=text, parse_degraded=True)

    @staticmethod
    def from_object(
        obj: Mapping[str, Any], json_text: str, tool_names: Collection[str]
    ) -> IterationState:
        """Build the state from a decoded decision object whose source text is *json_text*."""
        thought = _as_text(obj.get("thought"))
        final_answer = obj.get("final_answer")
        action = obj.get("action")

        if final_answer is not None:
            return IterationState(
                thought=thought, final_answer=_as_text(final_answer), thought_response=json_text
            )

        if action:
            matched = match_tool_name(str(action), tool_names)
            if matched is not None:
                return IterationState(
                    thought=thought,
                    action=matched,
                    action_input=_as_text(obj.get("action_input")),
                    thought_response=json_text,
                )
            logger.info("Model chose unknown action %r, treating its reply as the answer", action)

        # No usable action and no answer: echo the structured reply as the answer.
        return IterationState(
            thought=thought,
            final_answer=json_text,
            thought_response=json_text,
            parse_degraded=True,
        )


class ToolCallDialect(ResponseDialect):
    """Provider-native tool calls located through :class:`ParserConfig` paths."""

    def parse(
        self, response: Mapping[str, Any], config: ParserConfig, tool_names: Collection[str]
    ) -> IterationState:
        text = response_text(response, config)
        envelope: Any = None
        envelope_used = False

        def resolve(path: str | None) -> Any:
            nonlocal envelope, envelope_used
            if not path:
                return None
            if not path.startswith(LLM_RESPONSE_PATH_PREFIX):
                return read_path(response, path)
            if envelope is None and isinstance(text, str):
                embedded = extract_json_text(text)
                try:
                    envelope = json.loads(embedded, strict=False) if embedded else {}
                except json.JSONDecodeError:
                    envelope = {}
            envelope_used = True
            return read_path(envelope, path[len(LLM_RESPONSE_PATH_PREFIX) :])

        tool_calls = resolve(config.tool_calls_path)
        finish_reason = resolve(config.finish_reason_path)
        if isinstance(tool_calls, Mapping):
            tool_calls = [tool_calls]

        wants_tool = (
            config.finish_reason_tool_use is None or finish_reason == config.finish_reason_tool_use
        )
        if tool_calls and wants_tool:
            call = tool_calls[0]
            name = read_path(call, config.tool_name_path)
            call_id = read_path(call, config.tool_call_id_path)
            thought = "" if envelope_used or not isinstance(text, str) else text
            if len(tool_calls) > 1:
                logger.info("Model requested %d tool calls, running the first", len(tool_calls))
            return IterationState(
                thought=thought,
                action=str(name) if name is not None else None,
                action_input=_as_text(read_path(call, config.tool_input_path)),
                tool_call_id=str(call_id) if call_id is not None else None,
                thought_response=_as_text(call),
            )

        if isinstance(text, str) and extract_json_text(text) is None:
            # A provider that stopped normally with plain text has answered.
            return IterationState(thought="", final_answer=text, thought_response=text)
        return GenericDialect().parse(response, config, tool_names)


def parse_llm_output(
    response: Mapping[str, Any] | str, config: ParserConfig, tool_names: Collection[str]
) -> IterationState:
    """
    Parse one model response with the dialect implied by *config*.

    Deterministic: the same response, config and tool names always give the same state.
    """
    if isinstance(response, str):
        response = {"response": response}
    dialect: ResponseDialect = ToolCallDialect() if config.tool_calls_path else GenericDialect()
    state = dialect.parse(response, config, tool_names)
    logger.debug("Parsed model output: %s", state)
    return state
