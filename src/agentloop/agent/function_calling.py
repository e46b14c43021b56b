"""
Function-calling adapters.

An adapter teaches the loop one provider's native tool-use protocol:

1. where the text, tool calls and finish reason live in the provider's response
   (:meth:`FunctionCalling.configure` fills the :class:`ParserConfig`);
2. how the available tools are declared in the request (:meth:`FunctionCalling.declare_tools`);
3. how the assistant turn that requested a tool and the tool results are sent back
   (:meth:`FunctionCalling.assistant_message`, :meth:`FunctionCalling.supply`).

Agents select an adapter with the ``_llm_interface`` parameter.  Without one the loop uses the
JSON-in-text convention of the default prompt.

Additional providers can be added by subclassing :class:`FunctionCalling` and registering via
:func:`register_function_calling`.
"""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    ClassVar,
    Dict,
    List,
    Mapping,
    Type,
)

from pydantic import BaseModel

from agentloop.common import read_path
from agentloop.config import (
    AgentConfig,
    ParserConfig,
)
from agentloop.core.schema import ToolSpec
from agentloop.tools import Tool

logger = logging.getLogger(__name__)


class ToolResult(BaseModel):
    """Result of one tool call, addressed by the provider's call id."""

    tool_call_id: str
    text: str


class LLMMessage(BaseModel):
    """One message of a provider conversation."""

    role: str
    content: Any = None
    tool_call_id: str | None = None

    def to_json(self) -> str:
        """Serialized form spliced into the model request's message list."""
        return json.dumps(self.model_dump(exclude_none=True), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_FUNCTION_CALLING_REGISTRY: Dict[str, Type["FunctionCalling"]] = {}


def register_function_calling(name: str) -> Callable:
    """Decorator to register an adapter class under *name*."""

    def wrapper(cls: Type["FunctionCalling"]) -> Type["FunctionCalling"]:
        _FUNCTION_CALLING_REGISTRY[name.lower()] = cls
        return cls

    return wrapper


def load_function_calling(name: str | None) -> "FunctionCalling | None":
    """
    Return a fresh adapter for *name*, or *None* when no interface is configured.

    Raises
    ------
    ValueError
        If *name* is not a registered interface.
    """
    if not name or not name.strip():
        return None
    cls = _FUNCTION_CALLING_REGISTRY.get(name.strip().lower())
    if cls is None:
        raise ValueError(f"LLM interface '{name}' is not supported.")
    return cls()


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class FunctionCalling(ABC):
    """Provider-specific half of the tool-use conversation."""

    parser_defaults: ClassVar[Dict[str, str]] = {}

    def configure(self, config: AgentConfig) -> AgentConfig:
        """
        Return *config* with this provider's response paths.

        Paths the agent set explicitly win over the provider defaults.
        """
        explicit = config.parser.model_dump(exclude_unset=True)
        parser = ParserConfig(**{**self.parser_defaults, **explicit})
        return config.model_copy(update={"parser": parser})

    @staticmethod
    def _input_schema(spec: ToolSpec) -> Dict[str, Any]:
        schema = spec.attributes.get("input_schema")
        if isinstance(schema, str):
            try:
                schema = json.loads(schema)
            except json.JSONDecodeError:
                logger.warning("Tool '%s' has an invalid input_schema", spec.tool_name)
                schema = None
        if not isinstance(schema, dict):
            schema = {
                "type": "object",
                "properties": {"input": {"type": "string"}},
                "required": ["input"],
            }
        return schema

    @abstractmethod
    def declare_tool(self, tool: Tool, spec: ToolSpec) -> Dict[str, Any]:
        """Native declaration of one tool."""

    def declare_tools(
        self, tools: Mapping[str, Tool], specs: Mapping[str, ToolSpec]
    ) -> List[Dict[str, Any]]:
        """Native declarations of every tool, in *tools* order."""
        return [self.declare_tool(tool, specs[name]) for name, tool in tools.items()]

    @abstractmethod
    def assistant_message(self, response: Mapping[str, Any]) -> str | None:
        """The assistant turn of *response*, serialized for the next request."""

    @abstractmethod
    def supply(self, results: List[ToolResult]) -> List[LLMMessage]:
        """Tool-result messages for *results*."""


# ---------------------------------------------------------------------------
# Concrete adapters
# ---------------------------------------------------------------------------
@register_function_calling("openai/v1/chat/completions")
class OpenAIChatCompletions(FunctionCalling):
    """OpenAI chat completions: ``tool_calls`` on the message, ``role: tool`` results."""

    parser_defaults = {
        "response_filter": "$.choices[0].message.content",
        "tool_calls_path": "$.choices[0].message.tool_calls",
        "tool_name_path": "function.name",
        "tool_input_path": "function.arguments",
        "tool_call_id_path": "id",
        "finish_reason_path": "$.choices[0].finish_reason",
        "finish_reason_tool_use": "tool_calls",
    }

    def declare_tool(self, tool: Tool, spec: ToolSpec) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": self._input_schema(spec),
            },
        }

    def assistant_message(self, response: Mapping[str, Any]) -> str | None:
        message = read_path(response, "$.choices[0].message")
        return json.dumps(message, ensure_ascii=False) if message else None

    def supply(self, results: List[ToolResult]) -> List[LLMMessage]:
        return [
            LLMMessage(role="tool", tool_call_id=result.tool_call_id, content=result.text)
            for result in results
        ]


@register_function_calling("bedrock/converse/claude")
class BedrockConverseClaude(FunctionCalling):
    """Bedrock Converse with Claude: ``toolUse`` content blocks, ``toolResult`` replies."""

    parser_defaults = {
        "response_filter": "$.output.message.content[0].text",
        "tool_calls_path": "$.output.message.content[*].toolUse",
        "tool_name_path": "name",
        "tool_input_path": "input",
        "tool_call_id_path": "toolUseId",
        "finish_reason_path": "$.stopReason",
        "finish_reason_tool_use": "tool_use",
    }

    def declare_tool(self, tool: Tool, spec: ToolSpec) -> Dict[str, Any]:
        return {
            "toolSpec": {
                "name": tool.name,
                "description": tool.description,
                "inputSchema": {"json": self._input_schema(spec)},
            }
        }

    def assistant_message(self, response: Mapping[str, Any]) -> str | None:
        message = read_path(response, "$.output.message")
        return json.dumps(message, ensure_ascii=False) if message else None

    def supply(self, results: List[ToolResult]) -> List[LLMMessage]:
        content = [
            {
                "toolResult": {
                    "toolUseId": result.tool_call_id,
                    "content": [{"text": result.text}],
                }
            }
            for result in results
        ]
        return [LLMMessage(role="user", content=content)] if content else []


@register_function_calling("bedrock/converse/deepseek_r1")
class BedrockConverseDeepseekR1(FunctionCalling):
    """
    Bedrock Converse with DeepSeek-R1, which has no native tool use.

    The model is prompted to answer with a JSON envelope
    ``{"stop_reason": ..., "tool_calls": [{"id", "tool_name", "input"}]}`` inside its text, and
    tool results are sent back as a JSON text block.
    """

    parser_defaults = {
        "response_filter": "$.output.message.content[0].text",
        "tool_calls_path": "_llm_response.tool_calls",
        "tool_name_path": "tool_name",
        "tool_input_path": "input",
        "tool_call_id_path": "id",
        "finish_reason_path": "_llm_response.stop_reason",
        "finish_reason_tool_use": "tool_use",
    }

    def declare_tool(self, tool: Tool, spec: ToolSpec) -> Dict[str, Any]:
        return {
            "tool_name": tool.name,
            "description": tool.description,
            "input_schema": self._input_schema(spec),
        }

    def assistant_message(self, response: Mapping[str, Any]) -> str | None:
        text = read_path(response, "$.output.message.content[0].text")
        if text is None:
            return None
        message = {"role": "assistant", "content": [{"text": text}]}
        return json.dumps(message, ensure_ascii=False)

    def supply(self, results: List[ToolResult]) -> List[LLMMessage]:
        return [
            LLMMessage(
                role="user",
                content=[
                    {
                        "text": json.dumps(
                            {"tool_call_id": result.tool_call_id, "tool_result": result.text},
                            ensure_ascii=False,
                        )
                    }
                ],
            )
            for result in results
        ]
