"""Configuration settings for the application."""

import json
import logging
from typing import (
    Any,
    Dict,
    List,
    Mapping,
)

from pydantic import (
    BaseModel,
    Field,
)
from pydantic_settings import BaseSettings

from agentloop.core import templates

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    DEBUG: bool = False
    DATA_DIR: str = "./data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Agent loop defaults, overridable per agent through its parameters
    MAX_ITERATIONS: int = 10
    MESSAGE_HISTORY_LIMIT: int = 10
    VERBOSE: bool = False
    TRACE_DISABLED: bool = False

    # Model invocation channel
    MODEL_ENDPOINT: str = "http://localhost:8000/models/{model_id}/_predict"
    MODEL_TIMEOUT: float = 30.0

    # Remote tool catalog (optional)
    TOOL_CATALOG_URL: str | None = None

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()


# ---------------------------------------------------------------------------
# Per-session agent configuration
# ---------------------------------------------------------------------------
class SectionFormat(BaseModel):
    """Wrapping applied to one list-valued prompt section."""

    prefix: str = ""
    suffix: str = ""
    item_prefix: str = ""
    item_suffix: str = ""


class PromptSections(BaseModel):
    """Formats of the list-valued prompt sections, defaulting to an XML-like tag scheme."""

    tools: SectionFormat = Field(
        default_factory=lambda: SectionFormat(
            prefix="You have access to the following tools defined in <tools>: \n<tools>\n",
            suffix="</tools>\n",
            item_prefix="<tool>\n",
            item_suffix="\n</tool>\n",
        )
    )
    indices: SectionFormat = Field(
        default_factory=lambda: SectionFormat(
            prefix="You have access to the following indices defined in <indices>: \n<indices>\n",
            suffix="</indices>\n",
            item_prefix="<index>\n",
            item_suffix="\n</index>\n",
        )
    )
    examples: SectionFormat = Field(
        default_factory=lambda: SectionFormat(
            prefix=(
                "EXAMPLES\n--------\n"
                "You should follow and learn from examples defined in <examples>: \n<examples>\n"
            ),
            suffix="</examples>\n",
            item_prefix="<example>\n",
            item_suffix="\n</example>\n",
        )
    )


class ParserConfig(BaseModel):
    """Where to find text, tool calls and the finish reason inside a model response."""

    response_filter: str | None = None
    tool_calls_path: str | None = None
    tool_name_path: str = "name"
    tool_input_path: str = "input"
    tool_call_id_path: str = "id"
    finish_reason_path: str | None = None
    finish_reason_tool_use: str | None = None


# parameter key -> (section field, SectionFormat field)
_SECTION_KEYS: Dict[str, tuple[str, str]] = {
    "tool_descriptions.prefix": ("tools", "prefix"),
    "tool_descriptions.suffix": ("tools", "suffix"),
    "tool_descriptions.tool.prefix": ("tools", "item_prefix"),
    "tool_descriptions.tool.suffix": ("tools", "item_suffix"),
    "indices.prefix": ("indices", "prefix"),
    "indices.suffix": ("indices", "suffix"),
    "indices.index.prefix": ("indices", "item_prefix"),
    "indices.index.suffix": ("indices", "item_suffix"),
    "examples.prefix": ("examples", "prefix"),
    "examples.suffix": ("examples", "suffix"),
    "examples.example.prefix": ("examples", "item_prefix"),
    "examples.example.suffix": ("examples", "item_suffix"),
}

_PARSER_KEYS: Dict[str, str] = {
    "llm_response_filter": "response_filter",
    "tool_calls.path": "tool_calls_path",
    "tool_calls.tool_name": "tool_name_path",
    "tool_calls.tool_input": "tool_input_path",
    "tool_calls.id_path": "tool_call_id_path",
    "llm_finish_reason_path": "finish_reason_path",
    "llm_finish_reason_tool_use": "finish_reason_tool_use",
}


def _flag(params: Mapping[str, str], key: str, default: bool) -> bool:
    value = params.get(key)
    if value is None:
        return default
    return str(value).strip().lower() == "true"


def _string_list(params: Mapping[str, str], key: str, default: List[str]) -> List[str]:
    raw = params.get(key)
    if raw is None:
        return list(default)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Parameter '%s' is not a JSON list, using it as a single entry", key)
        return [raw]
    return [str(v) for v in value] if isinstance(value, list) else [str(value)]


class AgentConfig(BaseModel):
    """
    Typed configuration of one agent session.

    Built once per session from the merged agent and request parameters and never mutated
    afterwards; per-iteration state lives in the loop, not here.
    """

    max_iterations: int = Field(default=10, ge=1)
    verbose: bool = False
    trace_disabled: bool = False
    message_history_limit: int = Field(default=10, ge=0)

    prompt_template: str = templates.PROMPT_TEMPLATE
    prompt_prefix: str = templates.PROMPT_TEMPLATE_PREFIX
    prompt_suffix: str = templates.PROMPT_TEMPLATE_SUFFIX
    response_format_instruction: str = templates.PROMPT_FORMAT_INSTRUCTION
    tool_response_template: str = templates.PROMPT_TEMPLATE_TOOL_RESPONSE
    tool_names_separator: str = ", "
    sections: PromptSections = Field(default_factory=PromptSections)

    chat_history_prefix: str = templates.CHAT_HISTORY_PREFIX
    chat_history_question_template: str | None = None
    chat_history_response_template: str | None = None
    interaction_tool_response_template: str | None = None

    inject_datetime: bool = False
    datetime_format: str | None = None
    system_prompt: str | None = None

    stop: List[str] = Field(default_factory=lambda: list(templates.DEFAULT_STOP))
    stop_sequences: List[str] = Field(
        default_factory=lambda: list(templates.DEFAULT_STOP_SEQUENCES)
    )

    llm_interface: str | None = None
    parser: ParserConfig = Field(default_factory=ParserConfig)

    @classmethod
    def from_parameters(cls, params: Mapping[str, str]) -> "AgentConfig":
        """Build a config from string parameters, falling back to :data:`settings` defaults."""
        values: Dict[str, Any] = {
            "max_iterations": int(params.get("max_iteration", settings.MAX_ITERATIONS)),
            "verbose": _flag(params, "verbose", settings.VERBOSE),
            "trace_disabled": _flag(params, "disable_trace", settings.TRACE_DISABLED),
            "message_history_limit": int(
                params.get("message_history_limit", settings.MESSAGE_HISTORY_LIMIT)
            ),
            "inject_datetime": _flag(params, "inject_datetime", False),
            "stop": _string_list(params, "stop", templates.DEFAULT_STOP),
            "stop_sequences": _string_list(
                params, "stop_sequences", templates.DEFAULT_STOP_SEQUENCES
            ),
        }
        optional = {
            "prompt": "prompt_template",
            "prompt.prefix": "prompt_prefix",
            "prompt.suffix": "prompt_suffix",
            "prompt.format_instruction": "response_format_instruction",
            "tool_response": "tool_response_template",
            "tool_names.separator": "tool_names_separator",
            "prompt.chat_history_prefix": "chat_history_prefix",
            "chat_history_template.user_question": "chat_history_question_template",
            "chat_history_template.ai_response": "chat_history_response_template",
            "interaction_template.tool_response": "interaction_tool_response_template",
            "datetime_format": "datetime_format",
            "system_prompt": "system_prompt",
            "_llm_interface": "llm_interface",
        }
        for key, field in optional.items():
            if params.get(key) is not None:
                values[field] = params[key]

        sections = PromptSections()
        for key, (section, attr) in _SECTION_KEYS.items():
            if params.get(key) is not None:
                setattr(getattr(sections, section), attr, params[key])
        values["sections"] = sections

        values["parser"] = ParserConfig(
            **{field: params[key] for key, field in _PARSER_KEYS.items() if params.get(key)}
        )
        return cls(**values)
