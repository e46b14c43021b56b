"""
Prompt assembly for the agent loop.

A prompt is built once per session from the agent's template.  The sections below are rendered
in a fixed order, each to a plain string that is empty when the section has no data, and the
template is then filled in a single substitution pass so that rendered text is never rescanned
for placeholders.

1. prefix / suffix
2. tool catalogue (descriptions and names)
3. index hints
4. few-shot examples
5. chat history
6. free-form context

The only placeholder left after assembly is the scratchpad, which the loop substitutes on every
iteration with :func:`render_scratchpad`.
"""

import json
import logging
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Sequence,
    Tuple,
)

from agentloop.common import substitute
from agentloop.config import (
    AgentConfig,
    SectionFormat,
)
from agentloop.core.schema import Message
from agentloop.tools import Tool

logger = logging.getLogger(__name__)

SCRATCHPAD = "scratchpad"
CHAT_HISTORY_MESSAGE_PREFIX = "${_chat_history.message."

# Keys rendered by a dedicated section rather than by plain substitution.
_SECTION_KEYS = frozenset(
    {
        "prompt.prefix",
        "prompt.suffix",
        "prompt.format_instruction",
        "tool_descriptions",
        "tool_names",
        "indices",
        "examples",
        "chat_history",
        "context",
        SCRATCHPAD,
    }
)


class ToolNotRegisteredError(ValueError):
    """Raised when the prompt lists a tool that has no registered instance or description."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _as_list(value: Any) -> List[str]:
    """Accept a JSON list string or a sequence; anything else is a single item."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return [value]
    if isinstance(value, (list, tuple)):
        return [v if isinstance(v, str) else json.dumps(v) for v in value]
    return [str(value)]


def wrap_section(items: Sequence[str], fmt: SectionFormat) -> str:
    """Wrap *items* with the section and item delimiters of *fmt*; no items render as ``""``."""
    if not items:
        return ""
    body = "".join(f"{fmt.item_prefix}{item}{fmt.item_suffix}" for item in items)
    return f"{fmt.prefix}{body}{fmt.suffix}"


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------
def tools_section(
    tools: Mapping[str, Tool],
    tool_names: Sequence[str],
    fmt: SectionFormat,
    separator: str = ", ",
) -> Tuple[str, str]:
    """
    Render the tool catalogue and the tool name list.

    Returns
    -------
    (tool_descriptions, tool_names)
        The wrapped ``name: description`` items and the names joined with *separator*.

    Raises
    ------
    ToolNotRegisteredError
        If a name in *tool_names* has no tool instance or the instance has no description.
    """
    descriptions: List[str] = []
    for name in tool_names:
        tool = tools.get(name)
        if tool is None or not tool.description:
            raise ToolNotRegisteredError(f"Tool '{name}' is not registered or has no description.")
        descriptions.append(f"{name}: {tool.description}")
    return wrap_section(descriptions, fmt), separator.join(tool_names)


def list_section(value: Any, fmt: SectionFormat) -> str:
    """Render a JSON-list parameter (``indices``, ``examples``) as a wrapped section."""
    return wrap_section(_as_list(value), fmt)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def inject_datetime(config: AgentConfig, now: datetime | None = None) -> AgentConfig:
    """
    Return *config* with the current date/time appended to the system prompt, or to the
    prompt prefix when the agent has no system prompt.  A no-op unless ``inject_datetime``.
    """
    if not config.inject_datetime:
        return config
    now = now or datetime.now(timezone.utc)
    fmt = config.datetime_format or "%Y-%m-%d %H:%M:%S %Z"
    stamp = f"Current date and time: {now.strftime(fmt)}"
    if config.system_prompt is not None:
        return config.model_copy(update={"system_prompt": f"{config.system_prompt}\n\n{stamp}"})
    return config.model_copy(update={"prompt_prefix": f"{config.prompt_prefix}\n\n{stamp}"})


def assemble_prompt(
    params: Mapping[str, str],
    tools: Mapping[str, Tool],
    tool_names: Sequence[str],
    config: AgentConfig,
) -> str:
    """
    Build the session prompt from ``config.prompt_template``.

    Parameters
    ----------
    params:
        Dynamic template inputs (question, chat history, context, ...).
    tools, tool_names:
        Live tool instances and the order in which they are listed.
    config:
        Templates and section formats of the session.

    Returns
    -------
    str
        The prompt with every placeholder resolved except ``${parameters.scratchpad}``.
        Placeholders without data render as ``""``.
    """
    values: Dict[str, Any] = {k: v for k, v in params.items() if k not in _SECTION_KEYS}
    descriptions, names = tools_section(
        tools, tool_names, config.sections.tools, config.tool_names_separator
    )

    # Configured fragments are templates themselves (the format instruction lists the tools).
    # Their leftover placeholders are blanked here, before any value is spliced in.
    fragment_values = {**values, "tool_names": names}

    def fragment(template: str) -> str:
        return substitute(template, fragment_values, blank_missing=True, keep={SCRATCHPAD})

    values.update(
        {
            "prompt.prefix": fragment(config.prompt_prefix),
            "prompt.suffix": fragment(config.prompt_suffix),
            "prompt.format_instruction": fragment(config.response_format_instruction),
            "tool_descriptions": descriptions,
            "tool_names": names,
            "indices": list_section(params.get("indices"), config.sections.indices),
            "examples": list_section(params.get("examples"), config.sections.examples),
            "chat_history": params.get("chat_history") or "",
            "context": params.get("context") or "",
        }
    )

    prompt = substitute(config.prompt_template, values, blank_missing=True, keep={SCRATCHPAD})
    logger.debug("Assembled prompt:\n%s", prompt)
    return prompt


def render_scratchpad(prompt: str, scratchpad: str) -> str:
    """
    Substitute the scratchpad into an assembled prompt.

    Only the scratchpad placeholder is touched; placeholder syntax that arrived with user
    values is left as it is.
    """
    return substitute(prompt, {SCRATCHPAD: scratchpad})


def format_chat_history(messages: Sequence[Message], config: AgentConfig) -> str:
    """
    Render recent conversation turns for the ``chat_history`` section.

    Without message templates the turns are listed after ``chat_history_prefix``.  With
    ``chat_history_question_template`` / ``chat_history_response_template`` each turn is rendered
    through them (``${_chat_history.message.question}`` / ``...response}``) with JSON-escaped text
    and the pieces are joined with ``", "``, ready to be spliced into a message list.
    """
    if not messages:
        return ""

    if config.chat_history_question_template is None:
        lines = "".join(f"{message}\n" for message in messages)
        return f"{config.chat_history_prefix}{lines}"

    parts: List[str] = []
    for message in messages:
        parts.append(
            substitute(
                config.chat_history_question_template,
                {"question": json.dumps(message.question)[1:-1]},
                CHAT_HISTORY_MESSAGE_PREFIX,
            )
        )
        parts.append(
            substitute(
                config.chat_history_response_template or "",
                {"response": json.dumps(message.response)[1:-1]},
                CHAT_HISTORY_MESSAGE_PREFIX,
            )
        )
    return ", ".join(parts) + ", "
