"""Runs the tool a model asked for and turns every outcome into an observation."""

import json
import logging
from enum import Enum
from typing import (
    Dict,
    Mapping,
)

from pydantic import BaseModel

from agentloop.agent.function_calling import (
    FunctionCalling,
    ToolResult,
)
from agentloop.common import (
    substitute,
    to_output_string,
)
from agentloop.config import AgentConfig
from agentloop.core.schema import ToolSpec
from agentloop.tools import Tool
from agentloop.tools.tool_call_parser import (
    ToolCallParseError,
    parse_action_input,
)

logger = logging.getLogger(__name__)

LLM_GENERATED_INPUT = "llm_generated_input"
INTERACTIONS_PREFIX = "${_interactions."


class ObservationKind(str, Enum):
    """How a tool call ended.  Failures are observations, never exceptions."""

    SUCCESS = "success"
    VALIDATION_FAILURE = "validation_failure"
    EXECUTION_FAILURE = "execution_failure"
    UNSUPPORTED = "unsupported"


class ToolObservation(BaseModel):
    """Textual result of one tool call, folded into the next prompt."""

    tool_name: str
    kind: ObservationKind
    text: str
    tool_call_id: str | None = None

    @property
    def ok(self) -> bool:
        """Whether the tool ran and returned normally."""
        return self.kind is ObservationKind.SUCCESS


def unsupported_tool(name: str | None, tool_call_id: str | None = None) -> ToolObservation:
    """Observation for a tool the session does not have."""
    return ToolObservation(
        tool_name=name or "",
        kind=ObservationKind.UNSUPPORTED,
        text=f"Failed to run the tool {name} which is unsupported.",
        tool_call_id=tool_call_id,
    )


def construct_tool_params(
    spec: ToolSpec, question: str, action_input: str | None
) -> Dict[str, str]:
    """
    Build the parameters a tool is run with.

    Parameters
    ----------
    spec:
        Static declaration of the tool; its ``parameters`` are the base layer.
    question:
        The user's original question, used as ``input`` when ``spec.use_original_input``.
    action_input:
        The model-generated input, used as ``input``.  When it reads as an object (JSON or the
        lenient single quote form) its keys are merged in on top.

    Returns
    -------
    Dict[str, str]
        ``spec.parameters`` + ``input`` + action input keys + ``llm_generated_input``, with every
        ``spec.config`` template substituted from those values last.  Without an action input
        neither ``input`` (unless ``use_original_input``) nor ``llm_generated_input`` is set.
    """
    params: Dict[str, str] = dict(spec.parameters)
    if spec.use_original_input:
        params["input"] = question
    elif action_input is not None:
        params["input"] = action_input

    if action_input is not None and action_input.lstrip().startswith("{"):
        try:
            fields = parse_action_input(action_input)
        except ToolCallParseError as exc:
            logger.debug("Action input for '%s' is not an object: %s", spec.tool_name, exc)
        else:
            if spec.use_original_input:
                fields.pop("input", None)
            params.update(fields)

    if action_input is not None:
        params[LLM_GENERATED_INPUT] = action_input

    rendered = {key: substitute(template, params) for key, template in spec.config.items()}
    params.update(rendered)
    logger.debug("Tool params for '%s': %s", spec.tool_name, params)
    return params


async def invoke_tool(
    tool: Tool,
    name: str,
    params: Mapping[str, str],
    action_input: str | None,
    tool_call_id: str | None = None,
) -> ToolObservation:
    """
    Validate *params* and run *tool* with them.

    Never raises for tool-level problems: an invalid input or an exception inside the tool
    becomes a failure observation the model can react to on the next iteration.
    """
    if not tool.validate(params):
        logger.info("Tool '%s' rejected input %s", name, action_input)
        return ToolObservation(
            tool_name=name,
            kind=ObservationKind.VALIDATION_FAILURE,
            text=f"Failed to run the tool {name} due to wrong input {action_input}.",
            tool_call_id=tool_call_id,
        )

    try:
        logger.debug("Executing tool '%s'", name)
        output = await tool.run(params)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error in tool '%s'", name)
        return ToolObservation(
            tool_name=name,
            kind=ObservationKind.EXECUTION_FAILURE,
            text=f"Failed to run the tool {name} with the error message {exc}.",
            tool_call_id=tool_call_id,
        )

    text = to_output_string(output)
    logger.info("Tool '%s' returned %d characters", name, len(text))
    return ToolObservation(
        tool_name=name, kind=ObservationKind.SUCCESS, text=text, tool_call_id=tool_call_id
    )


def wrap_observation(
    observation: ToolObservation,
    config: AgentConfig,
    function_calling: FunctionCalling | None = None,
) -> str | None:
    """
    Render *observation* as an interaction entry for the next model request.

    With a function-calling adapter the provider's tool-result message is used; otherwise the
    ``interaction_template.tool_response`` template, if the agent has one.  Returns *None*
    when the agent keeps no interaction list.
    """
    if function_calling is not None:
        messages = function_calling.supply(
            [ToolResult(tool_call_id=observation.tool_call_id or "", text=observation.text)]
        )
        # one tool call per iteration, so one message
        return messages[0].to_json() if messages else None

    if config.interaction_tool_response_template:
        return substitute(
            config.interaction_tool_response_template,
            {
                "tool_call_id": observation.tool_call_id or "",
                "tool_response": json.dumps(observation.text, ensure_ascii=False)[1:-1],
            },
            INTERACTIONS_PREFIX,
        )
    return None
