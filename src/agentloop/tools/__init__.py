"""
Tool registry for agentloop.

This module provides the :class:`Tool` base class, a decorator to register tool factories by type
and :func:`create_tools`, which turns the tool specs of an agent into live tool instances for one
session.  Tool implementations themselves live outside this package; :class:`EchoTool` is the
only built-in.
"""

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
    Iterable,
    Mapping,
    Tuple,
    Type,
)

from agentloop.core.schema import ToolSpec

logger = logging.getLogger(__name__)


class Tool(ABC):
    """
    A live tool instance bound to one :class:`ToolSpec` for the lifetime of a session.

    Subclasses implement :meth:`run`; they may list ``required_params`` to get the default
    :meth:`validate` behaviour, and override :meth:`close` to release resources.
    """

    default_description: ClassVar[str | None] = None
    required_params: ClassVar[Tuple[str, ...]] = ()

    def __init__(self, spec: ToolSpec):
        self.spec = spec
        self.name = spec.tool_name
        self.description = spec.description or self.default_description
        self.closed = False

    def validate(self, params: Mapping[str, str]) -> bool:
        """Return *True* when every required parameter is present and non-empty."""
        return all(params.get(key) for key in self.required_params)

    @abstractmethod
    async def run(self, params: Mapping[str, str]) -> Any:
        """Execute the tool and return its raw output."""

    async def close(self) -> None:
        """Release resources held by the instance."""
        self.closed = True


TOOL_REGISTRY: Dict[str, Type[Tool]] = {}
"""Default registry of tool factories, keyed by tool type."""


def register_tool(tool_type: str) -> Callable[[Type[Tool]], Type[Tool]]:
    """
    Register a :class:`Tool` subclass as the factory for *tool_type*.

    Used as a decorator::

        @register_tool("SearchTool")
        class SearchTool(Tool):
            async def run(self, params):
                ...

    Raises
    ------
    ValueError
        If a factory for the same type is already registered.
    """
    if tool_type in TOOL_REGISTRY:
        raise ValueError(f"Tool type '{tool_type}' is already registered.")
    logger.debug("Registering tool type '%s'", tool_type)

    def wrapper(cls: Type[Tool]) -> Type[Tool]:
        TOOL_REGISTRY[tool_type] = cls
        return cls

    return wrapper


async def create_tools(
    specs: Iterable[ToolSpec],
    factories: Mapping[str, Type[Tool]] | None = None,
) -> Tuple[Dict[str, Tool], Dict[str, ToolSpec]]:
    """
    Instantiate one tool per tool name.

    Specs are resolved by name before anything is built: a later spec with the same name
    replaces an earlier one, so no instance is ever created and then dropped.

    Returns
    -------
    (tools, spec_map)
        Both keyed by the tool name exposed to the model.

    Raises
    ------
    ValueError
        If a spec names a tool type without a registered factory.  Nothing is instantiated.
    """
    if factories is None:
        factories = TOOL_REGISTRY

    spec_map: Dict[str, ToolSpec] = {}
    for spec in specs:
        if spec.tool_name in spec_map:
            logger.info("Tool '%s' is declared twice, using the later spec", spec.tool_name)
        spec_map[spec.tool_name] = spec
    for spec in spec_map.values():
        if spec.type not in factories:
            raise ValueError(f"Tool type '{spec.type}' is not registered.")

    tools: Dict[str, Tool] = {}
    try:
        for name, spec in spec_map.items():
            tools[name] = factories[spec.type](spec)
    except Exception:
        await close_tools(tools)
        raise
    logger.debug("Created tools: %s", list(tools))
    return tools, spec_map


async def close_tools(tools: Mapping[str, Tool]) -> None:
    """Close every tool instance, logging failures so one bad tool does not leak the rest."""
    for name, tool in tools.items():
        try:
            await tool.close()
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to close tool '%s'", name)


@register_tool("EchoTool")
class EchoTool(Tool):
    """Echo the input text back to the caller."""

    default_description = "Use this tool to repeat the given input back verbatim."
    required_params = ("input",)

    async def run(self, params: Mapping[str, str]) -> Any:
        return params["input"]
