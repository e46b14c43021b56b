"""
agentloop entry point.

This file handles startup concerns (arg-parsing, env setup, logging) and runs one agent session
against an HTTP model endpoint.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from agentloop.agent.agent_runner import AgentRunner
from agentloop.agent.model_client import (
    HttpModelClient,
    ModelInvocationError,
)
from agentloop.common import (
    AnsiColors,
    colored_print,
)
from agentloop.config import settings
from agentloop.core.schema import (
    AgentDefinition,
    AgentResult,
)
from agentloop.memory.memory_store import (
    ConversationMemory,
    JsonlConversationMemory,
    MemoryPersistenceError,
)
from agentloop.tools.discovery import HttpToolCatalog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    # Reduce httpx log level to WARNING
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_agent(path: str) -> AgentDefinition:
    with Path(path).open("r", encoding="utf-8") as f:
        return AgentDefinition.model_validate(json.load(f))


def _print_result(result: AgentResult, verbose: bool) -> None:
    if verbose:
        for item in result.outputs:
            colored_print(f"[{item.name}] {item.result or item.data}", AnsiColors.BLUE)
    colored_print(result.final_answer, AnsiColors.GREEN)
    for key, values in result.additional_info.items():
        colored_print(f"{key}: {values}", AnsiColors.YELLOW)


async def _run(args: argparse.Namespace, agent: AgentDefinition) -> AgentResult:
    memory: ConversationMemory | None = None
    if args.memory_file:
        memory = JsonlConversationMemory(args.memory_file)
    runner = AgentRunner(
        model_client=HttpModelClient(endpoint=args.endpoint),
        memory=memory,
        discovery=HttpToolCatalog() if settings.TOOL_CATALOG_URL else None,
    )
    params = {"verbose": "true"} if args.verbose else {}
    return await runner.run(
        agent, args.question, params, conversation_id=args.conversation_id or None
    )


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the agentloop command.

    Loads an agent definition, runs a single question through it and prints the answer.
    Returns the process exit code.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run a ReAct agent on one question")
    parser.add_argument("--agent", required=True, help="JSON file with the agent definition")
    parser.add_argument("--question", required=True, help="The question to answer")
    parser.add_argument(
        "--endpoint",
        default=settings.MODEL_ENDPOINT,
        help="Model prediction endpoint, may contain {model_id} (default: %(default)s)",
    )
    parser.add_argument(
        "--memory-file",
        default=None,
        help="JSON lines file used as conversation memory (default: no memory)",
    )
    parser.add_argument(
        "--conversation-id", default=None, help="Continue an existing conversation"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=settings.VERBOSE,
        help="Print the full trace, not only the final answer",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level

    _init_logging(settings.LOG_LEVEL)
    logger.debug("Settings: %s", settings.model_dump())

    try:
        agent = _load_agent(args.agent)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        logger.error("Cannot load agent definition %s: %s", args.agent, exc)
        return 2

    logger.info("Starting agent '%s'", agent.name)
    try:
        result = asyncio.run(_run(args, agent))
    except (ModelInvocationError, MemoryPersistenceError) as exc:
        colored_print(f"⚠️ {exc}", AnsiColors.RED)
        return 1

    _print_result(result, args.verbose)
    return 0


if __name__ == "__main__":
    sys.exit(main())
