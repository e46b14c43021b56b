"""
Shared fakes for the test-suite.

Run with:
$ pytest -q
"""

import json
from typing import (
    Any,
    Dict,
    List,
    Mapping,
)

import pytest

from agentloop.agent.agent_loop import ReActLoop
from agentloop.agent.function_calling import load_function_calling
from agentloop.agent.model_client import ModelClient
from agentloop.config import AgentConfig
from agentloop.core.schema import (
    AgentSession,
    LLMSpec,
    ToolSpec,
)
from agentloop.memory.memory_store import InMemoryConversationMemory
from agentloop.tools import Tool

LOOP_PROMPT = "Question: ${parameters.question}\n\n${parameters.scratchpad}"


def generic(**fields: Any) -> Dict[str, str]:
    """A JSON-in-text model response."""

    return {"response": json.dumps(fields)}


class FakeModelClient(ModelClient):
    """Replays canned responses; the last one repeats when *repeat_last* is set."""

    def __init__(self, responses: List[Any], repeat_last: bool = False):
        self.responses = list(responses)
        self.repeat_last = repeat_last
        self.calls: List[Dict[str, Any]] = []

    async def invoke(self, model_id: str, parameters: Mapping[str, Any]) -> Mapping[str, Any]:
        self.calls.append(dict(parameters))
        if not self.responses:
            raise AssertionError("unexpected model call")
        if self.repeat_last and len(self.responses) == 1:
            response = self.responses[0]
        else:
            response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RecordingTool(Tool):
    """Stub search tool that remembers its calls."""

    default_description = "Search the knowledge base for facts."
    required_params = ("input",)
    instances: List["RecordingTool"] = []

    def __init__(self, spec: ToolSpec):
        super().__init__(spec)
        self.calls: List[Dict[str, str]] = []
        self.close_count = 0
        RecordingTool.instances.append(self)

    async def run(self, params: Mapping[str, str]) -> Any:
        self.calls.append(dict(params))
        return f"result for {params['input']}"

    async def close(self) -> None:
        self.close_count += 1
        await super().close()


class FailingTool(RecordingTool):
    """Stub tool whose every run raises."""

    async def run(self, params: Mapping[str, str]) -> Any:
        self.calls.append(dict(params))
        raise RuntimeError("index missing")


class FailingMemory(InMemoryConversationMemory):
    """Memory whose updates always fail."""

    async def update_interaction(self, interaction_id: str, fields: Mapping[str, Any]) -> None:
        raise OSError("disk full")


@pytest.fixture(autouse=True)
def _reset_instances():
    RecordingTool.instances.clear()
    yield
    RecordingTool.instances.clear()


@pytest.fixture
def tool_factories():
    return {"SearchTool": RecordingTool, "FailingTool": FailingTool}


@pytest.fixture
def search_tool():
    return RecordingTool(ToolSpec(type="SearchTool", name="Search"))


@pytest.fixture
def make_loop(search_tool):
    """Factory building a :class:`ReActLoop` around a :class:`FakeModelClient`."""

    def _make(
        responses: List[Any],
        *,
        params: Dict[str, str] | None = None,
        tools: Dict[str, Tool] | None = None,
        session: AgentSession | None = None,
        memory: InMemoryConversationMemory | None = None,
        repeat_last: bool = False,
    ):
        config = AgentConfig.from_parameters(params or {})
        function_calling = load_function_calling(config.llm_interface)
        if function_calling is not None:
            config = function_calling.configure(config)
        if tools is None:
            tools = {"Search": search_tool}
        client = FakeModelClient(responses, repeat_last=repeat_last)
        loop = ReActLoop(
            model_client=client,
            llm=LLMSpec(model_id="test-model"),
            config=config,
            session=session or AgentSession(question="What is the capital of France?"),
            prompt=LOOP_PROMPT.replace("${parameters.question}", "What is the capital of France?"),
            tools=tools,
            tool_specs={name: tool.spec for name, tool in tools.items()},
            memory=memory,
            function_calling=function_calling,
        )
        return loop, client

    return _make
