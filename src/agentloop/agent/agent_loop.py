"""
ReAct orchestration loop.

One :class:`ReActLoop` drives one session through an explicit state machine::

    DISPATCHED -> PARSED -> TOOL_RUNNING -> FOLDED -> DISPATCHED -> ...
                        \\-> FINAL
                        \\-> MAX_ITERATIONS_REACHED

Each non-terminal state has a transition method returning the next state.  Iterations run
strictly one after another: a tool finishes and its observation is folded into the scratchpad
before the next prompt is rendered.  The number of model calls never exceeds
``config.max_iterations``.
"""

import itertools
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
)

from agentloop.agent.function_calling import FunctionCalling
from agentloop.agent.model_client import (
    ModelClient,
    ModelInvocationError,
)
from agentloop.agent.output_parser import parse_llm_output
from agentloop.agent.prompt import render_scratchpad
from agentloop.agent.tool_executor import (
    ToolObservation,
    construct_tool_params,
    invoke_tool,
    unsupported_tool,
    wrap_observation,
)
from agentloop.common import substitute
from agentloop.config import AgentConfig
from agentloop.core.schema import (
    AgentResult,
    AgentSession,
    InteractionRecord,
    IterationState,
    LLMSpec,
    LoopState,
    OutputItem,
    ToolSpec,
    TraceStep,
)
from agentloop.core.templates import MAX_ITERATIONS_MESSAGE
from agentloop.memory.memory_store import (
    ConversationMemory,
    MemoryPersistenceError,
)
from agentloop.tools import (
    Tool,
    close_tools,
)

logger = logging.getLogger(__name__)

MEMORY_ID = "memory_id"
PARENT_INTERACTION_ID = "parent_interaction_id"
RESPONSE = "response"
ADDITIONAL_INFO = "additional_info"
INTERACTIONS = "_interactions"


class ReActLoop:
    """
    The controller of one agent session.

    Parameters
    ----------
    model_client:
        Channel used for every model call.
    llm:
        Model the session talks to.
    config:
        Typed session configuration.
    session:
        Conversation identity and the user's question.
    prompt:
        Assembled prompt; only its scratchpad placeholder changes between iterations.
    tools, tool_specs:
        Live tool instances and their specs, keyed by tool name.  The loop owns the instances
        and closes them when it stops.
    model_params:
        Static request parameters sent with every model call.
    memory:
        Conversation memory, or *None* for a memory-less session.
    function_calling:
        Provider adapter for native tool use, or *None* for the JSON-in-text convention.
    """

    def __init__(
        self,
        *,
        model_client: ModelClient,
        llm: LLMSpec,
        config: AgentConfig,
        session: AgentSession,
        prompt: str,
        tools: Dict[str, Tool],
        tool_specs: Mapping[str, ToolSpec],
        model_params: Mapping[str, str] | None = None,
        memory: ConversationMemory | None = None,
        function_calling: FunctionCalling | None = None,
    ):
        self.model_client = model_client
        self.llm = llm
        self.config = config
        self.session = session
        self.prompt = prompt
        self.tools = tools
        self.tool_specs = tool_specs
        self.model_params = dict(model_params or {})
        self.memory = memory
        self.function_calling = function_calling

        self.state = LoopState.DISPATCHED
        self.iterations = 0
        self.scratchpad: List[str] = []
        self.interactions: List[str] = []
        self.trace: List[TraceStep] = []
        self.additional_info: Dict[str, List[str]] = {}

        self._trace_numbers = itertools.count(1)
        self._response: Mapping[str, Any] = {}
        self._turn = IterationState()
        self._observation: ToolObservation | None = None
        self._last_thought = ""
        self._final_answer = ""

    # ---------------------------------------------------------------------------
    # Driver
    # ---------------------------------------------------------------------------
    async def run(self) -> AgentResult:
        """
        Run the session to a terminal state and return its result.

        Raises
        ------
        ModelInvocationError
            If a model call fails.  The loop stops immediately without an answer.
        MemoryPersistenceError
            If the final answer cannot be saved to conversation memory.
        """
        transitions: Dict[LoopState, Callable[[], Awaitable[LoopState]]] = {
            LoopState.DISPATCHED: self._dispatch,
            LoopState.PARSED: self._parse,
            LoopState.TOOL_RUNNING: self._run_tool,
            LoopState.FOLDED: self._fold,
        }
        try:
            while not self.state.is_terminal:
                previous = self.state
                self.state = await transitions[self.state]()
                logger.debug("Loop transition %s -> %s", previous.value, self.state.value)
            return await self._finish()
        finally:
            await close_tools(self.tools)

    # ---------------------------------------------------------------------------
    # Transitions
    # ---------------------------------------------------------------------------
    async def _dispatch(self) -> LoopState:
        """Render the prompt with the current scratchpad and call the model."""
        params: Dict[str, Any] = dict(self.model_params)
        params["prompt"] = render_scratchpad(self.prompt, "".join(self.scratchpad))
        if self.interactions:
            params[INTERACTIONS] = ", " + ", ".join(self.interactions)

        self.iterations += 1
        logger.info("Model call %d/%d", self.iterations, self.config.max_iterations)
        try:
            self._response = await self.model_client.invoke(self.llm.model_id, params)
        except ModelInvocationError:
            raise
        except Exception as exc:
            raise ModelInvocationError(
                f"Failed to invoke model '{self.llm.model_id}': {exc}"
            ) from exc
        return LoopState.PARSED

    async def _parse(self) -> LoopState:
        """Classify the response as a final answer or a tool call."""
        turn = parse_llm_output(self._response, self.config.parser, self.tools.keys())
        self._turn = turn

        if turn.is_final:
            if turn.parse_degraded:
                logger.info("Using unstructured model output as the final answer")
            self._final_answer = (turn.final_answer or "").strip()
            return LoopState.FINAL

        self._last_thought = turn.thought or ""
        if self.function_calling is not None:
            assistant = self.function_calling.assistant_message(self._response)
            if assistant:
                self.interactions.append(assistant)
        await self._record_trace("LLM", self.session.question, turn.thought_response)

        if self.iterations >= self.config.max_iterations:
            logger.info("Iteration budget spent, not running '%s'", turn.action)
            return LoopState.MAX_ITERATIONS_REACHED
        return LoopState.TOOL_RUNNING

    async def _run_tool(self) -> LoopState:
        """Run the requested tool; every outcome becomes an observation."""
        turn = self._turn
        name = turn.action
        tool = self.tools.get(name) if name else None
        if tool is None:
            logger.warning("Model requested unsupported tool '%s'", name)
            self._observation = unsupported_tool(name, turn.tool_call_id)
            return LoopState.FOLDED

        spec = self.tool_specs[name]
        params = construct_tool_params(spec, self.session.question, turn.action_input)
        self._observation = await invoke_tool(
            tool, name, params, turn.action_input, turn.tool_call_id
        )
        return LoopState.FOLDED

    async def _fold(self) -> LoopState:
        """Append the observation to the scratchpad, the interactions and the trace."""
        turn = self._turn
        observation = self._observation
        assert observation is not None

        spec = self.tool_specs.get(observation.tool_name)
        if spec is not None and spec.include_output_in_agent_response:
            key = f"{spec.tool_name}.output"
            self.additional_info.setdefault(key, []).append(observation.text)

        entry = substitute(
            self.config.tool_response_template,
            {
                "llm_tool_selection_response": turn.thought_response,
                "tool_name": observation.tool_name,
                "tool_input": turn.action_input,
                "observation": observation.text,
            },
            blank_missing=True,
        )
        self.scratchpad.append(f"{entry}\n\n")

        wrapped = wrap_observation(observation, self.config, self.function_calling)
        if wrapped:
            self.interactions.append(wrapped)

        await self._record_trace("ReAct", turn.action_input, observation.text)
        return LoopState.DISPATCHED

    # ---------------------------------------------------------------------------
    # Terminal handling
    # ---------------------------------------------------------------------------
    def _max_iterations_answer(self) -> str:
        answer = MAX_ITERATIONS_MESSAGE.format(max_iterations=self.config.max_iterations)
        if self._last_thought:
            answer = f"{answer}. Last thought: {self._last_thought}"
        return answer

    async def _finish(self) -> AgentResult:
        """Persist the answer and build the result; both terminal states end here."""
        if self.state is LoopState.MAX_ITERATIONS_REACHED:
            self._final_answer = self._max_iterations_answer()
        answer = self._final_answer
        logger.info(
            "Agent finished in state %s after %d model call(s)", self.state.value, self.iterations
        )

        await self._save_answer(answer)

        session = self.session
        outputs = [
            OutputItem(name=MEMORY_ID, result=session.conversation_id),
            OutputItem(name=PARENT_INTERACTION_ID, result=session.parent_interaction_id),
        ]
        if self.config.verbose:
            outputs.extend(OutputItem(name=RESPONSE, result=step.response) for step in self.trace)
            outputs.append(OutputItem(name=RESPONSE, result=answer))
        else:
            outputs.append(
                OutputItem(
                    name=RESPONSE,
                    data={RESPONSE: answer, ADDITIONAL_INFO: self.additional_info},
                )
            )

        return AgentResult(
            outputs=outputs,
            final_answer=answer,
            additional_info=self.additional_info,
            terminal_state=self.state,
            iterations=self.iterations,
        )

    async def _save_answer(self, answer: str) -> None:
        session = self.session
        if self.memory is None or not session.conversation_id:
            return
        try:
            if not self.config.trace_disabled and session.parent_interaction_id:
                await self.memory.append_interaction(
                    session.conversation_id,
                    session.parent_interaction_id,
                    InteractionRecord(
                        question=session.question,
                        response=answer,
                        trace_number=next(self._trace_numbers),
                        final_answer=True,
                    ),
                )
            if session.parent_interaction_id:
                await self.memory.update_interaction(
                    session.parent_interaction_id,
                    {RESPONSE: answer, ADDITIONAL_INFO: self.additional_info},
                )
        except MemoryPersistenceError:
            logger.exception("Failed to save the final answer")
            raise
        except Exception as exc:
            logger.exception("Failed to save the final answer")
            raise MemoryPersistenceError(f"Failed to save the final answer: {exc}") from exc

    async def _record_trace(self, origin: str, question: str | None, response: str | None) -> None:
        step = TraceStep(
            trace_number=next(self._trace_numbers),
            origin=origin,
            question=question,
            response=response,
        )
        self.trace.append(step)

        session = self.session
        if (
            self.memory is None
            or self.config.trace_disabled
            or not session.conversation_id
            or not session.parent_interaction_id
        ):
            return
        try:
            await self.memory.append_interaction(
                session.conversation_id,
                session.parent_interaction_id,
                InteractionRecord(
                    question=question,
                    response=response,
                    origin=origin,
                    trace_number=step.trace_number,
                ),
            )
        except Exception:  # pylint: disable=broad-except
            logger.warning("Failed to save trace step %d", step.trace_number, exc_info=True)
