"""Prepares an agent session and runs it through :class:`ReActLoop`."""

import json
import logging
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Type,
)

from agentloop.agent.agent_loop import ReActLoop
from agentloop.agent.function_calling import load_function_calling
from agentloop.agent.model_client import ModelClient
from agentloop.agent.prompt import (
    assemble_prompt,
    format_chat_history,
    inject_datetime,
)
from agentloop.config import AgentConfig
from agentloop.core.schema import (
    AgentDefinition,
    AgentResult,
    AgentSession,
    InteractionRecord,
    Message,
    ToolSpec,
)
from agentloop.memory.memory_store import ConversationMemory
from agentloop.tools import (
    Tool,
    close_tools,
    create_tools,
)
from agentloop.tools.discovery import (
    ToolDiscovery,
    ToolDiscoveryError,
)

logger = logging.getLogger(__name__)


class AgentRunner:
    """
    Runs conversational agents.

    Collaborators are injected so every session gets the same channel, memory and tool
    factories without process-wide state.
    """

    def __init__(
        self,
        model_client: ModelClient,
        memory: ConversationMemory | None = None,
        discovery: ToolDiscovery | None = None,
        tool_factories: Mapping[str, Type[Tool]] | None = None,
    ):
        self.model_client = model_client
        self.memory = memory
        self.discovery = discovery
        self.tool_factories = tool_factories

    async def _tool_specs(
        self, agent: AgentDefinition, credentials: Mapping[str, str] | None
    ) -> List[ToolSpec]:
        """Static tools, then discovered ones; a discovered tool replaces a static namesake."""
        specs = list(agent.tools)
        if self.discovery is None:
            return specs
        try:
            discovered = await self.discovery.fetch_tools(agent, credentials)
        except ToolDiscoveryError as exc:
            logger.warning("Tool discovery failed, using static tools only: %s", exc)
            return specs
        return specs + discovered

    async def _start_session(
        self, question: str, conversation_id: str | None, parent_interaction_id: str | None
    ) -> AgentSession:
        if self.memory is None:
            return AgentSession(
                conversation_id=conversation_id,
                parent_interaction_id=parent_interaction_id,
                question=question,
            )
        if not conversation_id:
            conversation_id = await self.memory.create_session(title=question)
        if not parent_interaction_id:
            # root interaction, answered when the loop finishes
            parent_interaction_id = await self.memory.append_interaction(
                conversation_id, None, InteractionRecord(question=question, response="")
            )
        return AgentSession(
            conversation_id=conversation_id,
            parent_interaction_id=parent_interaction_id,
            question=question,
        )

    async def _history(self, session: AgentSession, config: AgentConfig) -> List[Message]:
        if self.memory is None or not session.conversation_id:
            return []
        return await self.memory.load_recent_messages(
            session.conversation_id, config.message_history_limit
        )

    @staticmethod
    def _model_params(
        agent: AgentDefinition, params: Mapping[str, str], config: AgentConfig
    ) -> Dict[str, Any]:
        model_params: Dict[str, Any] = {**agent.llm.parameters, **params}
        model_params["stop"] = json.dumps(config.stop)
        model_params["stop_sequences"] = json.dumps(config.stop_sequences)
        model_params["prompt.prefix"] = config.prompt_prefix
        model_params["prompt.suffix"] = config.prompt_suffix
        if config.system_prompt is not None:
            model_params["system_prompt"] = config.system_prompt
        return model_params

    async def run(
        self,
        agent: AgentDefinition,
        question: str,
        params: Mapping[str, str] | None = None,
        *,
        conversation_id: str | None = None,
        parent_interaction_id: str | None = None,
        credentials: Mapping[str, str] | None = None,
    ) -> AgentResult:
        """
        Answer *question* with *agent*.

        Parameters
        ----------
        agent:
            The agent definition; its parameters are the base layer of the session config.
        question:
            The user's question.
        params:
            Request parameters, overriding the agent's.
        conversation_id, parent_interaction_id:
            Continue an existing conversation / answer an existing root interaction.  With
            memory configured, missing ids are created.
        credentials:
            Passed to tool discovery.

        Returns
        -------
        AgentResult
            The terminal result of the loop.
        """
        merged: Dict[str, str] = {**agent.parameters, **(params or {})}
        config = AgentConfig.from_parameters(merged)
        function_calling = load_function_calling(config.llm_interface)
        if function_calling is not None:
            config = function_calling.configure(config)
        config = inject_datetime(config)

        session = await self._start_session(question, conversation_id, parent_interaction_id)
        history = format_chat_history(await self._history(session, config), config)

        prompt_params: Dict[str, str] = {**merged, "question": question}
        model_params = self._model_params(agent, merged, config)
        if config.chat_history_question_template is not None:
            model_params["_chat_history"] = history
        elif "chat_history" not in prompt_params:
            prompt_params["chat_history"] = history

        specs = await self._tool_specs(agent, credentials)
        tools, spec_map = await create_tools(specs, self.tool_factories)
        tool_names = list(tools)
        try:
            prompt = assemble_prompt(prompt_params, tools, tool_names, config)
            if function_calling is not None:
                model_params["_tools"] = json.dumps(
                    function_calling.declare_tools(tools, spec_map), ensure_ascii=False
                )
        except Exception:
            await close_tools(tools)
            raise

        session.params = prompt_params
        logger.info(
            "Running agent '%s' with %d tool(s), max %d iteration(s)",
            agent.name,
            len(tools),
            config.max_iterations,
        )
        loop = ReActLoop(
            model_client=self.model_client,
            llm=agent.llm,
            config=config,
            session=session,
            prompt=prompt,
            tools=tools,
            tool_specs=spec_map,
            model_params=model_params,
            memory=self.memory,
            function_calling=function_calling,
        )
        return await loop.run()
