"""
Schema definitions for model <-> loop <-> tool records.

These data models serve as the contract between the model invocation channel, the orchestration
loop, individual tools and conversation memory.  We keep them separate from runtime logic so they
can be imported anywhere without side-effects.
"""

from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)


class LoopState(str, Enum):
    """States of the agent loop; ``FINAL`` and ``MAX_ITERATIONS_REACHED`` are terminal."""

    DISPATCHED = "dispatched"
    PARSED = "parsed"
    TOOL_RUNNING = "tool_running"
    FOLDED = "folded"
    FINAL = "final"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"

    @property
    def is_terminal(self) -> bool:
        """Whether the loop stops in this state."""
        return self in (LoopState.FINAL, LoopState.MAX_ITERATIONS_REACHED)


class LLMSpec(BaseModel):
    """The model an agent talks to, plus static model options."""

    model_id: str = Field(..., description="Identifier passed to the model invocation channel")
    parameters: Dict[str, str] = Field(default_factory=dict)


class ToolSpec(BaseModel):
    """Declaration of one tool an agent may call.  Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="Registered tool factory type")
    name: Optional[str] = Field(None, description="Name exposed to the model, defaults to type")
    description: Optional[str] = None
    parameters: Dict[str, str] = Field(default_factory=dict)
    config: Dict[str, str] = Field(
        default_factory=dict, description="Input templates substituted from the action input"
    )
    attributes: Dict[str, Any] = Field(default_factory=dict)
    use_original_input: bool = False
    include_output_in_agent_response: bool = False

    @property
    def tool_name(self) -> str:
        """Name under which the tool is exposed to the model."""
        return self.name or self.type


class AgentDefinition(BaseModel):
    """A conversational agent: its model, its tools and its prompt parameters."""

    name: str
    description: Optional[str] = None
    llm: LLMSpec
    tools: List[ToolSpec] = Field(default_factory=list)
    parameters: Dict[str, str] = Field(default_factory=dict)
    tenant_id: Optional[str] = None
    app_type: Optional[str] = None


class AgentSession(BaseModel):
    """Identity and dynamic template inputs of one loop invocation."""

    conversation_id: Optional[str] = None
    parent_interaction_id: Optional[str] = None
    tenant_id: Optional[str] = None
    question: str = ""
    params: Dict[str, str] = Field(default_factory=dict)


class IterationState(BaseModel):
    """The decision parsed out of one model response."""

    thought: Optional[str] = None
    action: Optional[str] = None
    action_input: Optional[str] = None
    tool_call_id: Optional[str] = None
    final_answer: Optional[str] = None
    thought_response: Optional[str] = None
    parse_degraded: bool = False

    @property
    def is_final(self) -> bool:
        """True when the model produced (or the parser fell back to) a final answer."""
        return self.final_answer is not None


class TraceStep(BaseModel):
    """One append-only entry of the audit trail."""

    model_config = ConfigDict(frozen=True)

    trace_number: int
    origin: str
    question: Optional[str] = None
    response: Optional[str] = None


class Message(BaseModel):
    """A completed question/response pair loaded from conversation memory."""

    question: str
    response: str

    def __str__(self) -> str:
        return f"Human:{self.question}\nAI:{self.response}"


class InteractionRecord(BaseModel):
    """A record written to conversation memory."""

    question: Optional[str] = None
    response: Optional[str] = None
    origin: str = "LLM"
    trace_number: Optional[int] = None
    final_answer: bool = False
    additional_info: Dict[str, Any] = Field(default_factory=dict)


class OutputItem(BaseModel):
    """A named item of the terminal result."""

    name: str
    result: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class AgentResult(BaseModel):
    """Terminal result returned to the caller of the loop."""

    outputs: List[OutputItem] = Field(default_factory=list)
    final_answer: str
    additional_info: Dict[str, List[str]] = Field(default_factory=dict)
    terminal_state: LoopState
    iterations: int = 0
