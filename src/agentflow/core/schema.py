"""
Schema definitions for gateway <-> engine <-> memory <-> tool messages.

These data models serve as the contract between the LLM gateway, the workflow engine, conversation
memory and individual tools.  We keep them separate from runtime logic so they can be imported
anywhere without side-effects.
"""

from datetime import (
    date,
    datetime,
    timezone,
)
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)


def utcnow() -> datetime:
    """Timezone-aware current time (UTC)."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Agents and tools
# ---------------------------------------------------------------------------
class AgentType(str, Enum):
    """Specialist agents a request can be routed to."""

    ORCHESTRATOR = "orchestrator"
    ESSAY = "essay"
    SCHOOL = "school"
    PROFILE = "profile"
    TIMELINE = "timeline"


class AgentConfig(BaseModel):
    """Static configuration of one agent."""

    type: AgentType
    name: str
    description: str = ""
    system_prompt: str
    tools: List[str] = Field(default_factory=list, description="Allowed tool names")
    can_delegate: List[AgentType] = Field(default_factory=list)
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ToolDefinition(BaseModel):
    """A tool as advertised to the model (JSON-schema parameters)."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def to_openai(self) -> Dict[str, Any]:
        """Render in the provider's ``tools`` wire format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolCall(BaseModel):
    """A call that the model wants the agent to execute."""

    id: str = Field(..., description="Provider-assigned call id")
    name: str = Field(..., description="Registered tool name")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Keyword arguments")


class ToolExecutionResult(BaseModel):
    """Outcome of one Tool Executor invocation."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------
Role = Literal["user", "assistant", "system", "tool"]


class Message(BaseModel):
    """One entry of a conversation."""

    id: str
    role: Role
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    agent_type: Optional[AgentType] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ExamScore(BaseModel):
    """Standardized test result."""

    type: str
    score: float


class Activity(BaseModel):
    name: str
    role: str = ""
    category: str = ""


class Award(BaseModel):
    name: str
    level: str = ""


class ProfileSnapshot(BaseModel):
    """Compact view of the user's profile injected into prompts."""

    gpa: Optional[float] = None
    gpa_scale: float = 4.0
    test_scores: List[ExamScore] = Field(default_factory=list)
    activities: List[Activity] = Field(default_factory=list)
    awards: List[Award] = Field(default_factory=list)
    target_major: Optional[str] = None
    budget_tier: Optional[str] = None
    grade: Optional[str] = None


class DeadlineSnapshot(BaseModel):
    """An upcoming application deadline."""

    title: str
    due_date: date
    school: Optional[str] = None


class UserContext(BaseModel):
    """Cached per-user snapshot; the model's only signal about the user."""

    user_id: str
    profile: Optional[ProfileSnapshot] = None
    deadlines: List[DeadlineSnapshot] = Field(default_factory=list)
    preferences: Dict[str, Any] = Field(default_factory=dict)


class Conversation(BaseModel):
    """Conversation state, owned by conversation memory."""

    id: str
    user_id: str
    messages: List[Message] = Field(default_factory=list)
    context: UserContext
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# LLM gateway
# ---------------------------------------------------------------------------
FinishReason = Literal["stop", "tool_calls", "length"]


class TokenUsage(BaseModel):
    """Token counts and price of one model call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    model: str = ""


class LLMOptions(BaseModel):
    """Per-call gateway options."""

    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tools: Optional[List[ToolDefinition]] = None
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    agent_type: Optional[AgentType] = None
    timeout_ms: Optional[int] = None


class LLMResponse(BaseModel):
    """Normalized single-shot model response."""

    content: str = ""
    tool_calls: Optional[List[ToolCall]] = None
    finish_reason: FinishReason = "stop"
    usage: Optional[TokenUsage] = None


class StreamChunk(BaseModel):
    """One event of a streaming model call."""

    type: Literal["content", "tool_call", "done", "error"]
    content: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    usage: Optional[TokenUsage] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------
class WorkflowPhase(str, Enum):
    PLAN = "plan"
    EXECUTE = "execute"
    SOLVE = "solve"
    DONE = "done"


StepStatus = Literal["pending", "running", "success", "failed"]


class PlannedStep(BaseModel):
    """One planned tool call; mutated only while the Execute phase runs it."""

    tool_call: ToolCall
    status: StepStatus = "pending"
    result: Optional[ToolExecutionResult] = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None


class Delegation(BaseModel):
    """Hand-off of the request to another agent."""

    target_agent: str
    task: str = ""
    context: Optional[str] = None


class ExecutionPlan(BaseModel):
    """Output of the Plan phase."""

    planning_content: str = ""
    steps: List[PlannedStep] = Field(default_factory=list)
    delegation: Optional[Delegation] = None


class Timing(BaseModel):
    """Per-phase durations in milliseconds."""

    plan_ms: float = 0.0
    execute_ms: float = 0.0
    solve_ms: float = 0.0
    total_ms: float = 0.0


class WorkflowResult(BaseModel):
    """The only artifact handed back across the orchestration boundary."""

    message: str
    tools_used: List[str] = Field(default_factory=list)
    delegation: Optional[Delegation] = None
    plan: ExecutionPlan
    timing: Timing


class WorkflowStreamEvent(BaseModel):
    """Event emitted by the streaming workflow entry point."""

    type: Literal[
        "phase_change",
        "plan_content",
        "tool_start",
        "tool_end",
        "solve_content",
        "done",
        "error",
    ]
    phase: Optional[WorkflowPhase] = None
    content: Optional[str] = None
    tool: Optional[str] = None
    tool_result: Optional[ToolExecutionResult] = None
    result: Optional[WorkflowResult] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Accounting
# ---------------------------------------------------------------------------
class UsageBucket(BaseModel):
    tokens: int = 0
    cost: float = 0.0
    calls: int = 0


class QuotaLimits(BaseModel):
    daily_tokens: int
    monthly_tokens: int
    daily_cost: float
    monthly_cost: float


class UsageStats(BaseModel):
    """Current usage of a user against their quota."""

    today: UsageBucket
    this_month: UsageBucket
    quota: QuotaLimits
    remaining: QuotaLimits


class QuotaCheck(BaseModel):
    """Result of a quota check; a denial is data, not an exception."""

    allowed: bool
    reason: Optional[str] = None
    usage: UsageStats
