"""
Pydantic models for agentflow API requests and responses.
This module defines the request and response schemas used by the agentflow API.
"""

from typing import (
    Any,
    Dict,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from agentflow.core.schema import (
    AgentType,
    WorkflowResult,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class AgentRequest(BaseModel):
    """Incoming user message."""

    user_id: str = Field(..., description="Caller identity, used for context and quotas")
    message: str = Field(..., description="User message for the agent")
    agent: AgentType = Field(AgentType.ORCHESTRATOR, description="Agent that handles the turn")
    conversation_id: Optional[str] = Field(None, description="Conversation to continue")
    locale: Optional[str] = Field(None, description="Reply language: zh or en")


class AgentResponse(BaseModel):
    """API response returned to the caller."""

    conversation_id: str
    result: WorkflowResult


class HealthResponse(BaseModel):
    status: str
    llm: Dict[str, Any]
    circuits: Dict[str, Dict[str, Any]]
