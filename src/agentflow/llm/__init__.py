"""LLM gateway and chat-completion parsing helpers."""

from agentflow.llm.gateway import (
    BaseGateway,
    OpenAIGateway,
    convert_messages,
)

__all__ = ["BaseGateway", "OpenAIGateway", "convert_messages"]
