"""Wires the resilience layer, accounting, gateway, memory and workflow engine together."""

import logging
from dataclasses import dataclass
from typing import Optional

from agentflow.accounting import (
    Tokenizer,
    TokenTracker,
    UsageLog,
    UsageStore,
)
from agentflow.agent.tool_executor import (
    RegistryToolExecutor,
    ToolExecutor,
)
from agentflow.agent.workflow import WorkflowEngine
from agentflow.config import Settings
from agentflow.llm.gateway import (
    BaseGateway,
    OpenAIGateway,
)
from agentflow.memory.conversation import ConversationMemory
from agentflow.memory.data_access import (
    DataAccess,
    NullDataAccess,
)
from agentflow.resilience import ResilienceLayer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything one process needs to serve agent turns."""

    resilience: ResilienceLayer
    tracker: TokenTracker
    gateway: BaseGateway
    memory: ConversationMemory
    engine: WorkflowEngine

    async def aclose(self) -> None:
        await self.tracker.drain()
        if isinstance(self.gateway, OpenAIGateway):
            await self.gateway.aclose()
        await self.tracker.store.close()


async def build_services(
    settings: Settings,
    data_access: Optional[DataAccess] = None,
    gateway: Optional[BaseGateway] = None,
    tool_executor: Optional[ToolExecutor] = None,
) -> Services:
    """
    Build the service graph from *settings*.

    *gateway* and *tool_executor* replace the defaults (an OpenAI-compatible gateway and the tool
    registry), which is how tests run the full stack without a provider.
    """
    data_access = data_access or NullDataAccess()
    resilience = ResilienceLayer()

    usage_log = UsageLog(settings.USAGE_LOG_PATH)
    usage_log.init()
    tracker = TokenTracker(
        store=await UsageStore.connect(settings.REDIS_URL),
        tokenizer=Tokenizer(),
        usage_log=usage_log,
        data_access=data_access,
    )

    if gateway is None:
        if not settings.OPENAI_API_KEY:
            logger.warning("OPENAI_API_KEY is not set; model calls will fail")
        gateway = OpenAIGateway.from_settings(settings, resilience=resilience, tracker=tracker)

    memory = ConversationMemory(
        data_access=data_access,
        context_ttl_s=settings.USER_CONTEXT_TTL_S,
        recent_limit=settings.RECENT_MESSAGE_LIMIT,
    )
    engine = WorkflowEngine(
        gateway=gateway,
        tool_executor=tool_executor or RegistryToolExecutor(),
        memory=memory,
        resilience=resilience,
        tool_timeout_ms=settings.TOOL_TIMEOUT_MS,
        default_locale=settings.DEFAULT_LOCALE,
        phase_warn_ms={
            "plan": settings.PLAN_WARN_MS,
            "execute": settings.EXECUTE_WARN_MS,
            "solve": settings.SOLVE_WARN_MS,
        },
    )
    return Services(
        resilience=resilience, tracker=tracker, gateway=gateway, memory=memory, engine=engine
    )
