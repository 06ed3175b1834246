"""
HTTP surface of agentflow.

It exposes the following endpoints:
- **GET /health**           - liveness plus circuit breaker state per resilience key.
- **POST /agent**           - run one turn (following delegations) and return the ``WorkflowResult``.
- **POST /agent/stream**    - run one turn, streaming workflow events as NDJSON.
- **GET /usage/{user_id}**  - token and cost usage against the user's quota.
"""

import logging
from contextlib import (
    aclosing,
    asynccontextmanager,
)
from typing import (
    AsyncIterator,
    Optional,
    Tuple,
)

from fastapi import (
    FastAPI,
    Request,
)
from fastapi.responses import (
    JSONResponse,
    StreamingResponse,
)

from agentflow.agent.agents import (
    get_agent_config,
    get_agent_tools,
)
from agentflow.api.models import (
    AgentRequest,
    AgentResponse,
    HealthResponse,
)
from agentflow.config import settings
from agentflow.core.errors import (
    QuotaExceededError,
    WorkflowError,
)
from agentflow.core.schema import (
    AgentConfig,
    AgentType,
    Conversation,
    UsageStats,
    WorkflowResult,
)
from agentflow.services import (
    Services,
    build_services,
)

logger = logging.getLogger(__name__)

MAX_DELEGATION_DEPTH = 3


def follow_delegation(
    result: WorkflowResult,
    current: AgentConfig,
    conversation: Conversation,
    svc: Services,
    depth: int,
    user_message: str,
) -> Optional[Tuple[AgentConfig, str]]:
    """
    Resolve the next hop of a delegated turn.

    Returns the target agent and the message to run it with, or *None* when the turn is finished:
    no delegation, an unknown target agent, or *depth* already at ``MAX_DELEGATION_DEPTH``.  A
    followed delegation leaves a ``[delegated to <agent>: <task>]`` note in the conversation.
    """
    delegation = result.delegation
    if delegation is None:
        return None
    if depth >= MAX_DELEGATION_DEPTH:
        logger.warning(
            "[%s] Delegation depth %d reached, not following to '%s'",
            current.type.value,
            depth,
            delegation.target_agent,
        )
        return None
    try:
        target = AgentType(delegation.target_agent)
    except ValueError:
        logger.warning(
            "[%s] Ignoring delegation to unknown agent '%s'", current.type.value, delegation.target_agent
        )
        return None

    task = delegation.task or user_message
    logger.info("[%s] Delegating to %s (depth %d)", current.type.value, target.value, depth + 1)
    svc.memory.add_message(
        conversation, "assistant", f"[delegated to {target.value}: {task}]", agent_type=current.type
    )
    message = f"{task}\n\nContext: {delegation.context}" if delegation.context else task
    return get_agent_config(target), message


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI app.

    When *services* is omitted they are built from ``settings`` on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = services is None
        app.state.services = services or await build_services(settings)
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()

    app = FastAPI(
        title="agentflow API",
        version="0.1.0",
        description="Plan/Execute/Solve agent orchestration",
        lifespan=lifespan,
    )

    # -----------------------------------------------------------------------
    # Error mapping
    # -----------------------------------------------------------------------
    @app.exception_handler(QuotaExceededError)
    async def quota_exceeded(_: Request, exc: QuotaExceededError) -> JSONResponse:
        return JSONResponse(status_code=429, content={"detail": str(exc), "code": exc.code})

    @app.exception_handler(WorkflowError)
    async def workflow_failed(_: Request, exc: WorkflowError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": str(exc), "code": exc.code})

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------
    async def start_turn(req: AgentRequest, svc: Services) -> Conversation:
        check = await svc.tracker.check_quota(req.user_id)
        if not check.allowed:
            logger.info("Quota denied for %s: %s", req.user_id, check.reason)
            raise QuotaExceededError(check.reason)
        metadata = {"locale": req.locale} if req.locale else None
        return await svc.memory.get_or_create_conversation(req.user_id, req.conversation_id, metadata)

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------
    @app.get("/health", response_model=HealthResponse, summary="Health check")
    async def health(request: Request) -> HealthResponse:
        """Liveness plus breaker state; ``degraded`` while the LLM circuit is open."""
        svc: Services = request.app.state.services
        llm = svc.gateway.get_service_status()
        return HealthResponse(
            status="ok" if llm.get("is_healthy", True) else "degraded",
            llm=llm,
            circuits=svc.resilience.get_all_circuit_statuses(),
        )

    @app.post("/agent", response_model=AgentResponse, summary="Run one agent turn")
    async def agent_endpoint(req: AgentRequest, request: Request) -> AgentResponse:
        """Run the requested agent, following delegations up to ``MAX_DELEGATION_DEPTH`` hops."""
        svc: Services = request.app.state.services
        conversation = await start_turn(req, svc)
        config, message = get_agent_config(req.agent), req.message

        for depth in range(MAX_DELEGATION_DEPTH + 1):
            result = await svc.engine.run(config, conversation, get_agent_tools(config), user_message=message)
            hop = follow_delegation(result, config, conversation, svc, depth, req.message)
            if hop is None:
                break
            config, message = hop
        return AgentResponse(conversation_id=conversation.id, result=result)

    @app.post("/agent/stream", summary="Run one agent turn, streaming events")
    async def agent_stream_endpoint(req: AgentRequest, request: Request) -> StreamingResponse:
        """Stream every hop of the turn; each hop ends with its own ``done`` event."""
        svc: Services = request.app.state.services
        conversation = await start_turn(req, svc)

        async def events() -> AsyncIterator[str]:
            config, message = get_agent_config(req.agent), req.message
            for depth in range(MAX_DELEGATION_DEPTH + 1):
                result: Optional[WorkflowResult] = None
                async with aclosing(
                    svc.engine.run_stream(config, conversation, get_agent_tools(config), user_message=message)
                ) as stream:
                    async for event in stream:
                        if event.type == "done":
                            result = event.result
                        yield event.model_dump_json(exclude_none=True) + "\n"
                if result is None:
                    return
                hop = follow_delegation(result, config, conversation, svc, depth, req.message)
                if hop is None:
                    return
                config, message = hop

        return StreamingResponse(
            events(),
            media_type="application/x-ndjson",
            headers={"X-Conversation-Id": conversation.id},
        )

    @app.get("/usage/{user_id}", response_model=UsageStats, summary="Usage against quota")
    async def usage(user_id: str, request: Request) -> UsageStats:
        svc: Services = request.app.state.services
        return await svc.tracker.get_usage_stats(user_id)

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in dev docker-compose).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn off the import path of library users
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting agentflow API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("API settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY"}))

    uvicorn.run(
        "agentflow.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m agentflow.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
