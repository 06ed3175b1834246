"""HTTP surface with injected services and a scripted gateway."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from agentflow.accounting import (
    Tokenizer,
    TokenTracker,
    UsageStore,
)
from agentflow.agent.workflow import WorkflowEngine
from agentflow.api.app import (
    MAX_DELEGATION_DEPTH,
    create_app,
)
from agentflow.config import Settings
from agentflow.core.errors import UpstreamError
from agentflow.core.schema import (
    AgentType,
    LLMResponse,
)
from agentflow.memory.conversation import ConversationMemory
from agentflow.resilience import ResilienceLayer
from agentflow.services import (
    Services,
    build_services,
)

from conftest import (
    FakeToolExecutor,
    ScriptedGateway,
    content_stream,
    tool_call,
)


class FailingGateway(ScriptedGateway):
    async def call(self, system_prompt, messages, options=None):
        raise UpstreamError(503, "unavailable")


def make_services(gateway: ScriptedGateway) -> Services:
    resilience = ResilienceLayer()
    memory = ConversationMemory()
    return Services(
        resilience=resilience,
        tracker=TokenTracker(store=UsageStore(), tokenizer=Tokenizer(load_encoders=False)),
        gateway=gateway,
        memory=memory,
        engine=WorkflowEngine(gateway, FakeToolExecutor({"web_search": ["result"]}), memory, resilience),
    )


def client_for(services: Services) -> TestClient:
    return TestClient(create_app(services))


def test_health_reports_circuits() -> None:
    services = make_services(ScriptedGateway())

    with client_for(services) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "llm": {"is_healthy": True}, "circuits": {}}


def test_agent_turn_direct_answer() -> None:
    services = make_services(ScriptedGateway(responses=[LLMResponse(content="Hello! Ask me anything.")]))

    with client_for(services) as client:
        response = client.post("/agent", json={"user_id": "u1", "message": "Hello", "locale": "en"})

    assert response.status_code == 200
    body = response.json()
    assert body["result"]["message"] == "Hello! Ask me anything."
    assert body["result"]["tools_used"] == []
    conversation = services.memory.store.get("u1", body["conversation_id"])
    assert conversation.metadata == {"locale": "en"}
    assert [m.role for m in conversation.messages] == ["user", "assistant"]


def test_agent_turn_continues_conversation() -> None:
    gateway = ScriptedGateway(responses=[LLMResponse(content="First"), LLMResponse(content="Second")])
    services = make_services(gateway)

    with client_for(services) as client:
        first = client.post("/agent", json={"user_id": "u1", "message": "one"}).json()
        second = client.post(
            "/agent",
            json={"user_id": "u1", "message": "two", "conversation_id": first["conversation_id"]},
        ).json()

    assert second["conversation_id"] == first["conversation_id"]
    assert len(gateway.calls[1]["messages"]) == 3


def test_quota_exceeded_is_429() -> None:
    gateway = ScriptedGateway(responses=[LLMResponse(content="never")])
    services = make_services(gateway)
    asyncio.run(services.tracker.store.increment("u1", 200_000, 0.0))

    with client_for(services) as client:
        response = client.post("/agent", json={"user_id": "u1", "message": "Hello"})

    assert response.status_code == 429
    assert response.json()["code"] == "QUOTA_EXCEEDED"
    assert "Daily token limit" in response.json()["detail"]
    assert gateway.calls == []


def test_workflow_failure_is_502() -> None:
    services = make_services(FailingGateway())

    with client_for(services) as client:
        response = client.post("/agent", json={"user_id": "u1", "message": "Hello"})

    assert response.status_code == 502
    assert response.json()["code"] == "WORKFLOW_FAILED"
    assert "503" in response.json()["detail"]


def test_stream_endpoint_emits_ndjson_events() -> None:
    gateway = ScriptedGateway(
        responses=[LLMResponse(content="", tool_calls=[tool_call("web_search", query="visa")])],
        streams=[content_stream("Visa rules ", "changed in 2026.")],
    )
    services = make_services(gateway)

    with client_for(services) as client:
        response = client.post("/agent/stream", json={"user_id": "u1", "message": "visa news?"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    assert response.headers["x-conversation-id"].startswith("conv_u1_")
    events = [json.loads(line) for line in response.text.splitlines()]
    assert [e["type"] for e in events] == [
        "phase_change",
        "phase_change",
        "tool_start",
        "tool_end",
        "phase_change",
        "solve_content",
        "solve_content",
        "done",
    ]
    assert events[-1]["result"]["message"] == "Visa rules changed in 2026."
    assert events[-1]["result"]["tools_used"] == ["web_search"]


def test_usage_endpoint() -> None:
    services = make_services(ScriptedGateway())
    asyncio.run(services.tracker.store.increment("u1", 1234, 0.01))

    with client_for(services) as client:
        response = client.get("/usage/u1")

    body = response.json()
    assert response.status_code == 200
    assert body["today"]["tokens"] == 1234
    assert body["remaining"]["daily_tokens"] == 100_000 - 1234


@pytest.mark.asyncio
async def test_build_services_wires_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr("agentflow.services.Tokenizer", lambda: Tokenizer(load_encoders=False))
    settings = Settings(USAGE_LOG_PATH=str(tmp_path / "usage.jsonl"), REDIS_URL=None, DEFAULT_LOCALE="en")
    gateway = ScriptedGateway()

    services = await build_services(settings, gateway=gateway)

    assert services.gateway is gateway
    assert services.engine.default_locale == "en"
    assert services.tracker.store.backend == "memory"
    assert (tmp_path / "usage.jsonl").exists()
    await services.aclose()


def delegate_to(agent: str, task: str = "", **extra) -> LLMResponse:
    call = tool_call("delegate_to_agent", agent=agent, task=task, **extra)
    return LLMResponse(content="", tool_calls=[call], finish_reason="tool_calls")


def test_agent_turn_follows_delegation() -> None:
    gateway = ScriptedGateway(
        responses=[
            delegate_to("school", "Find CS programs", context={"gpa": 3.8}),
            LLMResponse(content="MIT and CMU fit your profile."),
        ]
    )
    services = make_services(gateway)

    with client_for(services) as client:
        body = client.post("/agent", json={"user_id": "u1", "message": "Which schools?"}).json()

    assert body["result"]["message"] == "MIT and CMU fit your profile."
    assert body["result"].get("delegation") is None
    conversation = services.memory.store.get("u1", body["conversation_id"])
    assert [m.role for m in conversation.messages] == ["user", "assistant", "user", "assistant"]
    assert conversation.messages[1].content == "[delegated to school: Find CS programs]"
    assert conversation.messages[2].content.startswith("Find CS programs")
    assert '"gpa": 3.8' in conversation.messages[2].content
    assert gateway.calls[1]["options"].agent_type == AgentType.SCHOOL


def test_delegation_to_unknown_agent_ends_the_turn() -> None:
    gateway = ScriptedGateway(responses=[delegate_to("registrar", "Check my transcript")])
    services = make_services(gateway)

    with client_for(services) as client:
        body = client.post("/agent", json={"user_id": "u1", "message": "transcript?"}).json()

    assert body["result"]["delegation"]["target_agent"] == "registrar"
    assert body["result"]["message"] == ""
    assert len(gateway.calls) == 1


def test_delegation_chain_is_bounded() -> None:
    gateway = ScriptedGateway(responses=[delegate_to("school", "loop")] * (MAX_DELEGATION_DEPTH + 1))
    services = make_services(gateway)

    with client_for(services) as client:
        body = client.post("/agent", json={"user_id": "u1", "message": "go"}).json()

    assert len(gateway.calls) == MAX_DELEGATION_DEPTH + 1
    assert body["result"]["delegation"]["target_agent"] == "school"
    conversation = services.memory.store.get("u1", body["conversation_id"])
    notes = [m for m in conversation.messages if (m.content or "").startswith("[delegated to")]
    assert len(notes) == MAX_DELEGATION_DEPTH


def test_stream_endpoint_streams_each_delegation_hop() -> None:
    gateway = ScriptedGateway(
        responses=[delegate_to("timeline", "List my deadlines"), LLMResponse(content="Nothing due this week.")]
    )
    services = make_services(gateway)

    with client_for(services) as client:
        response = client.post("/agent/stream", json={"user_id": "u1", "message": "deadlines?"})

    events = [json.loads(line) for line in response.text.splitlines()]
    assert [e["type"] for e in events] == ["phase_change", "done", "phase_change", "plan_content", "done"]
    assert events[1]["result"]["delegation"]["target_agent"] == "timeline"
    assert events[-1]["result"]["message"] == "Nothing due this week."
