"""Shared test doubles."""

from datetime import date
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

import pytest

from agentflow.agent.tool_executor import ToolExecutor
from agentflow.core.schema import (
    DeadlineSnapshot,
    LLMOptions,
    LLMResponse,
    Message,
    ProfileSnapshot,
    StreamChunk,
    ToolCall,
    ToolExecutionResult,
    UserContext,
)
from agentflow.llm.gateway import BaseGateway
from agentflow.memory.data_access import DataAccess


class ScriptedGateway(BaseGateway):
    """Replays queued responses and streams, recording every request."""

    def __init__(
        self,
        responses: Optional[List[LLMResponse]] = None,
        streams: Optional[List[List[StreamChunk]]] = None,
    ) -> None:
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []

    async def call(
        self, system_prompt: str, messages: List[Message], options: Optional[LLMOptions] = None
    ) -> LLMResponse:
        self.calls.append({"system_prompt": system_prompt, "messages": list(messages), "options": options})
        if not self.responses:
            raise AssertionError("unexpected gateway call")
        return self.responses.pop(0)

    async def call_stream(
        self, system_prompt: str, messages: List[Message], options: Optional[LLMOptions] = None
    ):
        self.stream_calls.append(
            {"system_prompt": system_prompt, "messages": list(messages), "options": options}
        )
        chunks = self.streams.pop(0) if self.streams else [StreamChunk(type="done")]
        for chunk in chunks:
            yield chunk


class FakeToolExecutor(ToolExecutor):
    """Returns canned results per tool name; unknown tools fail."""

    def __init__(self, results: Optional[Dict[str, Any]] = None, failing: Optional[Dict[str, str]] = None):
        self.results = results or {}
        self.failing = failing or {}
        self.executed: List[ToolCall] = []

    async def execute(
        self, tool_call: ToolCall, user_id: str, context: Optional[UserContext] = None
    ) -> ToolExecutionResult:
        self.executed.append(tool_call)
        if tool_call.name in self.failing:
            return ToolExecutionResult(success=False, error=self.failing[tool_call.name])
        if tool_call.name not in self.results:
            return ToolExecutionResult(success=False, error=f"Tool '{tool_call.name}' is not registered.")
        return ToolExecutionResult(success=True, result=self.results[tool_call.name], duration_ms=1.0)


class FixtureDataAccess(DataAccess):
    """In-memory profiles, deadlines and roles; counts profile lookups."""

    def __init__(
        self,
        profiles: Optional[Dict[str, ProfileSnapshot]] = None,
        deadlines: Optional[Dict[str, List[DeadlineSnapshot]]] = None,
        roles: Optional[Dict[str, str]] = None,
        fail: bool = False,
    ) -> None:
        self.profiles = profiles or {}
        self.deadlines = deadlines or {}
        self.roles = roles or {}
        self.fail = fail
        self.profile_lookups = 0

    async def get_profile(self, user_id: str) -> Optional[ProfileSnapshot]:
        self.profile_lookups += 1
        if self.fail:
            raise ConnectionError("database unavailable")
        return self.profiles.get(user_id)

    async def get_upcoming_deadlines(self, user_id: str, limit: int = 5) -> List[DeadlineSnapshot]:
        return self.deadlines.get(user_id, [])[:limit]

    async def get_user_role(self, user_id: str) -> Optional[str]:
        if self.fail:
            raise ConnectionError("database unavailable")
        return self.roles.get(user_id)


class FakeClock:
    """Manually advanced time source (seconds)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def tool_call(name: str, call_id: Optional[str] = None, **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id or f"call_{name}", name=name, arguments=arguments)


def content_stream(*parts: str) -> List[StreamChunk]:
    return [StreamChunk(type="content", content=p) for p in parts] + [StreamChunk(type="done")]


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_profile() -> ProfileSnapshot:
    return ProfileSnapshot.model_validate(
        {
            "gpa": 3.8,
            "gpa_scale": 4.0,
            "test_scores": [{"type": "TOEFL", "score": 110}, {"type": "SAT", "score": 1520}],
            "activities": [{"name": "Robotics"}, {"name": "Debate"}],
            "awards": [{"name": "AMC 12 Honor Roll"}],
            "target_major": "Computer Science",
        }
    )


@pytest.fixture
def sample_deadlines() -> List[DeadlineSnapshot]:
    return [
        DeadlineSnapshot(title="RD", due_date=date(2027, 1, 1), school="MIT"),
        DeadlineSnapshot(title="ED", due_date=date(2026, 11, 1), school="Stanford"),
        DeadlineSnapshot(title="Scholarship essay", due_date=date(2026, 12, 15)),
        DeadlineSnapshot(title="EA", due_date=date(2026, 11, 15), school="CMU"),
    ]
