"""Conversation memory: messages, tool-result summarization and the user-context cache."""

import json
from datetime import date

import pytest

from agentflow.common import TTLCache
from agentflow.core.schema import (
    DeadlineSnapshot,
    ProfileSnapshot,
    UserContext,
)
from agentflow.memory.conversation import ConversationMemory
from agentflow.memory.summarizer import summarize_tool_result

from conftest import (
    FakeClock,
    FixtureDataAccess,
    tool_call,
)


# ---------------------------------------------------------------------------
# Summarizer
# ---------------------------------------------------------------------------
def test_short_values_pass_through() -> None:
    data = {"name": "MIT", "rank": 1, "tags": ["tech", "private"]}
    assert summarize_tool_result(data) == data


def test_long_top_level_list_is_annotated() -> None:
    assert summarize_tool_result(list(range(8))) == {"items": [0, 1, 2, 3, 4], "total": 8, "shown": 5}


def test_nested_limits_are_tighter() -> None:
    data = {"schools": [{"id": i} for i in range(6)], "filters": {f"k{i}": i for i in range(7)}}

    result = summarize_tool_result(data)

    assert result["schools"] == {"items": [{"id": 0}, {"id": 1}, {"id": 2}], "total": 6, "shown": 3}
    assert list(result["filters"]) == ["k0", "k1", "k2", "k3", "k4", "_truncated"]
    assert result["filters"]["_truncated"] == {"total_keys": 7, "shown_keys": 5}


def test_too_many_keys_at_top_level() -> None:
    result = summarize_tool_result({f"k{i}": i for i in range(12)})
    assert len(result) == 11
    assert result["_truncated"] == {"total_keys": 12, "shown_keys": 10}


def test_deep_containers_are_collapsed() -> None:
    data = {"a": {"b": {"c": {"d": [1, 2, 3], "e": {"x": 1}}}}}
    assert summarize_tool_result(data) == {"a": {"b": {"c": {"d": "[3 items]", "e": "{1 keys}"}}}}


# ---------------------------------------------------------------------------
# TTL cache
# ---------------------------------------------------------------------------
def test_ttl_cache_expiry_and_eviction() -> None:
    clock = FakeClock()
    cache: TTLCache[str, int] = TTLCache(max_size=2, ttl_s=10, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert "a" not in cache
    assert cache.get("b") == 2

    clock.advance(11)
    assert cache.get("c") is None
    assert len(cache) == 0


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_get_or_create_conversation_reuses_existing() -> None:
    memory = ConversationMemory()

    conv = await memory.get_or_create_conversation("u1", metadata={"locale": "en"})
    again = await memory.get_or_create_conversation("u1", conv.id, {"channel": "web"})

    assert again is conv
    assert conv.id.startswith("conv_u1_")
    assert conv.metadata == {"locale": "en", "channel": "web"}
    assert conv.context.user_id == "u1"


@pytest.mark.asyncio
async def test_add_message_assigns_id_and_bumps_updated_at() -> None:
    memory = ConversationMemory()
    conv = await memory.get_or_create_conversation("u1", "c1")
    created = conv.updated_at

    msg = memory.add_message(conv, "user", "hello")

    assert msg.id.startswith("msg_")
    assert conv.messages == [msg]
    assert conv.updated_at == msg.timestamp >= created


@pytest.mark.asyncio
async def test_recent_messages_summarize_tool_content_only() -> None:
    memory = ConversationMemory(recent_limit=3)
    conv = await memory.get_or_create_conversation("u1", "c1")
    memory.add_message(conv, "user", "first")
    memory.add_message(conv, "user", "find schools")
    memory.add_message(conv, "assistant", None, tool_calls=[tool_call("search_schools")])
    memory.add_message(conv, "tool", json.dumps(list(range(10))), tool_call_id="call_search_schools")
    memory.add_message(conv, "tool", "plain text result", tool_call_id="call_other")

    recent = memory.get_recent_messages(conv)

    assert [m.role for m in recent] == ["assistant", "tool", "tool"]
    assert json.loads(recent[1].content) == {"items": [0, 1, 2, 3, 4], "total": 10, "shown": 5}
    assert recent[2].content == "plain text result"
    # stored history is untouched
    assert json.loads(conv.messages[3].content) == list(range(10))
    assert len(memory.get_recent_messages(conv, limit=10)) == 5


@pytest.mark.asyncio
async def test_clear_conversation() -> None:
    memory = ConversationMemory()
    await memory.get_or_create_conversation("u1", "c1")
    await memory.get_or_create_conversation("u1", "c2")
    await memory.get_or_create_conversation("u2", "c3")

    assert memory.clear_conversation("u1", "c1") == 1
    assert memory.clear_conversation("u1") == 1
    assert memory.store.get("u2", "c3") is not None


# ---------------------------------------------------------------------------
# User context
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_user_context_is_cached_until_refresh(sample_profile, sample_deadlines) -> None:
    data = FixtureDataAccess(profiles={"u1": sample_profile}, deadlines={"u1": sample_deadlines})
    memory = ConversationMemory(data_access=data)

    first = await memory.load_user_context("u1")
    second = await memory.load_user_context("u1")
    assert first is second
    assert data.profile_lookups == 1

    data.profiles["u1"] = ProfileSnapshot(gpa=3.9)
    refreshed = await memory.refresh_user_context("u1")

    assert data.profile_lookups == 2
    assert refreshed.profile.gpa == 3.9
    assert len(refreshed.deadlines) == 4


@pytest.mark.asyncio
async def test_user_context_failure_is_empty_and_uncached() -> None:
    data = FixtureDataAccess(fail=True)
    memory = ConversationMemory(data_access=data)

    context = await memory.load_user_context("u1")
    await memory.load_user_context("u1")

    assert context == UserContext(user_id="u1")
    assert data.profile_lookups == 2


@pytest.mark.asyncio
async def test_update_context_overrides_fields() -> None:
    memory = ConversationMemory()
    await memory.load_user_context("u1")

    updated = memory.update_context("u1", preferences={"tone": "formal"})

    assert updated.preferences == {"tone": "formal"}
    assert (await memory.load_user_context("u1")).preferences == {"tone": "formal"}


# ---------------------------------------------------------------------------
# Context summary
# ---------------------------------------------------------------------------
def test_context_summary_for_empty_profile() -> None:
    assert ConversationMemory.get_context_summary(UserContext(user_id="u1")) == "User profile is empty"


def test_context_summary_for_incomplete_profile() -> None:
    context = UserContext(user_id="u1", profile=ProfileSnapshot(grade="11"))
    assert ConversationMemory.get_context_summary(context) == "Profile information incomplete"


def test_context_summary_lists_profile_and_nearest_deadlines(sample_profile, sample_deadlines) -> None:
    context = UserContext(user_id="u1", profile=sample_profile, deadlines=sample_deadlines)

    summary = ConversationMemory.get_context_summary(context)

    assert summary == (
        "GPA: 3.8/4 | Test scores: TOEFL 110, SAT 1520 | Target major: Computer Science"
        " | Activities: 2 | Awards: 1"
        " | Upcoming deadlines: Stanford ED (2026-11-01), CMU EA (2026-11-15),"
        " Scholarship essay (2026-12-15)"
    )


def test_context_summary_deadlines_without_profile() -> None:
    context = UserContext(
        user_id="u1", deadlines=[DeadlineSnapshot(title="ED", due_date=date(2026, 11, 1), school="MIT")]
    )
    assert ConversationMemory.get_context_summary(context) == (
        "User profile is empty | Upcoming deadlines: MIT ED (2026-11-01)"
    )
