"""
Conversation memory: message history per conversation and a cached user-context snapshot.

A conversation is owned by the single request driving it, so message appends need no locking.
Conversations live in a :class:`ConversationStore`; user contexts are cached for a fixed TTL and
reloaded from :class:`~agentflow.memory.data_access.DataAccess` when they expire.
"""

import json
import logging
import time
import uuid
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from agentflow.common import TTLCache
from agentflow.core.schema import (
    AgentType,
    Conversation,
    Message,
    Role,
    ToolCall,
    UserContext,
)
from agentflow.memory.data_access import (
    DataAccess,
    NullDataAccess,
)
from agentflow.memory.summarizer import summarize_tool_result

logger = logging.getLogger(__name__)

CONTEXT_TTL_S = 300
CONTEXT_CACHE_SIZE = 10_000
RECENT_MESSAGE_LIMIT = 20
SUMMARY_DEADLINES = 3


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class ConversationStore(ABC):
    """Where conversations live between turns."""

    @abstractmethod
    def get(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    def save(self, conversation: Conversation) -> None:
        ...

    @abstractmethod
    def delete(self, user_id: str, conversation_id: Optional[str] = None) -> int:
        """Delete one conversation, or all of the user's when *conversation_id* is *None*."""


class InMemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}

    @staticmethod
    def _key(user_id: str, conversation_id: str) -> str:
        return f"{user_id}:{conversation_id}"

    def get(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(self._key(user_id, conversation_id))

    def save(self, conversation: Conversation) -> None:
        self._conversations[self._key(conversation.user_id, conversation.id)] = conversation

    def delete(self, user_id: str, conversation_id: Optional[str] = None) -> int:
        if conversation_id is not None:
            return int(self._conversations.pop(self._key(user_id, conversation_id), None) is not None)
        prefix = f"{user_id}:"
        keys = [k for k in self._conversations if k.startswith(prefix)]
        for key in keys:
            del self._conversations[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._conversations)


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------
class ConversationMemory:
    """
    Args:
        data_access: Source of profiles and deadlines
        store: Conversation storage (in-process by default)
        context_ttl_s: Lifetime of a cached user context
        recent_limit: Default window of :meth:`get_recent_messages`
    """

    def __init__(
        self,
        data_access: Optional[DataAccess] = None,
        store: Optional[ConversationStore] = None,
        context_ttl_s: float = CONTEXT_TTL_S,
        recent_limit: int = RECENT_MESSAGE_LIMIT,
    ) -> None:
        self.data_access = data_access or NullDataAccess()
        self.store = store or InMemoryConversationStore()
        self.recent_limit = recent_limit
        self._contexts: TTLCache[str, UserContext] = TTLCache(
            max_size=CONTEXT_CACHE_SIZE, ttl_s=context_ttl_s
        )

    # ------------------------------------------------------------------ #
    # Conversations
    # ------------------------------------------------------------------ #
    async def get_or_create_conversation(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Conversation:
        """Existing conversation for ``(user_id, conversation_id)`` or a new one with fresh context."""
        conv_id = conversation_id or f"conv_{user_id}_{int(time.time() * 1000)}"
        conversation = self.store.get(user_id, conv_id)
        if conversation is None:
            context = await self.load_user_context(user_id)
            conversation = Conversation(
                id=conv_id, user_id=user_id, context=context, metadata=dict(metadata or {})
            )
            self.store.save(conversation)
            logger.debug("Created conversation %s for user %s", conv_id, user_id)
        elif metadata:
            conversation.metadata.update(metadata)
        return conversation

    def add_message(
        self,
        conversation: Conversation,
        role: Role,
        content: Optional[str] = None,
        tool_calls: Optional[List[ToolCall]] = None,
        tool_call_id: Optional[str] = None,
        agent_type: Optional[AgentType] = None,
    ) -> Message:
        message = Message(
            id=f"msg_{uuid.uuid4().hex[:16]}",
            role=role,
            content=content,
            tool_calls=tool_calls,
            tool_call_id=tool_call_id,
            agent_type=agent_type,
        )
        conversation.messages.append(message)
        conversation.updated_at = message.timestamp
        return message

    def get_recent_messages(self, conversation: Conversation, limit: Optional[int] = None) -> List[Message]:
        """Last *limit* messages; JSON tool results are summarized, other content is untouched."""
        limit = limit or self.recent_limit
        recent: List[Message] = []
        for message in conversation.messages[-limit:]:
            if message.role == "tool" and message.content:
                try:
                    data = json.loads(message.content)
                except json.JSONDecodeError:
                    recent.append(message)
                    continue
                summary = json.dumps(summarize_tool_result(data), ensure_ascii=False)
                message = message.model_copy(update={"content": summary})
            recent.append(message)
        return recent

    def clear_conversation(self, user_id: str, conversation_id: Optional[str] = None) -> int:
        removed = self.store.delete(user_id, conversation_id)
        logger.debug("Cleared %d conversation(s) of user %s", removed, user_id)
        return removed

    # ------------------------------------------------------------------ #
    # User context
    # ------------------------------------------------------------------ #
    async def load_user_context(self, user_id: str) -> UserContext:
        """
        Profile and upcoming deadlines of *user_id*, cached for ``context_ttl_s``.

        A data-access failure yields an empty, uncached context so the next call retries.
        """
        cached = self._contexts.get(user_id)
        if cached is not None:
            return cached

        try:
            profile = await self.data_access.get_profile(user_id)
            deadlines = await self.data_access.get_upcoming_deadlines(user_id, limit=5)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to load user context for %s: %s", user_id, exc)
            return UserContext(user_id=user_id)

        context = UserContext(user_id=user_id, profile=profile, deadlines=deadlines)
        self._contexts.set(user_id, context)
        return context

    async def refresh_user_context(self, user_id: str) -> UserContext:
        self._contexts.delete(user_id)
        return await self.load_user_context(user_id)

    def update_context(self, user_id: str, **updates: Any) -> UserContext:
        """Overwrite fields of the cached context (e.g. ``preferences``)."""
        context = self._contexts.get(user_id) or UserContext(user_id=user_id)
        context = context.model_copy(update=updates)
        self._contexts.set(user_id, context)
        return context

    @staticmethod
    def get_context_summary(context: UserContext) -> str:
        """One line describing the user for the system prompt."""
        parts: List[str] = []
        profile = context.profile

        if profile is None:
            parts.append("User profile is empty")
        else:
            if profile.gpa:
                parts.append(f"GPA: {profile.gpa:g}/{profile.gpa_scale:g}")
            if profile.test_scores:
                scores = ", ".join(f"{s.type} {s.score:g}" for s in profile.test_scores)
                parts.append(f"Test scores: {scores}")
            if profile.target_major:
                parts.append(f"Target major: {profile.target_major}")
            if profile.activities:
                parts.append(f"Activities: {len(profile.activities)}")
            if profile.awards:
                parts.append(f"Awards: {len(profile.awards)}")
            if not parts:
                parts.append("Profile information incomplete")

        if context.deadlines:
            nearest = sorted(context.deadlines, key=lambda d: d.due_date)[:SUMMARY_DEADLINES]
            rendered = ", ".join(
                f"{d.school + ' ' if d.school else ''}{d.title} ({d.due_date.isoformat()})"
                for d in nearest
            )
            parts.append(f"Upcoming deadlines: {rendered}")

        return " | ".join(parts)
