"""Durable JSON-lines audit trail of every tracked model call."""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import (
    Any,
    Dict,
    Optional,
)

from agentflow.core.schema import (
    TokenUsage,
    utcnow,
)

logger = logging.getLogger(__name__)


class UsageLog:
    """Append-only usage records, one JSON object per line."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def init(self) -> None:
        """Ensure the log file exists."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()

    def _write(self, record: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    async def append(
        self, user_id: str, usage: TokenUsage, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Append one record; file I/O runs in a worker thread."""
        metadata = metadata or {}
        record = {
            "id": f"usage_{uuid.uuid4().hex[:12]}",
            "user_id": user_id,
            "conversation_id": metadata.get("conversation_id"),
            "agent_type": metadata.get("agent_type"),
            "tool_name": metadata.get("tool_name"),
            "model": usage.model,
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
            "cost": usage.estimated_cost,
            "metadata": metadata,
            "created_at": utcnow().isoformat(),
        }
        await asyncio.to_thread(self._write, record)
        logger.debug(
            "Token usage: user=%s, tokens=%d, cost=$%.4f", user_id, usage.total_tokens, usage.estimated_cost
        )
