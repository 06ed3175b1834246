"""Token counting, pricing, usage tracking and quotas."""

from agentflow.accounting.store import UsageStore
from agentflow.accounting.tokenizer import Tokenizer
from agentflow.accounting.tracker import TokenTracker
from agentflow.accounting.usage_log import UsageLog

__all__ = ["Tokenizer", "TokenTracker", "UsageLog", "UsageStore"]
