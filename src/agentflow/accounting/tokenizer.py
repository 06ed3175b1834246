"""
Token counting with tiktoken and a heuristic fallback.

Encoders are loaded once per encoding name.  When tiktoken cannot load its encodings (no network
for the BPE files, missing wheel data, ...) every count degrades to a character heuristic that
treats CJK ideographs as ~1.5 characters per token and everything else as ~4.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
)

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_ENCODING = "cl100k_base"
DEFAULT_CONTEXT_WINDOW = 128_000
DEFAULT_MAX_RESPONSE_TOKENS = 1000

MODEL_ENCODINGS: Dict[str, str] = {
    "gpt-4o": "o200k_base",
    "gpt-4o-mini": "o200k_base",
    "gpt-4o-2024-05-13": "o200k_base",
    "gpt-4o-2024-08-06": "o200k_base",
    "gpt-4o-mini-2024-07-18": "o200k_base",
    "gpt-4": "cl100k_base",
    "gpt-4-turbo": "cl100k_base",
    "gpt-4-turbo-preview": "cl100k_base",
    "gpt-3.5-turbo": "cl100k_base",
    "gpt-3.5-turbo-0125": "cl100k_base",
    "text-embedding-ada-002": "cl100k_base",
    "text-embedding-3-small": "cl100k_base",
    "text-embedding-3-large": "cl100k_base",
}


@dataclass(frozen=True)
class ChatOverhead:
    """Fixed per-message token cost of the chat format."""

    per_message: int
    per_name: int
    reply: int


DEFAULT_OVERHEAD = ChatOverhead(per_message=3, per_name=1, reply=3)

CHAT_OVERHEADS: Dict[str, ChatOverhead] = {
    "gpt-4o": DEFAULT_OVERHEAD,
    "gpt-4o-mini": DEFAULT_OVERHEAD,
    "gpt-4": DEFAULT_OVERHEAD,
    "gpt-4-turbo": DEFAULT_OVERHEAD,
    "gpt-3.5-turbo": ChatOverhead(per_message=4, per_name=-1, reply=3),
}

CONTEXT_WINDOWS: Dict[str, int] = {
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4": 8192,
    "gpt-3.5-turbo": 16_385,
}

_CJK_RE = re.compile(r"[一-龥]")


@dataclass(frozen=True)
class RequestEstimate:
    prompt_tokens: int
    estimated_total: int


@dataclass(frozen=True)
class ContextWindowCheck:
    within_limit: bool
    token_count: int
    limit: int
    remaining: int


def encoding_name_for(model: str) -> str:
    """Encoding used for *model*; dated gpt-4o variants resolve to o200k_base too."""
    if model in MODEL_ENCODINGS:
        return MODEL_ENCODINGS[model]
    if model.startswith("gpt-4o"):
        return "o200k_base"
    return DEFAULT_ENCODING


def estimate_tokens_heuristic(text: str) -> int:
    """ceil(cjk / 1.5 + other / 4)."""
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / 1.5 + other / 4)


class Tokenizer:
    """
    Counts tokens for chat requests.

    Args:
        load_encoders: Load the tiktoken encodings eagerly.  When *False* (or when loading
            fails) all counts use the heuristic.
        encoders: Pre-built encoders keyed by encoding name, used instead of loading.
    """

    def __init__(self, load_encoders: bool = True, encoders: Optional[Mapping[str, Any]] = None):
        self._encoders: Dict[str, Any] = dict(encoders or {})
        if load_encoders and not self._encoders:
            self._load()

    def _load(self) -> None:
        try:
            for name in ("cl100k_base", "o200k_base"):
                self._encoders[name] = tiktoken.get_encoding(name)
            logger.info("Tiktoken encoders initialized (cl100k_base, o200k_base)")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to initialize tiktoken encoders: %s. Using fallback estimation.", exc)
            self._encoders.clear()

    @property
    def precise(self) -> bool:
        """True when counts come from tiktoken rather than the heuristic."""
        return bool(self._encoders)

    def _encoder(self, model: str) -> Optional[Any]:
        return self._encoders.get(encoding_name_for(model))

    def count_tokens(self, text: str, model: str = DEFAULT_MODEL) -> int:
        encoder = self._encoder(model)
        if encoder is not None:
            try:
                return len(encoder.encode(text))
            except Exception as exc:  # noqa: BLE001
                logger.debug("Tiktoken encode failed, using fallback: %s", exc)
        return estimate_tokens_heuristic(text)

    def count_chat_tokens(self, messages: Iterable[Mapping[str, Any]], model: str = DEFAULT_MODEL) -> int:
        """
        Tokens of a chat request: per-message overhead, role, content and optional name, plus the
        assistant reply primer.
        """
        overhead = CHAT_OVERHEADS.get(model, DEFAULT_OVERHEAD)
        encoder = self._encoder(model)
        total = 0
        for message in messages:
            total += overhead.per_message
            total += self.count_tokens(message["role"], model) if encoder else 1
            total += self.count_tokens(message.get("content") or "", model)
            name = message.get("name")
            if name:
                total += overhead.per_name
                total += self.count_tokens(name, model) if encoder else math.ceil(len(name) / 4)
        return total + overhead.reply

    def estimate_request_tokens(
        self,
        system_prompt: str,
        messages: List[Mapping[str, Any]],
        model: str = DEFAULT_MODEL,
        max_response_tokens: int = DEFAULT_MAX_RESPONSE_TOKENS,
    ) -> RequestEstimate:
        full = [{"role": "system", "content": system_prompt}, *messages]
        prompt_tokens = self.count_chat_tokens(full, model)
        return RequestEstimate(prompt_tokens=prompt_tokens, estimated_total=prompt_tokens + max_response_tokens)

    def check_context_window(
        self, system_prompt: str, messages: List[Mapping[str, Any]], model: str = DEFAULT_MODEL
    ) -> ContextWindowCheck:
        limit = CONTEXT_WINDOWS.get(model, DEFAULT_CONTEXT_WINDOW)
        count = self.estimate_request_tokens(system_prompt, messages, model).prompt_tokens
        return ContextWindowCheck(
            within_limit=count < limit, token_count=count, limit=limit, remaining=limit - count
        )
