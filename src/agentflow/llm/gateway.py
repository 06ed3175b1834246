"""
LLM gateway.

This module is the only place that *directly* calls an LLM.  Everything else (workflow engine,
tools, memory) stays provider-agnostic and talks to a :class:`BaseGateway`.

:class:`OpenAIGateway` speaks the OpenAI-compatible ``/chat/completions`` protocol over httpx,
both as a single request (:meth:`~BaseGateway.call`) and as a server-sent event stream
(:meth:`~BaseGateway.call_stream`).  Non-streaming calls run inside the resilience layer under the
``"llm"`` key; usage is priced and tracked when a tracker and a caller identity are present.
"""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Tuple,
)

import httpx
from pydantic import ValidationError

from agentflow.accounting.tracker import TokenTracker
from agentflow.config import Settings
from agentflow.core.errors import (
    ConfigurationError,
    InvalidResponseError,
    UpstreamError,
)
from agentflow.core.schema import (
    FinishReason,
    LLMOptions,
    LLMResponse,
    Message,
    StreamChunk,
    TokenUsage,
    ToolCall,
)
from agentflow.llm.parsing import (
    SSE_DONE,
    ToolCallAccumulator,
    dedupe_tool_calls,
    parse_tool_arguments,
    sse_payload,
)
from agentflow.resilience import (
    CircuitBreakerConfig,
    ResilienceLayer,
    RetryConfig,
)

logger = logging.getLogger(__name__)

LLM_SERVICE_KEY = "llm"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4000


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------
def _wire_tool_call(call: ToolCall) -> Dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
    }


def convert_messages(system_prompt: str, messages: List[Message]) -> List[Dict[str, Any]]:
    """
    Render *messages* in the provider's wire format.

    The system prompt always comes first.  An assistant message carrying tool calls is followed
    immediately by the tool message answering each call, in call order; tool messages are never
    emitted on their own, so one without a preceding call is dropped.  Calls that were never
    answered (an interrupted turn) are dropped from their assistant message, which degrades to
    plain text or disappears when nothing is left.  Stored system messages are skipped as well.
    """
    wire: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    tool_results = {m.tool_call_id: m for m in messages if m.role == "tool" and m.tool_call_id}

    for msg in messages:
        if msg.role == "user":
            wire.append({"role": "user", "content": msg.content or ""})
        elif msg.role == "assistant" and msg.tool_calls:
            answered = [tc for tc in msg.tool_calls if tc.id in tool_results]
            if len(answered) < len(msg.tool_calls):
                logger.warning(
                    "Dropping %d unanswered tool call(s) from history",
                    len(msg.tool_calls) - len(answered),
                )
            if not answered:
                if msg.content:
                    wire.append({"role": "assistant", "content": msg.content})
                continue
            wire.append(
                {
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [_wire_tool_call(tc) for tc in answered],
                }
            )
            for tc in answered:
                wire.append(
                    {"role": "tool", "content": tool_results[tc.id].content or "", "tool_call_id": tc.id}
                )
        elif msg.role == "assistant":
            wire.append({"role": "assistant", "content": msg.content or ""})

    return wire


def normalize_finish_reason(reason: Optional[str]) -> FinishReason:
    if reason == "tool_calls":
        return "tool_calls"
    if reason == "length":
        return "length"
    return "stop"


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseGateway(ABC):
    """Abstract chat-completion gateway."""

    @abstractmethod
    async def call(
        self, system_prompt: str, messages: List[Message], options: Optional[LLMOptions] = None
    ) -> LLMResponse:
        """One request, one normalized response."""

    @abstractmethod
    def call_stream(
        self, system_prompt: str, messages: List[Message], options: Optional[LLMOptions] = None
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream ``content`` chunks as they arrive, then the completed ``tool_call`` chunks, then
        ``done``.  Failures are reported as a final ``error`` chunk rather than raised.
        """

    def get_service_status(self) -> Dict[str, Any]:
        return {"is_healthy": True}


# ---------------------------------------------------------------------------
# OpenAI-compatible implementation
# ---------------------------------------------------------------------------
class OpenAIGateway(BaseGateway):
    """
    Gateway for any OpenAI-compatible ``/chat/completions`` endpoint.

    Parameters
    ----------
    api_key, base_url, default_model:
        Provider credentials and defaults.
    resilience:
        Wraps non-streaming calls in breaker/retry/timeout.  *None* calls the provider directly.
    tracker:
        Prices and records usage.  *None* skips accounting.
    client:
        Shared ``httpx.AsyncClient``; one is created when omitted.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        default_model: str = "gpt-4o-mini",
        resilience: Optional[ResilienceLayer] = None,
        tracker: Optional[TokenTracker] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry: Optional[RetryConfig] = None,
        circuit: Optional[CircuitBreakerConfig] = None,
        default_timeout_ms: int = 30_000,
    ) -> None:
        self.api_key = api_key or ""
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.resilience = resilience
        self.tracker = tracker
        self.retry = retry or RetryConfig(max_delay_ms=8000)
        self.circuit = circuit or CircuitBreakerConfig()
        self.default_timeout_ms = default_timeout_ms
        self._client = client or httpx.AsyncClient(timeout=default_timeout_ms / 1000)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        resilience: Optional[ResilienceLayer] = None,
        tracker: Optional[TokenTracker] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "OpenAIGateway":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            default_model=settings.OPENAI_MODEL,
            resilience=resilience,
            tracker=tracker,
            client=client,
            retry=RetryConfig(
                max_attempts=settings.LLM_MAX_ATTEMPTS,
                base_delay_ms=settings.LLM_BASE_DELAY_MS,
                max_delay_ms=settings.LLM_MAX_DELAY_MS,
            ),
            circuit=CircuitBreakerConfig(
                failure_threshold=settings.LLM_FAILURE_THRESHOLD,
                reset_timeout_ms=settings.LLM_RESET_TIMEOUT_MS,
                half_open_requests=settings.LLM_HALF_OPEN_REQUESTS,
            ),
            default_timeout_ms=settings.LLM_TIMEOUT_MS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------ #
    # Request helpers
    # ------------------------------------------------------------------ #
    @property
    def _url(self) -> str:
        return f"{self.base_url}/chat/completions"

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    def _build_body(
        self, system_prompt: str, messages: List[Message], options: LLMOptions, stream: bool
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": options.model or self.default_model,
            "messages": convert_messages(system_prompt, messages),
            "temperature": DEFAULT_TEMPERATURE if options.temperature is None else options.temperature,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if options.tools:
            body["tools"] = [t.to_openai() for t in options.tools]
            body["tool_choice"] = "auto"
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    def _preflight(self, body: Dict[str, Any]) -> None:
        if self.tracker is None:
            return
        system, *rest = body["messages"]
        check = self.tracker.tokenizer.check_context_window(system["content"], rest, body["model"])
        if not check.within_limit:
            logger.warning(
                "Request exceeds context window of %s: %d/%d tokens",
                body["model"],
                check.token_count,
                check.limit,
            )

    async def _account(
        self, raw_usage: Optional[Dict[str, Any]], model: str, options: LLMOptions
    ) -> Optional[TokenUsage]:
        """Price and track usage; never raises."""
        if self.tracker is None or not options.user_id or not raw_usage:
            return None
        try:
            usage = self.tracker.parse_usage(raw_usage, model)
            await self.tracker.track_usage(
                options.user_id,
                usage,
                {
                    "conversation_id": options.conversation_id,
                    "agent_type": options.agent_type.value if options.agent_type else None,
                },
            )
            return usage
        except Exception as exc:  # noqa: BLE001
            logger.error("Usage accounting failed: %s", exc)
            return None

    # ------------------------------------------------------------------ #
    # Non-streaming
    # ------------------------------------------------------------------ #
    async def call(
        self, system_prompt: str, messages: List[Message], options: Optional[LLMOptions] = None
    ) -> LLMResponse:
        options = options or LLMOptions()
        if not self.api_key:
            logger.error("OpenAI API key not configured")
            raise ConfigurationError("OpenAI API key not configured")

        body = self._build_body(system_prompt, messages, options, stream=False)
        timeout_ms = options.timeout_ms or self.default_timeout_ms
        logger.info(
            "LLM call started: model=%s, messages=%d, timeout=%dms",
            body["model"],
            len(messages),
            timeout_ms,
        )
        self._preflight(body)

        async def send() -> Tuple[LLMResponse, Optional[Dict[str, Any]]]:
            response = await self._client.post(self._url, json=body, headers=self._headers)
            if response.is_error:
                logger.error("LLM API error: %s", response.text)
                raise UpstreamError(response.status_code, response.text)
            try:
                data = response.json()
            except ValueError as exc:
                raise InvalidResponseError(f"Unreadable LLM response body: {exc}") from exc
            usage = data.get("usage") if isinstance(data, dict) else None
            return self._parse_response(data), usage

        if self.resilience is None:
            result, raw_usage = await send()
        else:
            result, raw_usage = await self.resilience.execute(
                LLM_SERVICE_KEY, send, retry=self.retry, circuit=self.circuit, timeout_ms=timeout_ms
            )

        result.usage = await self._account(raw_usage, body["model"], options)
        return result

    @staticmethod
    def _parse_response(data: Any) -> LLMResponse:
        try:
            choice = data["choices"][0]
            message = choice["message"]
            tool_calls = None
            if message.get("tool_calls"):
                tool_calls = dedupe_tool_calls(
                    [
                        ToolCall(
                            id=tc["id"],
                            name=tc["function"]["name"],
                            arguments=parse_tool_arguments(tc["function"].get("arguments")),
                        )
                        for tc in message["tool_calls"]
                    ]
                )
            return LLMResponse(
                content=message.get("content") or "",
                tool_calls=tool_calls,
                finish_reason=normalize_finish_reason(choice.get("finish_reason")),
            )
        except (KeyError, IndexError, TypeError, AttributeError, ValidationError) as exc:
            raise InvalidResponseError(f"Malformed LLM response: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #
    async def call_stream(
        self, system_prompt: str, messages: List[Message], options: Optional[LLMOptions] = None
    ) -> AsyncIterator[StreamChunk]:
        options = options or LLMOptions()
        if not self.api_key:
            yield StreamChunk(type="error", error="OpenAI API key not configured")
            return

        body = self._build_body(system_prompt, messages, options, stream=True)
        self._preflight(body)
        accumulator = ToolCallAccumulator()
        raw_usage: Optional[Dict[str, Any]] = None

        try:
            async with self._client.stream("POST", self._url, json=body, headers=self._headers) as response:
                if response.is_error:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error("LLM API error: %s", detail)
                    yield StreamChunk(type="error", error=f"API error: {response.status_code}")
                    return

                async for line in response.aiter_lines():
                    payload = sse_payload(line)
                    if payload is None:
                        continue
                    if payload.strip() == SSE_DONE:
                        break
                    try:
                        event = json.loads(payload)
                        usage_part = event.get("usage")
                        choices = event.get("choices") or []
                        delta = (choices[0].get("delta") or {}) if choices else {}
                        content = delta.get("content") or ""
                        if not isinstance(content, str) or (usage_part and not isinstance(usage_part, dict)):
                            raise TypeError("content or usage has the wrong type")
                        for fragment in delta.get("tool_calls") or []:
                            accumulator.add(fragment)
                    except (ValueError, AttributeError, TypeError) as exc:
                        logger.warning("Skipping malformed stream line (%s): %.200s", exc, payload)
                        continue

                    if usage_part:
                        raw_usage = usage_part
                    if content:
                        yield StreamChunk(type="content", content=content)
                else:
                    logger.warning("LLM stream ended without [DONE] sentinel")
        except httpx.HTTPError as exc:
            logger.error("LLM stream failed: %s", exc)
            yield StreamChunk(type="error", error=str(exc) or type(exc).__name__)
            return

        for call in accumulator.finalize():
            yield StreamChunk(type="tool_call", tool_call=call)
        usage = await self._account(raw_usage, body["model"], options)
        yield StreamChunk(type="done", usage=usage)

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #
    def get_service_status(self) -> Dict[str, Any]:
        if self.resilience is None:
            return {"is_healthy": True}
        status = self.resilience.get_circuit_status(LLM_SERVICE_KEY)
        return {"is_healthy": not status["is_open"], "circuit_state": status["state"]}
