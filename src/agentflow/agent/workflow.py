"""
Three-phase workflow engine (Plan -> Execute -> Solve).

    PLAN     one model call with the agent's tools; the model lists every tool it needs at once
    EXECUTE  the planned tool calls run sequentially, without the model
    SOLVE    one streaming model call *without* tools turns the tool results into the answer

A plan with no tool calls is answered directly (fast path), and a plan that calls
``delegate_to_agent`` is handed back to the caller as a :class:`Delegation`; neither enters
EXECUTE or SOLVE.

:meth:`WorkflowEngine.run_stream` is the only implementation.  :meth:`WorkflowEngine.run` drains
it, so the streaming and non-streaming paths cannot drift apart.
"""

import json
import logging
import time
from contextlib import aclosing
from datetime import date
from typing import (
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
)

from agentflow.agent.agents import get_localized_system_prompt
from agentflow.agent.prompts import (
    DATE_LABELS,
    DEFAULT_LOCALE,
    PLAN_SUFFIXES,
    SOLVE_SUFFIXES,
    USER_INFO_LABELS,
    format_date,
    normalize_locale,
)
from agentflow.agent.tool_executor import ToolExecutor
from agentflow.core.errors import WorkflowError
from agentflow.core.schema import (
    AgentConfig,
    Conversation,
    Delegation,
    ExecutionPlan,
    LLMOptions,
    LLMResponse,
    PlannedStep,
    Timing,
    ToolDefinition,
    WorkflowPhase,
    WorkflowResult,
    WorkflowStreamEvent,
)
from agentflow.llm.gateway import BaseGateway
from agentflow.llm.parsing import dedupe_tool_calls
from agentflow.memory.conversation import ConversationMemory
from agentflow.resilience import (
    ResilienceLayer,
    RetryConfig,
)
from agentflow.tools import DELEGATE_TOOL_NAME

logger = logging.getLogger(__name__)

TOOL_TIMEOUT_MS = 30_000
PHASE_WARN_MS: Dict[str, float] = {
    "plan": 10_000,
    "execute": 30_000,
    "solve": 15_000,
}
SHORT_ANSWER_CHARS = 20


class WorkflowEngine:
    """
    Parameters
    ----------
    gateway:
        Model access for PLAN and SOLVE.
    tool_executor:
        Runs the planned tool calls.
    memory:
        Conversation memory; every message of the turn is appended through it.
    resilience:
        Guards each tool step under the key ``tool:<name>`` with a timeout.  *None* runs tools
        unguarded.
    clock:
        Seconds-based timer for phase timing.
    today:
        Date shown in the system prompt.
    default_locale:
        Prompt language for conversations without a ``locale`` in their metadata.
    """

    def __init__(
        self,
        gateway: BaseGateway,
        tool_executor: ToolExecutor,
        memory: ConversationMemory,
        resilience: Optional[ResilienceLayer] = None,
        tool_timeout_ms: float = TOOL_TIMEOUT_MS,
        phase_warn_ms: Optional[Dict[str, float]] = None,
        clock: Callable[[], float] = time.perf_counter,
        today: Callable[[], date] = date.today,
        default_locale: str = DEFAULT_LOCALE,
    ) -> None:
        self.gateway = gateway
        self.tool_executor = tool_executor
        self.memory = memory
        self.resilience = resilience
        self.tool_timeout_ms = tool_timeout_ms
        self.phase_warn_ms = dict(PHASE_WARN_MS, **(phase_warn_ms or {}))
        self._clock = clock
        self._today = today
        self.default_locale = default_locale

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    async def run(
        self,
        agent: AgentConfig,
        conversation: Conversation,
        tools: List[ToolDefinition],
        user_message: Optional[str] = None,
    ) -> WorkflowResult:
        """
        Run the workflow to completion and return its result.

        Raises
        ------
        WorkflowError
            If the stream ends with an ``error`` event or without a result.
        """
        result: Optional[WorkflowResult] = None
        async with aclosing(self.run_stream(agent, conversation, tools, user_message)) as events:
            async for event in events:
                if event.type == "done":
                    result = event.result
                elif event.type == "error":
                    raise WorkflowError(event.error or "Workflow failed")

        if result is None:
            raise WorkflowError(f"[{agent.type.value}] Workflow completed without producing a result")
        return result

    async def run_stream(
        self,
        agent: AgentConfig,
        conversation: Conversation,
        tools: List[ToolDefinition],
        user_message: Optional[str] = None,
    ) -> AsyncIterator[WorkflowStreamEvent]:
        """
        Run the workflow, yielding ``phase_change``, ``plan_content``, ``tool_start``,
        ``tool_end``, ``solve_content`` and finally ``done`` (or ``error``).
        """
        name = agent.type.value
        total_start = self._clock()

        if user_message is not None:
            self.memory.add_message(conversation, "user", user_message)

        try:
            # PLAN
            yield WorkflowStreamEvent(type="phase_change", phase=WorkflowPhase.PLAN)
            plan_start = self._clock()
            plan = await self._plan(agent, conversation, tools)
            plan_ms = self._elapsed_ms(plan_start)
            self._warn_if_slow(name, "plan", plan_ms)
            logger.info("[%s] PLAN completed (%.0fms, %d steps)", name, plan_ms, len(plan.steps))

            if plan.delegation is not None:
                yield self._done(plan, "", Timing(plan_ms=plan_ms, total_ms=self._elapsed_ms(total_start)))
                return

            if not plan.steps:
                if plan.planning_content:
                    self.memory.add_message(
                        conversation, "assistant", plan.planning_content, agent_type=agent.type
                    )
                    yield WorkflowStreamEvent(type="plan_content", content=plan.planning_content)
                yield self._done(
                    plan,
                    plan.planning_content,
                    Timing(plan_ms=plan_ms, total_ms=self._elapsed_ms(total_start)),
                )
                return

            # EXECUTE
            yield WorkflowStreamEvent(type="phase_change", phase=WorkflowPhase.EXECUTE)
            execute_start = self._clock()
            self.memory.add_message(
                conversation,
                "assistant",
                plan.planning_content or None,
                tool_calls=[step.tool_call for step in plan.steps],
                agent_type=agent.type,
            )
            try:
                for step in plan.steps:
                    yield WorkflowStreamEvent(type="tool_start", tool=step.tool_call.name)
                    await self._execute_step(step, conversation)
                    yield WorkflowStreamEvent(
                        type="tool_end", tool=step.tool_call.name, tool_result=step.result
                    )
            finally:
                # every planned call needs an answer, also when the turn is abandoned mid-way
                self._cancel_unfinished(plan.steps, conversation, name)
            execute_ms = self._elapsed_ms(execute_start)
            self._warn_if_slow(name, "execute", execute_ms)
            logger.info("[%s] EXECUTE completed (%.0fms)", name, execute_ms)

            # SOLVE
            yield WorkflowStreamEvent(type="phase_change", phase=WorkflowPhase.SOLVE)
            solve_start = self._clock()
            chunks: List[str] = []
            async with aclosing(self._solve(agent, conversation)) as solve_chunks:
                async for chunk in solve_chunks:
                    chunks.append(chunk)
                    yield WorkflowStreamEvent(type="solve_content", content=chunk)
            solve_ms = self._elapsed_ms(solve_start)
            self._warn_if_slow(name, "solve", solve_ms)
            logger.info("[%s] SOLVE completed (%.0fms)", name, solve_ms)

            yield self._done(
                plan,
                "".join(chunks),
                Timing(
                    plan_ms=plan_ms,
                    execute_ms=execute_ms,
                    solve_ms=solve_ms,
                    total_ms=self._elapsed_ms(total_start),
                ),
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("[%s] Workflow failed: %s", name, exc)
            yield WorkflowStreamEvent(type="error", error=str(exc) or "Workflow failed")

    # ------------------------------------------------------------------ #
    # PLAN
    # ------------------------------------------------------------------ #
    async def _plan(
        self, agent: AgentConfig, conversation: Conversation, tools: List[ToolDefinition]
    ) -> ExecutionPlan:
        response = await self.gateway.call(
            self.build_plan_prompt(agent, conversation),
            self.memory.get_recent_messages(conversation),
            self._options(agent, conversation, tools=tools or None),
        )
        return self.parse_plan_response(response, agent)

    @staticmethod
    def parse_plan_response(response: LLMResponse, agent: AgentConfig) -> ExecutionPlan:
        """Classify a PLAN response as direct answer, delegation or tool plan."""
        content = response.content or ""
        if not response.tool_calls:
            return ExecutionPlan(planning_content=content)

        delegate = next((tc for tc in response.tool_calls if tc.name == DELEGATE_TOOL_NAME), None)
        if delegate is not None:
            args = delegate.arguments
            target = str(args.get("agent") or "")
            if target not in {t.value for t in agent.can_delegate}:
                logger.warning("[%s] Delegation to unlisted agent '%s'", agent.type.value, target)
            context = args.get("context")
            if context is not None and not isinstance(context, str):
                context = json.dumps(context, ensure_ascii=False, default=str)
            return ExecutionPlan(
                planning_content=content,
                delegation=Delegation(target_agent=target, task=str(args.get("task") or ""), context=context),
            )

        calls = dedupe_tool_calls(response.tool_calls)
        logger.info("[%s] Plan created: %s", agent.type.value, ", ".join(c.name for c in calls))
        return ExecutionPlan(planning_content=content, steps=[PlannedStep(tool_call=c) for c in calls])

    # ------------------------------------------------------------------ #
    # EXECUTE
    # ------------------------------------------------------------------ #
    async def _execute_step(self, step: PlannedStep, conversation: Conversation) -> None:
        """Run one step, record its outcome on the step and as a tool message."""
        call = step.tool_call
        step.status = "running"
        start = self._clock()

        async def invoke():
            return await self.tool_executor.execute(call, conversation.user_id, conversation.context)

        try:
            if self.resilience is None:
                result = await invoke()
            else:
                result = await self.resilience.execute(
                    f"tool:{call.name}",
                    invoke,
                    retry=RetryConfig(max_attempts=1),
                    timeout_ms=self.tool_timeout_ms,
                )
        except Exception as exc:  # noqa: BLE001
            step.duration_ms = self._elapsed_ms(start)
            step.status = "failed"
            step.error = str(exc) or "Tool execution failed"
            logger.error("[EXECUTE] Tool %s failed: %s", call.name, step.error)
            payload = {"error": step.error}
        else:
            step.duration_ms = self._elapsed_ms(start)
            step.result = result
            if result.success:
                step.status = "success"
                payload = result.result
            else:
                step.status = "failed"
                step.error = result.error
                payload = {"error": result.error or "Tool execution failed"}

        self.memory.add_message(
            conversation,
            "tool",
            json.dumps(payload, ensure_ascii=False, default=str),
            tool_call_id=call.id,
        )

    def _cancel_unfinished(self, steps: List[PlannedStep], conversation: Conversation, name: str) -> None:
        """Answer every step that never finished with a ``cancelled`` tool message."""
        unfinished = [step for step in steps if step.status in ("pending", "running")]
        if not unfinished:
            return
        logger.warning("[%s] Turn interrupted, cancelling %d step(s)", name, len(unfinished))
        for step in unfinished:
            step.status = "failed"
            step.error = "cancelled"
            self.memory.add_message(
                conversation,
                "tool",
                json.dumps({"error": "cancelled"}),
                tool_call_id=step.tool_call.id,
            )

    # ------------------------------------------------------------------ #
    # SOLVE
    # ------------------------------------------------------------------ #
    async def _solve(self, agent: AgentConfig, conversation: Conversation) -> AsyncIterator[str]:
        """Stream the final answer; fall back to one non-streaming call if the stream is empty."""
        name = agent.type.value
        system_prompt = self.build_solve_prompt(agent, conversation)
        messages = self.memory.get_recent_messages(conversation)
        # no tools: the model can only answer
        options = self._options(agent, conversation)

        parts: List[str] = []
        async with aclosing(self.gateway.call_stream(system_prompt, messages, options)) as stream:
            async for chunk in stream:
                if chunk.type == "content" and chunk.content:
                    parts.append(chunk.content)
                    yield chunk.content
                elif chunk.type == "error":
                    logger.warning("[%s] Solve stream error: %s", name, chunk.error)
                elif chunk.type == "done":
                    break
        content = "".join(parts)

        if not content.strip():
            logger.warning("[%s] Solve streaming produced empty content, retrying non-streaming", name)
            response = await self.gateway.call(system_prompt, messages, options)
            content = response.content
            if content:
                yield content
            else:
                logger.error("[%s] Solve fallback also produced empty content", name)

        has_tool_results = any(m.role == "tool" for m in conversation.messages)
        if has_tool_results and 0 < len(content) < SHORT_ANSWER_CHARS:
            logger.warning(
                "[%s] Solve output suspiciously short (%d chars) with tool results", name, len(content)
            )

        self.memory.add_message(conversation, "assistant", content, agent_type=agent.type)

    # ------------------------------------------------------------------ #
    # Prompts
    # ------------------------------------------------------------------ #
    def _build_prompt(self, agent: AgentConfig, conversation: Conversation, suffixes: Dict[str, str]) -> str:
        locale = normalize_locale(conversation.metadata.get("locale"), self.default_locale)
        summary = self.memory.get_context_summary(conversation.context)
        return (
            f"{get_localized_system_prompt(agent, locale)}\n\n"
            f"{DATE_LABELS[locale]} {format_date(self._today(), locale)}\n\n"
            f"{USER_INFO_LABELS[locale]}\n{summary}\n"
            f"{suffixes[locale]}"
        )

    def build_plan_prompt(self, agent: AgentConfig, conversation: Conversation) -> str:
        return self._build_prompt(agent, conversation, PLAN_SUFFIXES)

    def build_solve_prompt(self, agent: AgentConfig, conversation: Conversation) -> str:
        return self._build_prompt(agent, conversation, SOLVE_SUFFIXES)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _options(
        agent: AgentConfig, conversation: Conversation, tools: Optional[List[ToolDefinition]] = None
    ) -> LLMOptions:
        return LLMOptions(
            model=agent.model,
            temperature=agent.temperature,
            max_tokens=agent.max_tokens,
            tools=tools,
            user_id=conversation.user_id,
            conversation_id=conversation.id,
            agent_type=agent.type,
        )

    def _elapsed_ms(self, start: float) -> float:
        return (self._clock() - start) * 1000

    def _warn_if_slow(self, agent_name: str, phase: str, ms: float) -> None:
        threshold = self.phase_warn_ms.get(phase)
        if threshold and ms > threshold:
            logger.warning(
                "[%s] %s took %.0fms (threshold: %.0fms)", agent_name, phase.upper(), ms, threshold
            )

    @staticmethod
    def _done(plan: ExecutionPlan, message: str, timing: Timing) -> WorkflowStreamEvent:
        tools_used = list(dict.fromkeys(s.tool_call.name for s in plan.steps if s.status == "success"))
        return WorkflowStreamEvent(
            type="done",
            phase=WorkflowPhase.DONE,
            result=WorkflowResult(
                message=message,
                tools_used=tools_used,
                delegation=plan.delegation,
                plan=plan,
                timing=timing,
            ),
        )
