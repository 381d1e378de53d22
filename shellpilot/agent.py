"""Bounded plan/act/observe loop driving the provider and the execution gateway."""

import asyncio
import json
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from shellpilot.actions.registry import Action, ActionRegistry
from shellpilot.agent_parser import ParsedReply, ReplyKind, parse_reply
from shellpilot.agent_tools import WorkingMemory
from shellpilot.audit import ExecutionStatus
from shellpilot.config import AgentConfig
from shellpilot.context import ContextBudget
from shellpilot.exceptions import (
    ActionCancelledError,
    ConfigurationError,
    ExecutionError,
    LLMError,
    ValidationError,
)
from shellpilot.gateway import ExecutionGateway
from shellpilot.instructions import InstructionLoader
from shellpilot.llm.base import Message, empty_usage, token_count
from shellpilot.llm.gateway import ProviderGateway
from shellpilot.logging import get_logger
from shellpilot.safety import SafetyEntry

log = get_logger(__name__)

ABORT_MAX_STEPS = "MaxSteps"
ABORT_TOKEN_BUDGET = "TokenBudget"
ABORT_USER = "UserAbort"
ABORT_PROVIDER = "ProviderError"

NUDGE_NO_TAG = (
    "Your reply had no recognized tag. Reply with THOUGHT: then exactly one of "
    "ACTION: {\"name\": ..., \"params\": {...}}, ASK:, DONE: or STUCK:."
)
NUDGE_THOUGHT_ONLY = "Noted. Now take one ACTION, or finish with DONE: or STUCK:."
PLAN_ACK = "Plan noted. Start with the first step: THOUGHT: then ACTION:."
NO_USER_ANSWER = (
    "No user is available to answer. Proceed with your best judgment, "
    "or finish with STUCK: if you cannot."
)

AskCallback = Callable[[str], str | None]


@dataclass
class DispatchOutcome:
    """Result of routing one ACTION to a tool or an action."""

    kind: str  # "tool" | "action" | "unknown"
    success: bool
    status: str
    output: str = ""
    error: str | None = None
    error_kind: str | None = None
    duration_ms: int = 0


class Dispatcher:
    """Unified tool-and-action dispatch.

    Names are looked up as pure tools first, which run directly, then as
    catalogued actions, which go through the execution gateway.
    """

    def __init__(self, tools: ActionRegistry, gateway: ExecutionGateway | None = None):
        self.tools = tools
        self.gateway = gateway

    def kind_of(self, name: str) -> str | None:
        if self.tools.has(name):
            return "tool"
        if self.gateway is not None and name in self.gateway.catalog:
            return "action"
        return None

    def available_tools(self) -> list[Action]:
        return self.tools.all()

    def available_actions(self) -> list[tuple[Action, SafetyEntry]]:
        """Actions that are both catalogued and installed."""
        if self.gateway is None:
            return []
        available: list[tuple[Action, SafetyEntry]] = []
        for entry in self.gateway.catalog.entries():
            if self.gateway.registry.has(entry.name):
                available.append((self.gateway.registry.get(entry.name), entry))
        return available

    async def dispatch(
        self,
        name: str,
        params: dict[str, Any],
        memory: WorkingMemory,
        auto_confirm: bool = False,
        abort_event: asyncio.Event | None = None,
    ) -> DispatchOutcome:
        kind = self.kind_of(name)
        if kind == "tool":
            return await self._run_tool(name, params, memory, abort_event)
        if kind == "action":
            result = await self.gateway.execute(
                name,
                params,
                auto_confirm=auto_confirm,
                source="agent",
                abort_event=abort_event,
            )
            error_kind = None
            if not result.success:
                error_kind = {
                    ExecutionStatus.REJECTED: "ValidationError",
                    ExecutionStatus.RATE_LIMITED: "RateLimited",
                    ExecutionStatus.CANCELLED: "Cancelled",
                }.get(result.status, "ExecutionError")
            return DispatchOutcome(
                kind="action",
                success=result.success,
                status=result.status.value,
                output=result.output,
                error=result.error,
                error_kind=error_kind,
                duration_ms=result.duration_ms,
            )
        error = ValidationError(name, "unknown tool or action")
        return DispatchOutcome(
            kind="unknown",
            success=False,
            status=ExecutionStatus.REJECTED.value,
            error=str(error),
            error_kind="ValidationError",
        )

    async def _run_tool(
        self,
        name: str,
        params: dict[str, Any],
        memory: WorkingMemory,
        abort_event: asyncio.Event | None,
    ) -> DispatchOutcome:
        started = time.monotonic()
        try:
            result = await self.tools.invoke(name, params, abort_event=abort_event, _memory=memory)
        except ActionCancelledError as e:
            return DispatchOutcome(
                kind="tool",
                success=False,
                status=ExecutionStatus.CANCELLED.value,
                error=str(e),
                error_kind="Cancelled",
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except ExecutionError as e:
            return DispatchOutcome(
                kind="tool",
                success=False,
                status=ExecutionStatus.EXECUTION_ERROR.value,
                error=str(e),
                error_kind="ExecutionError",
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        duration = int((time.monotonic() - started) * 1000)
        return DispatchOutcome(
            kind="tool",
            success=result.success,
            status=(ExecutionStatus.SUCCESS if result.success else ExecutionStatus.EXECUTION_ERROR).value,
            output=result.output,
            error=result.error,
            error_kind=None if result.success else "ExecutionError",
            duration_ms=duration,
        )


@dataclass
class AgentStep:
    """One dispatched tool or action call."""

    index: int
    kind: str
    name: str
    params: dict[str, Any]
    success: bool
    output: str
    duration_ms: int
    status: str = ""
    error: str | None = None


@dataclass
class AgentRunResult:
    """Everything a caller needs after one run."""

    goal: str
    success: bool
    status: str  # "done" | "stuck" | "aborted"
    summary: str
    steps: list[AgentStep] = field(default_factory=list)
    steps_taken: int = 0
    abort_reason: str | None = None
    usage: dict[str, int] = field(default_factory=empty_usage)
    transcript: list[Message] = field(default_factory=list)
    memory: WorkingMemory = field(default_factory=WorkingMemory)


def _truncate(text: str, max_chars: int) -> str:
    text = (text or "").strip()
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 15)].rstrip() + "... [truncated]"


def _render_params(action: Action) -> str:
    params = action.describe_parameters()
    if not params:
        return "no params"
    return ", ".join(f"{name} ({'required' if required else 'optional'})" for name, _, required in params)


def carry_summary(previous: AgentRunResult, max_chars: int = 400) -> str:
    """Compact hand-off from a finished run to its follow-up."""
    keys = ", ".join(previous.memory.keys()) or "none"
    return (
        f"[Previous run] goal: {_truncate(previous.goal, 120)}\n"
        f"status: {previous.status}, steps: {previous.steps_taken}, memory keys: {keys}\n"
        f"summary: {_truncate(previous.summary, max_chars)}"
    )


class AgentLoop:
    """ReAct-style loop with strict step and token budgets."""

    def __init__(
        self,
        provider: ProviderGateway,
        dispatcher: Dispatcher,
        budget: ContextBudget | None = None,
        settings: AgentConfig | None = None,
        instructions: InstructionLoader | None = None,
        ask_callback: AskCallback | None = None,
        status_callback: Callable[[str], None] | None = None,
        step_callback: Callable[[AgentStep], None] | None = None,
        auto_confirm: bool = False,
        stream: bool = False,
        on_delta: Callable[[str], None] | None = None,
    ):
        self.provider = provider
        self.dispatcher = dispatcher
        self.budget = budget or ContextBudget()
        self.settings = settings or AgentConfig()
        self.instructions = instructions or InstructionLoader()
        self.ask_callback = ask_callback
        self.status_callback = status_callback
        self.step_callback = step_callback
        self.auto_confirm = auto_confirm
        self.stream = stream
        self.on_delta = on_delta
        self.host = socket.gethostname()

    def _emit_status(self, status: str) -> None:
        if self.status_callback:
            try:
                self.status_callback(status)
            except Exception as e:
                log.debug("Status callback failed", error=str(e))

    def _emit_step(self, step: AgentStep) -> None:
        if self.step_callback:
            try:
                self.step_callback(step)
            except Exception as e:
                log.debug("Step callback failed", error=str(e))

    def build_system_prompt(self, memory: WorkingMemory) -> str:
        """Render the system prompt with tools, actions and a memory snapshot."""
        tools = "\n".join(
            f"- {tool.name}: {tool.description} Params: {_render_params(tool)}"
            for tool in self.dispatcher.available_tools()
        ) or "(none)"
        actions = "\n".join(
            f"- {action.name} [{entry.tier.value}]: {entry.description}. Params: {_render_params(action)}"
            for action, entry in self.dispatcher.available_actions()
        ) or "(none)"
        snapshot = memory.snapshot()
        if snapshot:
            rendered = "\n".join(
                f"- {key}: {_truncate(json.dumps(value, ensure_ascii=False, default=str), 200)}"
                for key, value in snapshot.items()
            )
        else:
            rendered = "(empty)"
        return self.instructions.render(
            host=self.host,
            tools=tools,
            actions=actions,
            memory=rendered,
        )

    def _observation(self, index: int, name: str, outcome: DispatchOutcome, memory: WorkingMemory) -> str:
        body = outcome.output if outcome.success else (outcome.error or outcome.output)
        keys = ", ".join(memory.keys()) or "none"
        header = f"OBSERVATION [step {index}] {name} -> {outcome.status} ({outcome.duration_ms} ms)"
        if outcome.error_kind:
            header += f" [{outcome.error_kind}]"
        budget = max(80, self.settings.observation_max_chars - len(header) - len(keys) - 20)
        return f"{header}\n{_truncate(body, budget) or '[no output]'}\nmemory keys: {keys}"

    async def _ask(self, question: str) -> str | None:
        if self.ask_callback is None:
            return None
        answer = self.ask_callback(question)
        if asyncio.iscoroutine(answer):
            answer = await answer
        return answer

    async def run(
        self,
        goal: str,
        memory: WorkingMemory | None = None,
        carry: str | None = None,
        abort_event: asyncio.Event | None = None,
        max_steps: int | None = None,
    ) -> AgentRunResult:
        """Drive the loop until DONE, STUCK, abort or budget exhaustion.

        Args:
            goal: Natural-language goal
            memory: Working memory to continue; a fresh one when omitted
            carry: Compact summary of a previous run, sent ahead of the goal
            abort_event: Cooperative abort flag, checked between steps
            max_steps: Override for ``agent.max_steps``

        Returns:
            AgentRunResult; every terminal state carries a readable summary
        """
        memory = memory if memory is not None else WorkingMemory()
        step_limit = max(1, int(max_steps or self.settings.max_steps))
        token_limit = max(1, int(self.settings.max_total_tokens))
        free_replies = max(0, int(self.settings.free_nudges))

        transcript: list[Message] = []
        if carry:
            transcript.append(Message(role="user", content=carry))
        transcript.append(Message(role="user", content=f"GOAL: {goal}"))
        pinned = len(transcript) + 1  # system prompt plus setup turns

        steps: list[AgentStep] = []
        usage = empty_usage()
        steps_taken = 0
        idle_replies = 0
        last_thought = ""

        def finish(status: str, summary: str, abort_reason: str | None = None) -> AgentRunResult:
            log.info(
                "Agent run finished",
                status=status,
                steps=steps_taken,
                abort_reason=abort_reason,
                tokens=usage["total_tokens"],
            )
            return AgentRunResult(
                goal=goal,
                success=status == "done",
                status=status,
                summary=summary,
                steps=steps,
                steps_taken=steps_taken,
                abort_reason=abort_reason,
                usage=dict(usage),
                transcript=list(transcript),
                memory=memory,
            )

        def progress_note() -> str:
            note = f"{steps_taken} step(s), {len(steps)} call(s)"
            if last_thought:
                note += f". Last thought: {_truncate(last_thought, 200)}"
            return note

        while True:
            if abort_event is not None and abort_event.is_set():
                return finish("aborted", f"Aborted by user after {progress_note()}.", ABORT_USER)
            if steps_taken >= step_limit:
                return finish(
                    "aborted",
                    f"Stopped at the step limit ({step_limit}) without finishing: {progress_note()}.",
                    ABORT_MAX_STEPS,
                )
            if usage["total_tokens"] >= token_limit:
                return finish(
                    "aborted",
                    f"Stopped at the token budget ({usage['total_tokens']}/{token_limit}): {progress_note()}.",
                    ABORT_TOKEN_BUDGET,
                )

            system_prompt = self.build_system_prompt(memory)
            fitted = self.budget.fit([Message(role="system", content=system_prompt)] + transcript, pin_first_n=pinned)
            outgoing = fitted.messages[1:]

            self._emit_status("thinking")
            try:
                completion = await self.provider.complete(
                    outgoing,
                    system_prompt=system_prompt,
                    stream=self.stream,
                    on_delta=self.on_delta,
                )
            except (LLMError, ConfigurationError) as e:
                return finish("aborted", f"Provider failed: {e}. Progress: {progress_note()}.", ABORT_PROVIDER)

            reported = token_count(completion.usage.get("total_tokens"))
            if reported > 0:
                usage["prompt_tokens"] += token_count(completion.usage.get("prompt_tokens"))
                usage["completion_tokens"] += token_count(completion.usage.get("completion_tokens"))
                usage["total_tokens"] += reported
            else:
                prompt_estimate = fitted.final_tokens
                completion_estimate = self.budget.estimate([Message(role="assistant", content=completion.content)])
                usage["prompt_tokens"] += prompt_estimate
                usage["completion_tokens"] += completion_estimate
                usage["total_tokens"] += prompt_estimate + completion_estimate

            reply = parse_reply(completion.content)
            transcript.append(Message(role="assistant", content=completion.content))
            if reply.plan:
                self._emit_status(f"plan: {reply.plan}")
            if reply.thought:
                last_thought = reply.thought
                self._emit_status(f"thought: {reply.thought}")

            if reply.kind is ReplyKind.DONE:
                steps_taken += 1
                return finish("done", reply.text or "Done.")

            if reply.kind is ReplyKind.STUCK:
                steps_taken += 1
                return finish("stuck", reply.text or f"Stuck after {progress_note()}.")

            if reply.kind in (ReplyKind.NONE, ReplyKind.PLAN):
                idle_replies += 1
                if idle_replies > free_replies:
                    steps_taken += 1
                nudge = PLAN_ACK if reply.kind is ReplyKind.PLAN else NUDGE_NO_TAG
                log.debug("Agent reply without action", kind=reply.kind.value, idle=idle_replies)
                transcript.append(Message(role="user", content=nudge))
                continue

            idle_replies = 0

            if reply.kind is ReplyKind.THOUGHT:
                steps_taken += 1
                transcript.append(Message(role="user", content=NUDGE_THOUGHT_ONLY))
                continue

            if reply.kind is ReplyKind.ASK:
                answer = await self._ask(reply.text)
                if answer is None:
                    steps_taken += 1
                    transcript.append(Message(role="user", content=NO_USER_ANSWER))
                else:
                    transcript.append(Message(role="user", content=f"ANSWER: {answer or '(no answer)'}"))
                continue

            steps_taken += 1
            transcript.append(Message(role="user", content=await self._act(reply, steps_taken, memory, steps, abort_event)))

    async def _act(
        self,
        reply: ParsedReply,
        index: int,
        memory: WorkingMemory,
        steps: list[AgentStep],
        abort_event: asyncio.Event | None,
    ) -> str:
        if reply.parse_error or not reply.action_name:
            error = reply.parse_error or "ACTION has no name"
            return (
                f"OBSERVATION [step {index}] invalid ACTION -> Rejected\n{error}\n"
                "Use ACTION: {\"name\": \"<tool or action>\", \"params\": {...}}"
            )

        self._emit_status(f"running {reply.action_name}")
        outcome = await self.dispatcher.dispatch(
            reply.action_name,
            reply.action_params,
            memory,
            auto_confirm=self.auto_confirm,
            abort_event=abort_event,
        )
        step = AgentStep(
            index=index,
            kind="tool" if outcome.kind == "tool" else "action",
            name=reply.action_name,
            params=dict(reply.action_params),
            success=outcome.success,
            output=outcome.output if outcome.success else (outcome.error or outcome.output),
            duration_ms=outcome.duration_ms,
            status=outcome.status,
            error=outcome.error,
        )
        steps.append(step)
        self._emit_step(step)
        log.info(
            "Agent step",
            index=index,
            name=step.name,
            kind=step.kind,
            status=step.status,
            duration_ms=step.duration_ms,
        )
        return self._observation(index, reply.action_name, outcome, memory)

    async def continue_run(
        self,
        follow_up: str,
        previous: AgentRunResult,
        abort_event: asyncio.Event | None = None,
        max_steps: int | None = None,
    ) -> AgentRunResult:
        """Start a fresh transcript that carries the previous run's summary and memory."""
        return await self.run(
            follow_up,
            memory=previous.memory,
            carry=carry_summary(previous),
            abort_event=abort_event,
            max_steps=max_steps,
        )
