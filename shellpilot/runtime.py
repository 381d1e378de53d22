"""Root object owning every piece of mutable state for one process."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from shellpilot.actions import ActionRegistry, default_actions
from shellpilot.agent import AgentLoop, AgentStep, AskCallback, Dispatcher
from shellpilot.agent_tools import default_tools
from shellpilot.audit import AuditLog, UndoHistory
from shellpilot.config import Config
from shellpilot.context import ContextBudget
from shellpilot.gateway import ConfirmCallback, ExecutionGateway
from shellpilot.instructions import InstructionLoader
from shellpilot.llm import create_provider_from_config
from shellpilot.llm.base import LLMProvider
from shellpilot.llm.gateway import ProviderGateway
from shellpilot.logging import get_logger
from shellpilot.ratelimit import RateLimiter
from shellpilot.safety import SafetyCatalog, default_catalog
from shellpilot.session import SessionStore

log = get_logger(__name__)


@dataclass
class Runtime:
    """Explicit state handed to every component; nothing reads a global."""

    config: Config
    provider: ProviderGateway
    budget: ContextBudget
    sessions: SessionStore
    rate_limiter: RateLimiter
    audit_log: AuditLog
    undo_history: UndoHistory
    gateway: ExecutionGateway
    tools: ActionRegistry
    dispatcher: Dispatcher
    instructions: InstructionLoader

    @classmethod
    def from_config(
        cls,
        config: Config,
        confirm_callback: ConfirmCallback | None = None,
        provider: LLMProvider | None = None,
        catalog: SafetyCatalog | None = None,
        actions: ActionRegistry | None = None,
        root: Path | str | None = None,
        session_name: str = "",
    ) -> Runtime:
        """Wire components from configuration.

        Args:
            config: Loaded configuration
            confirm_callback: Prompt for confirmation-requiring actions
            provider: Backend override, otherwise built from ``config.model``
            catalog: Safety catalog override
            actions: Action registry override
            root: Directory relative file paths resolve against
            session_name: Session label recorded in the audit log
        """
        execution = config.execution
        provider_gateway = ProviderGateway(
            provider or create_provider_from_config(config.model),
            config.retry,
            timeout=config.model.timeout,
        )
        rate_limiter = RateLimiter(
            window_seconds=execution.rate_limit_window_seconds,
            max_calls=execution.rate_limit_max,
            state_path=execution.rate_limit_state_path or None,
        )
        audit_log = AuditLog(execution.audit_log_path or None, cap=execution.audit_log_cap)
        undo_history = UndoHistory(execution.undo_history_path or None, capacity=execution.undo_capacity)
        gateway = ExecutionGateway(
            catalog=catalog or default_catalog(),
            registry=actions or default_actions(execution, root=root),
            rate_limiter=rate_limiter,
            audit_log=audit_log,
            undo_history=undo_history,
            confirm_callback=confirm_callback,
            dry_run=execution.dry_run,
            session=session_name,
            output_preview_chars=execution.output_preview_chars,
        )
        tools = default_tools()
        log.debug("Runtime ready", provider=provider_gateway.provider.name, model=provider_gateway.model)
        return cls(
            config=config,
            provider=provider_gateway,
            budget=ContextBudget(config.context),
            sessions=SessionStore(config.session.path, legacy_dir=config.session.legacy_dir or None),
            rate_limiter=rate_limiter,
            audit_log=audit_log,
            undo_history=undo_history,
            gateway=gateway,
            tools=tools,
            dispatcher=Dispatcher(tools, gateway),
            instructions=InstructionLoader(config.agent.system_prompt_path or None),
        )

    def make_agent(
        self,
        ask_callback: AskCallback | None = None,
        status_callback: Callable[[str], None] | None = None,
        step_callback: Callable[[AgentStep], None] | None = None,
        auto_confirm: bool = False,
        on_delta: Callable[[str], None] | None = None,
    ) -> AgentLoop:
        """Agent loop bound to this runtime's provider, budget and dispatcher."""
        return AgentLoop(
            provider=self.provider,
            dispatcher=self.dispatcher,
            budget=self.budget,
            settings=self.config.agent,
            instructions=self.instructions,
            ask_callback=ask_callback,
            status_callback=status_callback,
            step_callback=step_callback,
            auto_confirm=auto_confirm,
            stream=self.config.model.stream and on_delta is not None,
            on_delta=on_delta,
        )

    async def close(self) -> None:
        await self.gateway.close()
        await self.provider.provider.close()
        await self.sessions.close()
