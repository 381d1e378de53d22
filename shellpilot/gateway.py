"""Safety-gated execution of side-effecting actions."""

import asyncio
import getpass
import json
import socket
import time
from dataclasses import dataclass
from typing import Any, Callable

from shellpilot.actions.registry import ActionRegistry, ActionResult
from shellpilot.audit import (
    AuditLog,
    ExecutionRecord,
    ExecutionStatus,
    UndoHistory,
    UndoOutcome,
)
from shellpilot.exceptions import ActionCancelledError, ExecutionError, ValidationError
from shellpilot.logging import get_logger
from shellpilot.ratelimit import RateLimiter
from shellpilot.safety import SafetyCatalog, SafetyEntry

log = get_logger(__name__)

ConfirmCallback = Callable[[str], bool]


@dataclass
class ExecutionResult:
    """Typed outcome of one gateway invocation.

    ``status`` carries the error kind, so callers branch on it instead of
    catching exceptions. ``wait_seconds`` is set for rate-limited calls.
    """

    success: bool
    status: ExecutionStatus
    output: str = ""
    error: str | None = None
    duration_ms: int = 0
    confirmed: bool = False
    wait_seconds: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.status is ExecutionStatus.CANCELLED


def describe_call(action: str, params: dict[str, Any] | None) -> str:
    """Single-line rendering of an invocation for prompts and the audit log."""
    if not params:
        return action
    try:
        rendered = json.dumps(params, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        rendered = str(params)
    return f"{action} {rendered}"


def _default_identity() -> tuple[str, str]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = ""
    return user, socket.gethostname()


class ExecutionGateway:
    """Rate check, validate, confirm, execute and log every action call.

    Owns the rate-limit window, audit log and undo history for the process;
    nothing else mutates them.
    """

    def __init__(
        self,
        catalog: SafetyCatalog,
        registry: ActionRegistry,
        rate_limiter: RateLimiter,
        audit_log: AuditLog,
        undo_history: UndoHistory,
        confirm_callback: ConfirmCallback | None = None,
        dry_run: bool = False,
        session: str = "",
        user: str | None = None,
        host: str | None = None,
        output_preview_chars: int = 2000,
    ):
        self.catalog = catalog
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.audit_log = audit_log
        self.undo_history = undo_history
        self.confirm_callback = confirm_callback
        self.dry_run = dry_run
        self.session = session
        default_user, default_host = _default_identity()
        self.user = default_user if user is None else user
        self.host = default_host if host is None else host
        self.output_preview_chars = max(0, int(output_preview_chars))

    def validate(self, name: str) -> SafetyEntry:
        """Return the catalog entry for ``name``.

        Raises:
            ValidationError if the action is not in the safety catalog
        """
        return self.catalog.validate(name)

    def _preview(self, text: str) -> str:
        if len(text) <= self.output_preview_chars:
            return text
        return text[: self.output_preview_chars] + "... [truncated]"

    def _log(
        self,
        command: str,
        source: str,
        status: ExecutionStatus,
        output: str = "",
        error: str | None = None,
        confirmed: bool = False,
        duration_ms: int = 0,
    ) -> None:
        self.audit_log.append(
            ExecutionRecord(
                session=self.session,
                user=self.user,
                host=self.host,
                source=source,
                command=command,
                status=status,
                output=self._preview(output),
                error=error,
                confirmed=confirmed,
                duration_ms=duration_ms,
            )
        )

    def _confirm(self, entry: SafetyEntry, command: str) -> bool:
        if self.confirm_callback is None:
            log.info("No confirmation handler; declining", action=entry.name)
            return False
        question = (
            f"Allow {entry.tier.value.replace('_', ' ')} action?\n"
            f"Action: {command}\n"
            f"About: {entry.description}"
        )
        return bool(self.confirm_callback(question))

    async def execute(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        auto_confirm: bool = False,
        source: str = "agent",
        abort_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Run one action through every gate, writing exactly one audit record.

        Args:
            action: Action name
            params: Named parameters for the action
            auto_confirm: Treat confirmation-requiring tiers as pre-approved
            source: "agent" or "human"
            abort_event: Cooperative cancellation signal for the running action

        Returns:
            ExecutionResult whose status names the gate that decided the call
        """
        params = dict(params or {})
        command = describe_call(action, params)

        decision = self.rate_limiter.try_acquire()
        if not decision.allowed:
            message = f"Rate limit reached; retry in {decision.wait_seconds:.1f}s"
            self._log(command, source, ExecutionStatus.RATE_LIMITED, error=message)
            return ExecutionResult(
                success=False,
                status=ExecutionStatus.RATE_LIMITED,
                error=message,
                wait_seconds=decision.wait_seconds,
            )

        try:
            entry = self.validate(action)
        except ValidationError as e:
            log.warning("Rejected action", action=action, reason=e.reason)
            self._log(command, source, ExecutionStatus.REJECTED, error=str(e))
            return ExecutionResult(success=False, status=ExecutionStatus.REJECTED, error=str(e))

        if self.dry_run:
            output = f"[dry run] would execute {command}"
            self._log(command, source, ExecutionStatus.DRY_RUN, output=output)
            return ExecutionResult(success=True, status=ExecutionStatus.DRY_RUN, output=output)

        confirmed = False
        if entry.tier.needs_confirmation:
            if auto_confirm:
                confirmed = True
            elif not self._confirm(entry, command):
                self._log(command, source, ExecutionStatus.CANCELLED, error="Declined by user")
                return ExecutionResult(
                    success=False,
                    status=ExecutionStatus.CANCELLED,
                    error="Declined by user",
                )
            else:
                confirmed = True

        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            result: ActionResult = await self.registry.invoke(entry.name, params, abort_event=abort_event)
        except ValidationError as e:
            # Catalogued but no handler installed in this process.
            self._log(command, source, ExecutionStatus.REJECTED, error=str(e), confirmed=confirmed)
            return ExecutionResult(success=False, status=ExecutionStatus.REJECTED, error=str(e), confirmed=confirmed)
        except ActionCancelledError as e:
            duration = elapsed()
            self._log(command, source, ExecutionStatus.CANCELLED, error=str(e), confirmed=confirmed, duration_ms=duration)
            return ExecutionResult(
                success=False,
                status=ExecutionStatus.CANCELLED,
                error=str(e),
                duration_ms=duration,
                confirmed=confirmed,
            )
        except ExecutionError as e:
            duration = elapsed()
            self._log(command, source, ExecutionStatus.EXECUTION_ERROR, error=str(e), confirmed=confirmed, duration_ms=duration)
            return ExecutionResult(
                success=False,
                status=ExecutionStatus.EXECUTION_ERROR,
                error=str(e),
                duration_ms=duration,
                confirmed=confirmed,
            )
        except asyncio.CancelledError:
            self._log(command, source, ExecutionStatus.ATTEMPTED, error="Interrupted", confirmed=confirmed, duration_ms=elapsed())
            raise

        duration = elapsed()
        if not result.success:
            self._log(
                command,
                source,
                ExecutionStatus.EXECUTION_ERROR,
                output=result.output,
                error=result.error,
                confirmed=confirmed,
                duration_ms=duration,
            )
            return ExecutionResult(
                success=False,
                status=ExecutionStatus.EXECUTION_ERROR,
                output=result.output,
                error=result.error,
                duration_ms=duration,
                confirmed=confirmed,
            )

        if result.reversible is not None:
            self.undo_history.record(result.reversible)
        self._log(
            command,
            source,
            ExecutionStatus.SUCCESS,
            output=result.output,
            confirmed=confirmed,
            duration_ms=duration,
        )
        log.info("Executed action", action=entry.name, duration_ms=duration)
        return ExecutionResult(
            success=True,
            status=ExecutionStatus.SUCCESS,
            output=result.output,
            duration_ms=duration,
            confirmed=confirmed,
        )

    def undo(self, count: int = 1) -> list[UndoOutcome]:
        """Invert the newest ``count`` reversible operations."""
        return self.undo_history.undo(count)

    async def close(self) -> None:
        for action in self.registry.all():
            closer = getattr(action, "close", None)
            if closer is not None:
                await closer()
