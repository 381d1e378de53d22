"""Action registry and base action class."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, model_validator

from shellpilot.audit import ReversibleOperation
from shellpilot.exceptions import ActionCancelledError, ExecutionError, ValidationError
from shellpilot.logging import get_logger

log = get_logger(__name__)


def _normalize_action_name(value: str) -> str:
    """Normalize names for registry lookups."""
    return str(value or "").strip().lower()


class ActionResult(BaseModel):
    """Uniform result contract for every handler."""

    success: bool = True
    output: str = ""
    error: str | None = None
    reversible: ReversibleOperation | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ActionResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.output or "").strip()
            self.error = fallback or "Action failed"
        return self


class Action(ABC):
    """Base class for named handlers (side-effecting actions and pure tools)."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ActionResult:
        """Run the handler.

        Args:
            **kwargs: Handler-specific arguments, plus runtime context keys
                prefixed with ``_`` (for example ``_abort_event``)

        Returns:
            ActionResult with success status and output
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Return name, description and JSON-schema parameters."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def describe_parameters(self) -> list[tuple[str, str, bool]]:
        """List ``(name, description, required)`` for prompt rendering."""
        properties = self.parameters.get("properties", {}) or {}
        required = set(self.parameters.get("required", []) or [])
        return [
            (key, str((spec or {}).get("description", "")), key in required)
            for key, spec in properties.items()
        ]

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check required arguments are present.

        Raises:
            ExecutionError if a required argument is missing
        """
        for field in self.parameters.get("required", []) or []:
            if field not in arguments:
                raise ExecutionError(self.name, f"Missing required argument: {field}")


class ActionRegistry:
    """Name -> handler registry, populated at startup."""

    def __init__(self) -> None:
        self._actions: dict[str, Action] = {}

    def register(self, action: Action) -> None:
        """Register a handler.

        Args:
            action: Handler instance to register
        """
        if not action.name:
            raise ValueError("Action must have a name")
        log.debug("Registering action", action=action.name)
        self._actions[_normalize_action_name(action.name)] = action

    def has(self, name: str) -> bool:
        return _normalize_action_name(name) in self._actions

    def get(self, name: str) -> Action:
        """Get a handler by name.

        Raises:
            ValidationError if not registered
        """
        action = self._actions.get(_normalize_action_name(name))
        if action is None:
            raise ValidationError(str(name), "not registered")
        return action

    def list_actions(self) -> list[str]:
        return sorted(action.name for action in self._actions.values())

    def all(self) -> list[Action]:
        return [self._actions[key] for key in sorted(self._actions)]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            pass

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
        **context: Any,
    ) -> ActionResult:
        """Run a handler with timeout and abort propagation.

        Args:
            name: Handler name
            arguments: Handler arguments
            abort_event: Cooperative cancellation signal
            **context: Extra ``_``-prefixed runtime context forwarded to the handler

        Returns:
            ActionResult from the handler

        Raises:
            ValidationError if the handler is unknown
            ActionCancelledError if aborted mid-run
            ExecutionError if the handler raised, timed out or returned junk
        """
        action = self.get(name)
        # Model-supplied keys may not spoof runtime context.
        arguments = {k: v for k, v in (arguments or {}).items() if not str(k).startswith("_")}
        action.validate_arguments(arguments)

        timeout_seconds = max(1.0, float(getattr(action, "timeout_seconds", 30.0) or 30.0))
        execute_task: asyncio.Task[ActionResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            execute_task = asyncio.create_task(
                action.execute(**arguments, _abort_event=abort_event, **context)
            )
            wait_set: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                wait_set.add(abort_wait_task)
            done, _ = await asyncio.wait(
                wait_set,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ActionResult):
                    raise ExecutionError(action.name, "Handler returned invalid result payload")
                return result

            await self._cancel_task(execute_task)
            if abort_wait_task is not None and abort_wait_task in done:
                raise ActionCancelledError(f"Action '{action.name}' aborted")
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ExecutionError(action.name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except (ExecutionError, ActionCancelledError):
            raise
        except Exception as e:
            log.error("Action raised", action=action.name, error=str(e))
            raise ExecutionError(action.name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)
