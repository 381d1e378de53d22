import asyncio

import pytest

from shellpilot.actions import Action, ActionRegistry, ActionResult
from shellpilot.exceptions import ActionCancelledError, ExecutionError, ValidationError


class EchoAction(Action):
    name = "echo"
    description = "Echo back"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string", "description": "What to echo"}},
        "required": ["text"],
    }

    def __init__(self):
        self.seen: list[dict] = []

    async def execute(self, **kwargs):
        self.seen.append(kwargs)
        return ActionResult(success=True, output=str(kwargs.get("text", "")))


class SlowAction(Action):
    name = "slow"
    description = "Slow"
    parameters = {
        "type": "object",
        "properties": {},
        "required": [],
    }
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ActionResult(success=True, output="done")


class CancellableAction(Action):
    name = "cancellable"
    description = "Cancellable"
    parameters = {
        "type": "object",
        "properties": {},
        "required": [],
    }
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return ActionResult(success=True, output="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class JunkAction(Action):
    name = "junk"
    description = "Returns the wrong type"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        return "not a result"


@pytest.mark.asyncio
async def test_registry_lookup_is_case_insensitive_and_unknown_raises():
    registry = ActionRegistry()
    registry.register(EchoAction())

    assert registry.has("ECHO")
    assert registry.list_actions() == ["echo"]
    with pytest.raises(ValidationError, match="not registered"):
        await registry.invoke("missing", {})


@pytest.mark.asyncio
async def test_registry_strips_underscore_arguments_from_model_input():
    registry = ActionRegistry()
    echo = EchoAction()
    registry.register(echo)

    await registry.invoke("echo", {"text": "hi", "_memory": "spoofed"}, _memory="real")

    assert echo.seen[0]["text"] == "hi"
    assert echo.seen[0]["_memory"] == "real"


@pytest.mark.asyncio
async def test_registry_requires_declared_arguments():
    registry = ActionRegistry()
    registry.register(EchoAction())

    with pytest.raises(ExecutionError, match="Missing required argument: text"):
        await registry.invoke("echo", {})


@pytest.mark.asyncio
async def test_registry_uses_action_level_timeout_seconds():
    registry = ActionRegistry()
    registry.register(SlowAction())

    with pytest.raises(ExecutionError, match="timed out after 1s"):
        await registry.invoke("slow", {})


@pytest.mark.asyncio
async def test_registry_abort_event_cancels_running_action():
    registry = ActionRegistry()
    action = CancellableAction()
    registry.register(action)

    abort_event = asyncio.Event()
    execution = asyncio.create_task(registry.invoke("cancellable", {}, abort_event=abort_event))
    await asyncio.sleep(0.05)
    abort_event.set()

    with pytest.raises(ActionCancelledError, match="aborted"):
        await execution
    assert action.cancelled is True


@pytest.mark.asyncio
async def test_registry_rejects_invalid_result_payload():
    registry = ActionRegistry()
    registry.register(JunkAction())

    with pytest.raises(ExecutionError, match="invalid result"):
        await registry.invoke("junk", {})


def test_describe_parameters_lists_required_flags():
    assert EchoAction().describe_parameters() == [("text", "What to echo", True)]
