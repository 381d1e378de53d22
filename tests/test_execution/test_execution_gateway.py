import asyncio

import pytest

from shellpilot.actions import Action, ActionRegistry, ActionResult, CreateFileAction
from shellpilot.audit import AuditLog, ExecutionStatus, OperationKind, UndoHistory
from shellpilot.gateway import ExecutionGateway, describe_call
from shellpilot.ratelimit import RateLimiter
from shellpilot.safety import SafetyCatalog, SafetyEntry, SafetyTier, default_catalog


class RecordingAction(Action):
    name = "peek"
    description = "Records calls"
    parameters = {"type": "object", "properties": {"value": {"type": "string"}}, "required": []}

    def __init__(self, name: str = "peek", result: ActionResult | None = None):
        self.name = name
        self.calls: list[dict] = []
        self.result = result or ActionResult(success=True, output="peeked")

    async def execute(self, **kwargs):
        self.calls.append({k: v for k, v in kwargs.items() if not k.startswith("_")})
        return self.result


class ExplodingAction(Action):
    name = "explode"
    description = "Raises"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        raise RuntimeError("kaboom")


class WaitingAction(Action):
    name = "wait"
    description = "Waits until aborted"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 10.0

    async def execute(self, **kwargs):
        await asyncio.sleep(5)
        return ActionResult(success=True, output="late")


CATALOG = SafetyCatalog(
    [
        SafetyEntry("peek", SafetyTier.READ_ONLY, "test", "Read-only lookup"),
        SafetyEntry("poke", SafetyTier.REQUIRES_CONFIRMATION, "test", "Needs approval"),
        SafetyEntry("explode", SafetyTier.READ_ONLY, "test", "Raises"),
        SafetyEntry("wait", SafetyTier.READ_ONLY, "test", "Slow"),
        SafetyEntry("create_file", SafetyTier.SAFE_WRITE, "files", "Create a file"),
        SafetyEntry("git_push", SafetyTier.REQUIRES_CONFIRMATION, "git", "No handler here"),
    ]
)


def _gateway(tmp_path, confirm=None, dry_run=False, max_calls=10, actions=None):
    registry = ActionRegistry()
    for action in actions or []:
        registry.register(action)
    gateway = ExecutionGateway(
        catalog=CATALOG,
        registry=registry,
        rate_limiter=RateLimiter(window_seconds=60, max_calls=max_calls),
        audit_log=AuditLog(tmp_path / "audit.json"),
        undo_history=UndoHistory(tmp_path / "undo.json"),
        confirm_callback=confirm,
        dry_run=dry_run,
        session="test",
        user="tester",
        host="box",
    )
    return gateway


@pytest.mark.asyncio
async def test_read_only_action_runs_without_confirmation(tmp_path):
    peek = RecordingAction()
    asked: list[str] = []
    gateway = _gateway(tmp_path, confirm=lambda q: asked.append(q) or True, actions=[peek])

    result = await gateway.execute("peek", {"value": "x"})

    assert result.success is True
    assert result.status is ExecutionStatus.SUCCESS
    assert result.output == "peeked"
    assert asked == []
    assert peek.calls == [{"value": "x"}]
    records = gateway.audit_log.recent()
    assert len(records) == 1
    assert records[0].status is ExecutionStatus.SUCCESS
    assert records[0].command == 'peek {"value": "x"}'
    assert records[0].session == "test"
    assert records[0].user == "tester"


@pytest.mark.asyncio
async def test_unknown_action_is_rejected_before_any_handler_runs(tmp_path):
    peek = RecordingAction(name="rm_everything")
    gateway = _gateway(tmp_path, actions=[peek])

    result = await gateway.execute("rm_everything", {})

    assert result.success is False
    assert result.status is ExecutionStatus.REJECTED
    assert "rm_everything" in result.error
    assert peek.calls == []
    assert [r.status for r in gateway.audit_log.recent()] == [ExecutionStatus.REJECTED]


@pytest.mark.asyncio
async def test_declined_confirmation_cancels_without_side_effects(tmp_path):
    poke = RecordingAction(name="poke")
    asked: list[str] = []

    def decline(question: str) -> bool:
        asked.append(question)
        return False

    gateway = _gateway(tmp_path, confirm=decline, actions=[poke])

    result = await gateway.execute("poke", {"value": "1"})

    assert result.status is ExecutionStatus.CANCELLED
    assert result.cancelled is True
    assert result.success is False
    assert poke.calls == []
    assert len(asked) == 1
    assert "poke" in asked[0]
    record = gateway.audit_log.recent()[-1]
    assert record.status is ExecutionStatus.CANCELLED
    assert record.confirmed is False


@pytest.mark.asyncio
async def test_missing_confirm_handler_declines(tmp_path):
    poke = RecordingAction(name="poke")
    gateway = _gateway(tmp_path, confirm=None, actions=[poke])

    result = await gateway.execute("poke", {})

    assert result.status is ExecutionStatus.CANCELLED
    assert poke.calls == []


@pytest.mark.asyncio
async def test_approved_and_auto_confirmed_calls_are_marked_confirmed(tmp_path):
    poke = RecordingAction(name="poke")
    gateway = _gateway(tmp_path, confirm=lambda q: True, actions=[poke])

    approved = await gateway.execute("poke", {})
    gateway.confirm_callback = None
    automatic = await gateway.execute("poke", {}, auto_confirm=True)

    assert approved.confirmed is True
    assert automatic.confirmed is True
    assert len(poke.calls) == 2
    assert all(r.confirmed for r in gateway.audit_log.recent())


@pytest.mark.asyncio
async def test_rate_limited_call_is_audited_and_not_run(tmp_path):
    peek = RecordingAction()
    gateway = _gateway(tmp_path, max_calls=1, actions=[peek])

    first = await gateway.execute("peek", {})
    second = await gateway.execute("peek", {})

    assert first.success is True
    assert second.status is ExecutionStatus.RATE_LIMITED
    assert second.wait_seconds > 0
    assert len(peek.calls) == 1
    assert [r.status for r in gateway.audit_log.recent()] == [
        ExecutionStatus.SUCCESS,
        ExecutionStatus.RATE_LIMITED,
    ]


@pytest.mark.asyncio
async def test_dry_run_validates_and_logs_without_running(tmp_path):
    poke = RecordingAction(name="poke")
    gateway = _gateway(tmp_path, dry_run=True, actions=[poke])

    result = await gateway.execute("poke", {"value": "v"})
    unknown = await gateway.execute("nope", {})

    assert result.status is ExecutionStatus.DRY_RUN
    assert result.success is True
    assert "would execute" in result.output
    assert poke.calls == []
    assert unknown.status is ExecutionStatus.REJECTED


@pytest.mark.asyncio
async def test_catalogued_action_without_handler_is_rejected(tmp_path):
    gateway = _gateway(tmp_path, confirm=lambda q: True)

    result = await gateway.execute("git_push", {})

    assert result.status is ExecutionStatus.REJECTED
    assert "not registered" in result.error


@pytest.mark.asyncio
async def test_handler_exception_becomes_execution_error(tmp_path):
    gateway = _gateway(tmp_path, actions=[ExplodingAction()])

    result = await gateway.execute("explode", {})

    assert result.status is ExecutionStatus.EXECUTION_ERROR
    assert "kaboom" in result.error
    assert len(gateway.audit_log.recent()) == 1


@pytest.mark.asyncio
async def test_failed_result_is_execution_error_with_output(tmp_path):
    failing = RecordingAction(result=ActionResult(success=False, output="partial", error="Exit code 2: partial"))
    gateway = _gateway(tmp_path, actions=[failing])

    result = await gateway.execute("peek", {})

    assert result.status is ExecutionStatus.EXECUTION_ERROR
    assert result.output == "partial"
    assert result.error == "Exit code 2: partial"


@pytest.mark.asyncio
async def test_abort_event_cancels_running_action(tmp_path):
    gateway = _gateway(tmp_path, actions=[WaitingAction()])
    abort = asyncio.Event()

    async def trip():
        await asyncio.sleep(0.05)
        abort.set()

    tripper = asyncio.create_task(trip())
    result = await gateway.execute("wait", {}, abort_event=abort)
    await tripper

    assert result.status is ExecutionStatus.CANCELLED
    assert gateway.audit_log.recent()[-1].status is ExecutionStatus.CANCELLED


@pytest.mark.asyncio
async def test_successful_write_is_recorded_for_undo(tmp_path):
    gateway = _gateway(tmp_path, actions=[CreateFileAction(root=tmp_path)])

    result = await gateway.execute("create_file", {"path": "notes.txt", "content": "hello"}, auto_confirm=True)

    assert result.success is True
    target = tmp_path / "notes.txt"
    assert target.read_text(encoding="utf-8") == "hello"
    entries = gateway.undo_history.entries()
    assert len(entries) == 1
    assert entries[0].kind is OperationKind.CREATE

    outcomes = gateway.undo(1)
    assert outcomes[0].success is True
    assert not target.exists()


@pytest.mark.asyncio
async def test_audit_output_is_truncated_to_preview(tmp_path):
    big = RecordingAction(result=ActionResult(success=True, output="y" * 5000))
    gateway = _gateway(tmp_path, actions=[big])
    gateway.output_preview_chars = 100

    result = await gateway.execute("peek", {})

    assert len(result.output) == 5000
    stored = gateway.audit_log.recent()[-1].output
    assert stored.startswith("y" * 100)
    assert stored.endswith("[truncated]")


def test_describe_call_is_stable():
    assert describe_call("git_status", None) == "git_status"
    assert describe_call("copy_file", {"source": "a", "destination": "b"}) == (
        'copy_file {"destination": "b", "source": "a"}'
    )


def test_default_catalog_is_read_only_and_case_insensitive():
    catalog = default_catalog()
    assert "READ_FILE" in catalog
    assert catalog.validate(" Run_Command ").tier is SafetyTier.REQUIRES_CONFIRMATION
    assert catalog.validate("read_file").tier.needs_confirmation is False
    assert catalog.validate("create_file").tier.needs_confirmation is True
    assert "format_disk" not in catalog
    with pytest.raises(TypeError):
        catalog._entries["x"] = None


@pytest.mark.asyncio
async def test_unreachable_shared_rate_window_does_not_break_execution(tmp_path, monkeypatch):
    def stuck_lock(*args, **kwargs):
        raise TimeoutError("Timed out waiting for lock")

    monkeypatch.setattr("shellpilot.ratelimit.file_lock", stuck_lock)
    action = RecordingAction()
    gateway = _gateway(tmp_path, actions=[action])
    gateway.rate_limiter = RateLimiter(window_seconds=60, max_calls=10, state_path=tmp_path / "rate.json")

    result = await gateway.execute("peek", {"value": "x"})

    assert result.status is ExecutionStatus.SUCCESS
    assert action.calls == [{"value": "x"}]
    assert gateway.audit_log.recent()[-1].status is ExecutionStatus.SUCCESS
