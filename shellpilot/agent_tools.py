"""Pure tools the agent evaluates directly, plus its working memory."""

import ast
import math
import operator
from datetime import UTC, datetime
from typing import Any

from shellpilot.actions.registry import Action, ActionRegistry, ActionResult


class WorkingMemory:
    """Name -> value scratchpad scoped to one agent run.

    Only the memory tools below write to it; the loop reads ``keys`` and
    ``snapshot`` for prompts and observations.
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        self._values: dict[str, Any] = dict(initial or {})

    def store(self, name: str, value: Any) -> None:
        self._values[str(name)] = value

    def recall(self, name: str) -> Any:
        return self._values[str(name)]

    def keys(self) -> list[str]:
        return list(self._values)

    def snapshot(self) -> dict[str, Any]:
        return dict(self._values)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)


def _memory_from(kwargs: dict[str, Any]) -> WorkingMemory:
    memory = kwargs.get("_memory")
    if not isinstance(memory, WorkingMemory):
        raise RuntimeError("working memory not supplied")
    return memory


_BINARY_OPS: dict[type[ast.AST], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type[ast.AST], Any] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_FUNCTIONS: dict[str, Any] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sqrt": math.sqrt,
    "log": math.log,
    "floor": math.floor,
    "ceil": math.ceil,
}
_CONSTANTS = {"pi": math.pi, "e": math.e, "tau": math.tau}
# Integer results past this many bits are refused before they are built.
MAX_INT_BITS = 4096


def _bounded(value: float | int) -> float | int:
    if isinstance(value, complex):
        raise ValueError("result is not a real number")
    if isinstance(value, int) and value.bit_length() > MAX_INT_BITS:
        raise ValueError(f"result is too large (over {MAX_INT_BITS} bits)")
    return value


def evaluate_expression(expression: str) -> float | int:
    """Evaluate arithmetic without ``eval``.

    Raises:
        ValueError for anything beyond numbers, arithmetic and a few math functions
    """

    def _eval(node: ast.AST, depth: int = 0) -> float | int:
        if depth > 40:
            raise ValueError("expression is too complex")
        if isinstance(node, ast.Expression):
            return _eval(node.body, depth + 1)
        if isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise ValueError("only numeric literals are allowed")
            return _bounded(node.value)
        if isinstance(node, ast.BinOp):
            op = _BINARY_OPS.get(type(node.op))
            if op is None:
                raise ValueError("operator is not allowed")
            left = _eval(node.left, depth + 1)
            right = _eval(node.right, depth + 1)
            if isinstance(node.op, ast.Pow):
                if abs(right) > 64:
                    raise ValueError("exponent is too large (max 64)")
                if isinstance(left, int) and isinstance(right, int) and abs(left).bit_length() * right > MAX_INT_BITS:
                    raise ValueError(f"result is too large (over {MAX_INT_BITS} bits)")
            return _bounded(op(left, right))
        if isinstance(node, ast.UnaryOp):
            op = _UNARY_OPS.get(type(node.op))
            if op is None:
                raise ValueError("unary operator is not allowed")
            return _bounded(op(_eval(node.operand, depth + 1)))
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                raise ValueError("function is not allowed")
            if node.keywords:
                raise ValueError("keyword arguments are not allowed")
            return _bounded(_FUNCTIONS[node.func.id](*[_eval(arg, depth + 1) for arg in node.args]))
        if isinstance(node, ast.Name) and node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        raise ValueError("unsupported expression element")

    try:
        tree = ast.parse(str(expression), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"invalid expression: {e.msg}") from e
    return _eval(tree)


class CalculateTool(Action):
    name = "calculate"
    description = "Evaluate an arithmetic expression."
    parameters = {
        "type": "object",
        "properties": {
            "expression": {"type": "string", "description": "Expression such as '(3 + 4) * 2'"},
        },
        "required": ["expression"],
    }

    async def execute(self, expression: str, **kwargs: Any) -> ActionResult:
        try:
            value = evaluate_expression(expression)
        except (ValueError, ZeroDivisionError, OverflowError, TypeError) as e:
            return ActionResult(success=False, error=f"Cannot evaluate '{expression}': {e}")
        return ActionResult(success=True, output=f"{expression} = {value}")


class CurrentTimeTool(Action):
    name = "current_time"
    description = "Return the current local and UTC time."
    parameters = {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> ActionResult:
        now = datetime.now(UTC)
        local = now.astimezone()
        return ActionResult(
            success=True,
            output=f"local: {local.isoformat(timespec='seconds')}\nutc: {now.isoformat(timespec='seconds')}",
        )


class TextStatsTool(Action):
    name = "text_stats"
    description = "Count characters, words and lines in a piece of text."
    parameters = {
        "type": "object",
        "properties": {
            "text": {"type": "string", "description": "Text to measure"},
        },
        "required": ["text"],
    }

    async def execute(self, text: str, **kwargs: Any) -> ActionResult:
        text = str(text)
        lines = len(text.splitlines()) if text else 0
        return ActionResult(
            success=True,
            output=f"chars={len(text)} words={len(text.split())} lines={lines}",
        )


class StoreMemoryTool(Action):
    name = "store_memory"
    description = "Save a value in working memory under a name for later steps."
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Key to store under"},
            "value": {"description": "Value to remember"},
        },
        "required": ["name", "value"],
    }

    async def execute(self, name: str, value: Any, **kwargs: Any) -> ActionResult:
        memory = _memory_from(kwargs)
        memory.store(name, value)
        return ActionResult(success=True, output=f"Stored '{name}'")


class RecallMemoryTool(Action):
    name = "recall_memory"
    description = "Read a value previously saved in working memory."
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Key to read"},
        },
        "required": ["name"],
    }

    async def execute(self, name: str, **kwargs: Any) -> ActionResult:
        memory = _memory_from(kwargs)
        if name not in memory:
            known = ", ".join(memory.keys()) or "none"
            return ActionResult(success=False, error=f"No memory named '{name}' (known: {known})")
        return ActionResult(success=True, output=str(memory.recall(name)))


class ListMemoryTool(Action):
    name = "list_memory"
    description = "List the names stored in working memory."
    parameters = {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> ActionResult:
        keys = _memory_from(kwargs).keys()
        return ActionResult(success=True, output=", ".join(keys) if keys else "(empty)")


def default_tools() -> ActionRegistry:
    """Registry of the built-in pure tools."""
    registry = ActionRegistry()
    for tool in (
        CalculateTool(),
        CurrentTimeTool(),
        TextStatsTool(),
        StoreMemoryTool(),
        RecallMemoryTool(),
        ListMemoryTool(),
    ):
        registry.register(tool)
    return registry
