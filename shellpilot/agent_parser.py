"""Line-oriented parser for tagged agent replies."""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ReplyKind(str, Enum):
    """Primary meaning of one model reply."""

    ACTION = "action"
    ASK = "ask"
    DONE = "done"
    STUCK = "stuck"
    THOUGHT = "thought"
    PLAN = "plan"
    NONE = "none"


_TERMINAL_TAGS = ("ACTION", "ASK", "DONE", "STUCK")

_TAG_RE = re.compile(
    r"^\s*(?:[-*#>]+\s*)?(?:\*\*|__)?\s*"
    r"(PLAN|THOUGHT|ACTION|ASK|DONE|STUCK)"
    r"\s*(?:\*\*|__)?\s*:\s*(?:\*\*|__)?\s*(.*)$",
    re.IGNORECASE,
)
_FENCE_RE = re.compile(r"^\s*```[\w-]*\s*$")
_NAME_FIRST_RE = re.compile(r"^([A-Za-z_][\w.-]*)\s*(\{.*\})?\s*$", re.DOTALL)

_NAME_KEYS = ("name", "tool", "action")
_PARAM_KEYS = ("params", "args", "arguments", "parameters", "input")


@dataclass
class ParsedReply:
    """One tagged reply. ``text`` holds the primary tag's free text."""

    kind: ReplyKind
    text: str = ""
    plan: str = ""
    thought: str = ""
    action_name: str = ""
    action_params: dict[str, Any] = field(default_factory=dict)
    parse_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in (ReplyKind.DONE, ReplyKind.STUCK)


def _split_blocks(text: str) -> list[tuple[str, str]]:
    """Group lines under the tag that precedes them."""
    blocks: list[tuple[str, list[str]]] = []
    for line in str(text or "").splitlines():
        match = _TAG_RE.match(line)
        if match:
            blocks.append((match.group(1).upper(), [match.group(2)]))
        elif blocks:
            blocks[-1][1].append(line)
    return [(tag, "\n".join(lines).strip()) for tag, lines in blocks]


def _strip_fences(text: str) -> str:
    return "\n".join(line for line in text.splitlines() if not _FENCE_RE.match(line)).strip()


def _load_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            value = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return None
    return value if isinstance(value, dict) else None


def parse_action_payload(payload: str) -> tuple[str, dict[str, Any], str | None]:
    """Parse an ACTION body into ``(name, params, error)``.

    Accepts ``{"name": ..., "params": {...}}`` (with ``tool``/``action`` and
    ``args``/``arguments``/``parameters`` aliases) or ``name {json}``.
    """
    body = _strip_fences(payload)
    if not body:
        return "", {}, "Empty ACTION payload"

    if not body.startswith("{"):
        match = _NAME_FIRST_RE.match(body)
        if match:
            name, raw_params = match.group(1), match.group(2)
            if not raw_params:
                return name, {}, None
            params = _load_object(raw_params)
            if params is None:
                return name, {}, "ACTION parameters are not valid JSON"
            return name, params, None

    obj = _load_object(body)
    if obj is None:
        return "", {}, "ACTION payload is not valid JSON"

    name = ""
    for key in _NAME_KEYS:
        if isinstance(obj.get(key), str) and obj[key].strip():
            name = obj[key].strip()
            break
    if not name:
        return "", {}, "ACTION payload has no name"

    params: dict[str, Any] = {}
    for key in _PARAM_KEYS:
        if key in obj:
            candidate = obj[key]
            if candidate is None:
                candidate = {}
            if not isinstance(candidate, dict):
                return name, {}, f"ACTION '{key}' must be an object"
            params = candidate
            break
    return name, params, None


def parse_reply(text: str) -> ParsedReply:
    """Parse a model reply into exactly one tagged variant.

    The first ACTION/ASK/DONE/STUCK tag decides the kind and later ones are
    ignored. Without one, a THOUGHT or PLAN makes the reply non-terminal
    reasoning; a reply with no recognized tag is ``ReplyKind.NONE``.
    """
    blocks = _split_blocks(text)
    plan = next((body for tag, body in blocks if tag == "PLAN"), "")
    thought = next((body for tag, body in blocks if tag == "THOUGHT"), "")

    primary = next(((tag, body) for tag, body in blocks if tag in _TERMINAL_TAGS), None)
    if primary is None:
        if thought:
            return ParsedReply(kind=ReplyKind.THOUGHT, text=thought, plan=plan, thought=thought)
        if plan or any(tag == "PLAN" for tag, _ in blocks):
            return ParsedReply(kind=ReplyKind.PLAN, text=plan, plan=plan)
        if any(tag == "THOUGHT" for tag, _ in blocks):
            return ParsedReply(kind=ReplyKind.THOUGHT, plan=plan)
        return ParsedReply(kind=ReplyKind.NONE, text=str(text or "").strip())

    tag, body = primary
    if tag == "ACTION":
        name, params, error = parse_action_payload(body)
        return ParsedReply(
            kind=ReplyKind.ACTION,
            text=body,
            plan=plan,
            thought=thought,
            action_name=name,
            action_params=params,
            parse_error=error,
        )
    return ParsedReply(kind=ReplyKind(tag.lower()), text=body, plan=plan, thought=thought)
