"""Provider-neutral chat types and the provider interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

DeltaCallback = Callable[[str], None]


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant"
    content: str


def empty_usage() -> dict[str, int]:
    """Create an empty usage bucket."""
    return {
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
    }


def token_count(value: Any) -> int:
    """Read a usage counter from a provider payload; anything non-numeric is 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


@dataclass
class Completion:
    """Normalized response from any backend."""

    content: str
    model: str = ""
    usage: dict[str, int] = field(default_factory=empty_usage)
    stop_reason: str = ""


def coerce_message(msg: Any) -> Message:
    """Accept Message objects or role/content dicts."""
    if isinstance(msg, Message):
        return msg
    if isinstance(msg, dict):
        return Message(role=str(msg.get("role", "user")), content=str(msg.get("content", "") or ""))
    return Message(
        role=str(getattr(msg, "role", "user")),
        content=str(getattr(msg, "content", "") or ""),
    )


class LLMProvider(ABC):
    """Abstract base class for chat-completion backends."""

    name: str = ""
    model: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        stream: bool = False,
        on_delta: DeltaCallback | None = None,
    ) -> Completion:
        """Run one completion; ``on_delta`` receives text fragments when streaming."""

    async def close(self) -> None:
        """Release network or process resources."""
        return None
