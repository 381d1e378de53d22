"""Context window budgeting: token estimates, history trimming, recap turns."""

import re
from dataclasses import dataclass, field
from typing import Any

from shellpilot.config import ContextConfig
from shellpilot.llm.base import Message, coerce_message
from shellpilot.logging import get_logger

log = get_logger(__name__)

RECAP_MAX_TOPICS = 8
RECAP_TOPIC_CHARS = 80
RECAP_PREFIX = "[Earlier conversation recap]"
RECAP_ACK = "Understood. I'll keep those earlier topics in mind."


def estimate_message_tokens(content: str) -> int:
    """~1 token per 4 characters; non-empty content costs at least 1."""
    if not content:
        return 0
    return max(1, len(content) // 4)


def estimate_tokens(messages: list[Any]) -> int:
    """Estimate the token cost of a conversation."""
    return sum(estimate_message_tokens(coerce_message(m).content) for m in messages)


@dataclass
class TrimResult:
    """Outcome of fitting a conversation to a budget."""

    messages: list[Message]
    trimmed: bool = False
    removed_count: int = 0
    final_tokens: int = 0
    recap: list[Message] = field(default_factory=list)


def _topic_of(content: str) -> str:
    first_line = next((line for line in content.splitlines() if line.strip()), "")
    topic = re.sub(r"\s+", " ", first_line).strip()
    if len(topic) > RECAP_TOPIC_CHARS:
        topic = topic[: RECAP_TOPIC_CHARS - 3].rstrip() + "..."
    return topic


def build_recap(evicted: list[Message]) -> list[Message]:
    """Build a compact user/assistant exchange naming the evicted user topics."""
    topics: list[str] = []
    for msg in evicted:
        if msg.role != "user":
            continue
        topic = _topic_of(msg.content)
        if topic and topic not in topics:
            topics.append(topic)
    if not topics:
        return []
    omitted = len(topics) - RECAP_MAX_TOPICS
    lines = [f"- {topic}" for topic in topics[:RECAP_MAX_TOPICS]]
    if omitted > 0:
        lines.append(f"- (+{omitted} more)")
    body = f"{RECAP_PREFIX} {len(evicted)} older messages were removed. Topics covered:\n" + "\n".join(lines)
    return [Message(role="user", content=body), Message(role="assistant", content=RECAP_ACK)]


def trim_messages(
    messages: list[Any],
    context_limit: int,
    reserved_response_tokens: int = 0,
    pin_first_n: int = 1,
    summarize: bool = False,
) -> TrimResult:
    """Fit ``messages`` into ``context_limit - reserved_response_tokens``.

    The first ``pin_first_n`` messages are always kept verbatim. The rest is
    filled newest-first as a contiguous suffix. With ``summarize`` a recap
    exchange of evicted user topics is inserted right after the pinned
    prefix, evicting further old messages if needed to make room.
    """
    normalized = [coerce_message(m) for m in messages]
    budget = context_limit - reserved_response_tokens
    total = estimate_tokens(normalized)
    if total <= budget:
        return TrimResult(messages=normalized, final_tokens=total)

    pin_count = max(0, min(pin_first_n, len(normalized)))
    pinned = normalized[:pin_count]
    rest = normalized[pin_count:]
    pinned_tokens = estimate_tokens(pinned)
    remaining = budget - pinned_tokens

    if remaining < 0:
        log.warning(
            "Pinned messages exceed context budget",
            pinned_tokens=pinned_tokens,
            budget=budget,
        )
        return TrimResult(
            messages=list(pinned),
            trimmed=True,
            removed_count=len(rest),
            final_tokens=pinned_tokens,
        )

    kept_start = len(rest)
    used = 0
    for idx in range(len(rest) - 1, -1, -1):
        cost = estimate_message_tokens(rest[idx].content)
        if used + cost > remaining:
            break
        used += cost
        kept_start = idx

    recap: list[Message] = []
    if summarize and kept_start > 0:
        fill_start, fill_used = kept_start, used
        while True:
            recap = build_recap(rest[:kept_start])
            recap_tokens = estimate_tokens(recap)
            if used + recap_tokens <= remaining:
                break
            if kept_start >= len(rest):
                # No room for a recap even with nothing else kept.
                recap = []
                kept_start, used = fill_start, fill_used
                break
            used -= estimate_message_tokens(rest[kept_start].content)
            kept_start += 1

    result = pinned + recap + rest[kept_start:]
    final_tokens = estimate_tokens(result)
    log.debug(
        "Trimmed conversation",
        before=total,
        after=final_tokens,
        budget=budget,
        removed=kept_start,
        recap=bool(recap),
    )
    return TrimResult(
        messages=result,
        trimmed=True,
        removed_count=kept_start,
        final_tokens=final_tokens,
        recap=recap,
    )


class ContextBudget:
    """Budget manager bound to the ``context`` config section."""

    def __init__(self, settings: ContextConfig | None = None):
        self.settings = settings or ContextConfig()

    @property
    def budget(self) -> int:
        return self.settings.context_limit - self.settings.reserved_response_tokens

    def estimate(self, messages: list[Any]) -> int:
        return estimate_tokens(messages)

    def fit(self, messages: list[Any], pin_first_n: int | None = None) -> TrimResult:
        """Trim with configured limits."""
        return trim_messages(
            messages,
            context_limit=self.settings.context_limit,
            reserved_response_tokens=self.settings.reserved_response_tokens,
            pin_first_n=self.settings.pin_first_n if pin_first_n is None else pin_first_n,
            summarize=self.settings.summarize,
        )
