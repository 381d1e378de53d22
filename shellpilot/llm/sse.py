"""Line-based server-sent events framing for the Messages streaming protocol."""

import json
from dataclasses import dataclass, field
from typing import Any

from shellpilot.llm.base import empty_usage, token_count
from shellpilot.logging import get_logger

log = get_logger(__name__)


@dataclass
class SSEEvent:
    """One dispatched ``event:``/``data:`` frame."""

    event: str
    data: str


class SSEParser:
    """Accumulate ``event:``/``data:`` lines and emit a frame on each blank line."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []

    def feed_line(self, line: str) -> SSEEvent | None:
        """Feed one line (without newline); return a frame when one completes."""
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            # A new event header while data is pending closes the previous frame.
            pending = self._dispatch() if self._data else None
            self._event = value.strip()
            return pending
        if name == "data":
            self._data.append(value)
        return None

    def flush(self) -> SSEEvent | None:
        """Emit whatever is buffered at end of stream."""
        return self._dispatch()

    def _dispatch(self) -> SSEEvent | None:
        if not self._data:
            self._event = ""
            return None
        frame = SSEEvent(event=self._event, data="\n".join(self._data))
        self._event = ""
        self._data = []
        return frame


@dataclass
class MessageStreamState:
    """Running totals for a Messages API stream."""

    model: str = ""
    parts: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    started: bool = False
    stopped: bool = False
    error: str = ""

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def usage(self) -> dict[str, int]:
        usage = empty_usage()
        usage["prompt_tokens"] = self.input_tokens
        usage["completion_tokens"] = self.output_tokens
        usage["total_tokens"] = self.input_tokens + self.output_tokens
        return usage

    def apply(self, frame: SSEEvent) -> str | None:
        """Apply one frame; return a text fragment when the frame carried one.

        Malformed JSON, unknown types and frames arriving after
        ``message_stop`` are skipped.
        """
        if self.stopped:
            log.debug("Skipping frame after message_stop", sse_event=frame.event)
            return None
        try:
            payload: Any = json.loads(frame.data)
        except json.JSONDecodeError:
            log.debug("Skipping malformed SSE frame", sse_event=frame.event)
            return None
        if not isinstance(payload, dict):
            return None
        kind = str(payload.get("type") or frame.event or "")

        if kind == "message_start":
            if self.started:
                log.debug("Skipping duplicate message_start")
                return None
            self.started = True
            message = payload.get("message") or {}
            if isinstance(message, dict):
                model = message.get("model")
                if isinstance(model, str) and model:
                    self.model = model
                usage = message.get("usage") or {}
                if isinstance(usage, dict):
                    self.input_tokens = token_count(usage.get("input_tokens"))
            return None

        if kind == "content_block_delta":
            delta = payload.get("delta") or {}
            if isinstance(delta, dict) and delta.get("type") == "text_delta":
                text = delta.get("text")
                if isinstance(text, str) and text:
                    self.parts.append(text)
                    return text
            return None

        if kind == "message_delta":
            delta = payload.get("delta") or {}
            if isinstance(delta, dict) and delta.get("stop_reason"):
                self.stop_reason = str(delta["stop_reason"])
            usage = payload.get("usage") or {}
            if isinstance(usage, dict) and "output_tokens" in usage:
                self.output_tokens = token_count(usage.get("output_tokens"))
            return None

        if kind == "message_stop":
            self.stopped = True
            return None

        if kind == "error":
            error = payload.get("error") or {}
            self.error = str(error.get("message") if isinstance(error, dict) else error)
            return None

        # ping, content_block_start/stop and future event types
        return None
