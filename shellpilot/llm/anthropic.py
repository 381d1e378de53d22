"""Messages API provider with manual SSE stream parsing."""

from typing import Any

import httpx

from shellpilot.exceptions import NetworkError, ProviderTimeoutError
from shellpilot.llm.base import Completion, DeltaCallback, LLMProvider, Message, coerce_message
from shellpilot.llm.sse import MessageStreamState, SSEParser
from shellpilot.logging import get_logger

log = get_logger(__name__)


ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(LLMProvider):
    """Messages API provider; always streams, accumulating text deltas."""

    def __init__(
        self,
        model: str = "claude-3-5-sonnet-latest",
        api_key: str = "",
        base_url: str = ANTHROPIC_BASE_URL,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        timeout: float = 120.0,
        api_version: str = ANTHROPIC_VERSION,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = "anthropic"
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_version = api_version
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def _build_body(
        self,
        messages: list[Message],
        system_prompt: str | None,
        model: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        """Build the request; system turns move into the top-level ``system`` field."""
        system_parts = [system_prompt] if system_prompt else []
        wire: list[dict[str, str]] = []
        for raw in messages:
            msg = coerce_message(raw)
            if msg.role == "system":
                if msg.content:
                    system_parts.append(msg.content)
                continue
            role = "assistant" if msg.role == "assistant" else "user"
            # The API rejects consecutive turns with the same role.
            if wire and wire[-1]["role"] == role:
                wire[-1]["content"] = f"{wire[-1]['content']}\n\n{msg.content}"
            else:
                wire.append({"role": role, "content": msg.content})

        body: dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": wire,
            "stream": True,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        effective_temperature = self.temperature if temperature is None else temperature
        if effective_temperature is not None:
            body["temperature"] = effective_temperature
        return body

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
        """Stream a completion; ``stream=False`` just withholds deltas from the caller."""
        url = f"{self.base_url}/v1/messages"
        body = self._build_body(messages, system_prompt, model, temperature, max_tokens)
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
        }
        forward = on_delta if stream else None
        state = MessageStreamState(model=str(body["model"]))
        parser = SSEParser()

        log.debug("Calling messages API", model=body["model"], msg_count=len(body["messages"]))
        try:
            async with self.client.stream("POST", url, json=body, headers=headers) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise NetworkError(
                        f"Messages API error {response.status_code}: {error_text[:500]}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    frame = parser.feed_line(line)
                    if frame is not None:
                        self._apply(state, frame, forward)
                tail = parser.flush()
                if tail is not None:
                    self._apply(state, tail, forward)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Messages API timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Messages API transport error: {e}") from e

        if state.error and not state.parts:
            raise NetworkError(f"Messages API stream error: {state.error}")

        return Completion(
            content=state.text,
            model=state.model,
            usage=state.usage(),
            stop_reason=state.stop_reason,
        )

    @staticmethod
    def _apply(state: MessageStreamState, frame: Any, forward: DeltaCallback | None) -> None:
        text = state.apply(frame)
        if text and forward:
            forward(text)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
