"""OpenAI-compatible chat completions over HTTP."""

import json
from typing import Any

import httpx

from shellpilot.exceptions import MalformedResponseError, NetworkError, ProviderTimeoutError
from shellpilot.llm.base import (
    Completion,
    DeltaCallback,
    LLMProvider,
    Message,
    coerce_message,
    empty_usage,
    token_count,
)
from shellpilot.logging import get_logger

log = get_logger(__name__)


OPENAI_BASE_URL = "https://api.openai.com/v1"


class OpenAIProvider(LLMProvider):
    """Chat completions for OpenAI and API-compatible servers (Ollama, LM Studio, OpenRouter)."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: str = OPENAI_BASE_URL,
        api_key: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        timeout: float = 120.0,
        provider: str = "openai",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the provider.

        Args:
            model: Model name sent in every request
            base_url: API root, without the ``/chat/completions`` suffix
            api_key: Bearer token; optional for local servers
            temperature: Default sampling temperature
            max_tokens: Default completion cap
            timeout: Per-call timeout in seconds
            provider: Provider alias this instance was created for
            transport: Optional httpx transport (tests)
        """
        self.name = provider
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_body(
        self,
        messages: list[Message],
        system_prompt: str | None,
        model: str | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        wire: list[dict[str, str]] = []
        if system_prompt:
            wire.append({"role": "system", "content": system_prompt})
        for raw in messages:
            msg = coerce_message(raw)
            wire.append({"role": msg.role, "content": msg.content})
        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": wire,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    @staticmethod
    def _parse_usage(raw: Any) -> dict[str, int]:
        usage = empty_usage()
        if not isinstance(raw, dict):
            return usage
        usage["prompt_tokens"] = token_count(raw.get("prompt_tokens"))
        usage["completion_tokens"] = token_count(raw.get("completion_tokens"))
        usage["total_tokens"] = token_count(raw.get("total_tokens")) or (
            usage["prompt_tokens"] + usage["completion_tokens"]
        )
        return usage

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
        """Generate a completion, streamed when ``stream`` is set."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, system_prompt, model, temperature, max_tokens, stream)
        log.debug("Calling chat completions", provider=self.name, model=body["model"], stream=stream)
        try:
            if stream:
                return await self._complete_streaming(url, body, on_delta)
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{self.name} request timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{self.name} transport error: {e}") from e

        if not response.is_success:
            raise NetworkError(
                f"{self.name} API error {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
            choice = data["choices"][0]
            content = choice["message"].get("content") or ""
            if not isinstance(content, str):
                raise TypeError(f"content is {type(content).__name__}, not text")
            model_name = data.get("model")
        except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise MalformedResponseError(f"{self.name} response missing choices: {e}") from e

        return Completion(
            content=content,
            model=model_name if isinstance(model_name, str) and model_name else body["model"],
            usage=self._parse_usage(data.get("usage")),
            stop_reason=str(choice.get("finish_reason") or ""),
        )

    async def _complete_streaming(
        self,
        url: str,
        body: dict[str, Any],
        on_delta: DeltaCallback | None,
    ) -> Completion:
        """Consume ``data: {...}`` chunks until ``data: [DONE]``."""
        parts: list[str] = []
        model_name = str(body["model"])
        stop_reason = ""
        usage = empty_usage()

        async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
            if not response.is_success:
                error_text = (await response.aread()).decode("utf-8", errors="replace")
                raise NetworkError(
                    f"{self.name} API error {response.status_code}: {error_text[:500]}",
                    status_code=response.status_code,
                )
            async for line in response.aiter_lines():
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                if payload == "[DONE]":
                    break
                try:
                    chunk = json.loads(payload)
                except json.JSONDecodeError:
                    log.debug("Skipping malformed stream chunk", provider=self.name)
                    continue
                if not isinstance(chunk, dict):
                    continue
                if isinstance(chunk.get("model"), str) and chunk["model"]:
                    model_name = chunk["model"]
                if chunk.get("usage"):
                    usage = self._parse_usage(chunk["usage"])
                choices = chunk.get("choices") or []
                if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                    continue
                delta = choices[0].get("delta") or {}
                text = delta.get("content") if isinstance(delta, dict) else None
                if isinstance(text, str) and text:
                    parts.append(text)
                    if on_delta:
                        on_delta(text)
                if choices[0].get("finish_reason"):
                    stop_reason = str(choices[0]["finish_reason"])

        return Completion(
            content="".join(parts),
            model=model_name,
            usage=usage,
            stop_reason=stop_reason,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
