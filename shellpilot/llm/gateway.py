"""Retrying front door over any provider."""

import asyncio
import random
from typing import Awaitable, Callable

from shellpilot.config import RetryConfig
from shellpilot.exceptions import LLMError, MalformedResponseError, ProviderTimeoutError
from shellpilot.llm.base import Completion, DeltaCallback, LLMProvider, Message
from shellpilot.logging import get_logger

log = get_logger(__name__)


class ProviderGateway:
    """Normalize calls to a provider and retry transient failures.

    Only errors whose ``is_transient`` flag is set are retried. After the
    last attempt the final error object is re-raised unchanged. Each attempt
    is bounded by ``timeout`` as a whole, however slowly a stream trickles.
    """

    def __init__(
        self,
        provider: LLMProvider,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        timeout: float | None = None,
    ):
        self.provider = provider
        self.retry = retry or RetryConfig()
        self.timeout = timeout if timeout and timeout > 0 else None
        self._sleep = sleep
        self._rng = rng

    @property
    def model(self) -> str:
        return self.provider.model

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for the given 1-based attempt, plus jitter."""
        base = self.retry.base_delay * (2 ** max(0, attempt - 1))
        return min(self.retry.max_delay, base) + self.retry.jitter * self._rng()

    async def _attempt(self, transcript: list[Message], **kwargs) -> Completion:
        """One provider call with the overall deadline and payload checks applied."""
        name = self.provider.name
        try:
            async with asyncio.timeout(self.timeout):
                completion = await self.provider.complete(transcript, **kwargs)
        except TimeoutError as e:
            raise ProviderTimeoutError(f"{name} call exceeded {self.timeout}s") from e
        except (ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            # Payload shapes the backend parser did not anticipate.
            raise MalformedResponseError(f"{name} returned an unreadable response: {e}") from e
        if not isinstance(completion.content, str) or not completion.content.strip():
            raise MalformedResponseError("Provider returned an empty completion")
        return completion

    async def complete(
        self,
        transcript: list[Message],
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        stream: bool = False,
        on_delta: DeltaCallback | None = None,
    ) -> Completion:
        """Complete ``transcript``; streaming attempts retry only before the first delta."""
        attempts = max(1, int(self.retry.max_attempts))
        for attempt in range(1, attempts + 1):
            emitted = False

            def forward(text: str) -> None:
                nonlocal emitted
                emitted = True
                if on_delta:
                    on_delta(text)

            try:
                return await self._attempt(
                    transcript,
                    system_prompt=system_prompt,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    stream=stream,
                    on_delta=forward if stream else None,
                )
            except LLMError as e:
                if not e.is_transient or emitted or attempt >= attempts:
                    log.error(
                        "Provider call failed",
                        provider=self.provider.name,
                        attempt=attempt,
                        error=str(e),
                    )
                    raise
                delay = self.backoff_delay(attempt)
                log.warning(
                    "Transient provider failure; retrying",
                    provider=self.provider.name,
                    attempt=attempt,
                    delay=round(delay, 2),
                    error=str(e),
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")
