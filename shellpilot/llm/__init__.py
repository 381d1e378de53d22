"""Chat-completion backends and the provider factory."""

import os
from urllib.parse import urlparse

import httpx

from shellpilot.config import ModelConfig
from shellpilot.exceptions import AuthRequiredError, ConfigurationError, UnknownProviderError
from shellpilot.llm.anthropic import ANTHROPIC_BASE_URL, AnthropicProvider
from shellpilot.llm.base import Completion, LLMProvider, Message, empty_usage
from shellpilot.llm.command import CommandProvider
from shellpilot.llm.gateway import ProviderGateway
from shellpilot.llm.openai import OPENAI_BASE_URL, OpenAIProvider
from shellpilot.llm.sse import MessageStreamState, SSEEvent, SSEParser

# alias -> (default base url, api key env var)
_OPENAI_COMPATIBLE: dict[str, tuple[str, str]] = {
    "openai": (OPENAI_BASE_URL, "OPENAI_API_KEY"),
    "chatgpt": (OPENAI_BASE_URL, "OPENAI_API_KEY"),
    "ollama": ("http://127.0.0.1:11434/v1", ""),
    "lmstudio": ("http://127.0.0.1:1234/v1", ""),
    "openrouter": ("https://openrouter.ai/api/v1", "OPENROUTER_API_KEY"),
    "openai-compatible": ("", "OPENAI_API_KEY"),
}
_ANTHROPIC_ALIASES = {"anthropic", "claude"}
_COMMAND_ALIASES = {"command", "claude-cli", "process"}
# spellings that collapse onto a canonical alias
_RENAMED = {"lm-studio": "lmstudio", "open-router": "openrouter", "openai-compat": "openai-compatible"}


def _normalize_provider_name(provider: str) -> str:
    name = str(provider or "").strip().lower().replace("_", "-")
    return _RENAMED.get(name, name)


def _is_local_url(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return host in {"localhost", "127.0.0.1", "::1", "0.0.0.0"}


def create_provider(
    provider: str = "openai",
    model: str = "",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 2048,
    timeout: float = 120.0,
    command: str = "claude",
    args: list[str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider alias (openai, ollama, openrouter, anthropic, command, ...)
        model: Model name; empty picks the backend default (the command name for process backends)
        api_key: Optional API key; falls back to the alias' environment variable
        base_url: Optional base URL override
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: Per-call timeout in seconds
        command: Executable for the process-backed provider
        args: Arguments for the process-backed provider
        transport: Optional httpx transport (tests)

    Returns:
        Configured LLMProvider instance

    Raises:
        UnknownProviderError: alias not recognized
        AuthRequiredError: a remote backend without a credential
    """
    name = _normalize_provider_name(provider)

    if name in _OPENAI_COMPATIBLE:
        default_base, env_var = _OPENAI_COMPATIBLE[name]
        effective_base = (base_url or default_base).strip()
        if not effective_base:
            raise ConfigurationError(f"Provider '{provider}' requires model.base_url")
        key = api_key or (os.getenv(env_var, "") if env_var else "")
        if not key and not _is_local_url(effective_base):
            raise AuthRequiredError(name, env_var)
        return OpenAIProvider(
            model=model or "gpt-4o-mini",
            base_url=effective_base,
            api_key=key or None,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            provider=name,
            transport=transport,
        )

    if name in _ANTHROPIC_ALIASES:
        key = api_key or os.getenv("ANTHROPIC_API_KEY", "")
        if not key:
            raise AuthRequiredError("anthropic", "ANTHROPIC_API_KEY")
        return AnthropicProvider(
            model=model or "claude-3-5-sonnet-latest",
            api_key=key,
            base_url=base_url or ANTHROPIC_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            transport=transport,
        )

    if name in _COMMAND_ALIASES:
        return CommandProvider(command=command, args=args, model=model, timeout=timeout)

    raise UnknownProviderError(provider)


def create_provider_from_config(settings: ModelConfig) -> LLMProvider:
    """Build a provider from the ``model`` config section."""
    return create_provider(
        provider=settings.provider,
        model=settings.model,
        api_key=settings.api_key or None,
        base_url=settings.base_url or None,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        timeout=settings.timeout,
        command=settings.command,
        args=settings.args,
    )


__all__ = [
    "AnthropicProvider",
    "CommandProvider",
    "Completion",
    "LLMProvider",
    "Message",
    "MessageStreamState",
    "OpenAIProvider",
    "ProviderGateway",
    "SSEEvent",
    "SSEParser",
    "create_provider",
    "create_provider_from_config",
    "empty_usage",
]
