"""Custom exceptions for shellpilot."""


class ShellPilotError(Exception):
    """Base exception for shellpilot."""

    pass


class ConfigurationError(ShellPilotError):
    """Configuration-related errors."""

    pass


class LLMError(ShellPilotError):
    """LLM-related errors."""

    is_transient: bool = False


class NetworkError(LLMError):
    """Transport or HTTP status failure talking to a backend."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        # 5xx, 429 and transport failures (no status) are worth another try.
        self.is_transient = status_code is None or status_code >= 500 or status_code == 429


class ProviderTimeoutError(NetworkError):
    """Backend call exceeded its per-call timeout."""

    def __init__(self, message: str):
        super().__init__(message, status_code=None)


class MalformedResponseError(LLMError):
    """Backend answered successfully but the body was empty or unparsable."""

    is_transient = True


class AuthRequiredError(LLMError):
    """A credential needed by the backend is missing."""

    def __init__(self, provider: str, env_var: str = ""):
        hint = f" (set {env_var} or model.api_key)" if env_var else ""
        super().__init__(f"Provider '{provider}' requires an API key{hint}")
        self.provider = provider


class UnknownProviderError(LLMError):
    """Provider id not known to the factory."""

    def __init__(self, provider: str):
        super().__init__(f"Unknown provider: {provider}")
        self.provider = provider


class ActionError(ShellPilotError):
    """Action gateway errors."""

    pass


class ValidationError(ActionError):
    """Unknown or disallowed action."""

    def __init__(self, action_name: str, reason: str = "not in safety catalog"):
        super().__init__(f"Action '{action_name}' rejected: {reason}")
        self.action_name = action_name
        self.reason = reason


class ExecutionError(ActionError):
    """The action itself failed."""

    def __init__(self, action_name: str, message: str):
        super().__init__(f"Action '{action_name}' failed: {message}")
        self.action_name = action_name


class ActionCancelledError(ActionError):
    """User declined confirmation or aborted. Not a failure."""

    pass


class StorageError(ShellPilotError):
    """Persistence failure."""

    pass

