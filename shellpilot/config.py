"""Configuration management for shellpilot."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_HOME = Path("~/.shellpilot").expanduser()
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.yaml"
DEFAULT_DB_PATH = DEFAULT_HOME / "sessions.db"
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Chat backend configuration."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 2048
    api_key: str = ""
    base_url: str = ""
    # Process-backed provider: executable plus fixed arguments.
    command: str = "claude"
    args: list[str] = Field(default_factory=lambda: ["-p"])
    timeout: float = 120.0
    stream: bool = True


class RetryConfig(BaseModel):
    """Retry/backoff for transient provider failures."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5


class ContextConfig(BaseModel):
    """Context window budget configuration."""

    context_limit: int = 32000
    reserved_response_tokens: int = 2048
    pin_first_n: int = 1
    summarize: bool = True


class ExecutionConfig(BaseModel):
    """Safety gateway configuration."""

    rate_limit_window_seconds: float = 60.0
    rate_limit_max: int = 10
    rate_limit_state_path: str = str(DEFAULT_HOME / "rate_limit.json")
    dry_run: bool = False
    audit_log_path: str = str(DEFAULT_HOME / "audit.json")
    audit_log_cap: int = 1000
    undo_history_path: str = str(DEFAULT_HOME / "undo.json")
    undo_capacity: int = 50
    backup_dir: str = str(DEFAULT_HOME / "backups")
    output_preview_chars: int = 2000
    command_timeout: int = 30
    blocked_commands: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class AgentConfig(BaseModel):
    """Autonomous loop limits."""

    max_steps: int = 15
    max_total_tokens: int = 200_000
    observation_max_chars: int = 1200
    free_nudges: int = 1
    system_prompt_path: str = ""


class SessionConfig(BaseModel):
    """Session store configuration."""

    path: str = str(DEFAULT_DB_PATH)
    legacy_dir: str = str(DEFAULT_HOME / "sessions")
    auto_save: bool = True


class HeartbeatConfig(BaseModel):
    """Scheduled, non-interactive agent runs."""

    tasks_path: str = str(DEFAULT_HOME / "tasks.json")
    max_steps: int = 5
    auto_confirm: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: Literal["console", "json"] = "console"
    file: str = ""


class Config(BaseSettings):
    """Main configuration for shellpilot."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SHELLPILOT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration. Environment variables fill keys the file leaves unset."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

