"""System prompt template for the agent loop.

The packaged template lives in ``shellpilot/prompts/``. ``agent.system_prompt_path``
may point at a replacement; it is rendered with the same placeholders.
"""

from __future__ import annotations

from pathlib import Path
from string import Formatter

from shellpilot.logging import get_logger

log = get_logger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
SYSTEM_PROMPT = "agent_system_prompt.md"
# Without these the model cannot see what it may call or what it stored.
REQUIRED_FIELDS = ("tools", "actions", "memory")


class _KeepUnknown(dict[str, str]):
    """Leave placeholders nobody filled in as literal text."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def template_fields(template: str) -> set[str]:
    """Placeholder names used by ``template`` (escaped braces excluded)."""
    return {name for _, name, _, _ in Formatter().parse(template) if name}


class InstructionLoader:
    """Load the system prompt template once and render it per step."""

    def __init__(self, override: Path | str | None = None):
        self.override = Path(override).expanduser() if override else None
        self._template: str | None = None

    @property
    def source(self) -> Path:
        if self.override is not None and self.override.is_file():
            return self.override
        return PROMPTS_DIR / SYSTEM_PROMPT

    def template(self) -> str:
        if self._template is not None:
            return self._template
        if self.override is not None and not self.override.is_file():
            log.warning("System prompt override not found; using packaged prompt", path=str(self.override))
        path = self.source
        if not path.is_file():
            raise FileNotFoundError(f"System prompt template not found: {path}")
        text = path.read_text(encoding="utf-8").strip()
        missing = [name for name in REQUIRED_FIELDS if name not in template_fields(text)]
        if missing:
            log.warning("System prompt lacks placeholders", path=str(path), missing=missing)
        self._template = text
        return text

    def render(self, **fields: object) -> str:
        """Fill ``{host}``, ``{tools}``, ``{actions}`` and ``{memory}``."""
        return self.template().format_map(_KeepUnknown({k: str(v) for k, v in fields.items()}))
