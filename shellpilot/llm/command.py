"""Process-backed provider: prompt on stdin, answer on stdout."""

import asyncio
import shutil

from shellpilot.exceptions import ConfigurationError, LLMError, ProviderTimeoutError
from shellpilot.llm.base import (
    Completion,
    DeltaCallback,
    LLMProvider,
    Message,
    coerce_message,
    empty_usage,
)
from shellpilot.logging import get_logger

log = get_logger(__name__)


class CommandProvider(LLMProvider):
    """Delegate completions to an external executable.

    No streaming and no token accounting: usage is always reported as zero.
    """

    def __init__(
        self,
        command: str = "claude",
        args: list[str] | None = None,
        model: str = "",
        timeout: float = 120.0,
    ):
        self.name = "command"
        self.command = command
        self.args = list(args or [])
        self.model = model or command
        self.timeout = timeout

    @staticmethod
    def render_prompt(messages: list[Message], system_prompt: str | None = None) -> str:
        """Flatten the transcript into a single plain-text prompt."""
        blocks: list[str] = []
        if system_prompt:
            blocks.append(system_prompt.strip())
        for raw in messages:
            msg = coerce_message(raw)
            label = {"user": "User", "assistant": "Assistant", "system": "System"}.get(msg.role, msg.role)
            blocks.append(f"{label}: {msg.content.strip()}")
        blocks.append("Assistant:")
        return "\n\n".join(blocks)

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
        """Run the executable once and return its combined output."""
        executable = shutil.which(self.command) or self.command
        prompt = self.render_prompt(messages, system_prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(f"Provider executable not found: {self.command}") from e

        log.debug("Running provider process", command=self.command, prompt_chars=len(prompt))
        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ProviderTimeoutError(f"Provider process timed out after {self.timeout}s") from e

        output = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise LLMError(f"Provider process exited with {process.returncode}: {output[:500]}")

        return Completion(
            content=output,
            model=model or self.model,
            usage=empty_usage(),
            stop_reason="end_turn",
        )
