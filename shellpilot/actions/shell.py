"""Shell command action."""

import asyncio
import os
import re
import shlex
from typing import Any

from shellpilot.actions.registry import Action, ActionResult
from shellpilot.logging import get_logger

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SEPARATORS = {";", "&&", "||", "|", "&"}
_WRAPPERS = {"sudo", "command", "builtin", "nohup", "time", "env"}

MAX_OUTPUT_CHARS = 10_000


def split_command_segments(command: str) -> list[list[str]]:
    """Tokenize a command line into segments split on control operators.

    Raises:
        ValueError if the line cannot be tokenized (unbalanced quotes)
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in lexer:
        if token in _SEPARATORS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def segment_program(tokens: list[str]) -> str:
    """First token that names the program, skipping wrappers and VAR=value."""
    for token in tokens:
        token = token.strip()
        if not token or token in _WRAPPERS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token
    return ""


def blocked_reason(command: str, blocked_patterns: list[str]) -> str | None:
    """Return why ``command`` is refused, or None when it may run.

    Patterns containing whitespace are searched in each whole segment;
    single-word patterns are matched against each segment's program.
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return "Command is empty"
    try:
        segments = split_command_segments(cleaned)
    except ValueError:
        return "Command is not parseable"
    programs = [p for p in (segment_program(s) for s in segments) if p]
    if not programs:
        return "Command is not parseable"

    segment_texts = [" ".join(tokens) for tokens in segments]
    for raw in blocked_patterns or []:
        pattern = str(raw or "").strip()
        if not pattern:
            continue
        try:
            compiled = re.compile(pattern)
        except re.error:
            compiled = re.compile(re.escape(pattern))
        if re.search(r"\s", pattern):
            if any(compiled.search(text) for text in segment_texts):
                return f"Command matches blocked pattern: {pattern}"
        elif any(compiled.match(program.rsplit("/", 1)[-1]) for program in programs):
            return f"Command matches blocked pattern: {pattern}"
    return None


class RunCommandAction(Action):
    """Execute a shell command."""

    name = "run_command"
    description = "Execute a shell command and return its output."
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The shell command to execute"},
            "timeout": {"type": "number", "description": "Timeout in seconds (optional)"},
        },
        "required": ["command"],
    }

    def __init__(
        self,
        timeout: int = 30,
        blocked_patterns: list[str] | None = None,
        cwd: str | None = None,
    ):
        self.default_timeout = max(1, int(timeout))
        # Registry timeout must outlast the subprocess timeout.
        self.timeout_seconds = float(self.default_timeout + 5)
        self.blocked_patterns = list(blocked_patterns or [])
        self.cwd = cwd

    async def execute(self, command: str, timeout: int | None = None, **kwargs: Any) -> ActionResult:
        """Run ``command`` through the system shell.

        Args:
            command: Shell command to execute
            timeout: Optional timeout override, capped at the configured default

        Returns:
            ActionResult with combined output; non-zero exit is a failure
        """
        reason = blocked_reason(command, self.blocked_patterns)
        if reason:
            log.warning("Blocked unsafe command", command=command, reason=reason)
            return ActionResult(success=False, error=f"Command blocked: {reason}")

        timeout = self.default_timeout if timeout is None else min(self.default_timeout, max(1, int(timeout)))
        abort_event = kwargs.get("_abort_event")
        if isinstance(abort_event, asyncio.Event) and abort_event.is_set():
            return ActionResult(success=False, error="Command aborted")

        log.info("Executing shell command", command=command, timeout=timeout)
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=os.environ.copy(),
            cwd=self.cwd,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ActionResult(success=False, error=f"Command timed out after {timeout}s")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        output = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if stderr_text:
            output += f"\n[stderr] {stderr_text}"
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(output)} total chars]"

        if process.returncode != 0:
            return ActionResult(
                success=False,
                output=output,
                error=f"Exit code {process.returncode}: {output or '[no output]'}",
            )
        return ActionResult(success=True, output=output or "[no output]")
