import shutil

import pytest

from shellpilot.exceptions import ConfigurationError, LLMError
from shellpilot.llm import CommandProvider, Message

pytestmark = pytest.mark.skipif(shutil.which("cat") is None, reason="needs a POSIX shell environment")


def test_render_prompt_flattens_roles():
    prompt = CommandProvider.render_prompt(
        [Message("user", "list files"), Message("assistant", "THOUGHT: ok")],
        system_prompt="You are an agent.",
    )
    assert prompt == "You are an agent.\n\nUser: list files\n\nAssistant: THOUGHT: ok\n\nAssistant:"


@pytest.mark.asyncio
async def test_command_provider_returns_stdout_with_zero_usage():
    provider = CommandProvider(command="cat", args=[], timeout=10)
    completion = await provider.complete([Message("user", "echo me")])
    assert "User: echo me" in completion.content
    assert completion.usage == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    assert completion.model == "cat"


@pytest.mark.asyncio
async def test_command_provider_nonzero_exit_raises():
    provider = CommandProvider(command="false", args=[], timeout=10)
    with pytest.raises(LLMError):
        await provider.complete([Message("user", "x")])


@pytest.mark.asyncio
async def test_command_provider_missing_executable_is_configuration_error():
    provider = CommandProvider(command="shellpilot-no-such-binary-xyz", timeout=10)
    with pytest.raises(ConfigurationError):
        await provider.complete([Message("user", "x")])
