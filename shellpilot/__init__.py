"""shellpilot - an autonomous LLM agent for the shell."""

__version__ = "0.1.0"

from shellpilot.config import Config

__all__ = ["Config", "__version__"]
