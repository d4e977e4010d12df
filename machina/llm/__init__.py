"""LLM provider abstraction."""

from machina.llm.litellm import LiteLLMProvider
from machina.llm.provider import LLMProvider, LLMResponse, Tool, ToolUse

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "Tool",
    "ToolUse",
]
