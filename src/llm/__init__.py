"""Shared LLM client utilities.

Provides the model backend used by the ebook content generator and the
helpers that turn raw replies into structured data.
"""

from src.llm.client import (
    parse_llm_json_response,
    strip_markdown_fence,
)
from src.llm.backends import (
    LLMCallResult,
    ModelBackend,
    AnthropicBackend,
)
from src.llm.factory import get_backend

__all__ = [
    "parse_llm_json_response",
    "strip_markdown_fence",
    "LLMCallResult",
    "ModelBackend",
    "AnthropicBackend",
    "get_backend",
]
