"""Model backend factory.

Resolves model IDs to the appropriate backend implementation.
"""

import logging
from typing import Optional

from src.llm.backends import AnthropicBackend

logger = logging.getLogger(__name__)


def get_backend(model_id: str, api_key: Optional[str] = None) -> AnthropicBackend:
    """Get the appropriate backend for a model ID.

    Args:
        model_id: Full model identifier (e.g. 'claude-sonnet-4-6')
        api_key: Optional API key (default: ANTHROPIC_API_KEY)

    Raises:
        ValueError: If model_id is not recognized
    """
    if model_id.startswith("claude-"):
        return AnthropicBackend(model_id=model_id, api_key=api_key)
    raise ValueError(
        f"Unknown model: '{model_id}'. Expected a model ID starting with 'claude-'."
    )
