"""LLM backend abstraction.

Provides a unified interface for calling an LLM provider with a consistent
response format. Each backend handles provider-specific concerns:
- Client creation and timeout configuration
- Response parsing and token counting

Retries are not handled here; a failed call propagates and the job queue
decides whether the whole stage is attempted again.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class LLMCallResult:
    """Normalized response from any LLM backend."""

    content: str
    model_id: str
    input_tokens: int
    output_tokens: int
    duration_ms: int
    stop_reason: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"


@runtime_checkable
class ModelBackend(Protocol):
    """Protocol for LLM backend implementations."""

    @property
    def model_id(self) -> str: ...

    @property
    def max_output_tokens(self) -> int: ...

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: Optional[float] = None,
        label: str = "",
    ) -> LLMCallResult: ...


class AnthropicBackend:
    """Anthropic Claude backend (synchronous messages API)."""

    def __init__(
        self,
        model_id: str = "claude-sonnet-4-6",
        api_key: Optional[str] = None,
        read_timeout_seconds: float = 600.0,
    ):
        self._model_id = model_id
        self._api_key = api_key
        self._read_timeout_seconds = read_timeout_seconds
        self._client = None

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def max_output_tokens(self) -> int:
        if "haiku" in self._model_id:
            return 32_000
        return 64_000

    def _get_client(self):
        if self._client is None:
            import httpx
            from anthropic import Anthropic

            api_key = self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            if not api_key:
                raise RuntimeError(
                    "LLM service unavailable. Set ANTHROPIC_API_KEY environment variable."
                )
            self._client = Anthropic(
                api_key=api_key,
                timeout=httpx.Timeout(
                    connect=60.0,
                    read=self._read_timeout_seconds,
                    write=120.0,
                    pool=60.0,
                ),
            )
        return self._client

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: Optional[float] = None,
        label: str = "",
    ) -> LLMCallResult:
        """Execute a synchronous (non-streaming) Anthropic call."""
        client = self._get_client()
        start_time = time.time()

        max_tokens = min(max_tokens, self.max_output_tokens)
        kwargs: dict[str, Any] = {
            "model": self._model_id,
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_message}],
        }
        if temperature is not None:
            kwargs["temperature"] = temperature

        estimated_input_tokens = (len(system_prompt) + len(user_message)) // 4
        logger.info(
            f"[{label}] Anthropic sync: ~{estimated_input_tokens:,} input tokens, "
            f"max_tokens={max_tokens}"
        )

        response = client.messages.create(**kwargs)
        duration_ms = int((time.time() - start_time) * 1000)

        raw_text = ""
        for block in response.content:
            if hasattr(block, "text"):
                raw_text += block.text

        if not raw_text.strip():
            raise RuntimeError(f"[{label}] Empty response from {self._model_id}")

        logger.info(
            f"[{label}] Sync completed: {response.usage.input_tokens}+"
            f"{response.usage.output_tokens} tokens, {duration_ms}ms, "
            f"{len(raw_text):,} chars"
        )

        return LLMCallResult(
            content=raw_text.strip(),
            model_id=self._model_id,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=duration_ms,
            stop_reason=getattr(response, "stop_reason", None),
        )
