"""Chat client factory: build the right streaming ChatClient for a ModelConfig."""

from __future__ import annotations

from docloop.application.ports import ChatClient
from docloop.config.schema import ModelConfig
from docloop.infrastructure.chat.streaming import OllamaStreamingChatClient, StreamingChatClient


def build_chat_client(model_config: ModelConfig) -> ChatClient:
    """Return the ``ChatClient`` implementation for *model_config*.

    ``"ollama"`` (default)
        :class:`OllamaStreamingChatClient`, with the 400 retry and the
        "does not support tools" detection.

    ``"generic"``
        :class:`StreamingChatClient`, the bare OpenAI-compatible client for
        cloud providers, vLLM and LM Studio.

    Raises:
        ValueError: For unknown backend values.
    """
    backend = model_config.backend
    if backend == "ollama":
        return OllamaStreamingChatClient(
            base_url=model_config.base_url,
            api_key=model_config.api_key,
            timeout_s=model_config.timeout_s,
        )
    if backend == "generic":
        return StreamingChatClient(
            base_url=model_config.base_url,
            api_key=model_config.api_key,
            timeout_s=model_config.timeout_s,
        )
    raise ValueError(
        f"Unknown LLM backend {backend!r}. "
        "Supported backends: 'ollama' (default), 'generic' (OpenAI-compatible cloud/vLLM)."
    )


__all__ = ["build_chat_client", "OllamaStreamingChatClient", "StreamingChatClient"]
