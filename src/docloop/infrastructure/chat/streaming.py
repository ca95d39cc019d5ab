"""Streaming OpenAI-compatible chat clients.

Both clients send ``POST {base_url}/chat/completions`` with ``"stream": true``
and read the server-sent events line by line.  Every text or reasoning delta
is handed to ``on_fragment`` before the next one is read, so a stream guard
sees the output while it is being produced.  Tool-call deltas are merged and
returned with the aggregate ``LLMResponse`` once the stream ends.

``StreamingChatClient`` is the bare client for cloud providers, vLLM and
LM Studio.  ``OllamaStreamingChatClient`` adds the Ollama workarounds:

- HTTP 400 is retried once with a minimal payload (older Ollama versions
  reject unknown top-level parameters).
- The "does not support tools" error is turned into a readable
  ``RuntimeError`` naming the model.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Dict, List, Optional

import httpx

from docloop.application.ports import FragmentCallback
from docloop.config.constants import LLM_CHAT_DEFAULT_TIMEOUT_S
from docloop.domain import AbortSignal, LLMResponse, RequestAborted, StreamFragment
from docloop.infrastructure.chat._parser import (
    ToolCallAccumulator,
    delta_fragment,
    is_done,
    parse_chat_response,
    parse_sse_line,
)

logger = logging.getLogger(__name__)


class _RetryWith(Exception):
    """Raised by a 400 handler to re-send the request with another payload."""

    def __init__(self, payload: Dict[str, Any]):
        super().__init__("retry")
        self.payload = payload


class StreamingChatClient:
    """Bare OpenAI-compatible streaming client.

    Raises ``httpx.HTTPStatusError`` for any non-2xx response without
    retrying, and ``RequestAborted`` when ``abort`` fires mid-stream.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: float = LLM_CHAT_DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_s
        self._transport = transport

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        on_fragment: Optional[FragmentCallback] = None,
        abort: Optional[AbortSignal] = None,
        temperature: float = 0.1,
        top_p: float = 0.9,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        url = f"{self._base_url}/chat/completions"
        headers: Dict[str, str] = {"Accept": "text/event-stream"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "temperature": temperature,
            "top_p": top_p,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools

        logger.debug(
            "POST %s model=%s messages=%d tools=%d (stream)",
            url, model, len(messages), len(tools or []),
        )
        timeout = httpx.Timeout(self._timeout)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                return await self._stream(client, url, headers, payload, on_fragment, abort)
            except _RetryWith as retry:
                logger.info("Retrying %s with a minimal payload after HTTP 400", url)
                return await self._stream(client, url, headers, retry.payload, on_fragment, abort, retried=True)

    async def _stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        on_fragment: Optional[FragmentCallback],
        abort: Optional[AbortSignal],
        retried: bool = False,
    ) -> LLMResponse:
        async with client.stream("POST", url, headers=headers, json=payload) as r:
            if r.status_code == 400:
                await r.aread()
                self._handle_bad_request(r, payload, retried)
            r.raise_for_status()

            if "text/event-stream" not in r.headers.get("content-type", "text/event-stream"):
                # Server ignored "stream": one JSON body.
                await r.aread()
                response = parse_chat_response(r.json())
                await _deliver(on_fragment, response.content or "", response.reasoning or "")
                return response

            text_parts: List[str] = []
            reasoning_parts: List[str] = []
            accumulator = ToolCallAccumulator()
            async for line in r.aiter_lines():
                if abort is not None and abort.aborted:
                    raise RequestAborted(abort.reason or "aborted")
                if is_done(line):
                    break
                chunk = parse_sse_line(line)
                if chunk is None:
                    continue
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                if delta.get("tool_calls"):
                    accumulator.add(delta["tool_calls"])
                fragment = delta_fragment(delta)
                if fragment.text or fragment.reasoning:
                    text_parts.append(fragment.text)
                    reasoning_parts.append(fragment.reasoning)
                    await _deliver(on_fragment, fragment.text, fragment.reasoning)
                    if abort is not None and abort.aborted:
                        raise RequestAborted(abort.reason or "aborted")

        content = "".join(text_parts)
        reasoning = "".join(reasoning_parts)
        logger.debug("Stream finished: %d chars, %d tool calls", len(content), len(accumulator))
        return LLMResponse(
            content=content or None,
            tool_calls=accumulator.build(),
            reasoning=reasoning or None,
        )

    def _handle_bad_request(self, response: httpx.Response, payload: Dict[str, Any], retried: bool) -> None:
        """Called with a fully read 400 response; raise ``_RetryWith`` to resend."""
        return None


class OllamaStreamingChatClient(StreamingChatClient):
    """Streaming client with Ollama's 400 retry and tool-support detection."""

    def _handle_bad_request(self, response: httpx.Response, payload: Dict[str, Any], retried: bool) -> None:
        err_msg = _extract_error_message(response)
        if "does not support tools" in err_msg.lower():
            raise RuntimeError(
                f"Model {payload.get('model')!r} does not support tool calling. "
                "Use a tool-capable model such as qwen2.5:14b, llama3.1:8b "
                "or mistral-small3.2:24b."
            )
        if retried:
            return
        minimal: Dict[str, Any] = {
            "model": payload["model"],
            "messages": payload["messages"],
            "stream": True,
        }
        if payload.get("tools"):
            minimal["tools"] = payload["tools"]
        raise _RetryWith(minimal)


async def _deliver(on_fragment: Optional[FragmentCallback], text: str, reasoning: str) -> None:
    if on_fragment is None or not (text or reasoning):
        return
    result = on_fragment(StreamFragment(text=text, reasoning=reasoning))
    if inspect.isawaitable(result):
        await result


def _extract_error_message(response: httpx.Response) -> str:
    """Extract a human-readable error string from a (likely 4xx) HTTP response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or ""
    if isinstance(body, dict):
        err = body.get("error") or {}
        if isinstance(err, dict):
            return err.get("message") or ""
        if isinstance(err, str):
            return err
    return response.text or ""
