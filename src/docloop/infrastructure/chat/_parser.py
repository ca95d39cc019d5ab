"""Parsing helpers for OpenAI chat-completions streams.

The streaming clients share the SSE framing and the tool-call delta merge;
this module keeps that logic in one place so the clients stay in sync.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from docloop.domain import LLMResponse, StreamFragment, ToolCallRequest

_DONE = "[DONE]"


def parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    """Return the JSON payload of one ``data:`` line, or ``None``.

    Blank lines, comments, other SSE fields and the ``[DONE]`` sentinel all
    yield ``None``; use :func:`is_done` to tell the sentinel apart.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data or data == _DONE:
        return None
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        return None
    return chunk if isinstance(chunk, dict) else None


def is_done(line: str) -> bool:
    line = line.strip()
    return line.startswith("data:") and line[len("data:"):].strip() == _DONE


def delta_fragment(delta: Dict[str, Any]) -> StreamFragment:
    """Text and reasoning carried by one ``choices[0].delta``."""
    text = delta.get("content") or ""
    # Backends disagree on the reasoning field name.
    reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
    return StreamFragment(text=text, reasoning=reasoning)


def _parse_arguments(raw_args: str) -> Dict[str, Any]:
    try:
        arguments = json.loads(raw_args or "{}")
    except json.JSONDecodeError:
        return {"_raw": raw_args}
    return arguments if isinstance(arguments, dict) else {"_raw": raw_args}


@dataclass
class _PartialCall:
    call_id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class ToolCallAccumulator:
    """Merges streamed ``tool_calls`` deltas, keyed by their ``index``.

    The first delta of a call carries its id and name; later deltas append
    argument text.
    """
    _calls: Dict[int, _PartialCall] = field(default_factory=dict)

    def add(self, deltas: List[Dict[str, Any]]) -> None:
        for position, tc in enumerate(deltas):
            index = tc.get("index", position)
            partial = self._calls.setdefault(index, _PartialCall())
            if tc.get("id"):
                partial.call_id = tc["id"]
            fn = tc.get("function") or {}
            if fn.get("name"):
                partial.name = fn["name"]
            if fn.get("arguments"):
                partial.arguments += fn["arguments"]

    def build(self) -> List[ToolCallRequest]:
        calls: List[ToolCallRequest] = []
        for index in sorted(self._calls):
            partial = self._calls[index]
            calls.append(
                ToolCallRequest(
                    call_id=partial.call_id or f"call_{index}",
                    tool_name=partial.name,
                    arguments=_parse_arguments(partial.arguments),
                )
            )
        return calls

    def __len__(self) -> int:
        return len(self._calls)


def parse_chat_response(data: Dict[str, Any]) -> LLMResponse:
    """Parse a non-streamed chat completions response dict into ``LLMResponse``.

    Some servers ignore ``"stream": true`` and answer with one JSON body.
    """
    message = data["choices"][0]["message"]
    accumulator = ToolCallAccumulator()
    accumulator.add(message.get("tool_calls") or [])
    reasoning = message.get("reasoning_content") or message.get("reasoning")
    return LLMResponse(content=message.get("content"), tool_calls=accumulator.build(), reasoning=reasoning)
