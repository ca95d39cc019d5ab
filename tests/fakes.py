"""Test doubles and builders shared by the session tests."""
from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, List, Optional, Union

from docloop.domain import LLMResponse, RequestAborted, StreamFragment, ToolCallRequest

HANG = object()  # Script entry: block until the request is aborted


def call(name: str, call_id: Optional[str] = None, **arguments: Any) -> ToolCallRequest:
    """Build a ``ToolCallRequest``; the id defaults to ``<name>_call``."""
    return ToolCallRequest(call_id=call_id or f"{name}_call", tool_name=name, arguments=arguments)


def text_turn(text: str) -> LLMResponse:
    return LLMResponse(content=text)


def tool_turn(*calls: ToolCallRequest, text: Optional[str] = None) -> LLMResponse:
    return LLMResponse(content=text, tool_calls=list(calls))


def batch(*pairs: Any) -> ToolCallRequest:
    """``add_translation_batch`` call for ``(paragraph_id, text)`` pairs."""
    return call(
        "add_translation_batch",
        call_id=f"batch_{pairs[0][0] if pairs else 'empty'}",
        paragraphs=[{"paragraph_id": pid, "translated_text": text} for pid, text in pairs],
    )


def status(new_status: str, call_id: Optional[str] = None) -> ToolCallRequest:
    return call("update_task_status", call_id=call_id or f"status_{new_status}", new_status=new_status)


ScriptEntry = Union[LLMResponse, BaseException, object]


class ScriptedChatClient:
    """Fake ``ChatClient`` replaying a fixed list of responses.

    Text content is streamed to ``on_fragment`` in small pieces so stream
    guards see it incrementally.  An exception entry is raised; ``HANG``
    blocks until the request's abort signal fires.  Every request's message
    history is recorded in ``requests``.
    """

    def __init__(self, script: List[ScriptEntry], fragment_size: int = 16):
        self._script = list(script)
        self._fragment_size = fragment_size
        self.requests: List[List[Dict[str, Any]]] = []
        self.tools_offered: List[List[str]] = []

    @property
    def remaining(self) -> int:
        return len(self._script)

    async def generate(self, messages, model, *, tools=None, on_fragment=None, abort=None, **kwargs):
        self.requests.append([dict(m) for m in messages])
        self.tools_offered.append([t["function"]["name"] for t in tools or []])
        if not self._script:
            raise AssertionError("ScriptedChatClient: script exhausted")
        entry = self._script.pop(0)
        if entry is HANG:
            await asyncio.sleep(3600)
        if isinstance(entry, BaseException):
            raise entry
        text = entry.content or ""
        for start in range(0, len(text), self._fragment_size):
            if on_fragment is not None:
                on_fragment(StreamFragment(text=text[start:start + self._fragment_size]))
            if abort is not None and abort.aborted:
                raise RequestAborted(abort.reason or "aborted")
            await asyncio.sleep(0)
        return entry


def tool_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """The ``tool`` role messages of a history, with content decoded."""
    out = []
    for m in messages:
        if m.get("role") == "tool":
            out.append({**m, "content": json.loads(m["content"])})
    return out


_ID_RE = re.compile(r"\[ID: ([^\]]+)\]")


class DocumentChatClient(ScriptedChatClient):
    """Answers every chunk session with a well-behaved translation run.

    A new script is built whenever a session opens (system + user message),
    covering the ids listed in the opening prompt in batches of ``batch_size``.
    """

    def __init__(self, batch_size: int = 50):
        super().__init__([])
        self._batch_size = batch_size
        self.opening_prompts: List[str] = []

    async def generate(self, messages, model, **kwargs):
        if len(messages) == 2:
            prompt = messages[1]["content"]
            self.opening_prompts.append(prompt)
            self._script = self._session_script(_ID_RE.findall(prompt))
        return await super().generate(messages, model, **kwargs)

    def _session_script(self, ids: List[str]) -> List[ScriptEntry]:
        script: List[ScriptEntry] = [tool_turn(status("working")), text_turn("Plan: short literal sentences.")]
        for start in range(0, len(ids), self._batch_size):
            part = ids[start:start + self._batch_size]
            script.append(tool_turn(batch(*[(i, f"T({i})") for i in part])))
        script += [
            tool_turn(status("review")),
            text_turn("All paragraphs submitted."),
            tool_turn(status("end")),
            text_turn("Checked."),
        ]
        return script
