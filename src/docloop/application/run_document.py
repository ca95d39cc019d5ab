"""Caller-facing use cases: run one chunk, or a whole document chunk by chunk.

Chunks of one document run strictly one after another.  A later chunk may
depend on what earlier chunks wrote through tools (terms, characters), and
it reuses the first planning digest so it can plan briefly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from docloop.application import prompts
from docloop.application.chunker import split
from docloop.application.governor import ToolCallGovernor
from docloop.application.ports import ChatClient, RunRepository, ToolExecutor
from docloop.application.session_state import SessionPolicy
from docloop.application.task_loop import SessionHooks, TaskLoopSession, _emit
from docloop.application.verifier import Verifier
from docloop.config.schema import DocloopConfig, ModelConfig
from docloop.domain import AbortSignal, Chunk, DocumentResult, Item, RunId, SessionResult, get_family

logger = logging.getLogger(__name__)


@dataclass
class ChunkPolicy:
    """Per-run choices layered over ``DocloopConfig.loop``.

    ``None`` fields fall back to the config.  ``tool_allow_list`` of ``None``
    offers every tool the executor defines.
    """
    family: str = "translation"
    chunk_budget: Optional[int] = None
    tool_allow_list: Optional[Sequence[str]] = None
    verifier: Optional[Verifier] = None
    max_turns: Optional[int] = None
    tool_limits: Optional[Mapping[str, int]] = None


def _tool_name(definition: Dict[str, Any]) -> str:
    return (definition.get("function") or {}).get("name", "")


def offered_tools(tool_executor: ToolExecutor, allow_list: Optional[Sequence[str]]) -> List[Dict[str, Any]]:
    """Executor definitions filtered by *allow_list*, in executor order."""
    definitions = tool_executor.definitions()
    if allow_list is None:
        return list(definitions)
    allowed = set(allow_list)
    return [d for d in definitions if _tool_name(d) in allowed]


async def run_chunk(
    chunk: Chunk,
    *,
    chat_client: ChatClient,
    tool_executor: ToolExecutor,
    config: DocloopConfig,
    policy: Optional[ChunkPolicy] = None,
    model_config: Optional[ModelConfig] = None,
    chunk_count: int = 1,
    planning_digest: Optional[str] = None,
    hooks: Optional[SessionHooks] = None,
    abort: Optional[AbortSignal] = None,
    run_repository: Optional[RunRepository] = None,
    run_id: Optional[RunId] = None,
    event_queue: Optional[asyncio.Queue] = None,
) -> SessionResult:
    """Run one task loop session for *chunk*.

    Args:
        chunk: The chunk to process (from ``chunker.split``).
        chat_client: Streaming LLM interface (``ChatClient`` port).
        tool_executor: Executes tool calls (``ToolExecutor`` port).
        config: Loop, guard and model configuration.
        policy: Family, tool allow-list, verifier and limit overrides.
        model_config: Model to use; defaults to ``config``'s default model.
        chunk_count: Total chunks in the document (for the opening prompt).
        planning_digest: Digest from an earlier chunk; when given, the
            session plans briefly and does not build a new digest.
        hooks: Incremental callbacks (items, title, fragments, phases).
        abort: Caller cancellation; firing it raises ``SessionCancelled``.
        run_repository: When given with ``run_id``, session events are logged.
        event_queue: Optional queue receiving every logged event.

    Raises:
        UnknownTaskFamilyError: When ``policy.family`` is not registered.
    """
    policy = policy or ChunkPolicy()
    loop_cfg = config.loop
    family = get_family(policy.family)
    tools = offered_tools(tool_executor, policy.tool_allow_list)
    governor = ToolCallGovernor(
        allowed=[_tool_name(d) for d in tools],
        limits=policy.tool_limits if policy.tool_limits is not None else loop_cfg.tool_limits,
        productive=loop_cfg.productive_tools,
    )
    session_policy = SessionPolicy(
        family=family,
        item_ids=chunk.item_ids,
        governor=governor,
        verifier=policy.verifier,
        max_consecutive_phase_turns=loop_cfg.max_consecutive_phase_turns,
        brief_planning=planning_digest is not None,
        digest_tools=frozenset(loop_cfg.digest_tools),
    )
    messages = [
        {
            "role": "system",
            "content": prompts.system_prompt(family, session_policy.phase_tool, session_policy.content_tool),
        },
        {"role": "user", "content": prompts.chunk_prompt(family, chunk, chunk_count, planning_digest)},
    ]
    session = TaskLoopSession(
        chat_client=chat_client,
        tool_executor=tool_executor,
        model_config=model_config or config.model_for(),
        policy=session_policy,
        messages=messages,
        tools=tools,
        source_text=chunk.text,
        guard_config=config.guard,
        max_turns=policy.max_turns if policy.max_turns is not None else loop_cfg.max_turns,
        max_degeneration_retries=loop_cfg.max_degeneration_retries,
        chunk_index=chunk.index,
        hooks=hooks,
        abort=abort,
        run_repository=run_repository,
        run_id=run_id,
        event_queue=event_queue,
    )
    return await session.run()


async def run_document(
    items: Sequence[Item],
    *,
    chat_client: ChatClient,
    tool_executor: ToolExecutor,
    config: DocloopConfig,
    policy: Optional[ChunkPolicy] = None,
    model_config: Optional[ModelConfig] = None,
    hooks: Optional[SessionHooks] = None,
    abort: Optional[AbortSignal] = None,
    run_repository: Optional[RunRepository] = None,
    event_queue: Optional[asyncio.Queue] = None,
) -> DocumentResult:
    """Split *items* into chunks and run one session per chunk, in order.

    The first planning digest produced is handed to every later chunk.
    Errors from any chunk propagate and stop the document; results of the
    chunks already finished were reported through ``hooks`` as they arrived.
    """
    policy = policy or ChunkPolicy()
    budget = policy.chunk_budget or config.loop.chunk_budget
    chunks = split(items, budget)
    result = DocumentResult(family=policy.family)

    run_id: Optional[RunId] = None
    if run_repository is not None:
        run_id, run_dir = run_repository.create_run()
        logger.info("Run created: run_id=%s dir=%s", run_id.value, run_dir)
        _doc_ev = {"family": policy.family, "items": len(items), "chunks": len(chunks), "budget": budget}
        run_repository.append_event(run_id, "document_start", _doc_ev)
        _emit(event_queue, "document_start", _doc_ev)

    digest: Optional[str] = None
    for chunk in chunks:
        logger.info("Chunk %d/%d: %d items", chunk.index + 1, len(chunks), len(chunk.item_ids))
        session_result = await run_chunk(
            chunk,
            chat_client=chat_client,
            tool_executor=tool_executor,
            config=config,
            policy=policy,
            model_config=model_config,
            chunk_count=len(chunks),
            planning_digest=digest,
            hooks=hooks,
            abort=abort,
            run_repository=run_repository,
            run_id=run_id,
            event_queue=event_queue,
        )
        result.sessions.append(session_result)
        if digest is None:
            digest = session_result.planning_digest

    if run_repository is not None and run_id is not None:
        _done_ev = {"chunks": len(chunks), "extracted": len(result.extraction)}
        run_repository.append_event(run_id, "document_complete", _done_ev)
        _emit(event_queue, "document_complete", _done_ev)
    return result
