"""Task loop session: drives one chunk from planning to end.

The protocol itself lives in ``session_state.advance``; this module is the
I/O shell around it.  Per turn it:

1. streams the conversation through the model with a ``StreamGuard`` wired
   to a per-turn ``AbortSignal`` (linked to the caller's signal);
2. retries the turn when the output degenerates (the bad output is never
   appended, so the retry re-submits the same history);
3. feeds the outcome (tool calls, tool results, final text, stream
   violation) into the reducer and performs the effects it returns.

Suspension points are the model request and each tool dispatch; both are
raced against the caller's abort signal, and an abort cancels the in-flight
asyncio task and raises ``SessionCancelled``.

Dependencies are injected (ports only); this module never imports from
``interfaces``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from docloop.application.degeneration import Thresholds, detect_degeneration
from docloop.application.ports import ChatClient, RunRepository, SessionContext, ToolExecutor
from docloop.application.session_state import (
    AppendMessage,
    DispatchTool,
    Effect,
    EmitItems,
    EmitTitle,
    Event,
    Finish,
    PhaseChanged,
    ProtocolCorrected,
    RejectTool,
    SessionPolicy,
    SessionState,
    StreamViolated,
    ToolCallsRequested,
    ToolDispatchFinished,
    ToolResultReceived,
    TurnFinalized,
    TurnStarted,
    advance,
)
from docloop.application.stream_guard import GuardVerdict, StreamGuard, Violation
from docloop.config.constants import MAX_DEGENERATION_RETRIES, MAX_LLM_CONTENT_IN_RUNLOG_CHARS
from docloop.config.schema import GuardConfig, ModelConfig
from docloop.domain import (
    AbortSignal,
    DegenerationError,
    ExtractedItem,
    LivenessError,
    LLMResponse,
    Phase,
    RequestAborted,
    RunId,
    SessionCancelled,
    SessionMetrics,
    SessionResult,
    StreamFragment,
    ToolCallRequest,
)
from docloop.infrastructure.telemetry import get_tracer

logger = logging.getLogger(__name__)


@dataclass
class SessionHooks:
    """Optional synchronous callbacks for rendering progress while a chunk runs."""
    on_items: Optional[Callable[[List[ExtractedItem]], Any]] = None
    on_title: Optional[Callable[[str], Any]] = None
    on_fragment: Optional[Callable[[StreamFragment], Any]] = None
    on_phase: Optional[Callable[[Phase, Phase], Any]] = None


def _emit(
    queue: Optional[asyncio.Queue],
    kind: str,
    data: Dict[str, Any],
    step: Optional[str] = None,
) -> None:
    """Put a session event to the streaming queue (no-op when queue is None or full)."""
    if queue is None:
        return
    try:
        queue.put_nowait({"kind": kind, "data": data, "step": step})
    except asyncio.QueueFull:
        logger.debug("event_queue full; dropping event kind=%s", kind)


async def _until_aborted(awaitable: Awaitable[Any], signal: Optional[AbortSignal]) -> Tuple[bool, Any]:
    """Await *awaitable* unless *signal* fires first.

    Returns ``(True, result)`` on completion and ``(False, None)`` when the
    signal fired; the in-flight task is cancelled in that case.
    """
    task = asyncio.ensure_future(awaitable)
    if signal is None:
        return True, await task
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task in done:
        return True, task.result()
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, RequestAborted):
        pass
    return False, None


class TaskLoopSession:
    """One chunk, one conversation, one outstanding model request at a time.

    ``messages`` is the opening history (system + chunk prompt); the session
    works on its own copy, exposed as ``messages`` for inspection.
    """

    def __init__(
        self,
        *,
        chat_client: ChatClient,
        tool_executor: ToolExecutor,
        model_config: ModelConfig,
        policy: SessionPolicy,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        source_text: str = "",
        guard_config: Optional[GuardConfig] = None,
        max_turns: Optional[int] = None,
        max_degeneration_retries: int = MAX_DEGENERATION_RETRIES,
        chunk_index: Optional[int] = None,
        hooks: Optional[SessionHooks] = None,
        abort: Optional[AbortSignal] = None,
        run_repository: Optional[RunRepository] = None,
        run_id: Optional[RunId] = None,
        event_queue: Optional[asyncio.Queue] = None,
    ) -> None:
        self._chat_client = chat_client
        self._tool_executor = tool_executor
        self._model_config = model_config
        self._policy = policy
        self._messages: List[Dict[str, Any]] = list(messages)
        self._tools = tools
        self._source_text = source_text
        self._guard_config = guard_config or GuardConfig()
        self._max_turns = max_turns
        self._max_degeneration_retries = max_degeneration_retries
        self._chunk_index = chunk_index
        self._hooks = hooks or SessionHooks()
        self._abort = abort
        self._run_repository = run_repository
        self._run_id = run_id
        self._event_queue = event_queue

        self._state = SessionState()
        self._metrics = SessionMetrics()
        self._tracer = get_tracer()
        self._phase_started = 0.0
        self._step_key = ""

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return self._messages

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> SessionResult:
        """Run turns until the phase reaches ``end``.

        Raises:
            SessionCancelled: The caller's abort signal fired.
            LivenessError: ``max_turns`` was reached before ``end``.
            DegenerationError: The model degenerated more often than the retry budget allows.
            httpx.HTTPError: Transport failures propagate unchanged.
        """
        started = time.monotonic()
        self._phase_started = started
        prefix = f"chunk{self._chunk_index}_" if self._chunk_index is not None else ""
        logger.info(
            "Session started: family=%s chunk=%s items=%d",
            self._policy.family.name, self._chunk_index, len(self._policy.item_ids),
        )

        with self._tracer.start_as_current_span("docloop.session") as span:
            span.set_attribute("family", self._policy.family.name)
            span.set_attribute("item_count", len(self._policy.item_ids))
            if self._chunk_index is not None:
                span.set_attribute("chunk_index", self._chunk_index)

            while not self._state.done:
                self._raise_if_cancelled()
                if self._max_turns is not None and self._state.turn >= self._max_turns:
                    logger.warning(
                        "max_turns (%d) reached in phase %s: chunk=%s",
                        self._max_turns, self._state.phase.value, self._chunk_index,
                    )
                    self._record("liveness_failure", {"phase": self._state.phase.value, "turns": self._state.turn})
                    raise LivenessError(self._state.phase.value, self._state.turn)

                await self._handle(TurnStarted())
                self._step_key = f"{prefix}turn_{self._state.turn}"
                response, verdict, partial = await self._generate()

                if not verdict.ok:
                    logger.warning(
                        "Turn %s: stream violation (%s): %s",
                        self._step_key, verdict.violation.value, verdict.reason,
                    )
                    self._record("stream_violation", {"violation": verdict.violation.value, "reason": verdict.reason})
                    await self._handle(StreamViolated(text=partial, verdict=verdict))
                    continue

                if response.has_tool_calls:
                    await self._handle(ToolCallsRequested(response.content, tuple(response.tool_calls)))
                    await self._handle(ToolDispatchFinished())
                    continue

                await self._handle(TurnFinalized(response.content or ""))

            span.set_attribute("turns", self._state.turn)
            span.set_attribute("extracted", len(self._state.extraction))

        now = time.monotonic()
        self._add_phase_time(self._state.phase, now - self._phase_started)
        self._metrics.total_time = now - started
        self._metrics.turn_count = self._state.turn
        self._record("session_complete", {
            "turns": self._state.turn,
            "extracted": len(self._state.extraction),
            "tool_calls": self._metrics.tool_call_count,
        })
        logger.info(
            "Session completed: chunk=%s turns=%d extracted=%d/%d",
            self._chunk_index, self._state.turn, len(self._state.extraction), len(self._policy.item_ids),
        )
        return SessionResult(
            final_text=self._state.last_text,
            phase=self._state.phase,
            extraction=dict(self._state.extraction),
            title=self._state.title,
            planning_digest=self._state.planning_digest,
            metrics=self._metrics,
            chunk_index=self._chunk_index,
        )

    # ------------------------------------------------------------------
    # Model turn
    # ------------------------------------------------------------------

    async def _generate(self) -> Tuple[Optional[LLMResponse], GuardVerdict, str]:
        """Run one model turn, re-submitting after degenerate output.

        Returns the response (``None`` when the guard aborted the stream),
        the guard verdict and the text streamed before any abort.
        """
        thresholds = Thresholds(
            repeat_threshold=self._guard_config.repeat_threshold,
            window=self._guard_config.window,
            pattern_repeat_threshold=self._guard_config.pattern_repeat_threshold,
        )
        attempts = 0
        while True:
            turn_signal = AbortSignal.linked(self._abort)
            guard = StreamGuard(
                self._source_text,
                self._policy.family,
                self._state.effective_phase,
                turn_signal,
                self._guard_config,
            )
            try:
                response = await self._call_model(guard, turn_signal)
            finally:
                turn_signal.detach()
            self._raise_if_cancelled()

            verdict = guard.verdict
            if response is not None and verdict.ok and not response.has_tool_calls:
                verdict = guard.finish()
                finding = detect_degeneration(response.content or "", self._source_text, thresholds)
                if verdict.ok and finding is not None:
                    verdict = GuardVerdict(violation=Violation.DEGENERATION, reason=finding.reason)

            if not verdict.is_degeneration:
                return response, verdict, guard.text

            attempts += 1
            self._metrics.degeneration_retries += 1
            self._record("degeneration_retry", {"attempt": attempts, "reason": verdict.reason})
            if attempts > self._max_degeneration_retries:
                logger.error(
                    "Turn %s: degenerate output after %d retries: %s",
                    self._step_key, self._max_degeneration_retries, verdict.reason,
                )
                raise DegenerationError(verdict.reason, self._chunk_index)
            logger.warning(
                "Turn %s: degenerate output (%s); retrying (%d/%d)",
                self._step_key, verdict.reason, attempts, self._max_degeneration_retries,
            )

    async def _call_model(self, guard: StreamGuard, signal: AbortSignal) -> Optional[LLMResponse]:
        def on_fragment(fragment: StreamFragment) -> None:
            verdict = guard.feed(fragment)
            if verdict.ok and self._hooks.on_fragment is not None:
                self._hooks.on_fragment(fragment)

        cfg = self._model_config
        _req_ev = {"turn": self._state.turn, "phase": self._state.phase.value, "message_count": len(self._messages)}
        self._record("llm_request", _req_ev)
        logger.debug("Turn %s: %d messages in context", self._step_key, len(self._messages))

        with self._tracer.start_as_current_span("docloop.llm_call") as llm_span:
            llm_span.set_attribute("turn", self._state.turn)
            llm_span.set_attribute("model", cfg.model)
            llm_span.set_attribute("message_count", len(self._messages))
            try:
                finished, response = await _until_aborted(
                    self._chat_client.generate(
                        messages=self._messages,
                        model=cfg.model,
                        tools=self._tools,
                        on_fragment=on_fragment,
                        abort=signal,
                        temperature=cfg.temperature,
                        top_p=cfg.top_p,
                        max_tokens=cfg.max_tokens,
                    ),
                    signal,
                )
            except RequestAborted:
                if not signal.aborted:
                    raise
                finished, response = False, None
            if not finished:
                llm_span.set_attribute("aborted", True)
                return None
            llm_span.set_attribute("tool_calls_returned", len(response.tool_calls))

        self._record("llm_response", {
            "content": (response.content or "")[:MAX_LLM_CONTENT_IN_RUNLOG_CHARS],
            "tool_calls": [{"name": tc.tool_name, "call_id": tc.call_id} for tc in response.tool_calls],
        })
        return response

    # ------------------------------------------------------------------
    # Events and effects
    # ------------------------------------------------------------------

    async def _handle(self, event: Event) -> None:
        self._state, effects = advance(self._state, event, self._policy)
        await self._perform(effects)

    async def _perform(self, effects: List[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, AppendMessage):
                self._messages.append(effect.message)
            elif isinstance(effect, DispatchTool):
                result = await self._dispatch(effect.call)
                await self._handle(ToolResultReceived(effect.call, result))
            elif isinstance(effect, RejectTool):
                logger.warning("Turn %s: tool %r rejected: %s", self._step_key, effect.call.tool_name, effect.reason)
                self._record("tool_rejected", {"tool": effect.call.tool_name, "reason": effect.reason})
            elif isinstance(effect, EmitItems):
                self._on_items(list(effect.items))
            elif isinstance(effect, EmitTitle):
                self._record("title", {"title": effect.title})
                if self._hooks.on_title is not None:
                    self._hooks.on_title(effect.title)
            elif isinstance(effect, PhaseChanged):
                self._on_phase_changed(effect)
            elif isinstance(effect, ProtocolCorrected):
                logger.warning("Turn %s: corrective prompt (%s): %s", self._step_key, effect.kind, effect.detail)
                self._record("corrective_prompt", {"kind": effect.kind, "detail": effect.detail})
            elif isinstance(effect, Finish):
                logger.debug("Turn %s: session reached end", self._step_key)

    def _on_items(self, items: List[ExtractedItem]) -> None:
        for item in items:
            if item.replaced is not None:
                logger.info("Turn %s: item %s resubmitted; later content wins", self._step_key, item.item_id)
        self._record("items_extracted", {
            "ids": [i.item_id for i in items],
            "replaced": [i.item_id for i in items if i.replaced is not None],
        })
        if self._hooks.on_items is not None:
            self._hooks.on_items(items)

    def _on_phase_changed(self, change: PhaseChanged) -> None:
        now = time.monotonic()
        self._add_phase_time(change.previous, now - self._phase_started)
        self._phase_started = now
        logger.info(
            "Turn %s: phase %s -> %s%s",
            self._step_key, change.previous.value, change.current.value, " (forced)" if change.forced else "",
        )
        self._record("phase_change", {
            "from": change.previous.value, "to": change.current.value, "forced": change.forced,
        })
        if self._hooks.on_phase is not None:
            self._hooks.on_phase(change.previous, change.current)

    def _add_phase_time(self, phase: Phase, seconds: float) -> None:
        if phase is Phase.PLANNING:
            self._metrics.planning_time += seconds
        elif phase is Phase.WORKING:
            self._metrics.working_time += seconds
        elif phase is Phase.REVIEW:
            self._metrics.review_time += seconds

    # ------------------------------------------------------------------
    # Tool dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, call: ToolCallRequest) -> str:
        """Execute one authorized call; executor errors become JSON error results for the model."""
        context = SessionContext(
            family=self._policy.family,
            phase=self._state.phase,
            effective_phase=self._state.effective_phase,
            item_ids=self._policy.item_ids,
            chunk_index=self._chunk_index,
        )
        self._record("tool_call", {"tool": call.tool_name, "args": call.arguments})
        error_type: Optional[str] = None
        error_message = ""
        started = time.monotonic()
        with self._tracer.start_as_current_span("docloop.tool_call") as tool_span:
            tool_span.set_attribute("tool_name", call.tool_name)
            try:
                finished, result = await _until_aborted(self._tool_executor.dispatch(call, context), self._abort)
            except PermissionError as exc:
                finished, result = True, {"success": False, "error": "permission_denied", "message": str(exc)}
                error_type, error_message = "permission", str(exc)
            except (ValueError, TypeError) as exc:
                # Bad arguments supplied by the LLM to the tool.
                finished, result = True, {"success": False, "error": "invalid_arguments", "message": str(exc)}
                error_type, error_message = "invalid_args", str(exc)
            except OSError as exc:
                finished, result = True, {"success": False, "error": "io_error", "message": str(exc)}
                error_type, error_message = "io_error", str(exc)
            except Exception as exc:  # noqa: BLE001
                # One bad tool never kills the session; cancellation is a BaseException and propagates.
                finished, result = True, {
                    "success": False,
                    "error": "unexpected_error",
                    "message": str(exc),
                    "error_type": type(exc).__name__,
                }
                error_type, error_message = "unexpected", str(exc)
        elapsed = time.monotonic() - started
        self._metrics.tool_call_time += elapsed
        self._metrics.tool_call_count += 1

        if not finished:
            raise SessionCancelled(self._abort.reason if self._abort else "cancelled")
        if error_type is not None:
            logger.warning(
                "Turn %s: tool %r error (%s): %s",
                self._step_key, call.tool_name, error_type, error_message,
            )
            self._record("tool_error", {
                "tool": call.tool_name, "error_type": error_type, "error_message": error_message,
            })
        else:
            self._record("tool_result", {"tool": call.tool_name, "elapsed_s": round(elapsed, 3)})
        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _raise_if_cancelled(self) -> None:
        if self._abort is not None and self._abort.aborted:
            logger.info("Session cancelled: chunk=%s reason=%s", self._chunk_index, self._abort.reason)
            self._record("session_cancelled", {"reason": self._abort.reason})
            raise SessionCancelled(self._abort.reason or "cancelled")

    def _record(self, kind: str, payload: Dict[str, Any]) -> None:
        step = self._step_key or None
        if self._run_repository is not None and self._run_id is not None:
            self._run_repository.append_event(self._run_id, kind, payload, step=step)
        _emit(self._event_queue, kind, payload, step=step)
