"""CLI: Typer app wired to run_document."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from docloop.application.chunker import split
from docloop.application.run_document import ChunkPolicy, run_document
from docloop.application.task_loop import SessionHooks
from docloop.config import load_config
from docloop.domain import (
    AbortSignal,
    DocloopError,
    ExtractedItem,
    Item,
    Phase,
    SessionCancelled,
    get_family,
    items_from_texts,
    list_families,
)
from docloop.infrastructure.chat import build_chat_client
from docloop.infrastructure.telemetry import setup_telemetry
from docloop.infrastructure.tools import build_task_tool_registry
from docloop.infrastructure.workspace import FileSystemRunRepository, read_events

app = typer.Typer(help="docloop: phase-driven LLM processing of long documents (Ollama by default).")

EXIT_CANCELLED = 130


def _workspace_root() -> str:
    return os.environ.get("DOCLOOP_WORKSPACE", ".docloop")


def load_items(path: Path) -> List[Item]:
    """Read a document: a JSON list of ``{id, text}`` objects, or plain text.

    Plain text gives one item per line with ids ``p1``, ``p2``, ...; blank
    lines keep their slot so the numbering shows the gaps.
    """
    raw = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError(f"{path}: expected a JSON list of {{id, text}} objects")
        pairs = []
        for n, entry in enumerate(data):
            if not isinstance(entry, dict) or "text" not in entry:
                raise ValueError(f"{path}: entry {n} has no 'text'")
            pairs.append((str(entry.get("id", f"p{n + 1}")), str(entry["text"])))
        return items_from_texts(pairs)
    return items_from_texts([(f"p{n + 1}", line) for n, line in enumerate(raw.splitlines())])


def _render_event(console: Console, event: Dict[str, Any]) -> None:
    """Render one session event to the terminal while a run streams."""
    kind = event.get("kind", "")
    data = event.get("data", {})
    step = event.get("step")
    prefix = f"[dim]{step}[/dim] " if step else ""

    if kind == "document_start":
        console.print(f"[bold cyan]◈ {data.get('family')}[/bold cyan]: {data.get('items')} items in {data.get('chunks')} chunks")
    elif kind == "llm_request":
        console.print(f"{prefix}[dim]◆ {data.get('phase')} · {data.get('message_count')} messages[/dim]")
    elif kind == "tool_call":
        console.print(f"{prefix}[yellow]⚙ {data.get('tool')}[/yellow]")
    elif kind == "tool_error":
        console.print(f"{prefix}[red]✗ {data.get('tool')}[/red] ({data.get('error_type')}): {data.get('error_message')}")
    elif kind == "tool_rejected":
        console.print(f"{prefix}[red]⊘ {data.get('tool')}[/red]: {data.get('reason')}")
    elif kind == "items_extracted":
        replaced = data.get("replaced") or []
        extra = f" [dim]({len(replaced)} replaced)[/dim]" if replaced else ""
        console.print(f"{prefix}[green]✓ {len(data.get('ids') or [])} items[/green]{extra}")
    elif kind == "phase_change":
        forced = " [dim](forced)[/dim]" if data.get("forced") else ""
        console.print(f"{prefix}[cyan]→ {data.get('from')} → {data.get('to')}[/cyan]{forced}")
    elif kind == "corrective_prompt":
        console.print(f"{prefix}[yellow]↺ {data.get('kind')}[/yellow]: {data.get('detail')}")
    elif kind in ("stream_violation", "degeneration_retry"):
        console.print(f"{prefix}[magenta]⚠ {kind}[/magenta]: {data.get('reason')}")
    elif kind == "session_complete":
        console.print(f"{prefix}[bold green]● chunk done[/bold green] ({data.get('turns')} turns)")


async def _drain_while(task: "asyncio.Task[Any]", queue: asyncio.Queue, console: Console) -> Any:
    """Render queued events until *task* finishes; return its result."""
    while True:
        getter = asyncio.ensure_future(queue.get())
        done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
        if getter in done:
            _render_event(console, getter.result())
            continue
        getter.cancel()
        while not queue.empty():
            _render_event(console, queue.get_nowait())
        return await task


async def _run_document_interruptibly(items: List[Item], stream: bool, **kwargs: Any):
    """Run the document with Ctrl-C wired to the abort signal."""
    abort: AbortSignal = kwargs["abort"]
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort.abort, "interrupted")
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        if not stream:
            return await run_document(items, **kwargs)
        event_queue: asyncio.Queue = asyncio.Queue(maxsize=512)
        task = asyncio.ensure_future(run_document(items, event_queue=event_queue, **kwargs))
        return await _drain_while(task, event_queue, Console())
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _load_or_exit(path: Path) -> List[Item]:
    try:
        return load_items(path)
    except ValueError as e:
        rprint(f"[red]Cannot read {path}:[/red] {e}")
        sys.exit(1)


def _http_error_message(e: httpx.HTTPStatusError, base_url: str, model: str) -> str:
    if e.response.status_code == 404:
        return (
            f"[red]Model not found (404).[/red]\n"
            f"  URL: {base_url}\n  Model: {model}\n"
            f"  Pull with: [bold]ollama pull {model}[/bold] or set DOCLOOP_CONFIG_PATH."
        )
    return (
        f"[red]LLM server error.[/red]\n"
        f"  URL: {base_url}\n  Status: {e.response.status_code}\n  {e}"
    )


@app.command()
def families() -> None:
    """List the registered task families and their workflows."""
    table = Table(title="Task families", show_header=True, header_style="bold")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Label")
    table.add_column("Workflow", style="green")
    table.add_column("Full coverage", justify="center")
    for family in list_families():
        table.add_row(
            family.name,
            family.label,
            family.workflow,
            "yes" if family.requires_full_coverage else "no",
        )
    Console().print(table)


@app.command()
def chunks(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Document (.json list or plain text)."),
    budget: Optional[int] = typer.Option(None, "--budget", "-b", help="Characters per chunk (default from config)."),
) -> None:
    """Preview how a document is split into chunks."""
    config = load_config()
    items = _load_or_exit(file)
    try:
        parts = split(items, budget if budget is not None else config.loop.chunk_budget)
    except ValueError as e:
        rprint(f"[red]{e}[/red]")
        sys.exit(1)

    table = Table(title=f"{file.name}: {len(items)} items, {len(parts)} chunks", header_style="bold")
    table.add_column("Chunk", justify="right", style="cyan")
    table.add_column("Items", justify="right")
    table.add_column("Chars", justify="right")
    table.add_column("First id")
    table.add_column("Last id")
    for chunk in parts:
        table.add_row(
            str(chunk.index + 1),
            str(len(chunk.item_ids)),
            str(len(chunk.text)),
            chunk.item_ids[0],
            chunk.item_ids[-1],
        )
    Console().print(table)


@app.command()
def run(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Document (.json list or plain text)."),
    family: str = typer.Option("translation", "--family", "-f", help="Task family (see `docloop families`)."),
    model_key: str = typer.Option("", "--model-key", "-m", help="Model profile from config (default: config default)."),
    budget: Optional[int] = typer.Option(None, "--budget", "-b", help="Characters per chunk."),
    max_turns: Optional[int] = typer.Option(None, "--max-turns", help="Turn limit per chunk."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write the result as JSON to this file."),
    stream: bool = typer.Option(False, "--stream", "-s", help="Stream session events as they happen."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging to stderr."),
) -> None:
    """Process a document chunk by chunk and print the result."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    config = load_config()
    setup_telemetry(config)
    try:
        task_family = get_family(family)
    except DocloopError as e:
        rprint(f"[red]{e}[/red]")
        sys.exit(1)
    if model_key and model_key not in config.models:
        rprint(f"[red]Unknown model key {model_key!r}.[/red] Configured: {', '.join(sorted(config.models))}")
        sys.exit(1)
    model_config = config.model_for(model_key or None)
    items = _load_or_exit(file)

    rprint(f"[dim]Using model: {model_config.model} at {model_config.base_url}[/dim]")
    rprint(f"[dim]Workflow: {task_family.workflow}[/dim]")

    run_repository = FileSystemRunRepository(workspace_root=_workspace_root())
    extracted: Dict[str, str] = {}

    def on_items(batch: List[ExtractedItem]) -> None:
        for item in batch:
            extracted[item.item_id] = item.content
        if not stream:
            rprint(f"[green]✓[/green] {len(extracted)} items processed")

    def on_phase(previous: Phase, current: Phase) -> None:
        if not stream:
            rprint(f"[cyan]→ {previous.value} → {current.value}[/cyan]")

    abort = AbortSignal()
    try:
        result = asyncio.run(
            _run_document_interruptibly(
                items,
                stream,
                chat_client=build_chat_client(model_config),
                tool_executor=build_task_tool_registry(),
                config=config,
                policy=ChunkPolicy(family=task_family.name, chunk_budget=budget, max_turns=max_turns),
                model_config=model_config,
                hooks=SessionHooks(on_items=on_items, on_phase=on_phase),
                abort=abort,
                run_repository=run_repository,
            )
        )
    except SessionCancelled as e:
        rprint(f"[yellow]Cancelled[/yellow] ({e.reason}); {len(extracted)} items were processed before stopping.")
        sys.exit(EXIT_CANCELLED)
    except KeyboardInterrupt:
        rprint("[yellow]Interrupted.[/yellow]")
        sys.exit(EXIT_CANCELLED)
    except httpx.ConnectError as e:
        rprint(
            f"[red]LLM server unreachable.[/red]\n"
            f"  URL: {model_config.base_url}\n  Error: {e}\n"
            "  Start your backend (e.g. Ollama: ollama serve) or point DOCLOOP_CONFIG_PATH at another server."
        )
        sys.exit(1)
    except httpx.ReadTimeout:
        rprint(
            f"[red]LLM read timeout.[/red] The model ({model_config.model}) took too long to respond.\n"
            f"  Use a smaller/faster model or increase timeout in config (models.*.timeout_s)."
        )
        sys.exit(1)
    except httpx.HTTPStatusError as e:
        rprint(_http_error_message(e, model_config.base_url, model_config.model))
        sys.exit(1)
    except (DocloopError, RuntimeError) as e:
        rprint(f"[red]Run failed:[/red] {e}")
        sys.exit(1)

    total = sum(1 for item in items if item.text.strip())
    turns = sum(s.metrics.turn_count for s in result.sessions)
    tool_calls = sum(s.metrics.tool_call_count for s in result.sessions)
    rprint(
        Panel.fit(
            f"[bold]Family:[/bold] {task_family.label}\n"
            f"[bold]Chunks:[/bold] {len(result.sessions)}\n"
            f"[bold]Items:[/bold] {len(result.extraction)}/{total}\n"
            f"[bold]Title:[/bold] {result.title or '-'}\n"
            f"[bold]Turns:[/bold] {turns}  [bold]Tool calls:[/bold] {tool_calls}"
        )
    )
    if out is not None:
        payload = {
            "family": result.family,
            "title": result.title,
            "items": [
                {"id": item.id, "text": result.extraction[item.id]}
                for item in items
                if item.id in result.extraction
            ],
        }
        out.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        rprint(f"[dim]Wrote {out}[/dim]")


# ---------------------------------------------------------------------------
# docloop logs
# ---------------------------------------------------------------------------

logs_app = typer.Typer(help="Inspect past runs.")
app.add_typer(logs_app, name="logs")


@logs_app.command("show")
def logs_show(
    run_id: str = typer.Argument(..., help="Run ID to inspect."),
    workspace: Optional[str] = typer.Option(
        None, "--workspace", "-w", help="Workspace root (default: $DOCLOOP_WORKSPACE or .docloop).",
    ),
    kinds: str = typer.Option(
        "", "--kinds", "-k",
        help="Comma-separated event kinds to show (e.g. 'phase_change,tool_rejected'). Shows all if empty.",
    ),
) -> None:
    """Show the run log of one run."""
    workspace = workspace or _workspace_root()
    run_dir = Path(workspace) / "runs" / run_id
    if not run_dir.is_dir():
        rprint(f"[red]No run {run_id!r} in {workspace}/runs/[/red]")
        sys.exit(1)
    events = read_events(run_dir)
    filter_kinds = {k.strip() for k in kinds.split(",") if k.strip()} if kinds else None
    shown = [e for e in events if filter_kinds is None or e.get("kind") in filter_kinds]
    rprint(f"[bold]Run:[/bold] {run_id}  [dim]({len(shown)}/{len(events)} events)[/dim]")
    for ev in shown:
        rprint(json.dumps(ev, indent=2, ensure_ascii=False))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
