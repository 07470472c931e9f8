"""CLI commands for chatcompact."""

import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from chatcompact import __logo__, __version__
from chatcompact.compaction.debug import DebugLogStore
from chatcompact.compaction.errors import ConfigurationError
from chatcompact.compaction.service import ContextCompactionEngine
from chatcompact.compaction.types import CompactionResult, MessageBlock
from chatcompact.config.loader import convert_to_camel, get_config_path, load_config
from chatcompact.config.schema import Config
from chatcompact.session.manager import load_transcript
from chatcompact.utils.helpers import expand_path

app = typer.Typer(
    name="chatcompact",
    help=f"{__logo__} chatcompact - Context compaction for chat transcripts",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} chatcompact v{__version__}")
        raise typer.Exit()


def _stderr_sink(message: str) -> None:
    # Looked up per write so redirected streams are honored
    sys.stderr.write(message)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(_stderr_sink, level="DEBUG" if verbose else "WARNING")


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging"),
):
    """chatcompact - Context compaction for chat transcripts."""
    _configure_logging(verbose)


def _load_config_or_exit(config_path: Path | None) -> Config:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _preview(text: str, limit: int = 80) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _print_result(result: CompactionResult) -> None:
    table = Table(title=f"Context ({result.total_tokens} tokens, strategy={result.strategy_used})")
    table.add_column("Zone", style="cyan")
    table.add_column("Kind")
    table.add_column("Tokens", justify="right")
    table.add_column("Content", style="dim")

    for block in result.blocks:
        if isinstance(block, MessageBlock):
            table.add_row(block.zone, block.message.role, str(block.token_count), _preview(block.message.text))
        else:
            table.add_row(
                block.zone,
                f"summary ({block.message_count} msgs)",
                str(block.token_count),
                _preview(block.text),
            )
    console.print(table)

    if not result.was_managed:
        console.print("[green]✓[/green] Transcript fits the budget, returned unchanged")
        return

    diag = result.diagnostics
    stats = Table(title="Diagnostics")
    stats.add_column("Metric", style="cyan")
    stats.add_column("Value")
    stats.add_row("Cache hits / misses", f"{diag.cache_hits} / {diag.cache_misses}")
    stats.add_row("Cache hit ratio", f"{diag.cache_hit_ratio:.0%}")
    stats.add_row("Provider errors", str(len(diag.provider_errors)))
    stats.add_row("Fallbacks", ", ".join(f"{f.zone}#{f.chunk_index}:{f.mode}" for f in diag.fallbacks) or "-")
    stats.add_row("Zone tokens", ", ".join(f"{k}={v}" for k, v in diag.zone_tokens.items()))
    stats.add_row("Approximate counts", "yes" if diag.approximate_counts else "no")
    stats.add_row("Deadline exceeded", "yes" if diag.deadline_exceeded else "no")
    stats.add_row("Elapsed", f"{diag.elapsed_ms:.0f} ms")
    console.print(stats)

    for warning in diag.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    for failure in diag.provider_errors:
        console.print(f"[red]✗ {failure.zone} chunk {failure.chunk_index}: {failure.reason}[/red]")


# ============================================================================
# Compaction
# ============================================================================


@app.command()
def compact(
    transcript: Path = typer.Argument(..., help="JSONL transcript, one message per line"),
    strategy: str = typer.Option(None, "--strategy", "-s", help="trim, summarize or smart_summarize"),
    max_tokens: int = typer.Option(None, "--max-tokens", help="Context window size"),
    recent_tokens: int = typer.Option(None, "--recent-tokens", help="Protected recent zone size"),
    provider: str = typer.Option(None, "--provider", "-p", help="gemini, openrouter or koboldcpp"),
    chunk_size: int = typer.Option(None, "--chunk-size", help="Characters per summarization call"),
    reserved: int = typer.Option(0, "--reserved", help="Tokens already used by the system prompt"),
    debug: bool = typer.Option(False, "--debug", help="Collect and store summarization debug logs"),
    conversation_id: str = typer.Option(None, "--conversation", "-c", help="Conversation id for debug logs"),
    config_path: Path = typer.Option(None, "--config", help="Config file path"),
):
    """Compact a transcript to fit the context budget."""
    config = _load_config_or_exit(config_path)

    try:
        messages = load_transcript(transcript)
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read transcript: {e}[/red]")
        raise typer.Exit(1)

    if max_tokens is not None:
        config.context.max_context_tokens = max_tokens

    budget = config.build_budget(reserved_tokens=reserved)
    if recent_tokens is not None:
        budget = replace(budget, recent_zone_tokens=recent_tokens)

    overrides = {
        "strategy": strategy,
        "provider_id": provider,
        "chunk_size": chunk_size,
        "debug_mode": True if debug else None,
    }
    strategy_config = replace(
        config.build_strategy_config(),
        **{k: v for k, v in overrides.items() if v is not None},
    )

    engine = ContextCompactionEngine.from_config(config)
    conversation_id = conversation_id or transcript.stem
    try:
        result = asyncio.run(engine.compact(messages, budget, strategy_config, conversation_id))
    except ConfigurationError as e:
        console.print(f"[red]Invalid settings: {e}[/red]")
        raise typer.Exit(1)

    _print_result(result)

    if strategy_config.debug_mode and result.diagnostics.chunk_logs:
        store = DebugLogStore(expand_path(config.debug_log_path))
        added = store.record(conversation_id, result.diagnostics)
        console.print(f"[dim]Stored {added} debug log(s) for {conversation_id}[/dim]")


# ============================================================================
# Config & Providers
# ============================================================================


@app.command("config")
def show_config(
    config_path: Path = typer.Option(None, "--config", help="Config file path"),
):
    """Show the resolved settings."""
    config = _load_config_or_exit(config_path)
    path = config_path or get_config_path()

    data = convert_to_camel(config.model_dump())
    for provider in data.get("providers", {}).values():
        if provider.get("apiKey"):
            provider["apiKey"] = "***"

    console.print(f"[dim]{path}{'' if path.exists() else ' (not found, using defaults)'}[/dim]")
    console.print_json(json.dumps(data))


@app.command()
def check(
    provider: str = typer.Argument(None, help="gemini, openrouter or koboldcpp"),
    config_path: Path = typer.Option(None, "--config", help="Config file path"),
):
    """Check that a summarization provider is reachable."""
    from chatcompact.providers.registry import create_summarizer

    config = _load_config_or_exit(config_path)
    try:
        summarizer = create_summarizer(config, provider)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    with console.status(f"Checking {summarizer.provider_id}..."):
        ok = asyncio.run(summarizer.check_connection())

    if ok:
        console.print(f"[green]✓[/green] {summarizer.provider_id} is reachable")
    else:
        console.print(f"[red]✗ {summarizer.provider_id} is not reachable[/red]")
        raise typer.Exit(1)


@app.command("debug-stats")
def debug_stats(
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    config_path: Path = typer.Option(None, "--config", help="Config file path"),
):
    """Show summarization debug statistics for a conversation."""
    config = _load_config_or_exit(config_path)
    store = DebugLogStore(expand_path(config.debug_log_path))
    stats = store.conversation_stats(conversation_id)

    if not stats.total_summarizations:
        console.print(f"[yellow]No debug logs for {conversation_id}[/yellow]")
        return

    table = Table(title=f"Summarization stats: {conversation_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Summarizations", str(stats.total_summarizations))
    table.add_row("Success", str(stats.success_count))
    table.add_row("Cached", str(stats.cached_count))
    table.add_row("Fallback", str(stats.fallback_count))
    table.add_row("Errors", str(stats.error_count))
    table.add_row("Input tokens", str(stats.total_input_tokens))
    table.add_row("Output tokens", str(stats.total_output_tokens))
    table.add_row("Avg duration", f"{stats.average_duration_ms:.0f} ms")
    table.add_row("Avg compression", f"{stats.average_compression_ratio:.0%}")
    console.print(table)


if __name__ == "__main__":
    app()
