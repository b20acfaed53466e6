"""Typer-based CLI for relaygraph: compiler errors in, relay graph out."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .build_context import BuildContext
from .cache import RECORD_KINDS, AnalysisCache
from .config_manager import load_analysis_settings, load_layout_settings
from .errors import (
    AnalysisError,
    BackendUnavailableError,
    CacheStorageError,
    CacheUnavailableError,
    RelayGraphError,
)
from .graph_export import export_dot, export_json
from .layout import GraphLayout
from .logging_config import setup_logging
from .models import RelayGraph
from .orchestrator import Orchestrator

console = Console()

app = typer.Typer(
    help="Relay: turn compiler diagnostics into a navigable dependency graph.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

cache_app = typer.Typer(help="Inspect or clear the persistent analysis cache.")
app.add_typer(cache_app, name="cache")

OUTPUT_FORMATS = ("table", "json", "dot")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"relay v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log errors."),
):
    """Relay: build a relay graph from compiler error output."""
    setup_logging(verbose=verbose, quiet=quiet)


def _read_input(source: Optional[str]) -> str:
    if source is None or source == "-":
        return sys.stdin.read()
    path = Path(source)
    if not path.is_file():
        raise typer.BadParameter(f"Input file '{source}' does not exist.")
    return path.read_text(encoding="utf-8", errors="replace")


def _cache_for(build_dir: Path, cache_path: Optional[Path]) -> AnalysisCache:
    context = BuildContext(build_dir=build_dir, cache_path=cache_path)
    return AnalysisCache(context.resolved_cache_path)


def _print_graph(graph: RelayGraph) -> None:
    table = Table(title=f"Relay graph ({graph.layout_algorithm} layout)", show_header=True)
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Symbol")
    table.add_column("Location", style="green")
    table.add_column("Position", justify="right")
    for node in graph.nodes:
        kind = node.node_kind.value
        if node.is_error_origin:
            kind = f"[bold red]{kind}[/bold red]"
        table.add_row(
            str(node.id),
            kind,
            node.symbol_name,
            f"{node.location.file_path}:{node.location.line}",
            f"({node.x:.0f}, {node.y:.0f})",
        )
    console.print(table)

    if graph.edges:
        edges = Table(title="Edges", show_header=True)
        edges.add_column("From", justify="right")
        edges.add_column("To", justify="right")
        edges.add_column("Kind", style="cyan")
        edges.add_column("Error path")
        for edge in graph.edges:
            edges.add_row(
                str(edge.source_id),
                str(edge.target_id),
                edge.edge_kind.value,
                "yes" if edge.on_error_path else "",
            )
        console.print(edges)

    for issue in graph.issues:
        feature = f" [{issue.feature}]" if issue.feature else ""
        console.print(f"[yellow]! {issue.kind}{feature}:[/yellow] {issue.detail}", markup=True, highlight=False)


@app.command("build")
def build(
    source: Optional[str] = typer.Argument(None, help="Build log to read ('-' or omitted for stdin)."),
    build_dir: Path = typer.Option(Path("."), "--build-dir", "-b", help="Build directory (compile_commands.json, cache)."),
    project_root: Optional[Path] = typer.Option(None, "--project-root", "-r", help="Root for relative diagnostic paths."),
    warnings: bool = typer.Option(False, "--warnings", "-w", help="Expand warnings as well as errors."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Do not read or write the analysis cache."),
    cache_path: Optional[Path] = typer.Option(None, "--cache-path", help="Explicit cache database path."),
    flags: Optional[List[str]] = typer.Option(None, "--flag", "-f", help="Extra compiler flag (repeatable)."),
    seed: int = typer.Option(0, "--seed", help="Seed for force-directed layout."),
    output_format: str = typer.Option("table", "--format", help="Output format: table, json, dot."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write json/dot output to a file."),
):
    """Build a relay graph from compiler diagnostics."""
    if output_format not in OUTPUT_FORMATS:
        raise typer.BadParameter(f"Unknown format '{output_format}'. Choose from: {', '.join(OUTPUT_FORMATS)}.")

    text = _read_input(source)
    analysis = load_analysis_settings()
    context = BuildContext(
        build_dir=build_dir.resolve(),
        project_root=project_root.resolve() if project_root else None,
        extra_flags=tuple(analysis["extra_flags"]) + tuple(flags or ()),
        include_warnings=warnings or analysis["include_warnings"],
        use_cache=not no_cache,
        cache_path=cache_path,
        layout_seed=seed,
    )
    orchestrator = Orchestrator(context, layout=GraphLayout(load_layout_settings()))

    try:
        graph = orchestrator.build_graph(text)
    except RelayGraphError as exc:
        console.print(f"[red]Error:[/red] {exc}", highlight=False)
        raise typer.Exit(code=2)

    if not graph.nodes:
        console.print("[yellow]No diagnostics found.[/yellow]")
        raise typer.Exit(code=1)

    if output_format == "table":
        _print_graph(graph)
        return

    doc = export_json(graph, output) if output_format == "json" else export_dot(graph, output)
    if output is not None:
        typer.echo(f"Wrote {output_format} graph to {output}")
    else:
        typer.echo(doc)


@app.command("asm")
def asm(
    object_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Object file to disassemble."),
    source_file: str = typer.Option(..., "--source", "-s", help="Source file (suffix match)."),
    line: int = typer.Option(..., "--line", "-l", help="Source line number."),
    build_dir: Path = typer.Option(Path("."), "--build-dir", "-b", help="Build directory holding the cache."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Do not read or write the analysis cache."),
):
    """Show the instructions generated for one source line."""
    analysis = load_analysis_settings()
    context = BuildContext(build_dir=build_dir.resolve(), use_cache=not no_cache)
    orchestrator = Orchestrator(context, objdump=analysis["objdump"])

    try:
        lines = orchestrator.assembly_for(object_file, source_file, line)
    except (BackendUnavailableError, AnalysisError) as exc:
        console.print(f"[red]Error:[/red] {exc}", highlight=False)
        raise typer.Exit(code=1)

    if not lines:
        typer.echo(f"No instructions for {source_file}:{line}.")
        raise typer.Exit(code=0)

    table = Table(title=f"{source_file}:{line}", show_header=True)
    table.add_column("Address", style="dim", justify="right")
    table.add_column("Instruction")
    for al in lines:
        table.add_row(f"{al.address:#x}", al.instruction)
    console.print(table)


@cache_app.command("stats")
def cache_stats(
    build_dir: Path = typer.Option(Path("."), "--build-dir", "-b", help="Build directory holding the cache."),
    cache_path: Optional[Path] = typer.Option(None, "--cache-path", help="Explicit cache database path."),
):
    """Show record counts per kind."""
    cache = _cache_for(build_dir, cache_path)
    if not cache.db_path.exists():
        typer.echo(f"No cache at {cache.db_path}.")
        raise typer.Exit(code=0)
    try:
        with cache:
            counts = {kind: cache.record_count(kind) for kind in RECORD_KINDS}
    except (CacheUnavailableError, CacheStorageError) as exc:
        console.print(f"[red]Error:[/red] {exc.message}", highlight=False)
        raise typer.Exit(code=1)

    table = Table(title=str(cache.db_path), show_header=True)
    table.add_column("Kind", style="cyan")
    table.add_column("Records", justify="right")
    for kind, count in counts.items():
        table.add_row(kind, str(count))
    table.add_row("total", str(sum(counts.values())))
    console.print(table)


@cache_app.command("clear")
def cache_clear(
    build_dir: Path = typer.Option(Path("."), "--build-dir", "-b", help="Build directory holding the cache."),
    cache_path: Optional[Path] = typer.Option(None, "--cache-path", help="Explicit cache database path."),
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="Only clear one kind: ast, asm, layout."),
):
    """Delete cached records."""
    if kind is not None and kind not in RECORD_KINDS:
        raise typer.BadParameter(f"Unknown kind '{kind}'. Choose from: {', '.join(RECORD_KINDS)}.")
    cache = _cache_for(build_dir, cache_path)
    if not cache.db_path.exists():
        typer.echo(f"No cache at {cache.db_path}.")
        raise typer.Exit(code=0)
    try:
        with cache:
            removed = cache.record_count(kind)
            cache.clear(kind)
    except (CacheUnavailableError, CacheStorageError) as exc:
        console.print(f"[red]Error:[/red] {exc.message}", highlight=False)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {removed} cached record(s) from {cache.db_path}.")


if __name__ == "__main__":
    app()
