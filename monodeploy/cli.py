"""Thin CLI wrapper for monodeploy.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from monodeploy import __version__
from monodeploy.config import Settings, get_settings, print_settings_json
from monodeploy.types import ExitCode

if TYPE_CHECKING:
    from monodeploy.builds.cache import SqlCacheStore
    from monodeploy.graph.loader import Workspace
    from monodeploy.graph.models import TargetGraph
    from monodeploy.runs.service import RunSummary

app = typer.Typer(
    name="monodeploy",
    help="Monorepo build-and-deploy orchestrator - resolve, build and apply targets",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

# Overrides from the global options, applied on top of env/defaults
_overrides: dict[str, Any] = {}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"monodeploy version {__version__}")
        raise typer.Exit()


def _configure_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _settings() -> Settings:
    """Return settings with CLI overrides applied."""
    settings = get_settings()
    if _overrides:
        settings = settings.model_copy(update=_overrides)
    return settings


def _print_json(data: Any) -> None:
    """Print JSON to stdout without rich markup or wrapping."""
    console.print(
        json.dumps(data, indent=2), markup=False, highlight=False, soft_wrap=True
    )


def _fail(message: str, code: ExitCode) -> typer.Exit:
    """Print an error and return the Exit to raise."""
    console.print(f"[red]Error: {message}[/red]")
    return typer.Exit(code=code.value)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    workspace: Annotated[
        Path | None,
        typer.Option("--workspace", "-w", help="Workspace root directory"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (DEBUG, INFO, ...)"),
    ] = None,
) -> None:
    """Monorepo build-and-deploy orchestrator - resolve, build and apply targets."""
    _overrides.clear()
    if workspace is not None:
        _overrides["workspace_root"] = workspace
    if log_level is not None:
        level = log_level.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise _fail(f"Invalid log level: {log_level}", ExitCode.CONFIGURATION_ERROR)
        _overrides["log_level"] = level
    _configure_logging(_settings().log_level)


def _load(settings: Settings) -> "tuple[Workspace, TargetGraph]":
    """Load the workspace and its target graph, exiting on declaration errors."""
    from monodeploy.graph.loader import ConfigurationError, load_graph, load_workspace
    from monodeploy.graph.models import DuplicateTargetError, UnknownTargetError

    root = settings.workspace_root
    try:
        workspace = load_workspace(root, settings.workspace_file_name)
        graph = load_graph(root, settings.build_file_name, workspace)
    except (ConfigurationError, DuplicateTargetError, UnknownTargetError) as e:
        raise _fail(str(e), ExitCode.CONFIGURATION_ERROR) from None
    return workspace, graph


def _labels(targets: list[str]) -> list[str]:
    """Normalize command-line labels; bare names refer to the root package."""
    from monodeploy.graph.labels import LabelError, normalize_label

    try:
        return [normalize_label(t, "") for t in targets]
    except LabelError as e:
        raise _fail(str(e), ExitCode.CONFIGURATION_ERROR) from None


def _open_cache(settings: Settings, read_only: bool = False) -> "SqlCacheStore":
    """Open the cache store, creating its tables if needed.

    With read_only, nothing is created: a database that does not exist yet
    is replaced by an empty in-memory store.
    """
    from monodeploy.builds.cache import SqlCacheStore
    from monodeploy.db import (
        create_all_tables,
        get_engine,
        get_session_factory,
        has_cache_tables,
        sqlite_file,
    )

    if read_only:
        database = sqlite_file(settings.db_url)
        if database is None or database.exists():
            engine = get_engine(settings.db_url, create_dirs=False)
            if has_cache_tables(engine):
                return SqlCacheStore(get_session_factory(engine))
        engine = get_engine("sqlite://")
    else:
        engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return SqlCacheStore(get_session_factory(engine))


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _settings()
    if json_output:
        console.print(
            print_settings_json(settings), markup=False, highlight=False, soft_wrap=True
        )
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Workspace:[/bold]")
        console.print(f"  Root:                {settings.workspace_root}")
        console.print(f"  Build file name:     {settings.build_file_name}")
        console.print(f"  Workspace file name: {settings.workspace_file_name}")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Backends:[/bold]")
        console.print(f"  Builder:             {settings.builder}")
        console.print(f"  Push images:         {settings.push_images}")
        console.print(f"  Applier:             {settings.applier}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Apply timeout:       {settings.apply_timeout}")


@app.command()
def targets(
    kind: Annotated[
        str | None,
        typer.Option("--kind", "-k", help="Filter by kind (image, manifest, group)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List declared targets."""
    from monodeploy.types import TargetKind

    kind_filter: TargetKind | None = None
    if kind is not None:
        try:
            kind_filter = TargetKind(kind)
        except ValueError:
            console.print(f"[red]Invalid kind: {kind}[/red]")
            console.print("Valid values: image, manifest, group")
            raise typer.Exit(code=ExitCode.CONFIGURATION_ERROR.value) from None

    _, graph = _load(_settings())
    selected = [
        graph.get(tid)
        for tid in graph.ids()
        if kind_filter is None or graph.get(tid).kind is kind_filter
    ]

    if json_output:
        _print_json(
            [
                {
                    "id": t.id,
                    "kind": t.kind.value,
                    "deps": list(t.deps),
                    "cluster": t.cluster,
                    "fingerprint": t.fingerprint,
                }
                for t in selected
            ]
        )
        return

    if not selected:
        console.print("[yellow]No targets found[/yellow]")
        return
    console.print(f"[bold]Found {len(selected)} target(s):[/bold]")
    for t in selected:
        cluster = f" (cluster: {t.cluster})" if t.cluster else ""
        console.print(f"  {t.id}  [dim]{t.kind.value}{cluster}[/dim]", highlight=False)


@app.command()
def resolve(
    target_labels: Annotated[
        list[str] | None,
        typer.Argument(help="Targets to resolve (default: all)", show_default=False),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Print build order and staleness without side effects."""
    from monodeploy.graph.models import UnknownTargetError
    from monodeploy.resolver import CycleError
    from monodeploy.resolver import resolve as resolve_graph

    settings = _settings()
    _, graph = _load(settings)
    try:
        if target_labels:
            graph = graph.subgraph(_labels(target_labels))
        resolution = resolve_graph(graph, _open_cache(settings, read_only=True))
    except UnknownTargetError as e:
        raise _fail(str(e), ExitCode.CONFIGURATION_ERROR) from None
    except CycleError as e:
        raise _fail(str(e), ExitCode.CYCLE) from None

    if json_output:
        _print_json({"order": resolution.order, "stale": resolution.stale})
        return

    stale = set(resolution.stale)
    console.print(
        f"[bold]{len(resolution.order)} target(s), {len(stale)} stale:[/bold]"
    )
    for index, tid in enumerate(resolution.order, start=1):
        if tid in stale:
            marker = "[yellow]stale[/yellow]"
        else:
            marker = "[green]up to date[/green]"
        console.print(f"  {index:3d}. {tid}  {marker}", highlight=False)


def _print_summary(summary: "RunSummary", json_output: bool) -> None:
    """Print a run summary and exit with its exit code."""
    if json_output:
        _print_json(summary.model_dump(mode="json"))
    else:
        styles = {
            "succeeded": "green",
            "up_to_date": "dim",
            "failed": "red",
            "skipped": "yellow",
        }
        for outcome in summary.outcomes:
            status = outcome.status.value
            style = styles[status]
            line = f"  [{style}]{status:<10}[/{style}] {outcome.target_id}"
            if outcome.reference:
                line += f"  {outcome.reference}"
            if outcome.error:
                line += f"\n             [red]{outcome.error}[/red]"
            if outcome.skipped_because:
                line += f"  (because {outcome.skipped_because} failed)"
            console.print(line, highlight=False)

        for target_id, rendered in summary.rendered.items():
            console.print(f"[bold]# {target_id}[/bold]")
            console.print(rendered, markup=False, highlight=False, soft_wrap=True)

        console.print()
        verdict = "[DRY RUN] " if summary.dry_run else ""
        console.print(
            f"[bold]{verdict}{summary.succeeded} succeeded, {summary.failed} failed, "
            f"{summary.skipped} skipped[/bold]"
        )
        if summary.partial:
            console.print("[yellow]Run completed partially[/yellow]")

    if summary.exit_code != ExitCode.OK.value:
        raise typer.Exit(code=summary.exit_code)


def _run(
    target_labels: list[str],
    apply: bool,
    force: bool,
    dry_run: bool,
    json_output: bool,
) -> None:
    """Shared implementation of the build and apply commands."""
    from monodeploy.apply.engine import get_apply_engine
    from monodeploy.builds.builder import get_builder
    from monodeploy.builds.service import ImageBuildAdapter
    from monodeploy.graph.models import UnknownTargetError
    from monodeploy.resolver import CycleError
    from monodeploy.runs.service import execute_run

    settings = _settings()
    workspace, graph = _load(settings)
    labels = _labels(target_labels)

    adapter = ImageBuildAdapter(get_builder(settings), settings.cache_dir)
    engine = get_apply_engine(settings, workspace) if apply and not dry_run else None

    try:
        summary = execute_run(
            graph,
            _open_cache(settings),
            adapter,
            engine=engine,
            targets=labels,
            apply=apply,
            force=force,
            dry_run=dry_run,
            max_workers=settings.max_concurrent_builds,
        )
    except UnknownTargetError as e:
        raise _fail(str(e), ExitCode.CONFIGURATION_ERROR) from None
    except CycleError as e:
        raise _fail(str(e), ExitCode.CYCLE) from None

    _print_summary(summary, json_output)


@app.command()
def build(
    target: Annotated[str, typer.Argument(help="Target whose images to build")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Force rebuild even if cached"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the stale images in a target's dependency closure."""
    _run([target], apply=False, force=force, dry_run=False, json_output=json_output)


@app.command("apply")
def apply_cmd(
    target: Annotated[str, typer.Argument(help="Target to build and apply")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Rebuild and re-apply even if cached"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Print bound manifests instead of applying"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build dependencies, then bind and apply manifests in order."""
    _run([target], apply=True, force=force, dry_run=dry_run, json_output=json_output)


cache_app = typer.Typer(help="Inspect and clear the build cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cache entries."""
    entries = _open_cache(_settings(), read_only=True).entries()

    if json_output:
        _print_json(
            [
                {
                    "target_id": e.target_id,
                    "fingerprint": e.fingerprint,
                    "reference": e.reference,
                    "built_at": e.built_at.isoformat(),
                    "success": e.success,
                }
                for e in entries
            ]
        )
        return

    if not entries:
        console.print("[yellow]Cache is empty[/yellow]")
        return
    noun = "entry" if len(entries) == 1 else "entries"
    console.print(f"[bold]{len(entries)} cache {noun}:[/bold]")
    for e in entries:
        console.print(f"  {e.target_id}  {e.reference}", highlight=False)


@cache_app.command("clear")
def cache_clear(
    target: Annotated[
        str | None,
        typer.Argument(help="Target to invalidate (default: all)", show_default=False),
    ] = None,
) -> None:
    """Drop cache entries, forcing the next run to rebuild."""
    store = _open_cache(_settings())
    if target is None:
        count = store.clear()
        console.print(f"Cleared {count} cache entr{'y' if count == 1 else 'ies'}")
        return

    label = _labels([target])[0]
    if store.invalidate(label):
        console.print(f"Invalidated {label}")
    else:
        console.print(f"[yellow]No cache entry for {label}[/yellow]")


if __name__ == "__main__":
    app()
