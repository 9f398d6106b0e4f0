"""Command line interface for qgrep-indexer."""

import asyncio
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import click
from rich.console import Console
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import Config, ConfigManager
from .errors import QgrepIndexerError
from .services.qgrep_service import CommandSummary, QgrepService
from .services.workspace_state import WorkspaceRoot, is_path_inside_root
from .utils.log_path_helper import attach_file_log, detach_file_log, get_debug_log_path

logger = logging.getLogger(__name__)

console = Console()

T = TypeVar("T")


def run_async(coro):
    """
    Run an async coroutine, handling both new event loops and existing ones.

    Commands normally run with no loop active; under some test harnesses a
    loop is already running, so the coroutine gets its own loop in a thread.
    """
    try:
        asyncio.get_running_loop()

        result = None
        exception = None

        def run_in_new_loop():
            nonlocal result, exception
            try:
                new_loop = asyncio.new_event_loop()
                asyncio.set_event_loop(new_loop)
                try:
                    result = new_loop.run_until_complete(coro)
                finally:
                    new_loop.close()
            except Exception as e:
                exception = e

        thread = threading.Thread(target=run_in_new_loop)
        thread.start()
        thread.join()

        if exception:
            raise exception
        return result

    except RuntimeError:
        return asyncio.run(coro)


def _print_error(message: str) -> None:
    console.print(f"❌ {message}", style="red", markup=False, highlight=False)


def _print_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _workspace_roots(paths: Tuple[str, ...]) -> List[WorkspaceRoot]:
    roots = [WorkspaceRoot.from_path(p) for p in paths] or [WorkspaceRoot.from_path(Path.cwd())]
    unique: Dict[str, WorkspaceRoot] = {}
    for root in roots:
        unique.setdefault(str(root.path), root)
    return list(unique.values())


def _load_config(ctx) -> Config:
    config_manager: ConfigManager = ctx.obj["config_manager"]
    try:
        return config_manager.get_config()
    except ValueError as e:
        _print_error(str(e))
        sys.exit(1)


async def _with_service(
    config: Config,
    roots: List[WorkspaceRoot],
    action: Callable[[QgrepService], Awaitable[T]],
) -> T:
    service = QgrepService(config)
    await service.start(roots, watch=False)
    try:
        return await action(service)
    finally:
        await service.stop()


def _execute(ctx, action: Callable[[QgrepService], Awaitable[T]]) -> T:
    """Run one service action, reporting qgrep-indexer errors and exiting 1."""
    config = _load_config(ctx)
    try:
        return run_async(_with_service(config, ctx.obj["workspaces"], action))
    except QgrepIndexerError as e:
        _print_error(str(e))
        sys.exit(1)


def _report_summary(ctx, summary: CommandSummary) -> None:
    if ctx.obj["json"]:
        _print_json(summary.to_dict())
    else:
        style = "green" if not summary.failures else "yellow"
        icon = "✅" if not summary.failures else "⚠️"
        console.print(f"{icon} {summary.message}", style=style, markup=False)
        for failure in summary.failures:
            console.print(f"  ❌ {failure}", style="red", markup=False, highlight=False)
        for cancelled in summary.cancelled:
            console.print(f"  ⏹️  {cancelled}", style="yellow", markup=False, highlight=False)
    if summary.failures:
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.option("--config", "-c", type=click.Path(exists=False), help="Config file path")
@click.option(
    "--workspace",
    "-w",
    "workspaces",
    multiple=True,
    type=click.Path(exists=True, file_okay=False),
    help="Workspace root to index (repeatable, default: current directory)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable JSON")
@click.version_option(version=__version__, prog_name="qgrep-indexer")
@click.pass_context
def cli(
    ctx,
    config: Optional[str],
    workspaces: Tuple[str, ...],
    verbose: bool,
    as_json: bool,
):
    """Per-workspace qgrep indexes with regex and file search.

    \b
    GETTING STARTED:
      1. qgrep-indexer init              # Create and build the index
      2. qgrep-indexer search "TODO"     # Regex search
      3. qgrep-indexer files -m name cfg # File search
      4. qgrep-indexer watch             # Keep indexes current

    \b
    Several roots can be indexed together:
      qgrep-indexer -w ./engine -w ./tools search "LoadTexture"
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["json"] = as_json

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    if config:
        ctx.obj["config_manager"] = ConfigManager(Path(config))
    else:
        ctx.obj["config_manager"] = ConfigManager.create_with_backtrack()
    ctx.obj["workspaces"] = _workspace_roots(workspaces)

    if verbose and not as_json:
        console.print(
            f"📁 Config: {ctx.obj['config_manager'].config_path}", style="dim", markup=False
        )


@cli.command()
@click.pass_context
def init(ctx):
    """Create (if needed) and update the index of every workspace root."""
    _report_summary(ctx, _execute(ctx, lambda service: service.init_all()))


@cli.command()
@click.pass_context
def update(ctx):
    """Incrementally update every initialized index."""
    _report_summary(ctx, _execute(ctx, lambda service: service.update_all()))


@cli.command()
@click.pass_context
def rebuild(ctx):
    """Rebuild every initialized index from scratch."""
    _report_summary(ctx, _execute(ctx, lambda service: service.rebuild_all()))


@cli.command()
@click.pass_context
def clear(ctx):
    """Delete the index directory of every initialized root."""
    _report_summary(ctx, _execute(ctx, lambda service: service.clear_all()))


def _query_options(func):
    func = click.option(
        "--case",
        "case_mode",
        type=click.Choice(["smart", "sensitive", "insensitive"]),
        default="smart",
        help="Case matching (default: smart - any uppercase letter makes it sensitive)",
    )(func)
    func = click.option(
        "--max-results", "-n", type=int, default=None, help="Maximum results to return"
    )(func)
    func = click.option(
        "--path",
        "-p",
        "search_path",
        default=None,
        help="Limit to a path: absolute, relative, Workspace/..., or a glob",
    )(func)
    return func


@cli.command()
@click.argument("query")
@_query_options
@click.pass_context
def search(ctx, query: str, search_path: Optional[str], max_results: Optional[int], case_mode: str):
    """Regex search over indexed file contents."""
    request = {
        "query": query,
        "searchPath": search_path,
        "maxResults": max_results,
        "caseMode": case_mode,
    }
    result = _execute(ctx, lambda service: service.search(request))
    if ctx.obj["json"]:
        _print_json(result)
        return

    for match in result["matches"]:
        line = Text()
        line.append(match["workspacePath"], style="cyan")
        line.append(":")
        line.append(str(match["line"]), style="green")
        line.append(f": {match['preview']}")
        console.print(line, highlight=False)
    _print_counts(result, "match", "matches")


@cli.command()
@click.argument("query")
@click.option(
    "--mode",
    "-m",
    type=click.Choice(["path", "name", "components", "fuzzy"]),
    default="path",
    help="path: regex on full path, name: regex on file name, "
    "components: literal path parts, fuzzy: fuzzy path match",
)
@_query_options
@click.pass_context
def files(
    ctx,
    query: str,
    mode: str,
    search_path: Optional[str],
    max_results: Optional[int],
    case_mode: str,
):
    """Search indexed file names."""
    request = {
        "query": query,
        "mode": mode,
        "searchPath": search_path,
        "maxResults": max_results,
        "caseMode": case_mode,
    }
    result = _execute(ctx, lambda service: service.search_files(request))
    if ctx.obj["json"]:
        _print_json(result)
        return

    for item in result["files"]:
        console.print(item["workspacePath"], style="cyan", markup=False, highlight=False)
    _print_counts(result, "file", "files")


def _print_counts(result: Dict[str, Any], singular: str, plural: str) -> None:
    noun = singular if result["totalAvailable"] == 1 else plural
    line = f"{result['count']} of {result['totalAvailable']} {noun}"
    if result["capped"]:
        line += " (capped)"
    if "requestedMaxResults" in result:
        line += (
            f" - maxResults {result['requestedMaxResults']} clamped to {result['maxResults']}"
        )
    console.print(line, style="dim", markup=False)


@cli.command()
@click.pass_context
def status(ctx):
    """Show index status for every workspace root."""

    async def collect(service: QgrepService) -> Dict[str, Any]:
        return service.get_status_summary()

    summary = _execute(ctx, collect)
    if ctx.obj["json"]:
        _print_json(summary)
        return

    table = Table(title="🔍 Qgrep Index Status")
    table.add_column("Workspace", style="cyan")
    table.add_column("Phase", style="magenta")
    table.add_column("Watching")
    table.add_column("Files", justify="right", style="green")
    table.add_column("Progress", justify="right", style="yellow")

    for ws in summary["workspaceStatuses"]:
        table.add_row(
            Text(ws["workspaceName"]),
            ws["phase"],
            "yes" if ws["watching"] else "no",
            _format_files(ws),
            _format_percent(ws),
        )
    aggregate = summary["aggregate"]
    if summary["totalWorkspaces"] > 1:
        table.add_row("[bold]All[/bold]", "", "", _format_files(aggregate), _format_percent(aggregate))
    console.print(table)

    binary_style = "green" if summary["binaryAvailable"] else "red"
    binary_state = "found" if summary["binaryAvailable"] else "missing"
    console.print(
        f"qgrep binary: {summary['binaryPath']} ({binary_state})",
        style=binary_style,
        markup=False,
    )


def _format_files(progress: Dict[str, Any]) -> str:
    indexed = progress.get("indexedFiles")
    total = progress.get("totalFiles")
    if indexed is None:
        return "-"
    if total is None:
        return str(indexed)
    return f"{indexed}/{total}"


def _format_percent(progress: Dict[str, Any]) -> str:
    percent = progress.get("progressPercent")
    if percent is None:
        return "unknown"
    suffix = " (indexing)" if progress.get("indexing") else ""
    return f"{percent}%{suffix}"


@cli.command()
@click.option(
    "--init/--no-init",
    "init_first",
    default=False,
    help="Initialize uninitialized roots before watching",
)
@click.pass_context
def watch(ctx, init_first: bool):
    """Keep indexes current until interrupted (Ctrl+C)."""
    config_manager: ConfigManager = ctx.obj["config_manager"]
    config = _load_config(ctx)
    roots: List[WorkspaceRoot] = ctx.obj["workspaces"]

    log_path = get_debug_log_path(config_manager.config_path.parent, "watch.log")
    handler = attach_file_log(log_path)
    console.print(f"👀 Watching {len(roots)} workspace(s), log: {log_path}", style="green", markup=False)
    console.print("Press Ctrl+C to stop", style="dim")
    try:
        run_async(_watch_until_interrupted(config, config_manager, roots, init_first))
    except KeyboardInterrupt:
        console.print("\n👋 Watch stopped", style="yellow")
    except QgrepIndexerError as e:
        _print_error(str(e))
        sys.exit(1)
    finally:
        detach_file_log(handler)


async def _watch_until_interrupted(
    config: Config,
    config_manager: ConfigManager,
    roots: List[WorkspaceRoot],
    init_first: bool,
) -> None:
    from .services.workspace_watch_handler import WorkspaceWatchHandler

    service = QgrepService(config)
    await service.start(roots)
    settings_path = config_manager.config_path

    def reload_settings() -> None:
        reloaded = ConfigManager(settings_path).load()
        if reloaded.ignore_patterns != service.ignore_patterns:
            logger.info("Ignore patterns changed, resyncing qgrep configs")
            service.set_ignore_patterns(reloaded.ignore_patterns)

    handler = WorkspaceWatchHandler(service, settings_path, reload_settings)
    settings_dir = settings_path.parent
    extra_dirs = (
        []
        if any(is_path_inside_root(root.path, settings_dir) for root in roots)
        else [settings_dir]
    )
    handler.start_watching(roots, extra_dirs)
    try:
        if init_first:
            pending = [state for state in service.store.all() if not state.is_initialized]
            if pending:
                summary = await service.init_all()
                console.print(summary.message, style="dim", markup=False)
        while True:
            await asyncio.sleep(3600)
    finally:
        handler.stop_watching()
        await service.stop()
        logger.info(f"Watch statistics: {handler.get_statistics()}")


@cli.command("config")
@click.option("--ignore", "ignore_globs", multiple=True, help="Add an enabled ignore glob")
@click.option("--unignore", "unignore_globs", multiple=True, help="Remove an ignore glob")
@click.option("--binary", "binary_path", default=None, help="Set the qgrep binary path")
@click.pass_context
def config_command(
    ctx,
    ignore_globs: Tuple[str, ...],
    unignore_globs: Tuple[str, ...],
    binary_path: Optional[str],
):
    """Show (or edit) the effective configuration."""
    config_manager: ConfigManager = ctx.obj["config_manager"]
    config = _load_config(ctx)

    if ignore_globs or unignore_globs or binary_path:
        patterns = dict(config.ignore_patterns)
        for glob in ignore_globs:
            patterns[glob] = True
        for glob in unignore_globs:
            patterns.pop(glob, None)
        updates: Dict[str, Any] = {"ignore_patterns": patterns}
        if binary_path:
            updates["binary_path"] = binary_path
        try:
            config = config_manager.update_config(**updates)
        except ValueError as e:
            _print_error(f"Invalid configuration: {e}")
            sys.exit(1)
        if not ctx.obj["json"]:
            console.print(f"✅ Saved {config_manager.config_path}", style="green", markup=False)

    data = config.model_dump(mode="json")
    if ctx.obj["json"]:
        _print_json({"configPath": str(config_manager.config_path), "config": data})
        return
    console.print(f"Config file: {config_manager.config_path}", style="dim", markup=False)
    console.print_json(json.dumps(data))


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
