"""Command line interface.

Commands:
    - run: Start an entry file, print its component tree and keep it
      running, optionally hot-reloading on file changes
    - tree: Start an entry file, print its component tree and stop
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.tree import Tree

from reloadkit import __version__
from reloadkit.config import RuntimeConfig
from reloadkit.errors import ReloadKitError
from reloadkit.graph.node import ComponentNode
from reloadkit.loader import ModuleLoader
from reloadkit.logging import configure_logging
from reloadkit.runtime import Runtime
from reloadkit.watcher import ReloadTrigger

app = typer.Typer(
    name="reloadkit",
    help="Component lifecycle and hot-reload runtime",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


STATE_COLORS = {
    "unloaded": "dim",
    "loading": "cyan",
    "mounted": "blue",
    "started": "green",
    "reloading": "yellow",
    "stopping": "yellow",
    "disposed": "red",
}


def _format_state(state: str) -> str:
    """Format a component state with color."""
    color = STATE_COLORS.get(state, "white")
    return f"[{color}]{state}[/{color}]"


def build_rich_tree(data: dict[str, Any], tree: Tree | None = None) -> Tree:
    """Build a Rich tree from :meth:`ComponentNode.to_dict` output."""
    label = f"[bold]{data['name']}[/bold] {_format_state(data['state'])}"
    if data.get("ref"):
        label += " [dim](ref)[/dim]"
    elif data.get("refs"):
        names = ", ".join(Path(r).stem for r in data["refs"])
        label += f" [dim]<- refs: {names}[/dim]"

    branch = tree.add(label) if tree is not None else Tree(label)
    for child in data.get("children", []):
        build_rich_tree(child, branch)
    return branch


def _load_config(config_file: Optional[Path], **overrides: Any) -> RuntimeConfig:
    # Precedence: defaults, file, environment, command line.
    base = RuntimeConfig.from_file(config_file) if config_file is not None else None
    config = RuntimeConfig.from_environment(base)
    return config.merge({k: v for k, v in overrides.items() if v is not None})


async def _start_entry(runtime: Runtime, entry: Path) -> ComponentNode:
    return await runtime.load(str(entry.resolve()))


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"reloadkit {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
) -> None:
    """Component lifecycle and hot-reload runtime."""


@app.command("tree")
def tree_command(
    entry: Annotated[Path, typer.Argument(help="Entry module file")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="YAML, JSON or TOML config file"),
    ] = None,
) -> None:
    """Start ENTRY, print its component tree and stop it."""
    if not entry.is_file():
        err_console.print(f"[red]Entry file not found: {entry}[/red]")
        raise typer.Exit(1)

    async def _tree() -> dict[str, Any]:
        config = _load_config(config_file)
        runtime = Runtime(ModuleLoader(entry.parent), config=config)
        async with runtime:
            root = await _start_entry(runtime, entry)
            return root.to_dict()

    try:
        data = asyncio.run(_tree())
    except ReloadKitError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return

    console.print(build_rich_tree(data))


@app.command("run")
def run_command(
    entry: Annotated[Path, typer.Argument(help="Entry module file")],
    watch: Annotated[
        bool,
        typer.Option("--watch", "-w", help="Reload components when their files change"),
    ] = False,
    poll_interval: Annotated[
        Optional[float],
        typer.Option("--poll-interval", help="Seconds between file checks"),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", "-l", help="Logging level"),
    ] = None,
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="YAML, JSON or TOML config file"),
    ] = None,
) -> None:
    """Start ENTRY and keep it running until interrupted."""
    if not entry.is_file():
        err_console.print(f"[red]Entry file not found: {entry}[/red]")
        raise typer.Exit(1)

    try:
        config = _load_config(config_file, poll_interval=poll_interval, log_level=log_level)
    except ReloadKitError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    configure_logging(level=config.log_level)

    try:
        asyncio.run(_serve(entry, config, watch))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")
    except ReloadKitError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


async def _serve(entry: Path, config: RuntimeConfig, watch: bool) -> None:
    runtime = Runtime(ModuleLoader(entry.parent), config=config)
    async with runtime:
        root = await _start_entry(runtime, entry)
        console.print(build_rich_tree(root.to_dict()))

        trigger: ReloadTrigger | None = None
        if watch:
            trigger = ReloadTrigger(runtime)
            await trigger.watch(entry.parent.resolve())
            console.print(f"[dim]Watching {entry.parent.resolve()} for changes[/dim]")

        try:
            await asyncio.Event().wait()
        finally:
            if trigger is not None:
                trigger.stop()


if __name__ == "__main__":
    app()
