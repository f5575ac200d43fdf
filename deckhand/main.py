"""Command-line entry point for Deckhand."""

import asyncio
import json
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from deckhand.agent import Agent
from deckhand.config import Config, set_config
from deckhand.events import AgentResponse, TextItem, ToolResultItem, ToolUseItem
from deckhand.exceptions import ConfigurationError, DeckhandError
from deckhand.logging import configure_logging, get_logger
from deckhand.tools.registry import build_default_registry

log = get_logger(__name__)
console = Console()

app = typer.Typer(help="Deckhand - an agent that runs docker, file, git and deploy tools")


def _load_config(config: str, verbose: bool) -> Config:
    try:
        cfg = Config.from_yaml(Path(config)) if config else Config.load()
    except ConfigurationError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=2)

    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


def _print_response(event: AgentResponse) -> None:
    for item in event.content:
        if isinstance(item, TextItem):
            console.print(item.text, markup=False)
        elif isinstance(item, ToolUseItem):
            console.print(f"> {item.name} {json.dumps(item.input, ensure_ascii=False)}", style="cyan", markup=False)
        elif isinstance(item, ToolResultItem):
            console.print(item.content, style="red" if item.is_error else "dim", markup=False)


async def _run_instruction(instruction: str, cfg: Config) -> int:
    registry = build_default_registry(cfg)
    agent = Agent(tools=registry, max_steps=cfg.agent.max_steps)
    try:
        async for event in agent.run(instruction):
            _print_response(event)
    except DeckhandError as e:
        console.print(f"Error: {e}", style="red", markup=False)
        return 1
    finally:
        await agent.provider.close()
    console.print(f"[green]Done in {agent.steps_taken} step(s)[/green]")
    return 0


@app.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    host: str = typer.Option("", "--host", help="Override bind host"),
    port: int = typer.Option(0, "--port", help="Override bind port"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start the websocket server."""
    from deckhand.web_server import run_web_server

    cfg = _load_config(config, verbose)
    if host:
        cfg.web.host = host
    if port:
        cfg.web.port = port
    run_web_server(cfg)


@app.command()
def run(
    instruction: str = typer.Argument(..., help="Natural-language instruction"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    max_steps: int = typer.Option(0, "--max-steps", help="Override the step budget"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one instruction locally and print the streamed events."""
    cfg = _load_config(config, verbose)
    if max_steps > 0:
        cfg.agent.max_steps = max_steps
    try:
        code = asyncio.run(_run_instruction(instruction, cfg))
    except KeyboardInterrupt:
        log.info("Interrupted")
        code = 130
    sys.exit(code)


@app.command()
def tools(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List the registered tools."""
    cfg = _load_config(config, False)
    registry = build_default_registry(cfg)

    table = Table(title="Tools", show_header=True, header_style="bold cyan")
    table.add_column("Name")
    table.add_column("Description")
    table.add_column("Timeout", justify="right")
    for name in registry.list_tools():
        tool = registry.get(name)
        table.add_row(tool.name, tool.description, f"{tool.timeout_seconds:g}s")
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from deckhand import __version__

    console.print(f"Deckhand v{__version__}")


if __name__ == "__main__":
    app()
