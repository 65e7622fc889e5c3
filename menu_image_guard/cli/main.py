"""
CLI interface for the menu image pipeline.

Provides command-line access to schema setup, group registration, image
generation and the budget ledger.
"""

import logging
import sys
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from menu_image_guard.config.loader import PipelineConfig, load_pipeline_config
from menu_image_guard.core.budget import BudgetLedger
from menu_image_guard.core.errors import PipelineError
from menu_image_guard.core.normalizer import normalize_title
from menu_image_guard.core.pipeline import GenerationRequest, build_pipeline
from menu_image_guard.storage.models import Group, GroupMember
from menu_image_guard.storage.repository import (
    BudgetRepository,
    CacheRepository,
    GroupRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_config: Optional[PipelineConfig] = None


def _get_config() -> PipelineConfig:
    return _config if _config is not None else PipelineConfig.default()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML pipeline configuration"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log pipeline progress to stderr"
    ),
):
    """Menu image pipeline CLI."""
    global _config
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        _config = load_pipeline_config(config_path) if config_path else None
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if ctx.invoked_subcommand is None:
        console.print("Menu Image Guard - Use --help to see available commands")


@app.command()
def init():
    """Initialize the pipeline database."""
    try:
        initialize_schema(_get_config().db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-group")
def add_group(
    group_id: str = typer.Argument(..., help="Group id"),
    name: str = typer.Option(..., "--name", "-n", help="Group display name"),
    members: List[str] = typer.Option(
        [],
        "--member",
        "-m",
        help="Member display name (repeatable)"
    ),
):
    """Register a group and its member roster."""
    group = Group(
        group_id=group_id,
        name=name,
        members=[GroupMember(name=member) for member in members],
    )
    try:
        GroupRepository(_get_config().db_path).save_group(group)
    except Exception as e:
        console.print(f"[red]Error saving group:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Saved group {group_id} with {len(members)} member(s)")


@app.command()
def generate(
    title: str = typer.Argument(..., help="Menu title to illustrate"),
    group_id: str = typer.Option(..., "--group", "-g", help="Group the caller belongs to"),
    caller: str = typer.Option(..., "--caller", "-u", help="Caller display name"),
):
    """Return a cached image for the title or generate a new one."""
    request = GenerationRequest(subject_text=title, group_id=group_id, caller_name=caller)
    try:
        pipeline = build_pipeline(_get_config())
    except Exception as e:
        console.print(f"[red]Error setting up pipeline:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        response = pipeline.handle(request)
    except PipelineError as e:
        console.print(f"[red]Rejected ({type(e).__name__}):[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        pipeline.close()

    if response.artifact_url:
        source = "cache" if response.cached else "generated"
        console.print(f"[green]✓[/] {response.artifact_url} ({source})")
        sys.exit(EXIT_CODE_PASS)
    if response.budget_exceeded:
        console.print("[yellow]Budget cap reached, no image generated[/]")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]Image generation failed:[/] {response.error}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def budget():
    """Show image generation spend against the cap."""
    config = _get_config()
    ledger = BudgetLedger(BudgetRepository(config.db_path), config.budget)
    try:
        status = ledger.status()
    except Exception as e:
        console.print(f"[red]Error reading budget:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Image Generation Budget")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Images generated", str(status.units_generated))
    table.add_row("Spent", _format_currency(status.total_cost_spent))
    table.add_row("Cap", _format_currency(status.cap))
    table.add_row("Remaining", _format_currency(status.remaining))
    table.add_row(
        "Last updated",
        status.last_updated.isoformat(timespec="seconds") if status.last_updated else "never"
    )
    console.print(table)
    if status.exhausted:
        console.print("[yellow]Budget exhausted: new titles will not get images[/]")


@app.command()
def lookup(title: str = typer.Argument(..., help="Menu title")):
    """Show the cached image for a title, if any."""
    key = normalize_title(title)
    repository = CacheRepository(_get_config().db_path)
    try:
        entry = repository.find_first(key)
        copies = repository.count(key)
    except Exception as e:
        console.print(f"[red]Error reading cache:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if entry is None:
        console.print(f"No cached image for {key!r}")
        return
    console.print(f"{key!r} -> {entry.artifact_url}")
    if copies > 1:
        console.print(f"[dim]{copies} cache rows share this key[/]")


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


if __name__ == "__main__":
    app()
