"""CLI entry point for storyshot."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.table import Table

from storyshot.log import console, setup_logging
from storyshot.models.config import BrowserConfig, RunnerConfig
from storyshot.orchestrator import Orchestrator


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Screenshot testing for Storybook stories across browsers"""
    setup_logging(verbose)
    ctx.obj = {"verbose": verbose}


@cli.command()
@click.option("--config", "-c", default="storyshot.json", help="Config file path")
@click.option("--browser", "-b", "browsers", multiple=True, help="Only run tests for this browser")
@click.pass_context
def run(ctx: click.Context, config: str, browsers: tuple[str, ...]) -> None:
    """Capture every story in every configured browser and compare with references."""
    try:
        cfg = RunnerConfig.load(config)
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config}[/red]")
        console.print("Run 'storyshot init' to create a default config.")
        sys.exit(1)

    unknown = [b for b in browsers if b not in cfg.browsers]
    if unknown:
        console.print(f"[red]Unknown browser(s): {', '.join(unknown)}[/red]")
        sys.exit(1)

    orchestrator = Orchestrator(cfg, verbose=ctx.obj["verbose"])
    try:
        status = orchestrator.run(browsers or None)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)

    console.print("\n[bold green]Run Complete[/bold green]")
    table = Table(title="Results Summary")
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Duration", f"{status.duration_seconds}s")
    table.add_row("Total Tests", str(status.total))
    table.add_row("Passed", f"[green]{status.success}[/green]")
    table.add_row("Failed", f"[red]{status.failed}[/red]")
    table.add_row("Skipped", f"[yellow]{status.skipped}[/yellow]")
    table.add_row("Not Run", str(status.pending))
    console.print(table)

    failed = [t for t in status.tests if t.status == "fail"]
    for test in failed:
        console.print(f"  [red]FAIL[/red] {test.title}: {test.error}")
    console.print(f"  Report: [blue]{Path(cfg.report_dir) / 'status.json'}[/blue]")

    sys.exit(0 if status.is_success else 1)


@cli.command()
@click.option("--storybook-url", "-u", prompt="Storybook URL", default="http://localhost:6006",
              help="Address of the running Storybook")
@click.option("--grid-url", "-g", default=None, help="Remote browser endpoint (ws://...)")
def init(storybook_url: str, grid_url: str | None) -> None:
    """Create a default configuration file."""
    config_path = Path("storyshot.json")
    if config_path.exists():
        if not click.confirm("storyshot.json already exists. Overwrite?"):
            return

    cfg = RunnerConfig(
        storybook_url=storybook_url,
        grid_url=grid_url,
        browsers={"chromium": BrowserConfig(), "firefox": BrowserConfig(browser_name="firefox")},
    )
    cfg.save(config_path)
    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nExport your stories list (Storybook's stories.json) and run:")
    console.print("  [blue]storyshot run[/blue]")


if __name__ == "__main__":
    cli()
