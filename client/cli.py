"""
Replica Router Command Line Interface

Inspect a router configuration and run statements through it.
"""

import sqlite3
from collections import Counter
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from shared.errors import RouterError
from shared.models import CallMode, FetchMode
from balancer.config import load_settings
from balancer.main import QueryRouter, build_router, configure_logging

# Initialize Typer app
app = typer.Typer(
    name="replica-router",
    help="Replica Router - weighted read balancing over one master and N replicas",
    add_completion=False
)

# Rich console for pretty output
console = Console()


def get_router(config: Optional[str], log_level: Optional[str] = None) -> QueryRouter:
    """Load settings and build a router, exiting on configuration errors."""
    try:
        settings = load_settings(config)
        configure_logging(log_level or settings.log_level)
        return build_router(settings)
    except (RouterError, ConnectionError) as e:
        console.print(f"[red]✗ Could not set up router: {e}[/red]")
        raise typer.Exit(1)


# =============================================================================
# Inspection Commands
# =============================================================================

@app.command()
def weights(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Router config file path"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level")
):
    """Show attached nodes with their raw and normalized weights."""
    router = get_router(config, log_level)
    registry = router.registry

    table = Table(title="Node Weights")
    table.add_column("Node ID", style="cyan")
    table.add_column("Role")
    table.add_column("Weight", justify="right")
    table.add_column("Bucket", justify="right")

    for node_id in registry.node_ids:
        node = registry.get(node_id)
        role = "master" if node_id == registry.master_id else "replica"
        table.add_row(node_id, role, f"{node.weight:g}", str(node.bucket))

    console.print(table)
    router.disconnect()


@app.command()
def simulate(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Router config file path"),
    draws: int = typer.Option(10000, "--draws", "-n", min=1, help="Number of weighted picks"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level")
):
    """Run weighted picks and show how often each node was selected."""
    router = get_router(config, log_level)
    counts = Counter(router.router.pick_weighted_node() for _ in range(draws))
    total_weight = sum(router.registry.weights.values())

    table = Table(title=f"Weighted Selection ({draws} draws)")
    table.add_column("Node ID", style="cyan")
    table.add_column("Weight share", justify="right")
    table.add_column("Selected", justify="right")
    table.add_column("Observed share", justify="right")

    for node_id, weight in router.registry.weights.items():
        table.add_row(
            node_id,
            f"{weight / total_weight:.1%}",
            str(counts[node_id]),
            f"{counts[node_id] / draws:.1%}"
        )

    console.print(table)
    router.disconnect()


# =============================================================================
# Query Commands
# =============================================================================

@app.command()
def query(
    sql: str = typer.Argument(..., help="Statement to run"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Router config file path"),
    master: bool = typer.Option(False, "--master", "-m", help="Send the statement to the master"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level")
):
    """Run a statement through the router and print the result."""
    router = get_router(config, log_level)
    router.set_fetch_mode(FetchMode.ASSOC)

    mode = CallMode.MASTER if master else CallMode.READ
    try:
        result = router.query(sql, mode=mode)
    except (RouterError, sqlite3.Error) as e:
        console.print(f"[red]✗ Query failed: {e}[/red]")
        router.disconnect()
        raise typer.Exit(1)

    if result.columns:
        table = Table(title=f"Served by {router.last_node}")
        for column in result.columns:
            table.add_column(column)
        for row in result:
            table.add_row(*[str(row[column]) for column in result.columns])
        console.print(table)
    else:
        console.print(f"[green]✓ {result.affected} row(s) affected on {router.last_node}[/green]")

    router.disconnect()


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
