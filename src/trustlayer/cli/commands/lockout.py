"""
TrustLayer Lockout Command
"""

from typing import List

import typer
from rich.console import Console
from rich.table import Table

from trustlayer.cli.runtime import run_with_layer
from trustlayer.core.clock import to_iso
from trustlayer.core.logging import get_logger
from trustlayer.security.models import LimitScope
from trustlayer.security.rate_limiter import RateLimitRecord
from trustlayer.services import SecurityLayer

logger = get_logger(__name__)
console = Console()

app = typer.Typer(help="Manage brute force lockouts")


@app.command("list")
def list_locked() -> None:
    """
    List identifiers that are currently locked
    """

    async def action(layer: SecurityLayer) -> List[RateLimitRecord]:
        return await layer.rate_limiter.locked_identifiers()

    records = run_with_layer(action)
    if not records:
        console.print("[green]No locked identifiers[/green]")
        return

    table = Table(title="Locked Identifiers")
    table.add_column("Identifier", style="cyan")
    table.add_column("Scope", style="white")
    table.add_column("Failed attempts", justify="right")
    table.add_column("Locked until", style="red")
    for record in records:
        table.add_row(
            record.identifier,
            record.scope.value,
            str(record.failed_attempts),
            to_iso(record.locked_until) if record.locked_until else "",
        )
    console.print(table)


@app.command()
def unlock(
    identifier: str = typer.Argument(..., help="Username or IP address to unlock"),
    ip: bool = typer.Option(False, "--ip", help="The identifier is an IP address"),
    actor: str = typer.Option("cli", "--actor", help="Name recorded in the audit log"),
) -> None:
    """
    Clear the failed attempt counter and lock of an identifier
    """
    scope = LimitScope.IP if ip else LimitScope.USERNAME

    async def action(layer: SecurityLayer) -> bool:
        return await layer.rate_limiter.unlock(identifier, scope, actor=actor)

    if run_with_layer(action):
        console.print(f"[bold green]✓[/bold green] Unlocked {scope.value} [cyan]{identifier}[/cyan]")
    else:
        console.print(f"[yellow]No rate limit record for {scope.value} {identifier}[/yellow]")
        raise typer.Exit(code=1)
