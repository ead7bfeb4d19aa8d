"""
TrustLayer Keys Command
Status and manual rotation of the store API key.
"""

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from trustlayer.cli.runtime import run_with_layer
from trustlayer.core.clock import to_iso
from trustlayer.core.logging import get_logger
from trustlayer.security.rotation import KeyHealth, RotationResult, RotationStatus
from trustlayer.services import SecurityLayer

logger = get_logger(__name__)
console = Console()

app = typer.Typer(help="Inspect and rotate the store API key")

HEALTH_STYLES = {
    KeyHealth.VALID: "green",
    KeyHealth.EXPIRING_SOON: "yellow",
    KeyHealth.EXPIRED: "red",
    KeyHealth.UNKNOWN: "dim",
}


def _mask(key: str) -> str:
    if len(key) <= 12:
        return "*" * len(key)
    return f"{key[:8]}...{key[-4:]}"


@app.command()
def status() -> None:
    """
    Show expiry and grace period of the current API key
    """

    async def action(layer: SecurityLayer) -> RotationStatus:
        await layer.rotator.check_rotation_needed()
        return await layer.rotator.status()

    key_status = run_with_layer(action)
    style = HEALTH_STYLES.get(key_status.status, "white")

    table = Table(title="API Key Status")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Status", f"[{style}]{key_status.status.value}[/{style}]")
    table.add_row("Expires at", to_iso(key_status.expires_at) if key_status.expires_at else "unknown")
    table.add_row(
        "Days until expiry",
        str(key_status.days_until_expiry) if key_status.days_until_expiry is not None else "unknown",
    )
    table.add_row("Previous key in grace period", "yes" if key_status.grace_active else "no")
    console.print(table)


@app.command()
def rotate(
    force: bool = typer.Option(False, "--force", "-f", help="Rotate even if the key is not due"),
    actor: str = typer.Option("cli", "--actor", help="Name recorded in the audit log"),
) -> None:
    """
    Rotate the API key, keeping the previous key valid for the grace period
    """

    async def action(layer: SecurityLayer) -> RotationResult:
        return await layer.rotator.rotate(force=force, actor=actor)

    result = run_with_layer(action)
    if not result.success:
        console.print(Panel(
            f"[yellow]{result.message}[/yellow]",
            title="Rotation skipped" if result.skipped else "[red]Rotation failed[/red]",
            border_style="yellow",
        ))
        if not result.skipped:
            raise typer.Exit(code=1)
        return

    console.print(Panel(
        f"[bold green]✓[/bold green] {result.message}\n"
        f"[dim]New key: {_mask(result.new_key or '')}[/dim]\n"
        f"[dim]Expires: {to_iso(result.expires_at) if result.expires_at else 'unknown'}[/dim]",
        title="[bold blue]API Key Rotation[/bold blue]",
        border_style="green",
    ))
