"""
TrustLayer Pin Command
Fetches certificate fingerprints for TRUSTLAYER_PINNED_FINGERPRINTS.
"""

import typer
from rich.console import Console
from rich.panel import Panel

from trustlayer.core.config import settings
from trustlayer.core.logging import get_logger
from trustlayer.security.pinning import fetch_server_fingerprint, normalize_fingerprint

logger = get_logger(__name__)
console = Console()

app = typer.Typer(help="Certificate pinning helpers")


@app.command()
def fingerprint(
    host: str = typer.Argument(..., help="Hostname to connect to"),
    port: int = typer.Option(443, "--port", "-p", help="TLS port"),
    timeout: float = typer.Option(10.0, "--timeout", help="Connection timeout in seconds"),
) -> None:
    """
    Print the SHA-256 fingerprint of the certificate a host presents
    """
    try:
        value = fetch_server_fingerprint(host, port=port, timeout=timeout)
    except OSError as e:
        console.print(f"[bold red]Could not fetch certificate from {host}:{port}:[/bold red] {e}")
        raise typer.Exit(code=1)

    pinned = {normalize_fingerprint(f) for f in settings.PINNED_FINGERPRINTS}
    state = "[green]already pinned[/green]" if value in pinned else "[yellow]not pinned[/yellow]"
    console.print(Panel(
        f"[bold]{value}[/bold]\n\n"
        f"[dim]Status: [/dim]{state}\n"
        f"[dim]Add to TRUSTLAYER_PINNED_FINGERPRINTS to trust this certificate[/dim]",
        title=f"[bold blue]{host}:{port}[/bold blue]",
        border_style="blue",
    ))
