"""
TrustLayer CLI Main Entry Point
"""

from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from trustlayer import __version__
from trustlayer.core.config import settings
from trustlayer.core.logging import configure_logging, get_logger
from trustlayer.cli.commands import keys, lockout, monitor, pin

logger = get_logger(__name__)
console = Console()

app = typer.Typer(
    name="trustlayer",
    help="TrustLayer - Account Security & Trust Layer administration",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

app.add_typer(keys.app, name="keys", help="Inspect and rotate the store API key")
app.add_typer(lockout.app, name="lockout", help="Manage brute force lockouts")
app.add_typer(monitor.app, name="monitor", help="Security dashboard and alerts")
app.add_typer(pin.app, name="pin", help="Certificate pinning helpers")


@app.callback()
def main(
    verbose: Optional[bool] = typer.Option(
        False,
        "--verbose",
        help="Enable verbose logging"
    ),
) -> None:
    """
    TrustLayer administration: key rotation, lockouts, monitoring and pinning.
    """
    if verbose:
        configure_logging("DEBUG")
        logger.debug("Verbose logging enabled")


@app.command()
def version() -> None:
    """
    Show version and environment
    """
    info_text = Text()
    info_text.append(f"{settings.APP_NAME}\n", style="bold blue")
    info_text.append(f"Version: {__version__}\n", style="green")
    info_text.append(f"Environment: {settings.ENVIRONMENT}\n", style="yellow")
    info_text.append(f"Store: {settings.STORE_BASE_URL or 'not configured'}", style="cyan")

    console.print(Panel(
        info_text,
        title="[bold blue]System Information[/bold blue]",
        border_style="blue"
    ))


if __name__ == "__main__":
    app()
