"""
TrustLayer Monitor Command
Security dashboard summary and current alerts.
"""

from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from trustlayer.cli.runtime import run_with_layer
from trustlayer.core.logging import get_logger
from trustlayer.security.alerts import AlertResult
from trustlayer.security.models import SecurityAlert, Severity
from trustlayer.security.monitor import DashboardSummary
from trustlayer.services import SecurityLayer

logger = get_logger(__name__)
console = Console()

app = typer.Typer(help="Security dashboard and alerts")

SEVERITY_STYLES = {
    Severity.CRITICAL: "red",
    Severity.HIGH: "orange1",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "blue",
}


@app.command()
def dashboard() -> None:
    """
    Display the security dashboard summary for the last 24 hours
    """

    async def action(layer: SecurityLayer) -> DashboardSummary:
        return await layer.monitor.dashboard_summary()

    summary = run_with_layer(action)

    table = Table(title="Security Dashboard")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Failed logins (24h)", str(summary.failed_login_attempts))
    table.add_row("Active sessions", str(summary.active_sessions))
    table.add_row("Requests (1h)", str(summary.api_requests))
    table.add_row("Locked identifiers", str(summary.locked_identifiers))
    table.add_row("[red]Critical alerts[/red]", str(summary.critical_alerts))
    table.add_row("[orange1]High alerts[/orange1]", str(summary.high_alerts))
    table.add_row("[yellow]Medium alerts[/yellow]", str(summary.medium_alerts))
    table.add_row("[blue]Low alerts[/blue]", str(summary.low_alerts))
    console.print(table)
    console.print(f"[dim]Generated at {summary.generated_at:%Y-%m-%d %H:%M:%S} UTC[/dim]")


@app.command()
def alerts(
    severity: Optional[Severity] = typer.Option(None, "--severity", "-s", help="Only show this severity and above"),
    hours: int = typer.Option(24, "--hours", help="Look back N hours"),
    dispatch: bool = typer.Option(False, "--dispatch", help="Send the alerts through the configured channels"),
    force: bool = typer.Option(False, "--force", help="Ignore the per-alert throttle when dispatching"),
) -> None:
    """
    Display current security alerts, optionally dispatching them
    """

    async def action(layer: SecurityLayer) -> Tuple[List[SecurityAlert], Dict[str, AlertResult]]:
        found = await layer.monitor.security_alerts(window=timedelta(hours=hours))
        if severity is not None:
            found = [a for a in found if a.severity.at_least(severity)]
        results: Dict[str, AlertResult] = {}
        if dispatch:
            threshold = severity or layer.dispatcher.min_severity
            for alert in found:
                if alert.severity.at_least(threshold):
                    results[alert.id] = await layer.dispatcher.dispatch(alert, force=force)
        return found, results

    found, results = run_with_layer(action)

    if not found:
        console.print(Panel(
            "[green]No alerts found matching the criteria[/green]",
            title="Alert Status",
            border_style="green"
        ))
        return

    table = Table(title=f"Security Alerts ({len(found)})")
    table.add_column("Severity", style="bold")
    table.add_column("Title", style="cyan")
    table.add_column("Description", style="white")
    table.add_column("Time", style="dim")
    if dispatch:
        table.add_column("Delivery", style="bold")

    for alert in found:
        style = SEVERITY_STYLES.get(alert.severity, "white")
        row = [
            f"[{style}]{alert.severity.value.upper()}[/{style}]",
            alert.title,
            alert.description,
            f"{alert.timestamp:%Y-%m-%d %H:%M}",
        ]
        if dispatch:
            row.append(_delivery_label(results.get(alert.id)))
        table.add_row(*row)

    console.print(table)


def _delivery_label(result: Optional[AlertResult]) -> str:
    if result is None:
        return "[dim]below threshold[/dim]"
    if result.throttled:
        return "[yellow]THROTTLED[/yellow]"
    if result.success:
        return "[green]SENT[/green]"
    return "[red]FAILED[/red]"
