"""
Runs CLI commands against a fully composed security layer.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

import typer
from rich.console import Console

from trustlayer.core.config import ConfigurationError, get_settings
from trustlayer.core.encryption import EncryptionError
from trustlayer.core.logging import get_logger
from trustlayer.services import SecurityLayer, build_security_layer

logger = get_logger(__name__)
console = Console()

T = TypeVar("T")


def run_with_layer(action: Callable[[SecurityLayer], Awaitable[T]]) -> T:
    """Build the layer from settings, run one action, always close it"""

    async def runner() -> T:
        layer = build_security_layer(get_settings())
        try:
            return await action(layer)
        finally:
            await layer.aclose()

    try:
        return asyncio.run(runner())
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        raise typer.Exit(code=2)
    except EncryptionError as e:
        console.print(f"[bold red]Secure storage error:[/bold red] {e}")
        raise typer.Exit(code=1)
