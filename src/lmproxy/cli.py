"""CLI entry point for the lmproxy gateway.

Provides ``serve`` and ``models`` sub-commands using Click and Rich for
output formatting. Settings come from ``LMPROXY_*`` environment variables
(and a ``.env`` file); command-line options override them.

Usage::

    lmproxy serve --port 23333 --model gpt-4o --alias 'claude-*=gpt-4o'
    lmproxy models
"""

from __future__ import annotations

import asyncio
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from lmproxy.backends import create_backend
from lmproxy.core.config import BACKENDS, GatewayConfig, parse_aliases
from lmproxy.server import GatewayServer

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_config(**overrides: object) -> GatewayConfig:
    try:
        return GatewayConfig.from_env(**overrides)
    except ValueError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise SystemExit(1) from exc


@click.group()
@click.version_option(package_name="lmproxy")
def main() -> None:
    """lmproxy: one chat backend served as OpenAI, Anthropic and Gemini APIs."""


@main.command()
@click.option("--host", default=None, help="Bind address.")
@click.option("--port", type=int, default=None, help="Bind port.")
@click.option("--api-key", default=None, help="Key clients must present.")
@click.option(
    "--backend",
    type=click.Choice(BACKENDS),
    default=None,
    help="Backend SDK to forward requests with.",
)
@click.option("--base-url", default=None, help="Backend base URL override.")
@click.option("--model", "models", multiple=True, help="Model clients may request.")
@click.option("--alias", "aliases", multiple=True, help="PATTERN=MODEL alias.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def serve(
    host: str | None,
    port: int | None,
    api_key: str | None,
    backend: str | None,
    base_url: str | None,
    models: tuple[str, ...],
    aliases: tuple[str, ...],
    verbose: bool,
) -> None:
    """Run the gateway until interrupted."""
    _setup_logging(verbose)

    try:
        alias_map = parse_aliases(aliases) if aliases else None
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--alias") from exc

    config = _load_config(
        host=host,
        port=port,
        api_key=api_key,
        backend=backend,
        backend_base_url=base_url,
        models=tuple(models) or None,
        model_aliases=alias_map,
    )
    server = GatewayServer(config, create_backend(config))

    console.print(
        f"[bold green]lmproxy[/bold green] forwarding to [bold]{config.backend}[/bold] "
        f"on http://{config.host}:{config.port}"
    )
    if not config.auth_enabled:
        console.print("[yellow]Warning:[/yellow] no API key set, authentication disabled")

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        console.print("[bold]Stopped.[/bold]")


@main.command()
@click.option("--model", "models", multiple=True, help="Model clients may request.")
def models(models: tuple[str, ...]) -> None:
    """Show the configured models and aliases."""
    config = _load_config(models=tuple(models) or None)
    available = config.available_models()

    if not available and not config.model_aliases:
        console.print("[yellow]No models configured; any model name is accepted.[/yellow]")
        return

    table = Table(title="Models")
    table.add_column("Model", style="bold")
    table.add_column("Default")
    for model in available:
        table.add_row(model, "[green]yes[/green]" if model == config.default_model else "")
    console.print(table)

    if config.model_aliases:
        alias_table = Table(title="Aliases")
        alias_table.add_column("Pattern", style="bold")
        alias_table.add_column("Model")
        for pattern, target in config.model_aliases.items():
            alias_table.add_row(pattern, target)
        console.print(alias_table)
