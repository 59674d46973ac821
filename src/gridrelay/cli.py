"""
gridrelay CLI entry point.

Usage:
    gridrelay [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import GridRelaySettings, load_settings
from .exceptions import GridRelayException
from .logging_utils import mask_address, setup_logging
from .relay.amounts import Direction, DisplayAmount
from .relay.orchestrator import RelayOrchestrator, RelayOutcome, RelayState
from .relay.wallet import LocalAccountWallet

console = Console()

_STATE_STYLE = {
    RelayState.SOURCE_SUBMITTED: "cyan",
    RelayState.ATTESTATION_REQUESTED: "cyan",
    RelayState.DESTINATION_SUBMITTED: "cyan",
    RelayState.SETTLED: "green",
    RelayState.CANCELLED: "yellow",
    RelayState.FAILED: "red",
}

DIRECTION_CHOICE = click.Choice(["buy", "sell"], case_sensitive=False)


def _format_ms(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _confirm_prompt(description: str, tx: Dict[str, Any]) -> bool:
    return click.confirm(
        f"Sign '{description}' on chain {tx.get('chainId')}?", default=True
    )


def _build_orchestrator(ctx: click.Context) -> RelayOrchestrator:
    settings: GridRelaySettings = ctx.obj["settings"]
    confirm = None if ctx.obj["yes"] else _confirm_prompt
    wallet = LocalAccountWallet(settings.wallet_private_key, confirm=confirm)
    orchestrator = RelayOrchestrator.from_settings(settings, wallet)
    orchestrator.add_listener(
        lambda direction, state, tx_hash: console.print(
            f"  [{_STATE_STYLE.get(state, 'white')}]{direction.value} → {state.value}[/]"
            + (f" [dim]{tx_hash}[/dim]" if tx_hash else "")
        )
    )
    return orchestrator


def _render_outcome(settings: GridRelaySettings, outcome: RelayOutcome) -> None:
    origin, destination = (
        (settings.effective_wallet_chain_id, settings.game_chain_id)
        if outcome.direction == Direction.BUY
        else (settings.game_chain_id, settings.effective_wallet_chain_id)
    )
    if outcome.settled:
        console.print(f"\n[green]✓ {outcome.direction.value.title()} settled[/green] ({outcome.path.value})")
    elif outcome.state == RelayState.CANCELLED:
        console.print(f"\n[yellow]{outcome.direction.value.title()} cancelled[/yellow]")
    else:
        console.print(f"\n[red]✗ {outcome.direction.value.title()} failed:[/red] {outcome.error_message}")
        if outcome.retryable:
            console.print("  Run [bold]gridrelay resume[/bold] to retry.")

    for label, chain_id, tx_hash in (
        ("Origin TX", origin, outcome.origin_tx_hash),
        ("Destination TX", destination, outcome.destination_tx_hash),
    ):
        if tx_hash:
            url = settings.get_chain(chain_id).tx_url(tx_hash)
            console.print(f"  {label}: [cyan]{url or tx_hash}[/cyan]")


def _run_relay(ctx: click.Context, direction: Direction, amount: Optional[int]) -> None:
    settings: GridRelaySettings = ctx.obj["settings"]
    try:
        orchestrator = _build_orchestrator(ctx)
    except GridRelayException as e:
        console.print(f"[red]Error:[/red] {e.message}")
        ctx.exit(1)

    async def _go() -> RelayOutcome:
        try:
            if amount is None:
                return await orchestrator.resume(direction)
            return await orchestrator.start(direction, DisplayAmount(amount))
        finally:
            await orchestrator.close()

    outcome = asyncio.run(_go())
    _render_outcome(settings, outcome)
    if not outcome.settled:
        ctx.exit(1)


@click.group()
@click.version_option(package_name="gridrelay", message="%(prog)s %(version)s")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Settings file (default: .env)")
@click.option("-y", "--yes", is_flag=True, help="Sign without prompting")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, env_file: str | None, yes: bool, verbose: bool):
    """gridrelay - move electricity and USDC between the game chain and Base."""
    ctx.ensure_object(dict)
    settings = load_settings(env_file)
    setup_logging(
        json_format=settings.log_json,
        level="DEBUG" if verbose else settings.log_level,
    )
    ctx.obj["settings"] = settings
    ctx.obj["yes"] = yes


@cli.command()
@click.argument("amount", type=click.IntRange(min=1))
@click.pass_context
def buy(ctx, amount: int):
    """Buy electricity with USDC (AMOUNT in the token's smallest unit)."""
    console.print(f"\n[bold blue]Buying electricity[/bold blue] for {amount} units\n")
    _run_relay(ctx, Direction.BUY, amount)


@cli.command()
@click.argument("amount", type=click.IntRange(min=1))
@click.pass_context
def sell(ctx, amount: int):
    """Sell electricity for USDC."""
    console.print(f"\n[bold blue]Selling electricity[/bold blue]: {amount} units\n")
    _run_relay(ctx, Direction.SELL, amount)


@cli.command()
@click.argument("direction", type=DIRECTION_CHOICE)
@click.pass_context
def resume(ctx, direction: str):
    """Continue a pending transfer from its stored origin transaction."""
    _run_relay(ctx, Direction.parse(direction), None)


@cli.command()
@click.pass_context
def status(ctx):
    """Show configuration and pending transfers."""
    settings: GridRelaySettings = ctx.obj["settings"]
    console.print("\n[bold blue]gridrelay status[/bold blue]\n")
    console.print(f"Game chain: [cyan]{settings.get_chain(settings.game_chain_id).display_name}[/cyan]")
    console.print(
        f"Wallet chain: [cyan]{settings.get_chain(settings.effective_wallet_chain_id).display_name}[/cyan]"
    )
    console.print(f"Attestation URL: [cyan]{settings.attestation_url}[/cyan]")

    try:
        orchestrator = _build_orchestrator(ctx)
    except GridRelayException as e:
        console.print(f"Wallet: [yellow]{e.message}[/yellow]\n")
        return
    console.print(f"Wallet: [green]{mask_address(orchestrator.user_id)}[/green]\n")

    table = Table(title="Pending transfers")
    table.add_column("Direction", style="cyan")
    table.add_column("Path")
    table.add_column("Origin TX")
    table.add_column("Submitted")
    for direction in Direction:
        record = orchestrator.pending(direction)
        table.add_row(
            direction.value,
            orchestrator.path_for(direction).value,
            record.origin_tx_hash if record else "-",
            _format_ms(record.submitted_at) if record else "-",
        )
    console.print(table)
    asyncio.run(orchestrator.close())


@cli.command()
@click.argument("direction", type=DIRECTION_CHOICE)
@click.pass_context
def abandon(ctx, direction: str):
    """Forget a pending transfer without settling it."""
    parsed = Direction.parse(direction)
    try:
        orchestrator = _build_orchestrator(ctx)
    except GridRelayException as e:
        console.print(f"[red]Error:[/red] {e.message}")
        ctx.exit(1)
    try:
        record = orchestrator.pending(parsed)
        if record is None:
            console.print(f"[yellow]No pending {parsed.value.lower()} transfer[/yellow]")
            return
        click.confirm(
            f"Abandon {parsed.value.lower()} transfer {record.origin_tx_hash}? "
            "Funds already sent will not be settled",
            abort=True,
        )
        orchestrator.abandon(parsed)
    except GridRelayException as e:
        console.print(f"[red]Error:[/red] {e.message}")
        ctx.exit(1)
    finally:
        asyncio.run(orchestrator.close())
    console.print(f"[green]✓ Pending {parsed.value.lower()} transfer removed[/green]")


@cli.command()
@click.option("--host", help="Bind address (default from settings)")
@click.option("--port", type=int, help="Port (default from settings)")
@click.pass_context
def serve(ctx, host: str | None, port: int | None):
    """Run the attestation service."""
    import uvicorn

    from .attestation.app import create_app

    settings: GridRelaySettings = ctx.obj["settings"]
    try:
        app = create_app(settings)
    except GridRelayException as e:
        console.print(f"[red]Error:[/red] {e.message}")
        ctx.exit(1)
    uvicorn.run(app, host=host or settings.api_host, port=port or settings.api_port, log_config=None)


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
