"""
Bridge Transfer CLI.

Usage:
    bridge-transfer list [--config CONFIG]
    bridge-transfer check
    bridge-transfer watch
    bridge-transfer clear [--yes]
    bridge-transfer quote FROM TO AMOUNT --wallet WALLET
"""

import asyncio
import sys

import click
from loguru import logger

from .config import BridgeSettings, load_settings
from .models import Transfer
from .network_registry import NetworkRegistry, UnknownNetworkError
from .quote_service import QuoteService
from .receipt_client import ChainReceiptClient
from .transfer_store import TransferStore
from .transfer_watcher import TransferWatcher


STATUS_ICONS = {
    'completed': '✅',
    'failed': '❌',
}


def configure_logging(level: str):
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def build_registry(settings: BridgeSettings) -> NetworkRegistry:
    return NetworkRegistry.from_config(settings.networks)


def format_transfer(transfer: Transfer) -> str:
    icon = STATUS_ICONS.get(transfer.status, '⏳')
    lines = [
        f"{icon} {transfer.id}  {transfer.from_network} → {transfer.to_network}  "
        f"{transfer.amount} USDC  [{transfer.status}]",
        f"    Created: {transfer.created_at.isoformat()}  Updated: {transfer.updated_at.isoformat()}",
    ]
    for step in transfer.steps:
        tx = f"  {step.tx_hash[:10]}...{step.tx_hash[-6:]}" if step.tx_hash else ""
        lines.append(f"    - {step.label:<30} {step.state:<8}{tx}")
    if transfer.error_message:
        lines.append(f"    Error: {transfer.error_message}")
    return "\n".join(lines)


@click.group()
@click.option("--config", "-c", default="bridge_config.yaml", help="Config file")
@click.pass_context
def cli(ctx, config):
    """Bridge Transfer - cross-chain USDC transfer tracking."""
    settings = load_settings(config)
    configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command(name="list")
@click.pass_obj
def list_transfers(settings: BridgeSettings):
    """Show stored transfers (most recent first)."""
    store = TransferStore(settings.db_path)
    try:
        transfers = store.load()
    finally:
        store.close()

    click.echo("\n" + "=" * 80)
    click.echo(f"TRANSFERS ({len(transfers)})")
    click.echo("=" * 80)
    if not transfers:
        click.echo("No transfers recorded")
    for transfer in transfers:
        click.echo(format_transfer(transfer))
    click.echo("=" * 80)


async def run_check(settings: BridgeSettings) -> int:
    store = TransferStore(settings.db_path)
    registry = build_registry(settings)
    client = ChainReceiptClient(registry, timeout_seconds=settings.rpc_timeout_seconds)
    watcher = TransferWatcher(store.mutate, client, registry)
    try:
        active = [transfer for transfer in store.load() if not transfer.is_terminal]
        return await watcher.check_transfers(active)
    finally:
        await client.close()
        store.close()


@cli.command()
@click.pass_obj
def check(settings: BridgeSettings):
    """Run one reconciliation pass over active transfers."""
    applied = asyncio.run(run_check(settings))
    click.echo(f"Reconciliation pass complete: {applied} receipt(s) applied")


async def run_watch(settings: BridgeSettings):
    store = TransferStore(settings.db_path)
    registry = build_registry(settings)
    client = ChainReceiptClient(registry, timeout_seconds=settings.rpc_timeout_seconds)
    watcher = TransferWatcher(store.mutate, client, registry)

    external_changes = asyncio.create_task(store.watch_external_changes())
    watcher.attach(store)
    logger.info(f"Watching transfers in {settings.db_path} (Ctrl+C to stop)")
    try:
        await asyncio.Event().wait()
    finally:
        external_changes.cancel()
        await watcher.shutdown()
        await client.close()
        store.close()


@cli.command()
@click.pass_obj
def watch(settings: BridgeSettings):
    """Reconcile active transfers until interrupted."""
    try:
        asyncio.run(run_watch(settings))
    except KeyboardInterrupt:
        click.echo("🛑 Watcher stopped")


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def clear(settings: BridgeSettings, yes):
    """Remove all stored transfers."""
    if not yes and not click.confirm("Clear all stored transfers?"):
        click.echo("Aborted")
        return

    store = TransferStore(settings.db_path)
    try:
        cleared = store.clear()
    finally:
        store.close()

    if not cleared:
        click.echo("Failed to clear transfers", err=True)
        sys.exit(1)
    click.echo("Transfer history cleared")


async def run_quote(settings: BridgeSettings, from_network: str, to_network: str, amount: str, wallet: str):
    registry = build_registry(settings)
    source = registry.lookup_by_id(from_network)
    destination = registry.lookup_by_id(to_network)

    service = QuoteService(settings.quote_api_base, settings.quote_api_key)
    try:
        return await service.quote(source, destination, amount, wallet)
    finally:
        await service.close()


@cli.command()
@click.argument("from_network")
@click.argument("to_network")
@click.argument("amount")
@click.option("--wallet", "-w", required=True, help="Sender wallet address")
@click.pass_obj
def quote(settings: BridgeSettings, from_network, to_network, amount, wallet):
    """Get a route quote."""
    try:
        route_quote = asyncio.run(run_quote(settings, from_network, to_network, amount, wallet))
    except UnknownNetworkError as e:
        click.echo(f"Unknown network: {e.args[0]}", err=True)
        sys.exit(1)

    click.echo(f"Provider:  {route_quote.provider}")
    click.echo(f"Route:     {route_quote.route_id}")
    click.echo(f"Amount in: {route_quote.amount_in} USDC")
    click.echo(f"Amount out (est.): {route_quote.amount_out} USDC")
    click.echo(f"Fee:       {route_quote.fee_amount} USDC")
    click.echo(f"ETA:       ~{route_quote.eta_seconds}s")
    for item in route_quote.breakdown:
        click.echo(f"  - {item.get('label')}: {item.get('amount')}")


def main():
    cli()


if __name__ == "__main__":
    main()
