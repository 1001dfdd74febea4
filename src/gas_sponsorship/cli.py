"""
Gas sponsorship CLI.

Usage:
    gas-sponsor [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .accountant import SponsorshipAccountant
from .config import get_networks, get_settings
from .exceptions import SponsorshipError
from .logging_utils import LogContext, setup_logging
from .models import GasEstimateRequest, Operation
from .service import build_accountant

console = Console()


def _run(ctx: click.Context, chain_id: Optional[int], action: Callable[[SponsorshipAccountant], Awaitable[Any]]) -> Any:
    """Run an async action against a freshly built accountant, closing it afterwards."""
    factory = ctx.obj["build_accountant"]

    async def runner() -> Any:
        accountant = factory(ctx.obj["settings"])
        try:
            with LogContext(chain_id=chain_id):
                return await action(accountant)
        finally:
            await accountant.close()

    try:
        return asyncio.run(runner())
    except SponsorshipError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        ctx.exit(1)


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


@click.group()
@click.version_option(version=__version__, message="%(prog)s %(version)s")
@click.option("--log-level", envvar="GAS_SPONSOR_LOG_LEVEL", default=None, help="Logging level")
@click.option("--json-logs", is_flag=True, default=False, help="Emit JSON log lines")
@click.pass_context
def cli(ctx, log_level: Optional[str], json_logs: bool):
    """Gas sponsorship accountant - eligibility, estimates and usage."""
    ctx.ensure_object(dict)
    settings = ctx.obj.get("settings") or get_settings()
    ctx.obj["settings"] = settings
    ctx.obj.setdefault("build_accountant", build_accountant)
    setup_logging(log_level or settings.log_level, json_format=json_logs or settings.log_json)


@cli.command()
@click.option("--testnets/--no-testnets", default=True, help="Include test networks")
def networks(testnets: bool):
    """List supported networks."""
    table = Table(title="Supported Networks")
    table.add_column("Chain ID", style="cyan", justify="right")
    table.add_column("Name", style="white")
    table.add_column("Symbol", style="green")
    table.add_column("EIP-1559", style="white")
    table.add_column("Testnet", style="dim")

    for network in sorted(get_networks().values(), key=lambda n: n.chain_id):
        if network.is_testnet and not testnets:
            continue
        table.add_row(
            str(network.chain_id),
            network.display_name,
            network.native_symbol,
            "yes" if network.supports_eip1559 else "no",
            "yes" if network.is_testnet else "",
        )

    console.print(table)


@cli.command()
@click.option("--chain-id", type=int, default=56, show_default=True, help="Network chain id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, chain_id: int, as_json: bool):
    """Show sponsorship status for a network."""
    result = _run(ctx, chain_id, lambda acc: acc.get_status(chain_id))

    if as_json:
        _print_json(result)
        return

    enabled = "[green]enabled[/green]" if result["sponsorshipEnabled"] else "[yellow]disabled[/yellow]"
    console.print(Panel(
        f"Network: [cyan]{result['network']}[/cyan] ({result['chainId']})\n"
        f"Sponsorship: {enabled}\n"
        f"Policy: {result['policyId'] or '-'}\n"
        f"Ledger: {result['ledgerBackend']} ({result['pendingWrites']} pending)\n"
        f"Fiat pricing: {'on' if result['fiatPricing'] else 'off'}",
        title="Gas Sponsorship Status",
        border_style="blue",
    ))


@cli.command()
@click.option("--chain-id", type=int, default=56, show_default=True, help="Network chain id")
@click.option("--from", "from_address", required=True, help="Sender address")
@click.option("--to", "to_address", required=True, help="Recipient address")
@click.option("--value", default="0", show_default=True, help="Native value in whole units")
@click.option("--data", default=None, help="Call data (0x-prefixed hex)")
@click.option(
    "--operation",
    type=click.Choice([op.value for op in Operation]),
    default=Operation.TRANSFER.value,
    show_default=True,
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def estimate(
    ctx,
    chain_id: int,
    from_address: str,
    to_address: str,
    value: str,
    data: Optional[str],
    operation: str,
    as_json: bool,
):
    """Estimate gas and check sponsorship for a transaction."""
    request = GasEstimateRequest(
        from_address=from_address,
        to_address=to_address,
        chain_id=chain_id,
        value=value,
        data=data,
        operation=Operation(operation),
    )
    result = _run(ctx, chain_id, lambda acc: acc.estimate_gas(request))

    if as_json:
        _print_json(result.to_dict())
        return

    table = Table(title="Fee Tiers")
    table.add_column("Tier", style="cyan")
    table.add_column("Max Fee (gwei)", style="green", justify="right")
    table.add_column("Priority (gwei)", style="white", justify="right")
    table.add_column("ETA (s)", style="white", justify="right")
    table.add_column("Confidence", style="dim", justify="right")
    for tier in result.tiers:
        table.add_row(
            tier.name,
            str(Decimal(tier.max_fee_per_gas) / Decimal(10**9)),
            str(Decimal(tier.max_priority_fee_per_gas) / Decimal(10**9)),
            str(tier.estimated_seconds),
            f"{tier.confidence:.0%}",
        )
    console.print(table)

    sponsored = "[green]yes[/green]" if result.is_sponsored else "[yellow]no[/yellow]"
    usd = f" (${result.estimated_cost_usd})" if result.estimated_cost_usd is not None else ""
    console.print(f"Gas limit: [cyan]{result.gas_limit}[/cyan]")
    console.print(f"Estimated cost: [bold]{result.estimated_cost}[/bold]{usd}")
    console.print(f"Sponsored: {sponsored} - {result.sponsorship_reason}")
    console.print(f"You pay: [bold]{result.user_cost}[/bold]")
    console.print(f"Congestion: {result.network_congestion}")
    if result.is_fallback:
        console.print("[yellow]Fee data unavailable; showing fallback estimate[/yellow]")


def _print_usage(stats) -> None:
    table = Table(title=f"Usage for {stats.address} on chain {stats.chain_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white", justify="right")
    table.add_row("Total spent", str(stats.total_spent))
    table.add_row("Transactions", str(stats.transaction_count))
    table.add_row("Spent today", str(stats.daily_spent))
    table.add_row("Spent this month", str(stats.monthly_spent))
    table.add_row("Remaining today", str(stats.remaining_daily) if stats.remaining_daily is not None else "unlimited")
    table.add_row(
        "Remaining this month",
        str(stats.remaining_monthly) if stats.remaining_monthly is not None else "unlimited",
    )
    console.print(table)


@cli.command()
@click.argument("address")
@click.option("--chain-id", type=int, default=56, show_default=True, help="Network chain id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def usage(ctx, address: str, chain_id: int, as_json: bool):
    """Show sponsored gas usage for an address."""
    stats = _run(ctx, chain_id, lambda acc: acc.get_usage_stats(address, chain_id))

    if as_json:
        _print_json(stats.to_dict() if stats is not None else None)
        return
    if stats is None:
        console.print(f"[dim]No usage recorded for {address} on chain {chain_id}[/dim]")
        return
    _print_usage(stats)


@cli.command()
@click.argument("address")
@click.option("--chain-id", type=int, default=56, show_default=True, help="Network chain id")
@click.option("--cost", required=True, help="Gas cost in native units")
@click.option("--tx-hash", default=None, help="Transaction hash (deduplicates repeated records)")
@click.option("--unsponsored", is_flag=True, help="Count without charging the sponsorship quota")
@click.pass_context
def record(ctx, address: str, chain_id: int, cost: str, tx_hash: Optional[str], unsponsored: bool):
    """Record the gas cost of a confirmed transaction."""
    stats = _run(
        ctx,
        chain_id,
        lambda acc: acc.record_usage(address, chain_id, cost, tx_hash=tx_hash, sponsored=not unsponsored),
    )
    console.print(f"[green]Recorded[/green] {cost} for {stats.address}")
    _print_usage(stats)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
