#!/usr/bin/env python3
"""
Perp CLOB venue CLI.

Thin shell over the venue package:
- markets   List the markets defined in the markets YAML file
- config    Show the resolved environment configuration
- demo      Run a short in-memory session (deposits, orders, funding)
- serve     Start the admin API server

Examples:
  python venue_cli.py markets
  python venue_cli.py markets --file configs/markets.yaml
  python venue_cli.py demo --market ETH-PERP
  python venue_cli.py serve --port 8700
"""

import argparse
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from perpclob.config.config import get_config
from perpclob.utils.logger import setup_logger

console = Console()


def parse_cli_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments for venue_cli."""
    parser = argparse.ArgumentParser(
        description="Perp CLOB - simulated perpetuals venue",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python venue_cli.py markets
  python venue_cli.py demo --market ETH-PERP
  python venue_cli.py serve --host 0.0.0.0 --port 8700
        """
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    markets_parser = subparsers.add_parser("markets", help="List configured markets")
    markets_parser.add_argument("--file", default=None, help="Markets YAML file")

    subparsers.add_parser("config", help="Show resolved configuration")

    demo_parser = subparsers.add_parser("demo", help="Run an in-memory demo session")
    demo_parser.add_argument("--market", default="ETH-PERP", help="Market symbol")
    demo_parser.add_argument("--price", type=float, default=2000.0, help="Starting index price")
    demo_parser.add_argument("--file", default=None, help="Markets YAML file")

    serve_parser = subparsers.add_parser("serve", help="Start the admin API server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--reload", action="store_true", help="Auto-reload for development")

    return parser.parse_args(argv)


# ─────────────────────────────────────────────────────────────────────────────
# Display helpers
# ─────────────────────────────────────────────────────────────────────────────

def _fmt(value, digits: int = 4) -> str:
    if value is None:
        return "-"
    return f"{value:,.{digits}f}"


def print_markets(markets) -> None:
    table = Table(title="Markets")
    table.add_column("Symbol", style="bold cyan")
    table.add_column("Kind")
    table.add_column("Tick", justify="right")
    table.add_column("Lot", justify="right")
    table.add_column("Min / Max", justify="right")
    table.add_column("Lev", justify="right")
    table.add_column("IMR / MMR", justify="right")
    table.add_column("Funding", justify="right")
    table.add_column("Status")

    for m in markets:
        status_style = "green" if m.is_active else "yellow"
        table.add_row(
            m.symbol,
            m.kind.value,
            f"{m.tick_size:g}",
            f"{m.lot_size:g}",
            f"{m.min_order_size:g} / {m.max_order_size:g}",
            f"{m.max_leverage:g}x",
            f"{m.initial_margin_rate:.2%} / {m.maintenance_margin_rate:.2%}",
            f"{m.funding_interval_hours:g}h",
            f"[{status_style}]{m.status.value}[/]",
        )
    console.print(table)


def print_book(snapshot: dict) -> None:
    table = Table(title=f"{snapshot['market']} order book", show_lines=False)
    table.add_column("Bid qty", justify="right", style="green")
    table.add_column("Bid", justify="right", style="bold green")
    table.add_column("Ask", justify="right", style="bold red")
    table.add_column("Ask qty", justify="right", style="red")

    bids, asks = snapshot["bids"], snapshot["asks"]
    for i in range(max(len(bids), len(asks))):
        bid = bids[i] if i < len(bids) else None
        ask = asks[i] if i < len(asks) else None
        table.add_row(
            _fmt(bid["quantity"]) if bid else "",
            _fmt(bid["price"], 2) if bid else "",
            _fmt(ask["price"], 2) if ask else "",
            _fmt(ask["quantity"]) if ask else "",
        )
    console.print(table)
    console.print(f"[dim]spread: {_fmt(snapshot['spread'], 2)}[/]")


def print_balances(venue, owners) -> None:
    table = Table(title="Balances")
    table.add_column("Owner", style="bold")
    table.add_column("Free", justify="right")
    table.add_column("Locked", justify="right")
    table.add_column("Total", justify="right")
    for owner in owners:
        balance = venue.get_balance(owner)
        table.add_row(owner, _fmt(balance.free, 2), _fmt(balance.locked, 2), _fmt(balance.total, 2))
    console.print(table)


def print_positions(venue, owners) -> None:
    table = Table(title="Positions")
    table.add_column("Owner", style="bold")
    table.add_column("Market")
    table.add_column("Side")
    table.add_column("Size", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Margin", justify="right")
    table.add_column("Liq price", justify="right")
    table.add_column("Funding", justify="right")
    table.add_column("Status")
    for owner in owners:
        for p in venue.owner_positions(owner):
            side_style = "green" if p.side.value == "long" else "red"
            table.add_row(
                owner,
                p.market,
                f"[{side_style}]{p.side.value}[/]",
                _fmt(p.size),
                _fmt(p.entry_price, 2),
                _fmt(p.margin, 2),
                _fmt(p.liquidation_price, 2),
                _fmt(p.accumulated_funding),
                p.status.value,
            )
    console.print(table)


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

def cmd_markets(args, config) -> int:
    from perpclob.config.markets import load_markets

    markets = load_markets(args.file or config.markets.markets_file)
    print_markets(markets)
    return 0


def cmd_config(args, config) -> int:
    console.print(Panel(config.summary(), title="[bold]CONFIG[/]", border_style="blue"))
    return 0


def cmd_demo(args, config) -> int:
    """Scripted session on an in-memory venue."""
    from perpclob.config.markets import load_markets
    from perpclob.venue.exchange import Venue
    from perpclob.venue.types import OrderType, Side

    markets = load_markets(args.file or config.markets.markets_file)
    venue = Venue(markets=markets)
    symbol = args.market.upper()
    market = venue.get_market(symbol)
    if market is None:
        console.print(f"[bold red]Unknown market:[/] {symbol}")
        return 1

    try:
        price = market.round_price(args.price)
        size = market.round_quantity(max(market.min_order_size, market.lot_size) * 10)
        owners = ["alice", "bob", "carol"]

        console.print(Panel(f"{market.name} ({symbol}) @ {price:,.2f}", title="[bold]DEMO[/]", border_style="cyan"))
        venue.set_index_price(symbol, price)
        for owner in owners:
            venue.deposit(owner, 100_000)

        # bob and carol make the market, alice takes
        venue.place_order(symbol, "bob", Side.SELL, OrderType.LIMIT, size, price=price)
        venue.place_order(symbol, "bob", Side.SELL, OrderType.LIMIT, size,
                          price=market.round_price(price * 1.001))
        venue.place_order(symbol, "carol", Side.BUY, OrderType.LIMIT, size,
                          price=market.round_price(price * 0.999), post_only=True)

        result = venue.place_order(symbol, "alice", Side.BUY, OrderType.MARKET, size)
        if not result.success:
            console.print(f"[bold red]Market order rejected:[/] {result.error}")
            return 1
        for trade in result.trades:
            console.print(
                f"[green]TRADE[/] {trade.quantity:g} @ {trade.price:,.2f} "
                f"maker={trade.maker_owner} taker={trade.taker_owner}"
            )

        print_book(venue.order_book(symbol, depth=5))
        print_balances(venue, owners)
        print_positions(venue, owners)

        payment, error = venue.trigger_funding(symbol)
        if payment is None:
            console.print(f"[yellow]Funding skipped:[/] {error.value}")
        else:
            console.print(
                f"[bold]FUNDING[/] rate={payment.funding_rate:.6f} mark={payment.mark_price:,.2f} "
                f"longs paid={payment.long_payment:,.4f} shorts paid={payment.short_payment:,.4f}"
            )
        print_positions(venue, owners)
    finally:
        venue.shutdown()
    return 0


def cmd_serve(args, config) -> int:
    from perpclob.api.server import run_server

    run_server(
        host=args.host or config.api.host,
        port=args.port or config.api.port,
        reload=args.reload,
    )
    return 0


COMMANDS = {
    "markets": cmd_markets,
    "config": cmd_config,
    "demo": cmd_demo,
    "serve": cmd_serve,
}


def main(argv=None) -> int:
    args = parse_cli_args(argv)
    config = get_config()
    setup_logger(log_dir=config.log.log_dir, log_level=config.log.level)

    if args.command is None:
        parse_cli_args(["--help"])
        return 0

    try:
        return COMMANDS[args.command](args, config)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error:[/] {e}")
        return 1
    except KeyboardInterrupt:
        console.print(f"\n[yellow]Interrupted.[/]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
