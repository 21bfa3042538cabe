#!/usr/bin/env python3
"""
Wallet Pool CLI - Command Line Interface for Pool Operations
============================================================

Provides:
- Creating an encrypted configuration (master, sink, relayer keys)
- Generating the wallet roster
- Funding relayers and wallets
- Seasoning and rebalancing
- Running a trading strategy over the pool
- Withdrawing pool funds to the sink

Usage:
    python pool_cli.py init
    python pool_cli.py generate --count 100
    python pool_cli.py fund --relayers
    python pool_cli.py status
    python pool_cli.py run --strategy my_strategy:trade --cycles 10
    python pool_cli.py withdraw
"""

import sys
import asyncio
import argparse
import getpass
import importlib
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from burner_wallet import BurnerWalletManager
from circuit_breaker import CircuitBreaker
from config import Config, ConfigManager, PoolKeys, DEFAULT_CONFIG
from connection import SolanaConnection
from pool_runner import PoolRunner
from rebalancer import WalletRebalancer
from roster_store import WalletRosterStore
from seasoning import WalletSeasoner
from utils import setup_logging, get_structured_logger, format_sol, format_pubkey, RosterLoadError, CircuitBreakerTripped, SecurityError
from wallet_pool import WalletPoolManager

console = Console()


def print_banner():
    banner = """
    Wallet Pool Manager
    ═══════════════════
    Durable pool · burners · circuit breaker · rebalancing
    """
    console.print(Panel(banner, style="bold cyan", box=box.DOUBLE))


def get_password(prompt: str = "Enter pool password: ") -> str:
    """Securely get password from user."""
    console.print(f"[yellow]{prompt}[/yellow]")
    password = getpass.getpass("> ")

    if len(password) < 8:
        console.print("[red]Password must be at least 8 characters[/red]")
        sys.exit(1)

    return password


def get_secret(prompt: str) -> str:
    console.print(f"[yellow]{prompt}[/yellow]")
    return getpass.getpass("> ").strip()


def load_stack(args, password: str):
    """Load config and keys, and build the pool plus its collaborators."""
    manager = ConfigManager(Path(args.config))
    config = manager.load_config()
    try:
        keys: PoolKeys = manager.load_keys(config, password)
    except SecurityError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    setup_logging(config.log_level, config.log_file)
    get_structured_logger(log_file=config.metrics_log_file)

    connection = SolanaConnection(args.rpc or config.rpc_url)
    store = WalletRosterStore(config.wallet_file, password=password)
    pool = WalletPoolManager(config, connection, store, relayers=keys.relayers)
    return config, keys, connection, pool


def init_command(args):
    """Handle init command - write an encrypted configuration."""
    print_banner()

    config_path = Path(args.config)
    if config_path.exists() and not args.force:
        console.print(f"[red]{config_path} already exists (use --force to overwrite)[/red]")
        return

    password = get_password("Create encryption password: ")
    console.print("[yellow]Confirm password:[/yellow]")
    if getpass.getpass("> ") != password:
        console.print("[red]Passwords don't match![/red]")
        return

    master = get_secret("Master wallet secret key (base58, blank to skip):") or None
    sink = get_secret("Sink wallet secret key (base58, blank to skip):") or None
    relayers = []
    while True:
        relayer = get_secret(f"Relayer #{len(relayers) + 1} secret key (blank to finish):")
        if not relayer:
            break
        relayers.append(relayer)

    try:
        ConfigManager(config_path).create_config(
            yaml.safe_load(DEFAULT_CONFIG), password,
            master_key=master, sink_key=sink, relayer_keys=relayers
        )
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        return

    console.print(f"[green]✓ Configuration written to {config_path}[/green]")
    console.print("\n[bold]Next step:[/bold] python pool_cli.py generate --count 10")


def generate_command(args):
    """Handle generate command - grow the roster."""
    print_banner()
    password = get_password()
    config, _, connection, pool = load_stack(args, password)

    if args.count:
        config.num_wallets_to_generate = args.count
    before = len(pool.store.load_roster())
    pool.load_or_bootstrap()

    console.print(f"[green]✓ Roster has {len(pool.wallets)} wallets ({len(pool.wallets) - before} new)[/green]")
    console.print(f"[dim]  Saved to {config.wallet_file}[/dim]")
    asyncio.run(connection.close())


def fund_command(args):
    """Handle fund command - top up relayers and wallets."""
    print_banner()
    password = get_password()
    config, keys, connection, pool = load_stack(args, password)
    pool.load_or_bootstrap()

    async def _fund():
        try:
            if args.relayers:
                if keys.master is None:
                    console.print("[red]No master wallet configured[/red]")
                else:
                    await pool.fund_relayers(keys.master)
            return await pool.fund_all()
        finally:
            await connection.close()

    report = asyncio.run(_fund())
    table = Table(title="Funding Report", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green", justify="right")
    for key, value in report.to_dict().items():
        table.add_row(key.replace('_', ' ').title(), str(value))
    console.print(table)
    get_structured_logger().print_metrics_summary(console)


def status_command(args):
    """Handle status command - show pool balances."""
    print_banner()
    password = get_password()
    config, keys, connection, pool = load_stack(args, password)
    pool.load_or_bootstrap()

    async def _balances():
        try:
            return [(w, await connection.get_balance(w.pubkey)) for w in pool.wallets[:args.limit]]
        finally:
            await connection.close()

    rows = asyncio.run(_balances())

    status = pool.status()
    console.print(Panel(
        f"Total Wallets: {status['total_wallets']}\n"
        f"Seasoned: {status['seasoned']}\n"
        f"Relayers: {status['relayers']}\n"
        f"Sink: {format_pubkey(str(keys.sink.pubkey())) if keys.sink else '-'}\n"
        f"Burner Mode: {config.burner_mode}",
        title="Pool Summary",
        border_style="cyan"
    ))

    table = Table(title="Wallet Details", box=box.ROUNDED)
    table.add_column("Name", style="cyan")
    table.add_column("Pubkey", style="dim")
    table.add_column("Balance", style="green", justify="right")
    table.add_column("Seasoned", width=8)
    for wallet, balance in rows:
        table.add_row(wallet.name, wallet.pubkey, format_sol(balance), "🟢" if wallet.is_seasoned else "⚪")
    console.print(table)


def rebalance_command(args):
    """Handle rebalance command - one rebalance over a selected batch."""
    print_banner()
    password = get_password()
    config, keys, connection, pool = load_stack(args, password)
    pool.load_or_bootstrap()

    sink = str(keys.sink.pubkey()) if keys.sink else None
    rebalancer = WalletRebalancer(config, connection, sink_pubkey=sink)

    async def _rebalance():
        try:
            return await rebalancer.rebalance(pool.select_batch(args.batch_size))
        finally:
            await connection.close()

    report = asyncio.run(_rebalance())
    console.print(f"[green]✓ {report.p2p_transfers} P2P transfer(s), {report.consolidations} consolidation(s), "
                  f"{report.failures} failure(s)[/green]")


def season_command(args):
    """Handle season command - season unseasoned wallets."""
    print_banner()
    password = get_password()
    config, _, connection, pool = load_stack(args, password)
    pool.load_or_bootstrap()
    seasoner = WalletSeasoner(config, connection)

    async def _season():
        try:
            return await seasoner.season_pool(pool)
        finally:
            await connection.close()

    seasoned = asyncio.run(_season())
    console.print(f"[green]✓ Seasoned {seasoned} wallet(s)[/green]")


def withdraw_command(args):
    """Handle withdraw command - sweep every roster wallet to the sink."""
    print_banner()
    password = get_password()
    config, keys, connection, pool = load_stack(args, password)
    if keys.sink is None:
        console.print("[red]No sink wallet configured[/red]")
        asyncio.run(connection.close())
        return
    pool.load_or_bootstrap()
    sink = str(keys.sink.pubkey())

    async def _withdraw():
        try:
            return await pool.withdraw_all(sink)
        finally:
            await connection.close()

    report = asyncio.run(_withdraw())
    table = Table(title="Withdrawal Report", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    for key in ('attempted', 'withdrawn', 'failed', 'skipped'):
        table.add_row(key.title(), str(getattr(report, key)))
    table.add_row("Total", format_sol(report.lamports))
    console.print(table)
    console.print(f"[dim]  Sink: {format_pubkey(sink)}[/dim]")


def load_strategy(target: str):
    """Resolve ``module:attribute`` to the strategy callable."""
    module_name, _, attr = target.partition(':')
    if not module_name or not attr:
        raise ValueError(f"Strategy must look like module:callable, got {target!r}")
    return getattr(importlib.import_module(module_name), attr)


def run_command(args):
    """Handle run command - run a strategy over the pool."""
    print_banner()

    try:
        strategy = load_strategy(args.strategy)
    except (ValueError, ImportError, AttributeError) as e:
        console.print(f"[red]Cannot load strategy: {e}[/red]")
        return

    password = get_password()
    try:
        config, keys, connection, pool = load_stack(args, password)
        pool.load_or_bootstrap()
    except RosterLoadError as e:
        console.print(f"[red]Roster load failed: {e}[/red]")
        sys.exit(1)

    sink = str(keys.sink.pubkey()) if keys.sink else None
    breaker = CircuitBreaker(config, connection, watched_pubkey=sink)
    burners = None
    if config.burner_mode != "disabled":
        burners = BurnerWalletManager(config, connection, relayers=keys.relayers, sink_pubkey=sink)
    runner = PoolRunner(
        config, pool, breaker, strategy,
        burners=burners,
        rebalancer=WalletRebalancer(config, connection, sink_pubkey=sink),
        seasoner=WalletSeasoner(config, connection)
    )

    console.print("[bold green]Starting pool runner...[/bold green]")
    console.print("[dim]Press Ctrl+C to stop\n[/dim]")

    async def _run():
        try:
            await pool.fund_all()
            await runner.run(max_cycles=args.cycles)
        finally:
            try:
                if args.withdraw and sink:
                    await pool.withdraw_all(sink)
            finally:
                await connection.close()

    try:
        asyncio.run(_run())
    except CircuitBreakerTripped as e:
        console.print(f"\n[red]Stopped by circuit breaker: {e.reason}[/red]")
        runner.print_summary()
        sys.exit(2)
    except KeyboardInterrupt:
        console.print("\n[yellow]Runner stopped by user[/yellow]")
    runner.print_summary()


def main():
    parser = argparse.ArgumentParser(
        description="Wallet Pool CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python pool_cli.py init
  python pool_cli.py generate --count 100
  python pool_cli.py fund --relayers
  python pool_cli.py status --limit 20
  python pool_cli.py run --strategy my_strategy:trade --cycles 50
  python pool_cli.py withdraw
        """
    )

    parser.add_argument('--config', default='./pool_config.yaml', help='Path to pool config')
    parser.add_argument('--rpc', default=None, help='RPC URL override')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    init_parser = subparsers.add_parser('init', help='Create encrypted configuration')
    init_parser.add_argument('--force', action='store_true', help='Overwrite existing config')

    generate_parser = subparsers.add_parser('generate', help='Generate roster wallets')
    generate_parser.add_argument('--count', type=int, help='Target roster size')

    fund_parser = subparsers.add_parser('fund', help='Fund wallets from relayers')
    fund_parser.add_argument('--relayers', action='store_true', help='Top up relayers from master first')

    status_parser = subparsers.add_parser('status', help='Show pool status')
    status_parser.add_argument('--limit', type=int, default=50, help='Wallets to list')

    rebalance_parser = subparsers.add_parser('rebalance', help='Rebalance one batch')
    rebalance_parser.add_argument('--batch-size', type=int, default=None, help='Batch size override')

    subparsers.add_parser('season', help='Season unseasoned wallets')

    run_parser = subparsers.add_parser('run', help='Run a strategy over the pool')
    run_parser.add_argument('--strategy', required=True, help='Strategy as module:callable')
    run_parser.add_argument('--cycles', type=int, default=None, help='Stop after N cycles')
    run_parser.add_argument('--withdraw', action='store_true', help='Sweep pool wallets to the sink on exit')

    subparsers.add_parser('withdraw', help='Sweep all pool wallets to the sink')

    args = parser.parse_args()

    commands = {
        'init': init_command,
        'generate': generate_command,
        'fund': fund_command,
        'status': status_command,
        'rebalance': rebalance_command,
        'season': season_command,
        'withdraw': withdraw_command,
        'run': run_command,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return
    handler(args)


if __name__ == '__main__':
    main()
