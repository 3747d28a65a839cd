#!/usr/bin/env python3
"""
Swarm Fleet CLI - Command Line Interface for Fleet Operations
=============================================================

Provides a CLI for:
- Creating and listing fleet wallets
- Showing on-chain account info for every wallet
- Funding the fleet (flat or with generated shares)
- Sweeping a percentage of every wallet to one address
- Buying and selling a token from every wallet, or buying from one

Usage:
    python swarm_cli.py init
    python swarm_cli.py create --count 10
    python swarm_cli.py fund --amount 0.02
    python swarm_cli.py distribute --mode percentages --min-pct 1 --max-pct 10
    python swarm_cli.py sweep --to <ADDRESS> --pct 100
    python swarm_cli.py buy --mint <MINT> --amount 0.01
    python swarm_cli.py sell --mint <MINT> --pct 100
    python swarm_cli.py buy-one --mint <MINT> --amount 0.01 --mnemonic
"""

import os
import sys
import json
import argparse
import getpass
from pathlib import Path
from typing import Optional

import yaml
from rich.panel import Panel
from rich.table import Table
from rich import box
from rich.progress import Progress, SpinnerColumn, TextColumn

from solswarm.config import Config, ConfigManager, DEFAULT_CONFIG, FUNDER_SECRET_ENV
from solswarm.distribution import DistributionMode, DistributionService, DistributionSummary
from solswarm.errors import FleetError
from solswarm.executor import CancelToken
from solswarm.keystore import FileKeyStore
from solswarm.ledger import RpcLedgerClient
from solswarm.metrics import MetricsCollector
from solswarm.models import Account
from solswarm.partition import PartitionGenerator
from solswarm.security import DecryptionError, MIN_PASSWORD_LENGTH
from solswarm.swap import JupiterQuoteProvider
from solswarm.utils import (
    console,
    setup_logging,
    format_address,
    format_signature,
    format_sol,
    lamports_to_sol,
    sanitize_error_message,
    sol_to_lamports,
)

PASSWORD_ENV = "SOLSWARM_PASSWORD"
MNEMONIC_ENV = "FUNDING_MNEMONIC"


def print_banner():
    """Print the CLI banner."""
    banner = """
    Solana Swarm Fleet
    ═══════════════════════════════════
    Batch transfers, sweeps and swaps
    """
    console.print(Panel(banner, style="bold cyan", box=box.DOUBLE))


def get_password(prompt: str = "Enter wallet password: ") -> str:
    """Get the store password from the environment or the user."""
    password = os.environ.get(PASSWORD_ENV)
    if password:
        return password

    console.print(f"[yellow]{prompt}[/yellow]")
    password = getpass.getpass("> ")

    if len(password) < MIN_PASSWORD_LENGTH:
        console.print(f"[red]Password must be at least {MIN_PASSWORD_LENGTH} characters[/red]")
        sys.exit(1)

    return password


def confirm(args, word: str, message: str) -> bool:
    """Typed confirmation for commands that move funds."""
    if args.yes:
        return True
    console.print(f"\n[yellow]{message}[/yellow]")
    answer = input(f"Type '{word}' to confirm: ")
    if answer != word:
        console.print("[yellow]Cancelled[/yellow]")
        return False
    return True


def load_config(args) -> Config:
    config = ConfigManager(Path(args.config)).load_config()
    if args.rpc:
        config.rpc_url = args.rpc
    if args.wallet_store:
        config.wallet_store = args.wallet_store
    if args.workers:
        config.max_workers = args.workers
    if args.dry_run:
        config.dry_run = True
    return config


def build_service(
    args, config: Config, generator: Optional[PartitionGenerator] = None, need_keys: bool = True
) -> DistributionService:
    password = get_password() if args.encrypted and need_keys else None
    keystore = FileKeyStore(config.wallet_store, password=password)
    ledger = RpcLedgerClient(
        config.rpc_url,
        commitment=config.commitment,
        confirm_timeout=config.confirm_timeout_seconds,
        poll_interval=config.poll_interval_seconds,
    )
    quotes = JupiterQuoteProvider(config.swap_api_url, api_key=config.swap_api_key)
    return DistributionService(
        keystore,
        ledger,
        config,
        quote_provider=quotes,
        metrics=MetricsCollector(),
        generator=generator,
    )


def get_funder(args, config: Config) -> Account:
    """Funder from --funder-key, a recovery phrase, FUNDING_SECRET_KEY, the config, or a prompt."""
    if args.funder_key:
        return DistributionService.load_funder(args.funder_key)

    if args.mnemonic:
        phrase = os.environ.get(MNEMONIC_ENV)
        if not phrase:
            console.print("[yellow]Enter recovery phrase:[/yellow]")
            phrase = getpass.getpass("> ")
        return DistributionService.load_funder_from_mnemonic(phrase, args.index)

    manager = ConfigManager(Path(args.config))
    try:
        password = None
        if config.encrypted_funder_key and not os.environ.get(FUNDER_SECRET_ENV):
            password = get_password("Enter config password: ")
        return DistributionService.load_funder(manager.funder_secret(config, password))
    except ValueError:
        console.print("[yellow]Enter funder secret key (base58 or base64):[/yellow]")
        return DistributionService.load_funder(getpass.getpass("> ").strip())


def cancel_token(args) -> Optional[CancelToken]:
    return CancelToken(timeout=args.timeout) if args.timeout else None


def print_summary(args, summary: DistributionSummary, service: DistributionService, title: str):
    """Print per-wallet results (or the plan for dry runs) and totals."""
    if summary.dry_run:
        table = Table(title=f"{title} (dry run)", box=box.ROUNDED)
        table.add_column("#", style="cyan", width=4)
        table.add_column("From", style="dim")
        table.add_column("To", style="dim")
        table.add_column("Amount", style="green", justify="right")
        for i, intent in enumerate(summary.intents):
            table.add_row(
                str(i),
                format_address(intent.source.address, 6),
                format_address(intent.destination, 6),
                str(intent.amount),
            )
        console.print(table)
        console.print(f"\n[yellow][DRY RUN] Would move {summary.total_resolved} base units "
                      f"across {len(summary.intents)} operations[/yellow]")
        return

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("#", style="cyan", width=4)
    table.add_column("From", style="dim")
    table.add_column("To", style="dim")
    table.add_column("Amount", style="green", justify="right")
    table.add_column("Status", style="white")
    table.add_column("Signature / Error", style="dim")

    for i, result in enumerate(summary.results):
        status = "[green]✓[/green]" if result.success else f"[red]✗ {result.error_kind.value}[/red]"
        detail = format_signature(result.reference) if result.success else (result.error or "")[:60]
        table.add_row(
            str(i),
            format_address(result.source, 6),
            format_address(result.destination, 6),
            str(result.amount),
            status,
            detail,
        )
    console.print(table)

    console.print(Panel(
        f"Successful: {summary.success_count}/{len(summary.results)}\n"
        f"Resolved: {summary.total_resolved}\n"
        f"Transferred: {summary.total_transferred}",
        title="Summary",
        border_style="green" if summary.failure_count == 0 else "yellow",
    ))

    if service.metrics is not None and service.metrics.metrics:
        console.print(service.metrics.summary_table())
        if args.metrics_file:
            service.metrics.save_to_file(args.metrics_file)
            console.print(f"[dim]Metrics saved to {args.metrics_file}[/dim]")


def run_batch(description: str, operation):
    """Run a batch behind a spinner."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        task = progress.add_task(description, total=None)
        summary = operation()
        progress.update(task, completed=True)
    return summary


def init_command(args):
    """Handle init command - write a config file, optionally with an encrypted funder key."""
    print_banner()
    manager = ConfigManager(Path(args.config))

    if manager.config_path.exists() and not args.yes:
        console.print(f"[red]{manager.config_path} already exists (use --yes to overwrite)[/red]")
        return

    config_data = yaml.safe_load(DEFAULT_CONFIG)
    if args.rpc:
        config_data["rpc_url"] = args.rpc

    funder_secret = None
    password = None
    if args.store_funder:
        console.print("[yellow]Enter funder secret key (base58 or base64):[/yellow]")
        funder_secret = getpass.getpass("> ").strip()
        password = get_password("Create config password: ")

    manager.create_config(config_data, funder_secret, password)
    console.print(f"[green]✓ Configuration written to {manager.config_path}[/green]")


def create_command(args, config: Config):
    """Handle create command - generate new fleet wallets."""
    print_banner()
    service = build_service(args, config)

    entries = run_batch(f"Generating {args.count} wallets...", lambda: service.create_wallets(args.count))

    table = Table(title=f"Created {len(entries)} Wallets", box=box.ROUNDED)
    table.add_column("Index", style="cyan")
    table.add_column("Address", style="green")
    offset = len(service.keystore) - len(entries)
    for i, entry in enumerate(entries):
        table.add_row(str(offset + i), entry.public_key)
    console.print(table)

    console.print(f"\n[green]✓ Wallets saved to: {config.wallet_store}[/green]")
    console.print("[dim]  Keep this file secure - it contains secret keys[/dim]")


def list_command(args, config: Config):
    """Handle list command - show stored wallet addresses."""
    keystore = FileKeyStore(config.wallet_store)
    entries = keystore.list()
    if not entries:
        console.print("[yellow]No wallets found. Run 'create' first.[/yellow]")
        return

    table = Table(title=f"{len(entries)} Wallets", box=box.ROUNDED)
    table.add_column("#", style="cyan", width=4)
    table.add_column("Address", style="green")
    table.add_column("Encoding", style="dim")
    for i, entry in enumerate(entries):
        table.add_row(str(i), entry.public_key, entry.encoding or "auto")
    console.print(table)


def info_command(args, config: Config):
    """Handle info command - show on-chain state of every wallet."""
    print_banner()
    service = build_service(args, config, need_keys=False)

    infos = run_batch("Fetching account info...", lambda: service.account_info(args.commitment))

    if args.json:
        console.print_json(json.dumps([i.to_dict() for i in infos]))
        return

    table = Table(title="Account Info", box=box.ROUNDED)
    table.add_column("#", style="cyan", width=4)
    table.add_column("Address", style="dim")
    table.add_column("SOL", style="green", justify="right")
    table.add_column("Owner", style="dim")
    table.add_column("Exec", width=5)
    table.add_column("Rent Epoch", justify="right")
    table.add_column("Data", justify="right")

    total = 0
    for i, info in enumerate(infos):
        if info.error:
            table.add_row(str(i), info.address, f"[red]{info.error}[/red]", "-", "-", "-", "-")
            continue
        total += info.lamports
        table.add_row(
            str(i),
            info.address,
            f"{lamports_to_sol(info.lamports):.9f}",
            format_address(info.owner, 6),
            "yes" if info.executable else "no",
            str(info.rent_epoch) if info.rent_epoch is not None else "-",
            str(info.data_size),
        )
    console.print(table)
    console.print(f"\n[bold]Fleet total:[/bold] {format_sol(total)}")


def fund_command(args, config: Config):
    """Handle fund command - flat amount from the funder to every wallet."""
    print_banner()
    service = build_service(args, config)
    funder = get_funder(args, config)
    amount = sol_to_lamports(args.amount)
    recipients = args.to or None

    count = len(recipients) if recipients else len(service.keystore)
    console.print(f"Funder: {funder.address}")
    console.print(f"Wallets to fund: {count}")
    console.print(f"Amount per wallet: {format_sol(amount)}")

    if not config.dry_run and not confirm(args, "FUND", f"This will send {format_sol(amount * count)} to {count} wallets"):
        return

    summary = run_batch("Funding wallets...", lambda: service.fund_flat(
        funder, amount, recipients, cancel=cancel_token(args), dry_run=config.dry_run
    ))
    print_summary(args, summary, service, "Funding Results")


def distribute_command(args, config: Config):
    """Handle distribute command - split the funder's balance into generated shares."""
    print_banner()
    generator = PartitionGenerator(args.seed)
    service = build_service(args, config, generator)
    funder = get_funder(args, config)
    mode = DistributionMode(args.mode)

    total = sol_to_lamports(args.total) if args.total is not None else None
    min_amount = sol_to_lamports(args.min) if args.min is not None else None
    max_amount = sol_to_lamports(args.max) if args.max is not None else None

    if not config.dry_run and not confirm(args, "DISTRIBUTE", f"This will distribute funds from {funder.address}"):
        return

    summary = run_batch("Distributing...", lambda: service.fund_with_shares(
        funder,
        args.to or None,
        mode=mode,
        total=total,
        min_amount=min_amount,
        max_amount=max_amount,
        min_pct=args.min_pct,
        max_pct=args.max_pct,
        common_difference=args.difference,
        cancel=cancel_token(args),
        dry_run=config.dry_run,
    ))

    if summary.shares:
        share_table = Table(title="Shares", box=box.ROUNDED)
        share_table.add_column("#", style="cyan", width=4)
        share_table.add_column("Fraction", justify="right")
        share_table.add_column("Amount", style="green", justify="right")
        for share in summary.shares:
            share_table.add_row(str(share.index), f"{share.fraction * 100:.6f}%", format_sol(share.resolved_amount))
        console.print(share_table)

    print_summary(args, summary, service, "Distribution Results")


def sweep_command(args, config: Config):
    """Handle sweep command - percentage of every wallet to one address."""
    print_banner()
    console.print(f"\n[bold yellow]Sweeping {args.pct}% of every wallet[/bold yellow]\n")
    service = build_service(args, config)

    console.print(f"[bold]Destination:[/bold] {args.to}")
    console.print(f"[bold]Fee reserve:[/bold] {format_sol(config.fee_reserve_lamports)} per wallet")

    if not config.dry_run and not confirm(
        args, "SWEEP", f"This will transfer {args.pct}% of every wallet's SOL to {args.to}"
    ):
        return

    summary = run_batch("Sweeping...", lambda: service.sweep_percentage(
        args.to, args.pct, cancel=cancel_token(args), dry_run=config.dry_run
    ))
    print_summary(args, summary, service, "Sweep Results")


def buy_command(args, config: Config):
    """Handle buy command - every wallet swaps SOL into the token."""
    print_banner()
    service = build_service(args, config)
    amount = sol_to_lamports(args.amount)

    if not config.dry_run and not confirm(
        args, "BUY", f"Every wallet will swap {format_sol(amount)} into {args.mint}"
    ):
        return

    summary = run_batch("Buying...", lambda: service.buy_all(
        args.mint, amount, args.slippage, cancel=cancel_token(args), dry_run=config.dry_run
    ))
    print_summary(args, summary, service, "Buy Results")


def buy_one_command(args, config: Config):
    """Handle buy-one command - a single wallet swaps SOL into the token."""
    print_banner()
    service = build_service(args, config, need_keys=False)
    wallet = get_funder(args, config)
    amount = sol_to_lamports(args.amount)

    console.print(f"Wallet: {wallet.address}")

    if not config.dry_run and not confirm(
        args, "BUY", f"{format_address(wallet.address)} will swap {format_sol(amount)} into {args.mint}"
    ):
        return

    summary = run_batch("Buying...", lambda: service.buy(
        wallet, args.mint, amount, args.slippage, cancel=cancel_token(args), dry_run=config.dry_run
    ))
    print_summary(args, summary, service, "Buy Results")


def sell_command(args, config: Config):
    """Handle sell command - every wallet swaps a percentage of the token back to SOL."""
    print_banner()
    service = build_service(args, config)

    if not config.dry_run and not confirm(
        args, "SELL", f"Every wallet will sell {args.pct}% of its {args.mint} balance"
    ):
        return

    summary = run_batch("Selling...", lambda: service.sell_all(
        args.mint, args.pct, args.slippage, cancel=cancel_token(args), dry_run=config.dry_run
    ))
    print_summary(args, summary, service, "Sell Results")


COMMANDS = {
    'create': create_command,
    'list': list_command,
    'info': info_command,
    'fund': fund_command,
    'distribute': distribute_command,
    'sweep': sweep_command,
    'buy': buy_command,
    'buy-one': buy_one_command,
    'sell': sell_command,
}


def add_key_options(subparser, key_help: str = 'Funder secret key (or config / prompt)',
                    flag: str = '--funder-key'):
    """Options shared by every command that needs a signing key."""
    subparser.add_argument(flag, dest='funder_key', help=key_help)
    subparser.add_argument('--mnemonic', action='store_true',
                           help=f'Derive the key from a recovery phrase (${MNEMONIC_ENV} or prompt)')
    subparser.add_argument('--index', type=int, default=0, help="Derivation index (m/44'/501'/index'/0')")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Solana Swarm Fleet CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create 10 wallets
  python swarm_cli.py create --count 10

  # Fund every wallet with 0.02 SOL
  python swarm_cli.py fund --amount 0.02

  # Split 1 SOL into random 1-10% shares (preview only)
  python swarm_cli.py --dry-run distribute --total 1 --mode percentages

  # Sweep everything back to the funder
  python swarm_cli.py sweep --to <ADDRESS> --pct 100

  # Buy a token from the first wallet of a recovery phrase
  python swarm_cli.py buy-one --mint <MINT> --amount 0.01 --mnemonic
        """
    )

    # Global options
    parser.add_argument('--config', default='./solswarm.yaml', help='Path to config file')
    parser.add_argument('--rpc', help='Solana RPC URL (overrides config)')
    parser.add_argument('--wallet-store', help='Path to wallet JSON file (overrides config)')
    parser.add_argument('--encrypted', action='store_true', help='Wallet store is password-encrypted')
    parser.add_argument('--workers', type=int, help='Concurrent source wallets (default 1)')
    parser.add_argument('--timeout', type=float, help='Stop starting new operations after N seconds')
    parser.add_argument('--metrics-file', help='Write operation metrics JSON here')
    parser.add_argument('--dry-run', action='store_true', help='Show the plan without submitting')
    parser.add_argument('--yes', '-y', action='store_true', help='Skip typed confirmations')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    init_parser = subparsers.add_parser('init', help='Write a config file')
    init_parser.add_argument('--store-funder', action='store_true', help='Encrypt a funder key into the config')

    create_parser = subparsers.add_parser('create', help='Create new fleet wallets')
    create_parser.add_argument('--count', type=int, default=10, help='Number of wallets to create (1-1000)')

    subparsers.add_parser('list', help='List stored wallet addresses')

    info_parser = subparsers.add_parser('info', help='Show on-chain account info')
    info_parser.add_argument('--commitment', choices=['processed', 'confirmed', 'finalized'])
    info_parser.add_argument('--json', action='store_true', help='Print JSON')

    fund_parser = subparsers.add_parser('fund', help='Fund every wallet with a flat amount')
    fund_parser.add_argument('--amount', type=float, required=True, help='SOL per wallet')
    fund_parser.add_argument('--to', nargs='+', help='Explicit recipients (default: every wallet)')
    add_key_options(fund_parser)

    dist_parser = subparsers.add_parser('distribute', help='Fund wallets with generated shares')
    dist_parser.add_argument('--mode', choices=[m.value for m in DistributionMode], default='percentages')
    dist_parser.add_argument('--total', type=float, help='SOL to distribute (default: spendable balance)')
    dist_parser.add_argument('--min', type=float, help='Minimum SOL per wallet (bounded mode)')
    dist_parser.add_argument('--max', type=float, help='Maximum SOL per wallet (bounded mode)')
    dist_parser.add_argument('--min-pct', type=float, default=1.0, help='Minimum percentage (percentages mode)')
    dist_parser.add_argument('--max-pct', type=float, default=10.0, help='Maximum percentage (percentages mode)')
    dist_parser.add_argument('--difference', type=float, default=0.01, help='Common difference (arithmetic mode)')
    dist_parser.add_argument('--seed', type=int, help='Random seed for reproducible shares')
    dist_parser.add_argument('--to', nargs='+', help='Explicit recipients (default: every wallet)')
    add_key_options(dist_parser)

    sweep_parser = subparsers.add_parser('sweep', help='Sweep a percentage of every wallet')
    sweep_parser.add_argument('--to', required=True, help='Destination address')
    sweep_parser.add_argument('--pct', type=float, default=100.0, help='Percentage of each balance')

    buy_parser = subparsers.add_parser('buy', help='Buy a token from every wallet')
    buy_parser.add_argument('--mint', required=True, help='Token mint address')
    buy_parser.add_argument('--amount', type=float, required=True, help='SOL per wallet')
    buy_parser.add_argument('--slippage', type=int, help='Slippage in basis points')

    buy_one_parser = subparsers.add_parser('buy-one', help='Buy a token from a single wallet')
    buy_one_parser.add_argument('--mint', required=True, help='Token mint address')
    buy_one_parser.add_argument('--amount', type=float, required=True, help='SOL to spend')
    buy_one_parser.add_argument('--slippage', type=int, help='Slippage in basis points')
    add_key_options(buy_one_parser, 'Buying wallet secret key (or config / prompt)', '--wallet-key')

    sell_parser = subparsers.add_parser('sell', help='Sell a token from every wallet')
    sell_parser.add_argument('--mint', required=True, help='Token mint address')
    sell_parser.add_argument('--pct', type=float, default=100.0, help='Percentage of each token balance')
    sell_parser.add_argument('--slippage', type=int, help='Slippage in basis points')

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1
    if args.command == 'init':
        init_command(args)
        return 0

    config = load_config(args)
    setup_logging(config.log_level, config.log_file)

    try:
        COMMANDS[args.command](args, config)
    except (FleetError, ValueError, DecryptionError) as e:
        console.print(f"[red]Error: {sanitize_error_message(e)}[/red]")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user[/yellow]")
        return 130
    return 0


if __name__ == '__main__':
    sys.exit(main())
