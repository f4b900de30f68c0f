#!/usr/bin/env python3
"""
Contract Graph: multi-chain contract source fetcher and relationship graph builder

Main entry point for the CLI interface.
"""

import argparse
import asyncio
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cli.automation_runner import AutomationError, AutomationOptions, AutomationRunner
from core.config_manager import ConfigManager
from core.contract_list_loader import ContractListLoader
from core.contract_models import CHAIN_ID_MAP
from core.graceful_shutdown import get_shutdown_handler


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=verbose, show_path=verbose)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Contract Graph: fetch verified contract sources and build relationship graphs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  contract-graph run -i contracts.json -o ./contract_data
  contract-graph run -i contracts.json -b ethereum --limit 100 --save-sources
  contract-graph run --resume 250
  contract-graph run --skip-fetch
  contract-graph stats -i contracts.json
        """
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Run command
    run_parser = subparsers.add_parser('run', help='Fetch contracts and build graphs')
    run_parser.add_argument('--input', '-i', action='append', default=[],
                            help='Input contract list JSON (repeatable)')
    run_parser.add_argument('--output', '-o', help='Output directory')
    run_parser.add_argument('--blockchain', '-b', help='Only process this blockchain')
    run_parser.add_argument('--protocol', '-p', help='Only process this protocol')
    run_parser.add_argument('--batch-size', type=int, help='Contracts per batch')
    run_parser.add_argument('--delay', type=float, help='Seconds between requests')
    run_parser.add_argument('--batch-delay', type=float, help='Seconds between batches')
    run_parser.add_argument('--retries', type=int, help='Maximum attempts per contract')
    run_parser.add_argument('--resume', type=int, help='Resume from this index of the filtered list')
    run_parser.add_argument('--limit', type=int, help='Process at most this many contracts')
    run_parser.add_argument('--skip-fetch', action='store_true', help='Use previously fetched contracts')
    run_parser.add_argument('--no-graphs', action='store_true', help='Do not build graphs')
    run_parser.add_argument('--save-sources', action='store_true', help='Write per-contract source trees')
    run_parser.add_argument('--explorer', choices=['blockscan', 'etherscan'], help='Explorer backend')
    run_parser.add_argument('--quiet', '-q', action='store_true', help='Minimal output')

    # Stats command
    stats_parser = subparsers.add_parser('stats', help='Show statistics for contract list files')
    stats_parser.add_argument('--input', '-i', action='append', default=[],
                              help='Input contract list JSON (repeatable)')

    # Networks command
    subparsers.add_parser('networks', help='List supported blockchains')

    # Config command
    config_parser = subparsers.add_parser('config', help='Manage configuration')
    config_parser.add_argument('--show', action='store_true', help='Show current configuration')
    config_parser.add_argument('--set', metavar='KEY=VALUE', action='append', default=[],
                               help='Set a configuration value')

    return parser


def show_networks(console: Console) -> None:
    console.print("[bold blue]🌐 Supported Networks:[/bold blue]")
    for network, chain_id in CHAIN_ID_MAP.items():
        console.print(f"  [green]✅[/green] {network:<12} (Chain ID: {chain_id})")


def show_stats(console: Console, inputs) -> int:
    runner = AutomationRunner(console=console)
    paths = runner.resolve_inputs(inputs)
    if not paths:
        console.print("[red]❌ No input files found[/red]")
        return 1

    loader = ContractListLoader()
    entries = loader.load_from_files(paths)
    stats = runner.show_statistics(entries)

    table = Table(title="Protocols", show_header=True, header_style="bold cyan")
    table.add_column("Protocol")
    table.add_column("Contracts", justify="right")
    for protocol, count in sorted(stats['by_protocol'].items(), key=lambda kv: (-kv[1], kv[0])):
        table.add_row(protocol, str(count))
    console.print(table)
    return 0


def manage_config(console: Console, args) -> int:
    config_manager = ConfigManager()
    if args.set:
        for assignment in args.set:
            key, sep, value = assignment.partition('=')
            if not sep:
                console.print(f"[red]❌ Expected KEY=VALUE, got: {assignment}[/red]")
                return 1
            try:
                config_manager.set_value(key.strip(), value.strip())
            except (KeyError, ValueError) as e:
                console.print(f"[red]❌ {e}[/red]")
                return 1
        config_manager.save_config()
        console.print("[green]✅ Configuration updated[/green]")

    if args.show or not args.set:
        for key, value in config_manager.get_display_config().items():
            console.print(f"  {key:<24} {value}")
    return 0


def main():
    """Main entry point for the Contract Graph CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    console = Console()

    try:
        if args.command == 'networks':
            show_networks(console)
            return 0
        elif args.command == 'stats':
            return show_stats(console, args.input)
        elif args.command == 'config':
            return manage_config(console, args)
        elif args.command == 'run':
            # Set up graceful shutdown handler so Ctrl+C keeps fetch progress
            shutdown_handler = get_shutdown_handler()
            config = ConfigManager().get_config()
            run_console = Console(quiet=args.quiet)
            runner = AutomationRunner(config, console=run_console, shutdown_handler=shutdown_handler)
            options = AutomationOptions(
                inputs=args.input,
                output_dir=args.output,
                blockchain=args.blockchain,
                protocol=args.protocol,
                batch_size=args.batch_size,
                delay=args.delay,
                batch_delay=args.batch_delay,
                retries=args.retries,
                resume_from=args.resume,
                limit=args.limit,
                skip_fetch=args.skip_fetch,
                build_graphs=not args.no_graphs,
                save_sources=args.save_sources,
                quiet=args.quiet,
                explorer=args.explorer,
            )
            result = asyncio.run(runner.run(options))
            return 0 if result.contracts or result.entries else 1

    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        return 1
    except AutomationError as e:
        console.print(f"[red]❌ {e}[/red]")
        if args.verbose:
            console.print_exception()
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
