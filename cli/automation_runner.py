"""
Pipeline runner for the contract graph CLI.

Loads contract lists, fetches sources in rate-limited batches, builds the code
and communication graphs and writes every artifact to the output directory.
Unexpected failures are re-raised as AutomationError carrying the phase and,
when known, the contract being processed.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from core.batch_fetcher import BatchContractFetcher
from core.code_graph_builder import CodeGraphBuilder
from core.communication_graph_builder import CommunicationGraphBuilder
from core.config_manager import GraphConfig
from core.contract_list_loader import ContractListLoader
from core.contract_models import (
    CodeGraph,
    CommunicationGraph,
    ContractEntry,
    FetchedContract,
    ProcessingStatus,
)
from core.data_persistence import (
    CHECKPOINT_CONTRACTS_FILE,
    CODE_GRAPH_D3_FILE,
    COMMUNICATION_GRAPH_D3_FILE,
    DataPersistence,
    PersistenceError,
)
from core.explorer_client import ExplorerClient, create_explorer_client
from core.graceful_shutdown import GracefulShutdownHandler

logger = logging.getLogger(__name__)

DEFAULT_INPUT_FILES = ['all_ethereum_contracts.json', 'cache_bnb.json']


class AutomationError(Exception):
    """Unexpected failure in one pipeline phase (load, fetch, build or persist)."""

    def __init__(self, phase: str, cause: Exception, entry: Optional[ContractEntry] = None):
        self.phase = phase
        self.cause = cause
        self.entry = entry
        where = f" while processing {entry.address} ({entry.blockchain})" if entry else ""
        super().__init__(f"{phase} phase failed{where}: {cause}")


@dataclass
class AutomationOptions:
    inputs: List[str] = field(default_factory=list)
    output_dir: Optional[str] = None
    blockchain: Optional[str] = None
    protocol: Optional[str] = None
    batch_size: Optional[int] = None
    delay: Optional[float] = None
    batch_delay: Optional[float] = None
    retries: Optional[int] = None
    resume_from: Optional[int] = None
    limit: Optional[int] = None
    skip_fetch: bool = False
    build_graphs: bool = True
    save_sources: bool = False
    quiet: bool = False
    explorer: Optional[str] = None


@dataclass
class AutomationResult:
    entries: List[ContractEntry] = field(default_factory=list)
    contracts: List[FetchedContract] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    code_graph: Optional[CodeGraph] = None
    communication_graph: Optional[CommunicationGraph] = None
    files: List[str] = field(default_factory=list)
    elapsed: float = 0.0


class FetchProgressReporter:
    """Progress callback that drives a rich progress bar."""

    def __init__(self, progress: Progress, task_id, start_index: int = 0):
        self.progress = progress
        self.task_id = task_id
        self.seen = start_index
        self.current: Optional[ContractEntry] = None

    def __call__(self, status: ProcessingStatus, entry: ContractEntry) -> None:
        self.current = entry
        self.progress.update(
            self.task_id,
            completed=self.seen,
            description=f"Fetching {entry.contract_name} [dim]({entry.blockchain})[/dim] "
                        f"[red]{len(status.failed_contracts)} failed[/red]",
        )
        self.seen += 1


class AutomationRunner:
    """Runs the full load → fetch → graph → persist pipeline."""

    def __init__(self, config: Optional[GraphConfig] = None, console: Optional[Console] = None,
                 client: Optional[ExplorerClient] = None,
                 shutdown_handler: Optional[GracefulShutdownHandler] = None):
        self.config = config or GraphConfig()
        self.console = console or Console()
        self.client = client
        self.shutdown_handler = shutdown_handler
        self.loader = ContractListLoader()
        self._current_reporter: Optional[FetchProgressReporter] = None

    # ── Load ─────────────────────────────────────────────────────

    @staticmethod
    def resolve_inputs(inputs: List[str]) -> List[str]:
        if inputs:
            return list(inputs)
        return [name for name in DEFAULT_INPUT_FILES if Path(name).exists()]

    def load_entries(self, options: AutomationOptions) -> List[ContractEntry]:
        paths = self.resolve_inputs(options.inputs)
        if not paths:
            if options.skip_fetch:
                return []
            raise FileNotFoundError(
                f"No input files given and none of {', '.join(DEFAULT_INPUT_FILES)} exist")

        self.console.print(f"[bold blue]📂 Loading contracts from {len(paths)} file(s)...[/bold blue]")
        entries = []
        for path in paths:
            loaded = self.loader.load_from_files([path])
            if loaded:
                self.console.print(f"   [green]✅ {path}: {len(loaded)} contracts[/green]")
            else:
                self.console.print(f"   [yellow]⚠️ {path}: no contracts loaded[/yellow]")
            entries.extend(loaded)

        entries = self.loader.remove_duplicates(entries)
        if options.blockchain:
            entries = self.loader.filter_by_blockchain(entries, options.blockchain)
        if options.protocol:
            entries = self.loader.filter_by_protocol(entries, options.protocol)
        if options.limit is not None and options.limit >= 0:
            entries = entries[:options.limit]
        return entries

    def show_statistics(self, entries: List[ContractEntry]) -> Dict[str, Any]:
        stats = self.loader.get_statistics(entries)
        table = Table(title="Contract List", show_header=True, header_style="bold cyan")
        table.add_column("Blockchain")
        table.add_column("Contracts", justify="right")
        for blockchain, count in sorted(stats['by_blockchain'].items()):
            table.add_row(blockchain, str(count))
        self.console.print(table)
        self.console.print(
            f"   Total: {stats['total_contracts']}  Unique: {stats['unique_contracts']}  "
            f"Protocols: {stats['protocols']}  Blockchains: {stats['blockchains']}")
        return stats

    # ── Fetch ────────────────────────────────────────────────────

    async def fetch(self, entries: List[ContractEntry], options: AutomationOptions,
                    persistence: DataPersistence) -> BatchContractFetcher:
        fetch_options = self.config.to_fetch_options(
            batch_size=options.batch_size,
            delay_between_requests=options.delay,
            delay_between_batches=options.batch_delay,
            max_retries=options.retries,
            resume_from_index=options.resume_from,
            output_dir=str(persistence.output_dir),
        )

        client = self.client or create_explorer_client(
            options.explorer or self.config.explorer,
            api_key=self.config.etherscan_api_key,
            base_url=self.config.etherscan_base_url,
            timeout=self.config.request_timeout,
            user_agent=self.config.user_agent,
        )

        self.console.print(f"[bold blue]🌐 Fetching {len(entries)} contracts via {client.name}...[/bold blue]")
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=self.console,
            disable=self.console.quiet,
        ) as progress:
            task = progress.add_task("Starting...", total=len(entries))
            reporter = FetchProgressReporter(progress, task, fetch_options.resume_from_index or 0)
            fetcher = BatchContractFetcher(client, fetch_options, persistence, progress_callback=reporter)
            self._current_reporter = reporter

            if self.shutdown_handler:
                self.shutdown_handler.register_cleanup_callback(fetcher.save_progress)
            try:
                if self.client is None:
                    async with client:
                        await fetcher.fetch_all(entries)
                else:
                    await fetcher.fetch_all(entries)
            finally:
                if self.shutdown_handler:
                    self.shutdown_handler.unregister_cleanup_callback(fetcher.save_progress)
            progress.update(task, completed=len(entries), description="Done")

        status = fetcher.get_status()
        self.console.print(
            f"[green]✅ Fetched {len(fetcher.get_results())} contracts[/green]"
            + (f" [red]({len(status.failed_contracts)} failed)[/red]" if status.failed_contracts else ""))
        return fetcher

    def load_fetched(self, persistence: DataPersistence) -> List[FetchedContract]:
        contracts = persistence.load_contracts()
        if not contracts:
            contracts = persistence.load_contracts(CHECKPOINT_CONTRACTS_FILE)
        self.console.print(f"[blue]📦 Loaded {len(contracts)} previously fetched contracts[/blue]")
        return contracts

    # ── Graphs ───────────────────────────────────────────────────

    def build_code_graph(self, contracts: List[FetchedContract]):
        builder = CodeGraphBuilder()
        builder.add_contracts(contracts)
        graph = builder.build()
        stats = builder.get_stats()
        self.console.print(
            f"[green]🕸️  Code graph: {stats['total_nodes']} nodes, {stats['total_edges']} edges "
            f"(avg {stats['average_edges_per_node']:.2f} per node)[/green]")
        for rel_type, count in sorted(stats['edges_by_type'].items()):
            self.console.print(f"   {rel_type:<16} {count}")
        return builder, graph

    def build_communication_graph(self, contracts: List[FetchedContract]):
        builder = CommunicationGraphBuilder()
        builder.add_contracts(contracts)
        graph = builder.build()
        self.console.print(
            f"[green]📡 Communication graph: {len(graph.nodes)} nodes, {len(graph.edges)} edges[/green]")

        hubs = builder.get_hubs(self.config.top_hubs)
        if hubs and hubs[0].communication_count > 0:
            table = Table(title="Top Hubs", show_header=True, header_style="bold cyan")
            table.add_column("#", style="dim", justify="right")
            table.add_column("Contract", style="bold")
            table.add_column("Role")
            table.add_column("In", justify="right")
            table.add_column("Out", justify="right")
            for i, hub in enumerate(hubs, 1):
                table.add_row(str(i), hub.name, hub.role.value, str(hub.inbound_count), str(hub.outbound_count))
            self.console.print(table)
        return builder, graph

    # ── Persist ──────────────────────────────────────────────────

    def _save(self, label: str, action: Callable[[], Any]) -> None:
        try:
            action()
        except PersistenceError as e:
            logger.error(str(e))
            self.console.print(f"[yellow]⚠️ Could not save {label}: {e}[/yellow]")

    # ── Run ──────────────────────────────────────────────────────

    async def run(self, options: AutomationOptions) -> AutomationResult:
        started = time.time()
        result = AutomationResult()
        persistence = DataPersistence(options.output_dir or self.config.output_dir)
        self._current_reporter = None

        try:
            result.entries = self.load_entries(options)
        except Exception as e:
            raise AutomationError('load', e) from e

        if not options.skip_fetch and not result.entries:
            self.console.print("[yellow]⚠️ No valid contracts to process[/yellow]")
            result.elapsed = time.time() - started
            return result
        if result.entries:
            self.show_statistics(result.entries)

        if options.skip_fetch:
            try:
                result.contracts = self.load_fetched(persistence)
            except Exception as e:
                raise AutomationError('load', e) from e
        else:
            try:
                fetcher = await self.fetch(result.entries, options, persistence)
            except Exception as e:
                current = self._current_reporter.current if self._current_reporter else None
                raise AutomationError('fetch', e, current) from e
            result.contracts = fetcher.get_results()
            result.failed = fetcher.get_status().failed_contracts
            self._save("contracts", lambda: persistence.save_contracts(result.contracts))

            if options.save_sources:
                self.console.print("[blue]💾 Saving contract sources...[/blue]")
                for contract in result.contracts:
                    self._save(f"sources for {contract.address}",
                               lambda c=contract: persistence.save_contract_sources(c))

        code_builder = comm_builder = None
        if options.build_graphs and result.contracts:
            try:
                code_builder, result.code_graph = self.build_code_graph(result.contracts)
                comm_builder, result.communication_graph = self.build_communication_graph(result.contracts)
            except Exception as e:
                raise AutomationError('build', e) from e

        try:
            if code_builder is not None:
                self._save("code graph", lambda: persistence.save_code_graph(result.code_graph))
                self._save("GraphML", lambda: persistence.save_graphml(code_builder.to_graphml()))
                self._save("code graph D3 export",
                           lambda: persistence.save_d3_format(code_builder.to_d3_format(), CODE_GRAPH_D3_FILE))
            if comm_builder is not None:
                self._save("communication graph",
                           lambda: persistence.save_communication_graph(result.communication_graph))
                self._save("communication graph D3 export",
                           lambda: persistence.save_d3_format(comm_builder.to_d3_format(),
                                                              COMMUNICATION_GRAPH_D3_FILE))
            self._save("summary report", lambda: persistence.save_summary_report(
                result.contracts, result.code_graph, result.communication_graph))
            self._save("run status", lambda: persistence.save_status({
                'completed_at': datetime.now(timezone.utc).isoformat(),
                'skip_fetch': options.skip_fetch,
                'total_entries': len(result.entries),
                'total_contracts': len(result.contracts),
                'failed_contracts': result.failed,
            }))
            result.files = persistence.list_files()
        except Exception as e:
            raise AutomationError('persist', e) from e

        result.elapsed = time.time() - started
        self.console.print(f"\n[bold green]✅ Completed in {result.elapsed:.1f}s[/bold green]")
        self.console.print(f"[blue]📁 Output written to {persistence.output_dir}:[/blue]")
        for name in result.files:
            self.console.print(f"   • {name}")
        return result
