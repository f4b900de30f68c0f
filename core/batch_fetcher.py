#!/usr/bin/env python3
"""
Batch Contract Fetcher

Fetches many contracts from an explorer, strictly one request at a time:
contiguous batches, a delay after each request and between batches, retry
with exponential backoff for transient failures, progress callbacks, and a
checkpoint after every batch so an interrupted run can resume.
"""

import asyncio
import dataclasses
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from core.contract_models import (
    CHAIN_ID_MAP,
    CompilerInfo,
    ContractEntry,
    FetchedContract,
    ProcessingStatus,
    SourceFile,
    parse_abi,
)
from core.data_persistence import DataPersistence, PersistenceError
from core.explorer_client import BlockscanClient, ExplorerClient
from core.json_utils import parse_json_object, safe_json_parse

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProcessingStatus, ContractEntry], None]


# ── Errors ───────────────────────────────────────────────────────

class FetchError(Exception):
    """Base class for per-contract fetch failures."""


class UnsupportedChainError(FetchError):
    """The entry's blockchain has no chain id."""


class ContractNotFoundError(FetchError):
    """The explorer has no verified source for the contract. Never retried."""


class TransientFetchError(FetchError):
    """Network, timeout or payload failure that may succeed on retry."""


class FetchCancelled(Exception):
    """The fetch was cancelled before this contract finished. Not a failure."""


# ── Options ──────────────────────────────────────────────────────

@dataclass
class FetchOptions:
    batch_size: int = 10
    delay_between_requests: float = 0.2   # seconds
    delay_between_batches: float = 2.0    # seconds
    max_retries: int = 3
    resume_from_index: Optional[int] = None
    output_dir: str = './contract_data'
    save_progress: bool = True


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Payload normalization ────────────────────────────────────────

def _unpack_result(result: Any) -> Tuple[str, Optional[str], Optional[Dict[str, Any]]]:
    """Split an explorer result into (source text, separate ABI text, Etherscan-style record)."""
    if isinstance(result, list):
        result = result[0] if result else {}
    if isinstance(result, dict):
        if 'SourceCode' in result:
            return result.get('SourceCode') or '', result.get('ABI'), result
        return json.dumps(result), None, None
    return str(result or ''), None, None


def normalize_sources(source_text: str, contract_name: str) -> List[SourceFile]:
    """
    Turn explorer source text into a list of named files.

    Standard-json input ({"sources": {...}}) and bare {"File.sol": {"content": ...}}
    maps become one file per entry. Anything else is a single synthetic file.
    """
    parsed = parse_json_object(source_text)
    if parsed is not None:
        file_map = parsed.get('sources') if isinstance(parsed.get('sources'), dict) else None
        if file_map is None and parsed and all(
                isinstance(v, dict) and 'content' in v for v in parsed.values()):
            file_map = parsed
        if file_map:
            files = []
            for filename, file_data in file_map.items():
                if isinstance(file_data, dict):
                    content = file_data.get('content', '')
                else:
                    content = str(file_data)
                files.append(SourceFile(filename=filename, content=content))
            return files

    return [SourceFile(filename=f"{contract_name or 'Contract'}.sol", content=source_text)]


def extract_abi(source_text: str, abi_text: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
    """First ABI found in: parsed source `abi`, parsed source `output.abi`, the explorer's ABI field."""
    parsed = parse_json_object(source_text)
    if parsed is not None:
        if isinstance(parsed.get('abi'), list):
            return parsed['abi']
        output = parsed.get('output')
        if isinstance(output, dict) and isinstance(output.get('abi'), list):
            return output['abi']

    if abi_text:
        abi = safe_json_parse(abi_text) if isinstance(abi_text, str) else abi_text
        if isinstance(abi, list):
            return abi
    return None


def extract_compiler_info(record: Optional[Dict[str, Any]]) -> Optional[CompilerInfo]:
    if not record or not record.get('CompilerVersion'):
        return None
    runs = record.get('Runs')
    return CompilerInfo(
        compiler_version=record.get('CompilerVersion', ''),
        optimization_used=str(record.get('OptimizationUsed', '0')) == '1',
        runs=int(runs) if str(runs or '').isdigit() else None,
        evm_version=record.get('EVMVersion', ''),
        license_type=record.get('LicenseType', ''),
    )


def _is_terminal(error: Exception) -> bool:
    if isinstance(error, (ContractNotFoundError, UnsupportedChainError)):
        return True
    message = str(error).lower()
    return 'not found' in message or 'not verified' in message


# ── Fetcher ──────────────────────────────────────────────────────

class BatchContractFetcher:
    """Sequential, rate-limited, resumable fetcher for a list of contract entries."""

    def __init__(self, client: ExplorerClient, options: Optional[FetchOptions] = None,
                 persistence: Optional[DataPersistence] = None,
                 progress_callback: Optional[ProgressCallback] = None,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None):
        self.client = client
        self.options = options or FetchOptions()
        self.persistence = persistence or DataPersistence(self.options.output_dir)
        self.progress_callback = progress_callback
        self._sleep = sleep or asyncio.sleep
        self.status = ProcessingStatus()
        self._results: List[FetchedContract] = []
        self._cancelled = False

    # ── Run control ──────────────────────────────────────────────

    def cancel(self) -> None:
        """Ask the running fetch to stop at its next suspension point."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def get_status(self) -> ProcessingStatus:
        return dataclasses.replace(self.status, failed_contracts=list(self.status.failed_contracts))

    def get_results(self) -> List[FetchedContract]:
        return list(self._results)

    async def _delay(self, seconds: float) -> None:
        if seconds > 0 and not self._cancelled:
            await self._sleep(seconds)

    # ── Batch loop ───────────────────────────────────────────────

    async def fetch_all(self, entries: Iterable[ContractEntry]) -> List[FetchedContract]:
        entries = list(entries)
        total = len(entries)
        batch_size = max(1, self.options.batch_size)
        start = self.options.resume_from_index or 0

        self._cancelled = False
        self.persistence.ensure_output_dir()
        now = _now()
        self.status = ProcessingStatus(total_contracts=total, started_at=now, last_updated_at=now)
        self._results = []

        if start > 0:
            self._results, self.status.failed_contracts = self._load_previous(entries[:start])
            self.status.processed_contracts = len(self._results)
            self.status.last_processed_index = min(start, total) - 1
            logger.info(f"Resuming at index {start} with {len(self._results)} previously fetched contracts")

        for i in range(start, total, batch_size):
            if self._cancelled:
                break
            batch = entries[i:i + batch_size]
            logger.info(f"Processing batch {i // batch_size + 1} ({i}-{i + len(batch) - 1} of {total})")

            batch_results, processed = await self._process_batch(batch)
            self._results.extend(batch_results)

            self.status.last_processed_index = i + processed - 1
            self.status.processed_contracts = len(self._results)
            self.status.last_updated_at = _now()

            if self.options.save_progress:
                self.save_progress()

            if i + batch_size < total:
                await self._delay(self.options.delay_between_batches)

        if self._cancelled:
            logger.warning(f"Fetch cancelled after index {self.status.last_processed_index}")
        logger.info(f"Fetched {len(self._results)} contracts, {len(self.status.failed_contracts)} failed")
        return list(self._results)

    async def _process_batch(self, batch: List[ContractEntry]) -> Tuple[List[FetchedContract], int]:
        results = []
        processed = 0
        for index, entry in enumerate(batch):
            if self._cancelled:
                break
            if self.progress_callback:
                self.progress_callback(self.get_status(), entry)

            try:
                results.append(await self.fetch_contract_with_retry(entry))
            except FetchCancelled:
                break
            except FetchError as e:
                logger.error(f"Failed to fetch {entry.address} ({entry.blockchain}): {e}")
                self.status.failed_contracts.append(entry.address)
            processed += 1

            if index < len(batch) - 1:
                await self._delay(self.options.delay_between_requests)
        return results, processed

    def _load_previous(self, prefix: List[ContractEntry]) -> Tuple[List[FetchedContract], List[str]]:
        """Persisted results and failures that belong to the entries before the resume index."""
        try:
            previous, previous_status = self.persistence.load_fetch_checkpoint()
        except PersistenceError as e:
            logger.warning(f"Could not load previous results, resuming without them: {e}")
            return [], []

        order = {}
        for position, entry in enumerate(prefix):
            order.setdefault(entry.key, position)

        kept: Dict[str, FetchedContract] = {}
        for contract in previous:
            if contract.key in order and contract.key not in kept:
                kept[contract.key] = contract
        results = sorted(kept.values(), key=lambda c: order[c.key])

        fetched = {c.address for c in results}
        prefix_addresses = {e.address for e in prefix}
        failed = []
        if previous_status is not None:
            failed = [a for a in dict.fromkeys(previous_status.failed_contracts)
                      if a in prefix_addresses and a not in fetched]
        return results, failed

    def save_progress(self) -> None:
        """Persist completed results and status. Failures are logged, never raised."""
        try:
            self.persistence.save_fetch_checkpoint(self._results, self.status)
        except PersistenceError as e:
            logger.error(f"Failed to save progress: {e}")

    # ── Single contract ──────────────────────────────────────────

    async def fetch_contract_with_retry(self, entry: ContractEntry) -> FetchedContract:
        attempts = max(1, self.options.max_retries)
        last_error: Optional[FetchError] = None

        for attempt in range(attempts):
            try:
                return await self.fetch_contract(entry)
            except Exception as e:
                if _is_terminal(e):
                    if isinstance(e, FetchError):
                        raise
                    raise ContractNotFoundError(str(e)) from e

                if isinstance(e, FetchError):
                    last_error = e
                else:
                    last_error = TransientFetchError(f"{type(e).__name__}: {e}")
                    last_error.__cause__ = e

                if attempt < attempts - 1:
                    backoff = self.options.delay_between_requests * (2 ** attempt)
                    logger.warning(f"Attempt {attempt + 1}/{attempts} for {entry.address} failed "
                                   f"({last_error}); retrying in {backoff:.2f}s")
                    await self._delay(backoff)
                    if self._cancelled:
                        raise FetchCancelled(entry.key) from last_error

        raise last_error

    async def fetch_contract(self, entry: ContractEntry) -> FetchedContract:
        chain_id = CHAIN_ID_MAP.get(entry.blockchain)
        if not chain_id:
            raise UnsupportedChainError(f"Unsupported blockchain: {entry.blockchain}")

        response = await self.client.fetch_one(chain_id, entry.address)

        if str(response.get('status')) != '1':
            raise ContractNotFoundError(response.get('message') or 'Contract not found or not verified')

        if not response.get('result'):
            raise ContractNotFoundError('No source code found')

        source_text, abi_text, record = _unpack_result(response['result'])
        if not source_text.strip():
            raise ContractNotFoundError('Contract source code not verified')

        raw_abi = extract_abi(source_text, abi_text)
        return FetchedContract(
            address=entry.address,
            blockchain=entry.blockchain,
            chain_id=chain_id,
            contract_name=entry.contract_name,
            protocol=entry.protocol,
            source_code=source_text,
            abi=parse_abi(raw_abi),
            sources=normalize_sources(source_text, entry.contract_name),
            fetched_at=_now(),
            compiler=extract_compiler_info(record),
        )


async def fetch_single_contract(address: str, blockchain: str,
                                client: Optional[ExplorerClient] = None,
                                contract_name: str = 'Unknown',
                                protocol: str = 'Unknown') -> FetchedContract:
    """Fetch one contract with the default retry policy and no checkpointing."""
    entry = ContractEntry(
        address=address.strip().lower(),
        blockchain=blockchain.strip().lower(),
        contract_name=contract_name,
        protocol=protocol,
    )
    options = FetchOptions(save_progress=False)

    if client is not None:
        return await BatchContractFetcher(client, options).fetch_contract_with_retry(entry)

    async with BlockscanClient() as owned_client:
        return await BatchContractFetcher(owned_client, options).fetch_contract_with_retry(entry)
