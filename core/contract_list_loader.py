#!/usr/bin/env python3
"""
Contract List Loader

Loads contract lists from JSON files, normalizes and validates each entry,
and offers dedup, filtering, grouping and statistics helpers.
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

from core.contract_models import CHAIN_ID_MAP, ContractEntry
from utils.file_handler import FileHandler

logger = logging.getLogger(__name__)

_RE_ADDRESS = re.compile(r'^0x[a-f0-9]{40}$', re.IGNORECASE)


class LoadError(Exception):
    """Raised when a contract list file cannot be read or parsed."""

    def __init__(self, path: Union[str, Path], cause: Exception):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"Failed to load contracts from {path}: {cause}")


class ContractListLoader:
    """Load and prepare the input contract list."""

    def __init__(self, file_handler: FileHandler = None):
        self.file_handler = file_handler or FileHandler()

    def load_contracts_from_file(self, path: Union[str, Path]) -> List[ContractEntry]:
        try:
            data = self.file_handler.read_json(path)
        except Exception as e:
            raise LoadError(path, e) from e

        if not isinstance(data, list):
            raise LoadError(path, ValueError("expected a JSON array of contract records"))

        entries = []
        dropped = 0
        for raw in data:
            entry = self.normalize_entry(raw) if isinstance(raw, dict) else None
            if entry is None or not self.is_valid(entry):
                dropped += 1
                continue
            entries.append(entry)

        if dropped:
            logger.debug(f"Dropped {dropped} invalid entries from {path}")
        logger.info(f"Loaded {len(entries)} contracts from {path}")
        return entries

    def load_from_files(self, paths: Iterable[Union[str, Path]]) -> List[ContractEntry]:
        """Load several files. A file that fails to load is logged and skipped."""
        entries: List[ContractEntry] = []
        for path in paths:
            try:
                entries.extend(self.load_contracts_from_file(path))
            except LoadError as e:
                logger.error(str(e))
        return entries

    @staticmethod
    def normalize_entry(raw: Dict[str, Any]) -> ContractEntry:
        return ContractEntry(
            address=str(raw.get('address') or '').strip().lower(),
            blockchain=str(raw.get('blockchain') or '').strip().lower(),
            contract_name=str(raw.get('contract_name') or '').strip() or 'Unknown',
            protocol=str(raw.get('protocol') or '').strip() or 'Unknown',
        )

    @staticmethod
    def is_valid(entry: ContractEntry) -> bool:
        return bool(_RE_ADDRESS.match(entry.address)) and entry.blockchain in CHAIN_ID_MAP

    # ── Set operations ───────────────────────────────────────────

    @staticmethod
    def remove_duplicates(entries: Iterable[ContractEntry]) -> List[ContractEntry]:
        """Keep the first entry for every (blockchain, address) key."""
        seen = set()
        unique = []
        for entry in entries:
            if entry.key in seen:
                continue
            seen.add(entry.key)
            unique.append(entry)
        return unique

    @staticmethod
    def filter_by_blockchain(entries: Iterable[ContractEntry], blockchain: str) -> List[ContractEntry]:
        wanted = blockchain.lower()
        return [e for e in entries if e.blockchain.lower() == wanted]

    @staticmethod
    def filter_by_protocol(entries: Iterable[ContractEntry], protocol: str) -> List[ContractEntry]:
        wanted = protocol.lower()
        return [e for e in entries if e.protocol.lower() == wanted]

    @staticmethod
    def get_unique_protocols(entries: Iterable[ContractEntry]) -> List[str]:
        return sorted({e.protocol for e in entries})

    @staticmethod
    def get_unique_blockchains(entries: Iterable[ContractEntry]) -> List[str]:
        return sorted({e.blockchain for e in entries})

    @staticmethod
    def group_by_protocol(entries: Iterable[ContractEntry]) -> Dict[str, List[ContractEntry]]:
        groups: Dict[str, List[ContractEntry]] = {}
        for entry in entries:
            groups.setdefault(entry.protocol, []).append(entry)
        return groups

    @staticmethod
    def group_by_blockchain(entries: Iterable[ContractEntry]) -> Dict[str, List[ContractEntry]]:
        groups: Dict[str, List[ContractEntry]] = {}
        for entry in entries:
            groups.setdefault(entry.blockchain, []).append(entry)
        return groups

    def get_statistics(self, entries: List[ContractEntry]) -> Dict[str, Any]:
        unique = self.remove_duplicates(entries)
        by_blockchain: Dict[str, int] = {}
        by_protocol: Dict[str, int] = {}
        for entry in unique:
            by_blockchain[entry.blockchain] = by_blockchain.get(entry.blockchain, 0) + 1
            by_protocol[entry.protocol] = by_protocol.get(entry.protocol, 0) + 1

        return {
            'total_contracts': len(entries),
            'unique_contracts': len(unique),
            'protocols': len(by_protocol),
            'blockchains': len(by_blockchain),
            'by_blockchain': by_blockchain,
            'by_protocol': by_protocol,
        }
