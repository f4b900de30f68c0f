#!/usr/bin/env python3
"""
Data Persistence

Reads and writes every pipeline artifact under one output directory: fetched
contracts (JSON and JSONL), the fetch checkpoint, both graphs with their
GraphML/D3 exports, per-contract source trees and the summary report.
"""

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from core.contract_models import (
    CodeGraph,
    CommunicationGraph,
    FetchedContract,
    ProcessingStatus,
)
from utils.file_handler import FileHandler

logger = logging.getLogger(__name__)

CONTRACTS_FILE = 'contracts.json'
CONTRACTS_JSONL_FILE = 'contracts.jsonl'
CHECKPOINT_CONTRACTS_FILE = 'fetched_contracts.json'
CHECKPOINT_STATUS_FILE = 'processing_status.json'
STATUS_FILE = 'status.json'
CODE_GRAPH_FILE = 'code_graph.json'
CODE_GRAPH_GRAPHML_FILE = 'code_graph.graphml'
CODE_GRAPH_D3_FILE = 'code_graph_d3.json'
COMMUNICATION_GRAPH_FILE = 'communication_graph.json'
COMMUNICATION_GRAPH_D3_FILE = 'communication_graph_d3.json'
SUMMARY_REPORT_FILE = 'summary_report.json'
SOURCES_DIR = 'sources'


class PersistenceError(Exception):
    """Raised when an artifact cannot be written or read back."""

    def __init__(self, path: Union[str, Path], cause: Exception):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"Persistence failure for {path}: {cause}")


def _count_by(values: List[str]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    return counts


class DataPersistence:
    """File-backed storage for one output directory. Assumes a single writer."""

    def __init__(self, output_dir: Union[str, Path] = './contract_data', file_handler: Optional[FileHandler] = None):
        self.output_dir = Path(output_dir)
        self.file_handler = file_handler or FileHandler()

    def ensure_output_dir(self) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self.output_dir

    def path_for(self, filename: str) -> Path:
        return self.output_dir / filename

    def _write_json(self, filename: str, data: Any) -> Path:
        path = self.path_for(filename)
        try:
            self.file_handler.write_json(path, data)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(path, e) from e
        logger.debug(f"Wrote {path}")
        return path

    def _write_text(self, filename: str, content: str) -> Path:
        path = self.path_for(filename)
        try:
            self.file_handler.write_text(path, content)
        except OSError as e:
            raise PersistenceError(path, e) from e
        logger.debug(f"Wrote {path}")
        return path

    def _read_json(self, filename: str) -> Optional[Any]:
        """Parsed file content, or None when the file does not exist."""
        path = self.path_for(filename)
        if not path.exists():
            return None
        try:
            return self.file_handler.read_json(path)
        except (OSError, ValueError) as e:
            raise PersistenceError(path, e) from e

    # ── Contracts ────────────────────────────────────────────────

    def save_contracts(self, contracts: List[FetchedContract], filename: str = CONTRACTS_FILE) -> Path:
        return self._write_json(filename, [c.to_dict() for c in contracts])

    def load_contracts(self, filename: str = CONTRACTS_FILE) -> List[FetchedContract]:
        data = self._read_json(filename)
        if data is None:
            return []
        path = self.path_for(filename)
        if not isinstance(data, list):
            raise PersistenceError(path, ValueError(f"expected a JSON array, got {type(data).__name__}"))
        try:
            return [FetchedContract.from_dict(item) for item in data]
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise PersistenceError(path, e) from e

    def append_contract_jsonl(self, contract: FetchedContract, filename: str = CONTRACTS_JSONL_FILE) -> Path:
        path = self.path_for(filename)
        try:
            self.file_handler.append_line(path, json.dumps(contract.to_dict(), ensure_ascii=False))
        except OSError as e:
            raise PersistenceError(path, e) from e
        return path

    def load_contracts_jsonl(self, filename: str = CONTRACTS_JSONL_FILE) -> List[FetchedContract]:
        path = self.path_for(filename)
        if not path.exists():
            return []
        contracts = []
        try:
            for line in self.file_handler.read_text(path).splitlines():
                if line.strip():
                    contracts.append(FetchedContract.from_dict(json.loads(line)))
        except (OSError, KeyError, TypeError, AttributeError, ValueError) as e:
            raise PersistenceError(path, e) from e
        return contracts

    # ── Fetch checkpoint ─────────────────────────────────────────

    def save_fetch_checkpoint(self, contracts: List[FetchedContract], status: ProcessingStatus) -> None:
        self._write_json(CHECKPOINT_STATUS_FILE, status.to_dict())
        self._write_json(CHECKPOINT_CONTRACTS_FILE, [c.to_dict() for c in contracts])

    def load_fetch_checkpoint(self) -> Tuple[List[FetchedContract], Optional[ProcessingStatus]]:
        contracts = self.load_contracts(CHECKPOINT_CONTRACTS_FILE)
        status_data = self._read_json(CHECKPOINT_STATUS_FILE)
        if not status_data:
            return contracts, None
        try:
            return contracts, ProcessingStatus.from_dict(status_data)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise PersistenceError(self.path_for(CHECKPOINT_STATUS_FILE), e) from e

    def save_status(self, status: Dict[str, Any]) -> Path:
        return self._write_json(STATUS_FILE, status)

    def load_status(self) -> Optional[Dict[str, Any]]:
        return self._read_json(STATUS_FILE)

    # ── Graphs ───────────────────────────────────────────────────

    def save_code_graph(self, graph: CodeGraph, filename: str = CODE_GRAPH_FILE) -> Path:
        return self._write_json(filename, graph.to_dict())

    def load_code_graph(self, filename: str = CODE_GRAPH_FILE) -> Optional[CodeGraph]:
        data = self._read_json(filename)
        return CodeGraph.from_dict(data) if data is not None else None

    def save_communication_graph(self, graph: CommunicationGraph,
                                 filename: str = COMMUNICATION_GRAPH_FILE) -> Path:
        return self._write_json(filename, graph.to_dict())

    def load_communication_graph(self, filename: str = COMMUNICATION_GRAPH_FILE) -> Optional[CommunicationGraph]:
        data = self._read_json(filename)
        return CommunicationGraph.from_dict(data) if data is not None else None

    def save_graphml(self, graphml: str, filename: str = CODE_GRAPH_GRAPHML_FILE) -> Path:
        return self._write_text(filename, graphml)

    def save_d3_format(self, data: Dict[str, Any], filename: str) -> Path:
        return self._write_json(filename, data)

    # ── Sources ──────────────────────────────────────────────────

    def save_contract_sources(self, contract: FetchedContract) -> Path:
        """Lay out sources under sources/<blockchain>/<protocol>/<name>_<address prefix>/."""
        fh = self.file_handler
        contract_dir = (
            self.output_dir / SOURCES_DIR
            / fh.safe_filename(contract.blockchain)
            / fh.safe_filename(contract.protocol)
            / f"{fh.safe_filename(contract.contract_name)}_{contract.address[:10]}"
        )
        try:
            for index, source in enumerate(contract.sources):
                fh.write_text(contract_dir / self._relative_source_path(source.filename, index), source.content)
            if contract.abi is not None:
                fh.write_json(contract_dir / 'abi.json', [item.to_dict() for item in contract.abi])
            fh.write_json(contract_dir / 'metadata.json', {
                'address': contract.address,
                'blockchain': contract.blockchain,
                'chain_id': contract.chain_id,
                'contract_name': contract.contract_name,
                'protocol': contract.protocol,
                'fetched_at': contract.fetched_at,
                'source_files': [s.filename for s in contract.sources],
                'compiler': contract.compiler.to_dict() if contract.compiler else None,
            })
        except OSError as e:
            raise PersistenceError(contract_dir, e) from e
        return contract_dir

    def _relative_source_path(self, filename: str, index: int) -> Path:
        # Keep package structure (e.g. @openzeppelin/...) but never escape the contract dir
        parts = [self.file_handler.safe_filename(p.lstrip('@')) for p in filename.replace('\\', '/').split('/')
                 if p not in ('', '.', '..')]
        if not parts:
            parts = [f"source_{index}.sol"]
        return Path(*parts)

    # ── Summary ──────────────────────────────────────────────────

    def generate_summary_report(self, contracts: List[FetchedContract],
                                code_graph: Optional[CodeGraph] = None,
                                communication_graph: Optional[CommunicationGraph] = None) -> Dict[str, Any]:
        report: Dict[str, Any] = {
            'generated_at': datetime.now(timezone.utc).isoformat(),
            'summary': {
                'total_contracts': len(contracts),
                'total_protocols': len({c.protocol for c in contracts}),
                'total_blockchains': len({c.blockchain for c in contracts}),
            },
        }
        if code_graph is not None:
            report['code_graph'] = {
                'total_nodes': len(code_graph.nodes),
                'total_edges': len(code_graph.edges),
                'relationships_by_type': _count_by([e.type.value for e in code_graph.edges]),
            }
        if communication_graph is not None:
            report['communication_graph'] = {
                'total_nodes': len(communication_graph.nodes),
                'total_edges': len(communication_graph.edges),
                'patterns': dict(communication_graph.patterns),
                'role_distribution': _count_by([n.role.value for n in communication_graph.nodes]),
            }
        report['contracts_by_protocol'] = _count_by([c.protocol for c in contracts])
        report['contracts_by_blockchain'] = _count_by([c.blockchain for c in contracts])
        return report

    def save_summary_report(self, contracts: List[FetchedContract],
                            code_graph: Optional[CodeGraph] = None,
                            communication_graph: Optional[CommunicationGraph] = None,
                            filename: str = SUMMARY_REPORT_FILE) -> Path:
        report = self.generate_summary_report(contracts, code_graph, communication_graph)
        return self._write_json(filename, report)

    # ── Housekeeping ─────────────────────────────────────────────

    def output_exists(self, filename: str) -> bool:
        return self.path_for(filename).exists()

    def list_files(self) -> List[str]:
        if not self.output_dir.exists():
            return []
        return sorted(p.name for p in self.output_dir.iterdir() if p.is_file())

    def clean(self) -> None:
        if self.output_dir.exists():
            shutil.rmtree(self.output_dir)
            logger.info(f"Removed {self.output_dir}")
