#!/usr/bin/env python3
"""
Data model for the contract graph pipeline.

Shared dataclasses and enums for contract entries, fetched contracts, ABI items,
processing status and both derived graphs. Every persisted type exposes
to_dict()/from_dict() so the persistence layer can round-trip it through JSON.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


# ── Chain table ──────────────────────────────────────────────────

CHAIN_ID_MAP: Dict[str, str] = {
    'ethereum': '1',
    'bnb': '56',
    'bsc': '56',
    'polygon': '137',
    'arbitrum': '42161',
    'optimism': '10',
    'base': '8453',
    'avalanche': '43114',
    'fantom': '250',
    'abstract': '2741',
}


# ── Enums ────────────────────────────────────────────────────────

class AbiItemType(Enum):
    FUNCTION = "function"
    EVENT = "event"
    CONSTRUCTOR = "constructor"
    FALLBACK = "fallback"
    RECEIVE = "receive"
    ERROR = "error"


class RelationshipType(Enum):
    INHERITS = "inherits"
    IMPORTS = "imports"
    CALLS = "calls"
    USES_INTERFACE = "uses_interface"
    SAME_PROTOCOL = "same_protocol"
    CREATES = "creates"
    SIMILAR_CODE = "similar_code"


class ContractRole(Enum):
    TOKEN = "token"
    DEX = "dex"
    ROUTER = "router"
    FACTORY = "factory"
    LENDING = "lending"
    VAULT = "vault"
    GOVERNANCE = "governance"
    ORACLE = "oracle"
    BRIDGE = "bridge"
    PROXY = "proxy"
    MULTISIG = "multisig"
    UNKNOWN = "unknown"


class CommunicationPattern(Enum):
    TOKEN_TRANSFER = "token_transfer"
    TOKEN_APPROVAL = "token_approval"
    SWAP = "swap"
    LIQUIDITY = "liquidity"
    STAKE = "stake"
    GOVERNANCE = "governance"
    ORACLE = "oracle"
    BRIDGE = "bridge"
    LENDING = "lending"
    NFT_MINT = "nft_mint"
    CALLBACK = "callback"
    FLASH_LOAN = "flash_loan"
    GENERIC_CALL = "generic_call"


# ── Input and fetch results ──────────────────────────────────────

@dataclass(frozen=True)
class ContractEntry:
    """One row of the input contract list, already normalized."""
    address: str
    blockchain: str
    contract_name: str = "Unknown"
    protocol: str = "Unknown"

    @property
    def key(self) -> str:
        return f"{self.blockchain}:{self.address}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContractEntry':
        return cls(
            address=data['address'],
            blockchain=data['blockchain'],
            contract_name=data.get('contract_name', 'Unknown'),
            protocol=data.get('protocol', 'Unknown'),
        )


@dataclass
class SourceFile:
    filename: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {'filename': self.filename, 'content': self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceFile':
        return cls(filename=data.get('filename', ''), content=data.get('content', ''))


@dataclass
class AbiParameter:
    """A function/event parameter. Tuple types nest through components."""
    name: str = ""
    type: str = ""
    indexed: bool = False
    components: List['AbiParameter'] = field(default_factory=list)
    internal_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'name': self.name, 'type': self.type}
        if self.indexed:
            data['indexed'] = True
        if self.components:
            data['components'] = [c.to_dict() for c in self.components]
        if self.internal_type:
            data['internalType'] = self.internal_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AbiParameter':
        return cls(
            name=data.get('name') or "",
            type=data.get('type') or "",
            indexed=bool(data.get('indexed', False)),
            components=[cls.from_dict(c) for c in data.get('components') or []],
            internal_type=data.get('internalType'),
        )


@dataclass
class AbiItem:
    type: AbiItemType
    name: Optional[str] = None
    inputs: List[AbiParameter] = field(default_factory=list)
    outputs: List[AbiParameter] = field(default_factory=list)
    state_mutability: Optional[str] = None
    anonymous: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'type': self.type.value}
        if self.name is not None:
            data['name'] = self.name
        data['inputs'] = [p.to_dict() for p in self.inputs]
        if self.outputs:
            data['outputs'] = [p.to_dict() for p in self.outputs]
        if self.state_mutability:
            data['stateMutability'] = self.state_mutability
        if self.anonymous:
            data['anonymous'] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AbiItem':
        """Build an item from raw ABI JSON. Missing type defaults to function, as solc does."""
        return cls(
            type=AbiItemType(data.get('type') or 'function'),
            name=data.get('name'),
            inputs=[AbiParameter.from_dict(p) for p in data.get('inputs') or []],
            outputs=[AbiParameter.from_dict(p) for p in data.get('outputs') or []],
            state_mutability=data.get('stateMutability'),
            anonymous=bool(data.get('anonymous', False)),
        )


def parse_abi(raw: Optional[List[Dict[str, Any]]]) -> Optional[List[AbiItem]]:
    """Convert a raw ABI array, skipping entries with an unknown type."""
    if raw is None:
        return None
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        try:
            items.append(AbiItem.from_dict(entry))
        except ValueError:
            continue
    return items


@dataclass
class CompilerInfo:
    compiler_version: str = ""
    optimization_used: bool = False
    runs: Optional[int] = None
    evm_version: str = ""
    license_type: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompilerInfo':
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class FetchedContract:
    """A successfully fetched contract with its normalized sources and ABI."""
    address: str
    blockchain: str
    chain_id: str
    contract_name: str
    protocol: str
    source_code: str
    abi: Optional[List[AbiItem]] = None
    sources: List[SourceFile] = field(default_factory=list)
    fetched_at: str = ""
    compiler: Optional[CompilerInfo] = None

    @property
    def key(self) -> str:
        return f"{self.blockchain}:{self.address}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'blockchain': self.blockchain,
            'chain_id': self.chain_id,
            'contract_name': self.contract_name,
            'protocol': self.protocol,
            'source_code': self.source_code,
            'abi': [item.to_dict() for item in self.abi] if self.abi is not None else None,
            'sources': [s.to_dict() for s in self.sources],
            'fetched_at': self.fetched_at,
            'compiler': self.compiler.to_dict() if self.compiler else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FetchedContract':
        compiler = data.get('compiler')
        return cls(
            address=data['address'],
            blockchain=data['blockchain'],
            chain_id=str(data.get('chain_id', '')),
            contract_name=data.get('contract_name', 'Unknown'),
            protocol=data.get('protocol', 'Unknown'),
            source_code=data.get('source_code', ''),
            abi=parse_abi(data.get('abi')),
            sources=[SourceFile.from_dict(s) for s in data.get('sources') or []],
            fetched_at=data.get('fetched_at', ''),
            compiler=CompilerInfo.from_dict(compiler) if compiler else None,
        )


@dataclass
class ProcessingStatus:
    """Resumability checkpoint for one fetch run."""
    total_contracts: int = 0
    processed_contracts: int = 0
    failed_contracts: List[str] = field(default_factory=list)
    last_processed_index: int = -1
    started_at: str = ""
    last_updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProcessingStatus':
        return cls(
            total_contracts=data.get('total_contracts', 0),
            processed_contracts=data.get('processed_contracts', 0),
            failed_contracts=list(data.get('failed_contracts', [])),
            last_processed_index=data.get('last_processed_index', -1),
            started_at=data.get('started_at', ''),
            last_updated_at=data.get('last_updated_at', ''),
        )


# ── Code graph ───────────────────────────────────────────────────

@dataclass(frozen=True)
class EdgeMetadata:
    function_name: Optional[str] = None
    similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EdgeMetadata':
        return cls(function_name=data.get('function_name'), similarity=data.get('similarity'))


@dataclass(frozen=True)
class ContractEdge:
    source: str
    target: str
    type: RelationshipType
    metadata: Optional[EdgeMetadata] = None

    @property
    def key(self):
        return (self.source, self.target, self.type)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'source': self.source, 'target': self.target, 'type': self.type.value}
        if self.metadata is not None:
            data['metadata'] = self.metadata.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContractEdge':
        metadata = data.get('metadata')
        return cls(
            source=data['source'],
            target=data['target'],
            type=RelationshipType(data['type']),
            metadata=EdgeMetadata.from_dict(metadata) if metadata is not None else None,
        )


@dataclass
class ContractNode:
    address: str
    name: str
    protocol: str
    blockchain: str
    functions: List[str] = field(default_factory=list)
    events: List[str] = field(default_factory=list)
    has_proxy: bool = False
    implements_interfaces: List[str] = field(default_factory=list)
    standards: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContractNode':
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class CodeGraph:
    nodes: List[ContractNode] = field(default_factory=list)
    edges: List[ContractEdge] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodes': [n.to_dict() for n in self.nodes],
            'edges': [e.to_dict() for e in self.edges],
            'metadata': dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CodeGraph':
        return cls(
            nodes=[ContractNode.from_dict(n) for n in data.get('nodes', [])],
            edges=[ContractEdge.from_dict(e) for e in data.get('edges', [])],
            metadata=dict(data.get('metadata', {})),
        )


# ── Communication graph ──────────────────────────────────────────

@dataclass
class CommunicationEdge:
    source: str
    target: str
    pattern: CommunicationPattern
    functions: List[str] = field(default_factory=list)
    events: List[str] = field(default_factory=list)
    bidirectional: bool = False

    @property
    def key(self):
        return (self.source, self.target, self.pattern)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['pattern'] = self.pattern.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CommunicationEdge':
        return cls(
            source=data['source'],
            target=data['target'],
            pattern=CommunicationPattern(data['pattern']),
            functions=list(data.get('functions', [])),
            events=list(data.get('events', [])),
            bidirectional=bool(data.get('bidirectional', False)),
        )


@dataclass
class CommunicationNode:
    address: str
    name: str
    protocol: str
    blockchain: str
    role: ContractRole = ContractRole.UNKNOWN
    inbound_count: int = 0
    outbound_count: int = 0
    communication_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['role'] = self.role.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CommunicationNode':
        return cls(
            address=data['address'],
            name=data.get('name', 'Unknown'),
            protocol=data.get('protocol', 'Unknown'),
            blockchain=data.get('blockchain', ''),
            role=ContractRole(data.get('role', 'unknown')),
            inbound_count=data.get('inbound_count', 0),
            outbound_count=data.get('outbound_count', 0),
            communication_count=data.get('communication_count', 0),
        )


@dataclass
class CommunicationGraph:
    nodes: List[CommunicationNode] = field(default_factory=list)
    edges: List[CommunicationEdge] = field(default_factory=list)
    patterns: Dict[str, int] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodes': [n.to_dict() for n in self.nodes],
            'edges': [e.to_dict() for e in self.edges],
            'patterns': dict(self.patterns),
            'metadata': dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CommunicationGraph':
        return cls(
            nodes=[CommunicationNode.from_dict(n) for n in data.get('nodes', [])],
            edges=[CommunicationEdge.from_dict(e) for e in data.get('edges', [])],
            patterns=dict(data.get('patterns', {})),
            metadata=dict(data.get('metadata', {})),
        )
