#!/usr/bin/env python3
"""
Communication Graph Builder

Infers runtime interactions between fetched contracts. Every contract gets a
single role from an ordered rule list; every hard-coded reference to another
known contract becomes an edge tagged with a communication pattern derived
from the target's role and cues in the caller's source.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Set, Tuple

from core.abi_extractor import extract_address_literals, get_contract_source, get_event_names, get_function_names
from core.contract_models import (
    CommunicationEdge,
    CommunicationGraph,
    CommunicationNode,
    CommunicationPattern,
    ContractRole,
    FetchedContract,
)

logger = logging.getLogger(__name__)

MAX_EDGE_EVENTS = 10


# ── Role rules ───────────────────────────────────────────────────
# Evaluated top to bottom; the first match wins.

RoleRule = Callable[[Set[str], str], bool]

ROLE_RULES: List[Tuple[ContractRole, RoleRule]] = [
    (ContractRole.TOKEN, lambda fns, name: (
        {'transfer', 'approve', 'balanceof'} <= fns or 'token' in name)),
    (ContractRole.DEX, lambda fns, name: (
        bool(fns & {'swap', 'swapexacttokensfortokens', 'addliquidity', 'removeliquidity'})
        or 'swap' in name or 'router' in name)),
    (ContractRole.ROUTER, lambda fns, name: 'router' in name),
    (ContractRole.FACTORY, lambda fns, name: (
        bool(fns & {'createpair', 'createpool'}) or 'factory' in name)),
    (ContractRole.LENDING, lambda fns, name: (
        bool(fns & {'borrow', 'repay', 'liquidate'}) or {'supply', 'withdraw'} <= fns
        or 'lend' in name or 'borrow' in name)),
    (ContractRole.VAULT, lambda fns, name: {'deposit', 'withdraw'} <= fns and 'vault' in name),
    (ContractRole.GOVERNANCE, lambda fns, name: (
        bool(fns & {'propose', 'castvote', 'queue', 'execute'})
        or 'governance' in name or 'governor' in name)),
    (ContractRole.ORACLE, lambda fns, name: bool(fns & {'latestanswer', 'getprice'}) or 'oracle' in name),
    (ContractRole.BRIDGE, lambda fns, name: 'bridge' in name or bool(fns & {'sendmessage', 'receivemessage'})),
    (ContractRole.PROXY, lambda fns, name: bool(fns & {'implementation', 'upgradeto'})),
    (ContractRole.MULTISIG, lambda fns, name: (
        bool(fns & {'submittransaction', 'confirmtransaction'}) or 'multisig' in name)),
]

_DIRECT_ROLE_PATTERNS = {
    ContractRole.LENDING: CommunicationPattern.LENDING,
    ContractRole.ORACLE: CommunicationPattern.ORACLE,
    ContractRole.BRIDGE: CommunicationPattern.BRIDGE,
    ContractRole.GOVERNANCE: CommunicationPattern.GOVERNANCE,
}


def classify_role(contract: FetchedContract) -> ContractRole:
    functions = {name.lower() for name in get_function_names(contract.abi)}
    name = contract.contract_name.lower()
    for role, rule in ROLE_RULES:
        if rule(functions, name):
            return role
    return ContractRole.UNKNOWN


def detect_pattern(source: str, target_role: ContractRole) -> CommunicationPattern:
    """Classify how `source` talks to a contract with `target_role`."""
    if target_role is ContractRole.TOKEN:
        if '.transfer(' in source or '.transferFrom(' in source:
            return CommunicationPattern.TOKEN_TRANSFER
        if '.approve(' in source:
            return CommunicationPattern.TOKEN_APPROVAL

    if target_role in (ContractRole.DEX, ContractRole.ROUTER):
        if 'swap' in source or 'Swap' in source:
            return CommunicationPattern.SWAP
        if 'addLiquidity' in source or 'removeLiquidity' in source:
            return CommunicationPattern.LIQUIDITY

    if target_role in _DIRECT_ROLE_PATTERNS:
        return _DIRECT_ROLE_PATTERNS[target_role]

    if 'callback' in source or 'Callback' in source:
        return CommunicationPattern.CALLBACK
    if 'flashLoan' in source or 'FlashLoan' in source:
        return CommunicationPattern.FLASH_LOAN
    return CommunicationPattern.GENERIC_CALL


class CommunicationGraphBuilder:
    """Accumulates contracts and snapshots them into a CommunicationGraph on build()."""

    def __init__(self):
        self._contracts: Dict[str, FetchedContract] = {}
        self._nodes: Dict[str, CommunicationNode] = {}
        self._edges: List[CommunicationEdge] = []
        self._edge_keys: Set[Tuple[str, str, CommunicationPattern]] = set()
        self._pairs: Set[Tuple[str, str]] = set()

    def add_contracts(self, contracts: Iterable[FetchedContract]) -> None:
        contracts = list(contracts)

        for contract in contracts:
            self._contracts[contract.address.lower()] = contract

        for contract in contracts:
            address = contract.address.lower()
            self._nodes[address] = CommunicationNode(
                address=address,
                name=contract.contract_name,
                protocol=contract.protocol,
                blockchain=contract.blockchain,
                role=classify_role(contract),
            )

        for contract in contracts:
            self._add_edges_for(contract.address.lower())

        self._recount()
        logger.debug(f"Communication graph now has {len(self._nodes)} nodes and {len(self._edges)} edges")

    def _add_edges_for(self, address: str) -> None:
        contract = self._contracts[address]
        source = get_contract_source(contract)
        events = get_event_names(contract.abi)[:MAX_EDGE_EVENTS]

        for target in extract_address_literals(source):
            if target == address or target not in self._nodes:
                continue
            target_node = self._nodes[target]
            pattern = detect_pattern(source, target_node.role)
            functions = [
                fn for fn in get_function_names(self._contracts[target].abi)
                if f".{fn}(" in source or f"{fn}(" in source
            ]
            self.add_edge(CommunicationEdge(
                source=address,
                target=target,
                pattern=pattern,
                functions=list(dict.fromkeys(functions)),
                events=list(events),
            ))

    def add_edge(self, edge: CommunicationEdge) -> bool:
        """Add an edge unless (source, target, pattern) exists. Bidirectionality reflects edges added so far."""
        if edge.key in self._edge_keys:
            return False
        edge.bidirectional = (edge.target, edge.source) in self._pairs
        self._edge_keys.add(edge.key)
        self._pairs.add((edge.source, edge.target))
        self._edges.append(edge)
        return True

    def _recount(self) -> None:
        for node in self._nodes.values():
            node.inbound_count = 0
            node.outbound_count = 0
        for edge in self._edges:
            self._nodes[edge.source].outbound_count += 1
            self._nodes[edge.target].inbound_count += 1
        for node in self._nodes.values():
            node.communication_count = node.inbound_count + node.outbound_count

    # ── Output ───────────────────────────────────────────────────

    def build(self) -> CommunicationGraph:
        patterns = {p.value: 0 for p in CommunicationPattern}
        for edge in self._edges:
            patterns[edge.pattern.value] += 1

        nodes = [CommunicationNode.from_dict(n.to_dict()) for n in self._nodes.values()]
        edges = [CommunicationEdge.from_dict(e.to_dict()) for e in self._edges]
        return CommunicationGraph(
            nodes=nodes,
            edges=edges,
            patterns=patterns,
            metadata={
                'generated_at': datetime.now(timezone.utc).isoformat(),
                'total_contracts': len(nodes),
                'total_communications': len(edges),
            },
        )

    def get_hubs(self, limit: int = 10) -> List[CommunicationNode]:
        """Nodes with the most communication edges; ties keep insertion order."""
        ranked = sorted(self._nodes.values(), key=lambda n: n.communication_count, reverse=True)
        return ranked[:limit]

    def get_contracts_by_role(self, role: ContractRole) -> List[CommunicationNode]:
        return [n for n in self._nodes.values() if n.role is role]

    def get_role_distribution(self) -> Dict[str, int]:
        distribution: Dict[str, int] = {}
        for node in self._nodes.values():
            distribution[node.role.value] = distribution.get(node.role.value, 0) + 1
        return distribution

    def to_d3_format(self) -> Dict[str, List[Dict[str, Any]]]:
        nodes = [
            {'id': n.address, 'group': n.protocol, 'role': n.role.value, 'size': n.communication_count + 1}
            for n in self._nodes.values()
        ]
        links = [
            {'source': e.source, 'target': e.target, 'pattern': e.pattern.value, 'value': len(e.functions) + 1}
            for e in self._edges
        ]
        return {'nodes': nodes, 'links': links}
