#!/usr/bin/env python3
"""
Code Graph Builder

Builds a directed, multi-relationship graph over fetched contracts from
structural signals in their sources: shared protocol, inheritance, imports,
interface calls, interface usage and hard-coded addresses.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from xml.sax.saxutils import escape

from core.abi_extractor import ContractAnalysis, analyze_contract
from core.contract_models import (
    CodeGraph,
    ContractEdge,
    ContractNode,
    EdgeMetadata,
    FetchedContract,
    RelationshipType,
)

logger = logging.getLogger(__name__)

MAX_NODE_FUNCTIONS = 50
MAX_NODE_EVENTS = 20

_RE_SOL_FILE_NAME = re.compile(r'([^/]+)\.sol$')

_XML_ENTITIES = {'"': '&quot;', "'": '&apos;'}


def escape_xml(value: Any) -> str:
    return escape(str(value), _XML_ENTITIES)


class CodeGraphBuilder:
    """Accumulates contracts and snapshots them into a CodeGraph on build()."""

    def __init__(self):
        self._contracts: Dict[str, FetchedContract] = {}
        self._analysis: Dict[str, ContractAnalysis] = {}
        self._name_index: Dict[str, List[str]] = {}
        self._nodes: Dict[str, ContractNode] = {}
        self._edges: List[ContractEdge] = []
        self._edge_keys: Set[Tuple[str, str, RelationshipType]] = set()

    def add_contracts(self, contracts: Iterable[FetchedContract]) -> None:
        contracts = list(contracts)

        # Index everything first so name and address lookups see the whole batch
        for contract in contracts:
            address = contract.address.lower()
            self._contracts[address] = contract
            self._analysis[address] = analyze_contract(contract)
            addresses = self._name_index.setdefault(contract.contract_name.lower(), [])
            if address not in addresses:
                addresses.append(address)

        for contract in contracts:
            address = contract.address.lower()
            self._nodes[address] = self._create_node(contract, self._analysis[address])

        for contract in contracts:
            self._add_edges_for(contract.address.lower())

        logger.debug(f"Code graph now has {len(self._nodes)} nodes and {len(self._edges)} edges")

    def _create_node(self, contract: FetchedContract, analysis: ContractAnalysis) -> ContractNode:
        return ContractNode(
            address=contract.address.lower(),
            name=contract.contract_name,
            protocol=contract.protocol,
            blockchain=contract.blockchain,
            functions=analysis.functions[:MAX_NODE_FUNCTIONS],
            events=analysis.events[:MAX_NODE_EVENTS],
            has_proxy=analysis.has_proxy,
            implements_interfaces=list(analysis.interfaces),
            standards=list(analysis.standards),
        )

    def _find_by_name(self, name: str) -> List[str]:
        return self._name_index.get(name.lower(), [])

    def _link_by_name(self, source: str, name: str, rel_type: RelationshipType,
                      metadata: Optional[EdgeMetadata] = None) -> None:
        for target in self._find_by_name(name):
            if target != source:
                self.add_edge(source, target, rel_type, metadata)

    def _add_edges_for(self, address: str) -> None:
        contract = self._contracts[address]
        analysis = self._analysis[address]

        for other_address, other in self._contracts.items():
            if other_address != address and other.protocol == contract.protocol:
                self.add_edge(address, other_address, RelationshipType.SAME_PROTOCOL)

        for parent in analysis.inheritance:
            self._link_by_name(address, parent, RelationshipType.INHERITS)

        for path in analysis.imports:
            match = _RE_SOL_FILE_NAME.search(path)
            if match:
                self._link_by_name(address, match.group(1), RelationshipType.IMPORTS)

        for call in analysis.external_calls:
            interface, _, function_name = call.partition('.')
            self._link_by_name(address, interface, RelationshipType.CALLS,
                               EdgeMetadata(function_name=function_name))

        for interface in analysis.interfaces:
            self._link_by_name(address, interface, RelationshipType.USES_INTERFACE)

        for literal in analysis.address_literals:
            if literal != address and literal in self._contracts:
                self.add_edge(address, literal, RelationshipType.CALLS)

    def add_edge(self, source: str, target: str, rel_type: RelationshipType,
                 metadata: Optional[EdgeMetadata] = None) -> bool:
        """Add an edge unless one with the same (source, target, type) exists. First metadata wins."""
        source, target = source.lower(), target.lower()
        if source not in self._nodes or target not in self._nodes:
            return False
        key = (source, target, rel_type)
        if key in self._edge_keys:
            return False
        self._edge_keys.add(key)
        self._edges.append(ContractEdge(source=source, target=target, type=rel_type, metadata=metadata))
        return True

    # ── Output ───────────────────────────────────────────────────

    def build(self) -> CodeGraph:
        nodes = [ContractNode.from_dict(n.to_dict()) for n in self._nodes.values()]
        return CodeGraph(
            nodes=nodes,
            edges=list(self._edges),
            metadata={
                'generated_at': datetime.now(timezone.utc).isoformat(),
                'total_contracts': len(nodes),
                'total_relationships': len(self._edges),
                'protocols': list(dict.fromkeys(n.protocol for n in nodes)),
                'blockchains': list(dict.fromkeys(n.blockchain for n in nodes)),
            },
        )

    def get_stats(self) -> Dict[str, Any]:
        edges_by_type: Dict[str, int] = {}
        for edge in self._edges:
            edges_by_type[edge.type.value] = edges_by_type.get(edge.type.value, 0) + 1

        nodes_by_protocol: Dict[str, int] = {}
        nodes_by_blockchain: Dict[str, int] = {}
        for node in self._nodes.values():
            nodes_by_protocol[node.protocol] = nodes_by_protocol.get(node.protocol, 0) + 1
            nodes_by_blockchain[node.blockchain] = nodes_by_blockchain.get(node.blockchain, 0) + 1

        total_nodes = len(self._nodes)
        return {
            'total_nodes': total_nodes,
            'total_edges': len(self._edges),
            'edges_by_type': edges_by_type,
            'nodes_by_protocol': nodes_by_protocol,
            'nodes_by_blockchain': nodes_by_blockchain,
            'average_edges_per_node': len(self._edges) / total_nodes if total_nodes else 0,
        }

    def to_graphml(self) -> str:
        lines = [
            '<?xml version="1.0" encoding="UTF-8"?>',
            '<graphml xmlns="http://graphml.graphdrawing.org/xmlns">',
            '  <key id="contractName" for="node" attr.name="contractName" attr.type="string"/>',
            '  <key id="protocol" for="node" attr.name="protocol" attr.type="string"/>',
            '  <key id="blockchain" for="node" attr.name="blockchain" attr.type="string"/>',
            '  <key id="relationshipType" for="edge" attr.name="relationshipType" attr.type="string"/>',
            '  <graph id="G" edgedefault="directed">',
        ]
        for node in self._nodes.values():
            lines.append(f'    <node id="{escape_xml(node.address)}">')
            lines.append(f'      <data key="contractName">{escape_xml(node.name)}</data>')
            lines.append(f'      <data key="protocol">{escape_xml(node.protocol)}</data>')
            lines.append(f'      <data key="blockchain">{escape_xml(node.blockchain)}</data>')
            lines.append('    </node>')
        for i, edge in enumerate(self._edges):
            lines.append(f'    <edge id="e{i}" source="{escape_xml(edge.source)}" target="{escape_xml(edge.target)}">')
            lines.append(f'      <data key="relationshipType">{edge.type.value}</data>')
            lines.append('    </edge>')
        lines.append('  </graph>')
        lines.append('</graphml>')
        return '\n'.join(lines) + '\n'

    def to_d3_format(self) -> Dict[str, List[Dict[str, Any]]]:
        nodes = [{'id': n.address, 'group': n.protocol, 'label': n.name} for n in self._nodes.values()]
        links = []
        for edge in self._edges:
            function_name = edge.metadata.function_name if edge.metadata else None
            link = {
                'source': edge.source,
                'target': edge.target,
                'type': edge.type.value,
                'value': 2 if function_name else 1,
            }
            if function_name:
                link['function'] = function_name
            links.append(link)
        return {'nodes': nodes, 'links': links}
