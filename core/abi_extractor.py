#!/usr/bin/env python3
"""
Source/ABI Extractor

Stateless helpers that pull structural signals out of a contract's ABI and
source text: rendered signatures, token standard detection, proxy detection,
and regex-based inheritance, import, external call and interface extraction.

The regex extraction is a best-effort heuristic, not a Solidity parser.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from core.contract_models import AbiItem, AbiItemType, AbiParameter, FetchedContract


# ── Patterns ─────────────────────────────────────────────────────

_RE_IS_NAME = re.compile(r'\bis\s+(\w+)')
_RE_IMPORT_SOL_NAME = re.compile(r'import\s+.*?["\'].*?/(\w+)\.sol["\']')
_RE_INHERITANCE = re.compile(r'contract\s+\w+\s+is\s+([^{]+)\{')
_RE_EXTERNAL_CALL = re.compile(r'(\w+)\s*\(\s*[^)]+\s*\)\s*\.\s*(\w+)\s*\(')
_RE_IMPORT = re.compile(r'import\s+(?:["\']([^"\']+)["\']|\{[^}]+\}\s+from\s+["\']([^"\']+)["\'])')
_RE_ADDRESS_LITERAL = re.compile(r'0x[a-fA-F0-9]{40}')

# ── Standards ────────────────────────────────────────────────────

ERC20_FUNCTIONS = frozenset({
    'name', 'symbol', 'decimals', 'totalSupply', 'balanceOf',
    'transfer', 'approve', 'allowance', 'transferFrom',
})

ERC721_FUNCTIONS = frozenset({
    'balanceOf', 'ownerOf', 'safeTransferFrom', 'transferFrom',
    'approve', 'getApproved', 'setApprovalForAll', 'isApprovedForAll',
})

ERC1155_FUNCTIONS = frozenset({
    'balanceOf', 'balanceOfBatch', 'setApprovalForAll',
    'isApprovedForAll', 'safeTransferFrom', 'safeBatchTransferFrom',
})

PROXY_INDICATORS = ('implementation', 'upgradeTo', 'upgradeToAndCall', '_implementation')

_READ_ONLY_MUTABILITY = ('view', 'pure')


def _dedupe(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


# ── Signatures ───────────────────────────────────────────────────

def format_parameter(param: AbiParameter) -> str:
    """Render a parameter, expanding tuple components in place of the bare tuple keyword."""
    type_str = param.type
    if param.components and 'tuple' in type_str:
        inner = ", ".join(format_parameter(c) for c in param.components)
        type_str = type_str.replace('tuple', f"({inner})")
    return f"{type_str} {param.name}" if param.name else type_str


def format_function_signature(item: AbiItem) -> str:
    inputs = ", ".join(format_parameter(p) for p in item.inputs)
    signature = f"{item.name}({inputs})"
    if item.state_mutability:
        signature += f" {item.state_mutability}"
    if item.outputs:
        outputs = ", ".join(format_parameter(p) for p in item.outputs)
        signature += f" returns ({outputs})"
    return signature


def format_event_signature(item: AbiItem) -> str:
    params = []
    for p in item.inputs:
        rendered = p.type + (" indexed" if p.indexed else "")
        if p.name:
            rendered += f" {p.name}"
        params.append(rendered)
    return f"event {item.name}({', '.join(params)})"


def _functions(abi: Optional[List[AbiItem]]) -> List[AbiItem]:
    return [item for item in abi or [] if item.type is AbiItemType.FUNCTION and item.name]


def _events(abi: Optional[List[AbiItem]]) -> List[AbiItem]:
    return [item for item in abi or [] if item.type is AbiItemType.EVENT and item.name]


def extract_function_signatures(abi: Optional[List[AbiItem]]) -> List[str]:
    return [format_function_signature(item) for item in _functions(abi)]


def extract_event_signatures(abi: Optional[List[AbiItem]]) -> List[str]:
    return [format_event_signature(item) for item in _events(abi)]


def get_function_names(abi: Optional[List[AbiItem]]) -> List[str]:
    return [item.name for item in _functions(abi)]


def get_event_names(abi: Optional[List[AbiItem]]) -> List[str]:
    return [item.name for item in _events(abi)]


def get_callable_functions(abi: Optional[List[AbiItem]]) -> List[AbiItem]:
    return _functions(abi)


def get_state_changing_functions(abi: Optional[List[AbiItem]]) -> List[AbiItem]:
    return [f for f in _functions(abi) if f.state_mutability not in _READ_ONLY_MUTABILITY]


def get_read_only_functions(abi: Optional[List[AbiItem]]) -> List[AbiItem]:
    return [f for f in _functions(abi) if f.state_mutability in _READ_ONLY_MUTABILITY]


# ── Standards and proxies ────────────────────────────────────────

def _implements(abi: Optional[List[AbiItem]], required: frozenset) -> bool:
    return required.issubset(get_function_names(abi))


def is_erc20(abi: Optional[List[AbiItem]]) -> bool:
    return _implements(abi, ERC20_FUNCTIONS)


def is_erc721(abi: Optional[List[AbiItem]]) -> bool:
    return _implements(abi, ERC721_FUNCTIONS)


def is_erc1155(abi: Optional[List[AbiItem]]) -> bool:
    return _implements(abi, ERC1155_FUNCTIONS)


def detect_standards(abi: Optional[List[AbiItem]]) -> List[str]:
    standards = []
    if is_erc20(abi):
        standards.append('ERC20')
    if is_erc721(abi):
        standards.append('ERC721')
    if is_erc1155(abi):
        standards.append('ERC1155')
    return standards


def has_proxy_pattern(abi: Optional[List[AbiItem]]) -> bool:
    names = {name.lower() for name in get_function_names(abi)}
    return any(indicator.lower() in names for indicator in PROXY_INDICATORS)


# ── Source text extraction ───────────────────────────────────────

def extract_inheritance(source: str) -> List[str]:
    """Parents named in `contract X is A, B(args) {` declarations."""
    parents = []
    for match in _RE_INHERITANCE.finditer(source):
        for part in match.group(1).split(','):
            name = part.strip().split('(')[0].strip()
            if name:
                parents.append(name)
    return _dedupe(parents)


def extract_imports(source: str) -> List[str]:
    return _dedupe(m.group(1) or m.group(2) for m in _RE_IMPORT.finditer(source))


def extract_external_calls(source: str) -> List[str]:
    """`IFoo(addr).bar(` style calls, returned as `IFoo.bar`."""
    calls = []
    for match in _RE_EXTERNAL_CALL.finditer(source):
        interface, method = match.group(1), match.group(2)
        if interface.startswith('I') or 'Interface' in interface:
            calls.append(f"{interface}.{method}")
    return _dedupe(calls)


def extract_interfaces(source: str) -> List[str]:
    names = [m.group(1) for m in _RE_IS_NAME.finditer(source)]
    names.extend(m.group(1) for m in _RE_IMPORT_SOL_NAME.finditer(source))
    return _dedupe(name for name in names if name.startswith('I'))


def extract_address_literals(source: str) -> List[str]:
    return _dedupe(m.group(0).lower() for m in _RE_ADDRESS_LITERAL.finditer(source))


def get_contract_source(contract: FetchedContract) -> str:
    """All source files joined with newlines, or the raw source when none were split out."""
    if contract.sources:
        return "\n".join(s.content for s in contract.sources)
    return contract.source_code or ""


@dataclass
class ContractAnalysis:
    functions: List[str] = field(default_factory=list)
    events: List[str] = field(default_factory=list)
    standards: List[str] = field(default_factory=list)
    has_proxy: bool = False
    inheritance: List[str] = field(default_factory=list)
    imports: List[str] = field(default_factory=list)
    external_calls: List[str] = field(default_factory=list)
    interfaces: List[str] = field(default_factory=list)
    address_literals: List[str] = field(default_factory=list)


def analyze_contract(contract: FetchedContract) -> ContractAnalysis:
    source = get_contract_source(contract)
    return ContractAnalysis(
        functions=extract_function_signatures(contract.abi),
        events=extract_event_signatures(contract.abi),
        standards=detect_standards(contract.abi),
        has_proxy=has_proxy_pattern(contract.abi),
        inheritance=extract_inheritance(source),
        imports=extract_imports(source),
        external_calls=extract_external_calls(source),
        interfaces=extract_interfaces(source),
        address_literals=extract_address_literals(source),
    )
