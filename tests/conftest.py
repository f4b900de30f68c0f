"""
Shared test fixtures for the contract graph test suite.

Provides sample Solidity sources and ABIs, a FetchedContract factory, a
scripted fake explorer client and zero-delay fetch options.
"""

import json
from typing import Any, Dict, List, Optional

import pytest

from core.batch_fetcher import FetchOptions
from core.contract_models import FetchedContract, SourceFile, parse_abi


def addr(n: int) -> str:
    """Deterministic 40-hex-digit address for tests."""
    return "0x" + f"{n:040x}"


# ── Sample ABIs ─────────────────────────────────────────────────

def _fn(name, inputs=(), outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
        "stateMutability": mutability,
    }


ERC20_ABI: List[Dict[str, Any]] = [
    _fn("name", outputs=[("", "string")], mutability="view"),
    _fn("symbol", outputs=[("", "string")], mutability="view"),
    _fn("decimals", outputs=[("", "uint8")], mutability="view"),
    _fn("totalSupply", outputs=[("", "uint256")], mutability="view"),
    _fn("balanceOf", inputs=[("account", "address")], outputs=[("", "uint256")], mutability="view"),
    _fn("transfer", inputs=[("to", "address"), ("amount", "uint256")], outputs=[("", "bool")]),
    _fn("approve", inputs=[("spender", "address"), ("amount", "uint256")], outputs=[("", "bool")]),
    _fn("allowance", inputs=[("owner", "address"), ("spender", "address")],
        outputs=[("", "uint256")], mutability="view"),
    _fn("transferFrom", inputs=[("from", "address"), ("to", "address"), ("amount", "uint256")],
        outputs=[("", "bool")]),
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
]

DEX_ABI: List[Dict[str, Any]] = [
    _fn("swapExactTokensForTokens", inputs=[("amountIn", "uint256"), ("path", "address[]")]),
    _fn("addLiquidity", inputs=[("tokenA", "address"), ("tokenB", "address")]),
]

ORACLE_ABI: List[Dict[str, Any]] = [
    _fn("latestAnswer", outputs=[("", "int256")], mutability="view"),
]


# ── Sample Solidity ─────────────────────────────────────────────

SAMPLE_TOKEN_SOLIDITY = """\
// SPDX-License-Identifier: MIT
pragma solidity ^0.8.20;

import "@openzeppelin/contracts/token/ERC20/IERC20.sol";

contract StableToken is IERC20, Ownable(msg.sender) {
    mapping(address => uint256) public balances;
}
"""


def make_contract(address: str, name: str = "Unknown", protocol: str = "Unknown",
                  source: str = "", abi: Optional[List[Dict[str, Any]]] = None,
                  blockchain: str = "ethereum") -> FetchedContract:
    return FetchedContract(
        address=address,
        blockchain=blockchain,
        chain_id="1",
        contract_name=name,
        protocol=protocol,
        source_code=source,
        abi=parse_abi(abi) if abi is not None else None,
        sources=[SourceFile(filename=f"{name}.sol", content=source)] if source else [],
        fetched_at="2024-01-01T00:00:00+00:00",
    )


def ok_response(source: str, abi: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Explorer envelope whose result is standard-json source with an embedded ABI."""
    payload: Dict[str, Any] = {"language": "Solidity", "sources": {"Main.sol": {"content": source}}}
    if abi is not None:
        payload["abi"] = abi
    return {"status": "1", "message": "OK", "result": json.dumps(payload)}


class FakeExplorerClient:
    """Explorer client driven by a script of responses or exceptions per address."""

    name = "fake"

    def __init__(self, script: Optional[Dict[str, List[Any]]] = None, default: Any = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.calls: List[tuple] = []

    async def fetch_one(self, chain_id: str, address: str) -> Dict[str, Any]:
        self.calls.append((chain_id, address))
        queue = self.script.get(address)
        outcome = queue.pop(0) if queue else self.default
        if outcome is None:
            outcome = ok_response(f"contract C{len(self.calls)} {{}}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def calls_for(self, address: str) -> int:
        return sum(1 for _, a in self.calls if a == address)


# ── Fixtures ────────────────────────────────────────────────────


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "contract_data"


@pytest.fixture
def fast_options(output_dir):
    """Fetch options with every delay disabled."""
    return FetchOptions(
        batch_size=2,
        delay_between_requests=0,
        delay_between_batches=0,
        max_retries=3,
        output_dir=str(output_dir),
    )


@pytest.fixture
def fake_client():
    return FakeExplorerClient()


@pytest.fixture
def contract_list_file(tmp_path):
    """Write a contract list JSON file and return its path."""
    def _write(records, name="contracts.json"):
        path = tmp_path / name
        path.write_text(json.dumps(records))
        return path
    return _write
