#!/usr/bin/env python3
"""
Unit tests for the batch contract fetcher.
"""

import asyncio
import json
from dataclasses import replace
from unittest.mock import AsyncMock, Mock

import pytest

from core.batch_fetcher import (
    BatchContractFetcher,
    ContractNotFoundError,
    TransientFetchError,
    UnsupportedChainError,
    extract_abi,
    fetch_single_contract,
    normalize_sources,
)
from core.contract_models import AbiItemType, ContractEntry
from core.data_persistence import DataPersistence, PersistenceError

from conftest import ERC20_ABI, FakeExplorerClient, addr, ok_response


def entries(count, blockchain="ethereum"):
    return [ContractEntry(address=addr(i), blockchain=blockchain, contract_name=f"C{i}", protocol="p")
            for i in range(1, count + 1)]


class TestPayloadNormalization:

    def test_standard_json_sources(self):
        text = json.dumps({"sources": {
            "contracts/A.sol": {"content": "contract A {}"},
            "contracts/B.sol": {"content": "contract B {}"},
        }})

        files = normalize_sources(text, "A")

        assert [(f.filename, f.content) for f in files] == [
            ("contracts/A.sol", "contract A {}"),
            ("contracts/B.sol", "contract B {}"),
        ]

    def test_double_braced_sources(self):
        text = "{" + json.dumps({"sources": {"A.sol": {"content": "contract A {}"}}}) + "}"

        files = normalize_sources(text, "A")

        assert [f.filename for f in files] == ["A.sol"]

    def test_bare_file_map(self):
        text = json.dumps({"A.sol": {"content": "a"}, "B.sol": {"content": "b"}})

        assert [f.filename for f in normalize_sources(text, "X")] == ["A.sol", "B.sol"]

    def test_plain_source_becomes_single_file(self):
        files = normalize_sources("pragma solidity ^0.8.0;\ncontract Token {}", "Token")

        assert len(files) == 1
        assert files[0].filename == "Token.sol"
        assert files[0].content.startswith("pragma")

    def test_abi_lookup_order(self):
        top = [{"type": "function", "name": "a"}]
        nested = [{"type": "function", "name": "b"}]
        separate = json.dumps([{"type": "function", "name": "c"}])

        assert extract_abi(json.dumps({"abi": top, "output": {"abi": nested}}), separate) == top
        assert extract_abi(json.dumps({"output": {"abi": nested}}), separate) == nested
        assert extract_abi("contract X {}", separate) == json.loads(separate)
        assert extract_abi("contract X {}", "Contract source code not verified") is None
        assert extract_abi("contract X {}") is None


class TestFetchContract:

    def test_successful_fetch_builds_contract(self, fast_options):
        entry = entries(1)[0]
        client = FakeExplorerClient({entry.address: [ok_response("contract C1 {}", ERC20_ABI)]})
        fetcher = BatchContractFetcher(client, fast_options)

        contract = asyncio.run(fetcher.fetch_contract(entry))

        assert client.calls == [("1", entry.address)]
        assert contract.chain_id == "1"
        assert contract.contract_name == "C1"
        assert [s.filename for s in contract.sources] == ["Main.sol"]
        assert contract.abi[0].type is AbiItemType.FUNCTION
        assert contract.fetched_at

    def test_etherscan_record_result(self, fast_options):
        entry = entries(1)[0]
        response = {"status": "1", "message": "OK", "result": [{
            "SourceCode": "contract C1 {}",
            "ABI": json.dumps(ERC20_ABI),
            "ContractName": "C1",
            "CompilerVersion": "v0.8.20+commit.a1b79de6",
            "OptimizationUsed": "1",
            "Runs": "200",
        }]}
        fetcher = BatchContractFetcher(FakeExplorerClient({entry.address: [response]}), fast_options)

        contract = asyncio.run(fetcher.fetch_contract(entry))

        assert len(contract.abi) == len(ERC20_ABI)
        assert contract.compiler.compiler_version.startswith("v0.8.20")
        assert contract.compiler.optimization_used is True
        assert contract.compiler.runs == 200

    def test_unsupported_chain(self, fast_options):
        entry = ContractEntry(address=addr(1), blockchain="solana")
        fetcher = BatchContractFetcher(FakeExplorerClient(), fast_options)

        with pytest.raises(UnsupportedChainError, match="Unsupported blockchain: solana"):
            asyncio.run(fetcher.fetch_contract(entry))

    def test_failed_status_uses_message(self, fast_options):
        entry = entries(1)[0]
        client = FakeExplorerClient({entry.address: [{"status": "0", "message": "Contract not verified"}]})
        fetcher = BatchContractFetcher(client, fast_options)

        with pytest.raises(ContractNotFoundError, match="Contract not verified"):
            asyncio.run(fetcher.fetch_contract(entry))

    def test_empty_result(self, fast_options):
        entry = entries(1)[0]
        client = FakeExplorerClient({entry.address: [{"status": "1", "message": "OK", "result": ""}]})
        fetcher = BatchContractFetcher(client, fast_options)

        with pytest.raises(ContractNotFoundError, match="No source code found"):
            asyncio.run(fetcher.fetch_contract(entry))


class TestRetryPolicy:

    def test_transient_failures_then_success(self, fast_options):
        entry = entries(1)[0]
        client = FakeExplorerClient({entry.address: [
            TimeoutError("timed out"),
            ConnectionError("reset by peer"),
            ok_response("contract C1 {}"),
        ]})
        fetcher = BatchContractFetcher(client, fast_options)

        results = asyncio.run(fetcher.fetch_all([entry]))

        assert len(results) == 1
        assert client.calls_for(entry.address) == 3
        assert fetcher.status.failed_contracts == []

    def test_not_verified_is_not_retried(self, fast_options):
        entry = entries(1)[0]
        client = FakeExplorerClient({entry.address: [
            {"status": "0", "message": "Source code not verified"},
            ok_response("contract C1 {}"),
        ]})
        fetcher = BatchContractFetcher(client, fast_options)

        results = asyncio.run(fetcher.fetch_all([entry]))

        assert results == []
        assert client.calls_for(entry.address) == 1
        assert fetcher.status.failed_contracts == [entry.address]

    def test_exhausted_retries_raise_last_error(self, fast_options):
        entry = entries(1)[0]
        client = FakeExplorerClient({entry.address: [OSError("one"), OSError("two"), OSError("three")]})
        fetcher = BatchContractFetcher(client, fast_options)

        with pytest.raises(TransientFetchError, match="three"):
            asyncio.run(fetcher.fetch_contract_with_retry(entry))
        assert client.calls_for(entry.address) == 3

    def test_backoff_doubles_each_attempt(self, fast_options):
        entry = entries(1)[0]
        client = FakeExplorerClient({entry.address: [OSError("x")] * 4})
        sleep = AsyncMock()
        options = replace(fast_options, delay_between_requests=0.5, max_retries=4)
        fetcher = BatchContractFetcher(client, options, sleep=sleep)

        with pytest.raises(TransientFetchError):
            asyncio.run(fetcher.fetch_contract_with_retry(entry))

        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0, 2.0]

    def test_unsupported_chain_is_terminal(self, fast_options):
        entry = ContractEntry(address=addr(1), blockchain="tron")
        fetcher = BatchContractFetcher(FakeExplorerClient(), fast_options)

        results = asyncio.run(fetcher.fetch_all([entry]))

        assert results == []
        assert fetcher.status.failed_contracts == [addr(1)]


class TestBatchLoop:

    def test_failure_is_isolated(self, fast_options):
        items = entries(3)
        client = FakeExplorerClient({items[1].address: [{"status": "0", "message": "Contract not found"}]})
        fetcher = BatchContractFetcher(client, fast_options)

        results = asyncio.run(fetcher.fetch_all(items))

        assert [c.address for c in results] == [items[0].address, items[2].address]
        assert fetcher.status.failed_contracts == [items[1].address]
        assert fetcher.status.processed_contracts == 2
        assert fetcher.status.last_processed_index == 2

    def test_delays_between_requests_and_batches(self, fast_options):
        sleep = AsyncMock()
        options = replace(fast_options, batch_size=2, delay_between_requests=0.2, delay_between_batches=2.0)
        fetcher = BatchContractFetcher(FakeExplorerClient(), options, sleep=sleep)

        asyncio.run(fetcher.fetch_all(entries(5)))

        # batches [1,2] [3,4] [5]: request delay inside batches, batch delay between them
        assert [c.args[0] for c in sleep.await_args_list] == [0.2, 2.0, 0.2, 2.0]

    def test_progress_callback_sees_each_entry(self, fast_options):
        seen = []
        fetcher = BatchContractFetcher(
            FakeExplorerClient(), fast_options,
            progress_callback=lambda status, entry: seen.append((status.total_contracts, entry.address)))
        items = entries(3)

        asyncio.run(fetcher.fetch_all(items))

        assert seen == [(3, e.address) for e in items]

    def test_progress_persisted_after_each_batch(self, fast_options, output_dir):
        fetcher = BatchContractFetcher(FakeExplorerClient(), fast_options)

        asyncio.run(fetcher.fetch_all(entries(3)))

        contracts, status = DataPersistence(output_dir).load_fetch_checkpoint()
        assert len(contracts) == 3
        assert status.last_processed_index == 2
        assert status.processed_contracts == 3

    def test_persistence_failure_does_not_abort(self, fast_options):
        persistence = DataPersistence(fast_options.output_dir)
        persistence.save_fetch_checkpoint = Mock(side_effect=PersistenceError("x", OSError("disk full")))
        fetcher = BatchContractFetcher(FakeExplorerClient(), fast_options, persistence)

        results = asyncio.run(fetcher.fetch_all(entries(3)))

        assert len(results) == 3
        assert persistence.save_fetch_checkpoint.call_count == 2

    def test_cancel_stops_before_next_contract(self, fast_options):
        items = entries(4)
        holder = {}

        def on_progress(status, entry):
            if entry.address == items[1].address:
                holder["fetcher"].cancel()

        fetcher = BatchContractFetcher(FakeExplorerClient(), fast_options, progress_callback=on_progress)
        holder["fetcher"] = fetcher

        results = asyncio.run(fetcher.fetch_all(items))

        assert fetcher.cancelled
        # the entry whose callback triggered cancellation still completes
        assert [c.address for c in results] == [items[0].address, items[1].address]
        assert fetcher.status.last_processed_index == 1

    def test_cancel_during_backoff_is_not_a_failure(self, fast_options, output_dir):
        items = entries(2)
        client = FakeExplorerClient({items[1].address: [OSError("connection reset")]})
        options = replace(fast_options, delay_between_requests=0.5)
        holder = {}

        async def sleep(seconds):
            if client.calls_for(items[1].address):
                holder["fetcher"].cancel()

        fetcher = BatchContractFetcher(client, options, sleep=sleep)
        holder["fetcher"] = fetcher

        results = asyncio.run(fetcher.fetch_all(items))

        assert [c.address for c in results] == [items[0].address]
        assert client.calls_for(items[1].address) == 1
        assert fetcher.status.failed_contracts == []
        assert fetcher.status.last_processed_index == 0

        _, status = DataPersistence(output_dir).load_fetch_checkpoint()
        assert status.failed_contracts == []
        assert status.last_processed_index == 0

    def test_cancelled_entry_is_fetched_on_resume(self, fast_options):
        items = entries(2)
        client = FakeExplorerClient({items[1].address: [OSError("connection reset")]})
        options = replace(fast_options, delay_between_requests=0.5)
        holder = {}

        async def sleep(seconds):
            if client.calls_for(items[1].address):
                holder["fetcher"].cancel()

        holder["fetcher"] = BatchContractFetcher(client, options, sleep=sleep)
        asyncio.run(holder["fetcher"].fetch_all(items))
        resume_at = holder["fetcher"].status.last_processed_index + 1

        fetcher = BatchContractFetcher(FakeExplorerClient(), replace(fast_options, resume_from_index=resume_at))
        results = asyncio.run(fetcher.fetch_all(items))

        assert [c.address for c in results] == [items[0].address, items[1].address]
        assert fetcher.status.failed_contracts == []


class TestResume:

    def test_resume_is_idempotent(self, fast_options):
        items = entries(5)

        uninterrupted = asyncio.run(BatchContractFetcher(FakeExplorerClient(), fast_options).fetch_all(items))

        resumed_options = replace(fast_options, resume_from_index=3)
        client = FakeExplorerClient()
        resumed = asyncio.run(BatchContractFetcher(client, resumed_options).fetch_all(items))

        assert [c.key for c in resumed] == [c.key for c in uninterrupted]
        assert [a for _, a in client.calls] == [items[3].address, items[4].address]

    def test_resume_without_checkpoint_fetches_suffix_only(self, fast_options):
        options = replace(fast_options, resume_from_index=2)
        client = FakeExplorerClient()

        results = asyncio.run(BatchContractFetcher(client, options).fetch_all(entries(3)))

        assert [c.address for c in results] == [addr(3)]

    def test_resume_carries_earlier_failures(self, fast_options):
        items = entries(3)
        client = FakeExplorerClient({items[0].address: [{"status": "0", "message": "not verified"}]})
        asyncio.run(BatchContractFetcher(client, fast_options).fetch_all(items))

        fetcher = BatchContractFetcher(FakeExplorerClient(), replace(fast_options, resume_from_index=2))
        results = asyncio.run(fetcher.fetch_all(items))

        assert [c.address for c in results] == [items[1].address, items[2].address]
        assert fetcher.status.failed_contracts == [items[0].address]

    @pytest.mark.parametrize("checkpoint", [
        {"not": "a list"},
        [{"blockchain": "ethereum"}],
        ["0xabc"],
    ])
    def test_malformed_checkpoint_resumes_without_it(self, fast_options, output_dir, checkpoint):
        output_dir.mkdir(parents=True)
        (output_dir / "fetched_contracts.json").write_text(json.dumps(checkpoint))
        client = FakeExplorerClient()
        fetcher = BatchContractFetcher(client, replace(fast_options, resume_from_index=1))

        results = asyncio.run(fetcher.fetch_all(entries(2)))

        assert [c.address for c in results] == [addr(2)]
        assert [a for _, a in client.calls] == [addr(2)]


class TestFetchSingleContract:

    def test_uses_given_client(self):
        client = FakeExplorerClient({addr(7): [ok_response("contract Solo {}")]})

        contract = asyncio.run(fetch_single_contract(addr(7).upper().replace("0X", "0x"), "Ethereum", client))

        assert contract.address == addr(7)
        assert contract.blockchain == "ethereum"

    def test_raises_on_failure(self):
        client = FakeExplorerClient({addr(7): [{"status": "0", "message": "Contract source code not verified"}]})

        with pytest.raises(ContractNotFoundError):
            asyncio.run(fetch_single_contract(addr(7), "ethereum", client))
