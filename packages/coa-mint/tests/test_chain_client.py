"""
Tests for coa_mint.chain_client and coa_mint.rpc_client.

Tests cover:
- ABI encoding and tokenURI decoding
- Transfer log parsing
- Mint submission, nonce tracking and receipt handling
- Same-nonce replacement after a receipt timeout
- JSON-RPC transport and error mapping
"""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from eth_abi import encode
from web3 import Web3

from coa_mint.chain_client import (
    MINT_URI_SELECTOR,
    TRANSFER_TOPIC,
    ChainClient,
)
from coa_mint.exceptions import ChainRejection, ChainTimeout, MetadataError, RPCError
from coa_mint.rpc_client import ChainRPCClient

from conftest import CONTRACT, MINT_TO, PRIVATE_KEY

TX_1 = "0x" + "1" * 64
TX_2 = "0x" + "2" * 64


def _transfer_log(token_id: int, from_address: str = "0x" + "0" * 40, address: str = CONTRACT) -> dict:
    return {
        "address": address.lower(),
        "topics": [
            TRANSFER_TOPIC,
            "0x" + "0" * 24 + from_address[2:],
            "0x" + "0" * 24 + MINT_TO[2:],
            "0x" + f"{token_id:064x}",
        ],
    }


def _receipt(tx_hash: str, token_id: int = 42, status: str = "0x1") -> dict:
    return {
        "transactionHash": tx_hash,
        "status": status,
        "gasUsed": hex(90_000),
        "blockNumber": hex(10),
        "logs": [_transfer_log(token_id)],
    }


@pytest.fixture
def rpc():
    mock = AsyncMock(spec=ChainRPCClient)
    mock.estimate_gas.return_value = 100_000
    mock.get_gas_price.return_value = 1_000_000_000
    mock.get_nonce.return_value = 5
    mock.send_raw_transaction.return_value = TX_1
    mock.get_transaction_receipt.return_value = _receipt(TX_1)
    return mock


@pytest.fixture
def client(rpc):
    return ChainClient(rpc, PRIVATE_KEY, CONTRACT, chain_id=28530, poll_interval_seconds=0.01)


class TestEncoding:
    def test_mint_uri_selector(self):
        data = ChainClient.encode_mint_uri(MINT_TO, "data:application/json;base64,e30=")
        assert data.startswith(Web3.to_hex(MINT_URI_SELECTOR))
        assert MINT_URI_SELECTOR == Web3.keccak(text="mintURI(address,string)")[:4]

    def test_batch_length_mismatch(self):
        with pytest.raises(ValueError):
            ChainClient.encode_batch_mint_uri([MINT_TO], ["a", "b"])

    @pytest.mark.asyncio
    async def test_token_uri_decodes_string(self, client, rpc):
        rpc.eth_call.return_value = Web3.to_hex(encode(["string"], ["data:application/json;base64,e30="]))
        assert await client.token_uri(7) == "data:application/json;base64,e30="
        call_data = rpc.eth_call.call_args[0][0]["data"]
        assert call_data == ChainClient.encode_token_uri_call(7)

    @pytest.mark.asyncio
    async def test_token_uri_undecodable(self, client, rpc):
        rpc.eth_call.return_value = "0x1234"
        with pytest.raises(MetadataError):
            await client.token_uri(7)

    @pytest.mark.asyncio
    async def test_token_uri_null_result(self, client, rpc):
        rpc.eth_call.return_value = None
        with pytest.raises(MetadataError):
            await client.token_uri(7)

    @pytest.mark.asyncio
    async def test_balance_in_ether(self, client, rpc):
        rpc.get_balance.return_value = 1_500_000_000_000_000_000
        assert await client.get_balance() == Decimal("1.5")


class TestExtractMintedTokenIds:
    def test_filters_logs(self, client):
        receipt = {"logs": [
            _transfer_log(1),
            _transfer_log(2, from_address=MINT_TO),
            _transfer_log(3, address="0x" + "9" * 40),
            {"address": CONTRACT, "topics": ["0x" + "f" * 64]},
            _transfer_log(4),
        ]}
        assert client.extract_minted_token_ids(receipt) == [1, 4]


class TestMintUri:
    """Tests for mint submission."""

    @pytest.mark.asyncio
    async def test_mint_success(self, client, rpc):
        submitted = []
        result = await client.mint_uri(MINT_TO, "uri", gas_multiplier=2.0, receipt_timeout=1,
                                       on_submitted=lambda *args: submitted.append(args))

        assert result.token_id == 42
        assert result.tx_hash == TX_1
        assert result.gas_used == 90_000
        assert submitted == [(TX_1, 5, 200_000)]
        raw = rpc.send_raw_transaction.call_args[0][0]
        assert raw.startswith("0x")

    @pytest.mark.asyncio
    async def test_nonce_tracked_locally(self, client, rpc):
        nonces = []
        rpc.send_raw_transaction.side_effect = [TX_1, TX_2]
        rpc.get_transaction_receipt.side_effect = [_receipt(TX_1, 1), _receipt(TX_2, 2)]

        await client.mint_uri(MINT_TO, "a", on_submitted=lambda h, n, g: nonces.append(n))
        await client.mint_uri(MINT_TO, "b", on_submitted=lambda h, n, g: nonces.append(n))

        assert nonces == [5, 6]
        rpc.get_nonce.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, client, rpc):
        rpc.get_transaction_receipt.return_value = None
        with pytest.raises(ChainTimeout) as exc_info:
            await client.mint_uri(MINT_TO, "uri", receipt_timeout=0)
        assert exc_info.value.tx_hash == TX_1

    @pytest.mark.asyncio
    async def test_receipt_poll_error_keeps_waiting(self, client, rpc):
        rpc.get_transaction_receipt.side_effect = [
            RPCError("RPC transport error on eth_getTransactionReceipt: ConnectError"),
            _receipt(TX_1, 42),
        ]

        result = await client.mint_uri(MINT_TO, "uri", receipt_timeout=1)

        assert result.token_id == 42
        rpc.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_receipt_poll_errors_until_deadline_time_out(self, client, rpc):
        rpc.get_transaction_receipt.side_effect = RPCError("RPC transport error: ConnectError")
        with pytest.raises(ChainTimeout) as exc_info:
            await client.mint_uri(MINT_TO, "uri", receipt_timeout=0)
        assert exc_info.value.tx_hash == TX_1

    @pytest.mark.asyncio
    async def test_concurrent_mints_are_serialized(self, client, rpc):
        events = []
        polls = {TX_1: 0, TX_2: 0}
        sent = iter([TX_1, TX_2])

        async def send(raw):
            tx_hash = next(sent)
            events.append(("send", tx_hash))
            return tx_hash

        async def receipt_for(tx_hash):
            polls[tx_hash] += 1
            # First poll misses so the other mint gets a chance to run.
            if polls[tx_hash] == 1:
                return None
            events.append(("receipt", tx_hash))
            return _receipt(tx_hash, 1 if tx_hash == TX_1 else 2)

        rpc.send_raw_transaction.side_effect = send
        rpc.get_transaction_receipt.side_effect = receipt_for
        nonces = []

        results = await asyncio.gather(
            client.mint_uri(MINT_TO, "a", receipt_timeout=1, on_submitted=lambda h, n, g: nonces.append(n)),
            client.mint_uri(MINT_TO, "b", receipt_timeout=1, on_submitted=lambda h, n, g: nonces.append(n)),
        )

        assert events == [("send", TX_1), ("receipt", TX_1), ("send", TX_2), ("receipt", TX_2)]
        assert nonces == [5, 6]
        assert [r.token_id for r in results] == [1, 2]

    @pytest.mark.asyncio
    async def test_retry_replaces_same_nonce(self, client, rpc):
        nonces = []
        rpc.send_raw_transaction.side_effect = [TX_1, TX_2]
        rpc.get_transaction_receipt.return_value = None

        with pytest.raises(ChainTimeout):
            await client.mint_uri(MINT_TO, "uri", receipt_timeout=0,
                                  on_submitted=lambda h, n, g: nonces.append(n))

        # The original lands while the replacement is pending.
        async def receipt_for(tx_hash):
            return _receipt(TX_1, 77) if tx_hash == TX_1 else None
        rpc.get_transaction_receipt.side_effect = receipt_for

        result = await client.mint_uri(MINT_TO, "uri", receipt_timeout=1,
                                       on_submitted=lambda h, n, g: nonces.append(n))

        assert nonces == [5, 5]
        assert result.token_id == 77
        first_raw = rpc.send_raw_transaction.call_args_list[0][0][0]
        second_raw = rpc.send_raw_transaction.call_args_list[1][0][0]
        assert first_raw != second_raw

    @pytest.mark.asyncio
    async def test_retry_already_known_waits_on_original(self, client, rpc):
        rpc.send_raw_transaction.side_effect = [TX_1, RPCError("RPC error: already known")]
        rpc.get_transaction_receipt.side_effect = [None, _receipt(TX_1, 9)]

        with pytest.raises(ChainTimeout):
            await client.mint_uri(MINT_TO, "uri", receipt_timeout=0)
        result = await client.mint_uri(MINT_TO, "uri", receipt_timeout=1)

        assert result.tx_hash == TX_1
        assert result.token_id == 9

    @pytest.mark.asyncio
    async def test_different_call_after_timeout_resyncs_nonce(self, client, rpc):
        rpc.send_raw_transaction.side_effect = [TX_1, TX_2]
        rpc.get_transaction_receipt.side_effect = [None, _receipt(TX_2, 3)]

        with pytest.raises(ChainTimeout):
            await client.mint_uri(MINT_TO, "first", receipt_timeout=0)
        rpc.get_nonce.return_value = 6
        await client.mint_uri(MINT_TO, "second", receipt_timeout=1)

        assert rpc.get_nonce.await_count == 2

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, client, rpc):
        rpc.get_transaction_receipt.return_value = _receipt(TX_1, status="0x0")
        with pytest.raises(ChainRejection):
            await client.mint_uri(MINT_TO, "uri")

    @pytest.mark.asyncio
    async def test_estimate_revert(self, client, rpc):
        rpc.estimate_gas.side_effect = RPCError("RPC error on eth_estimateGas: execution reverted")
        with pytest.raises(ChainRejection):
            await client.mint_uri(MINT_TO, "uri")
        rpc.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_receipt_without_mint_event(self, client, rpc):
        rpc.get_transaction_receipt.return_value = dict(_receipt(TX_1), logs=[])
        with pytest.raises(ChainRejection):
            await client.mint_uri(MINT_TO, "uri")

    @pytest.mark.asyncio
    async def test_batch_mint(self, client, rpc):
        receipt = dict(_receipt(TX_1), logs=[_transfer_log(10), _transfer_log(11)])
        rpc.get_transaction_receipt.return_value = receipt
        result = await client.batch_mint_uri([MINT_TO, MINT_TO], ["a", "b"])
        assert result.token_ids == [10, 11]


def _rpc_transport(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestChainRPCClient:
    """Tests for the JSON-RPC transport."""

    @pytest.mark.asyncio
    async def test_call_returns_result(self):
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append(body)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": "0x6f72"})

        rpc = ChainRPCClient("http://node", http_client=_rpc_transport(handler))
        assert await rpc.chain_id() == 28530
        assert seen[0]["method"] == "eth_chainId"

    @pytest.mark.asyncio
    async def test_json_rpc_error(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                             "error": {"code": -32000, "message": "nonce too low"}})

        rpc = ChainRPCClient("http://node", http_client=_rpc_transport(handler))
        with pytest.raises(RPCError) as exc_info:
            await rpc.send_raw_transaction("0x00")
        assert "nonce too low" in exc_info.value.message
        assert exc_info.value.method == "eth_sendRawTransaction"

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        rpc = ChainRPCClient("http://node", http_client=_rpc_transport(handler))
        with pytest.raises(RPCError):
            await rpc.get_gas_price()

    @pytest.mark.asyncio
    async def test_pending_receipt_is_none(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": None})

        rpc = ChainRPCClient("http://node", http_client=_rpc_transport(handler))
        assert await rpc.get_transaction_receipt("0x" + "a" * 64) is None
