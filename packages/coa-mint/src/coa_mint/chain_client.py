"""
Contract-call boundary for the COA token contract.

Features:
- ABI encoding for mintURI / batchMintURI / tokenURI
- Local signing with a single configured key
- Gas estimation with a configurable safety multiplier
- Receipt polling with a bounded timeout
- Token id extraction from mint Transfer events
- Same-nonce replacement when resubmitting after a receipt timeout

One ChainClient is built at startup and handed to the orchestrator and the
verifier; it holds the only signing key and serializes every submission.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from web3 import Web3

from .exceptions import ChainRejection, ChainTimeout, MetadataError, RPCError
from .rpc_client import ChainRPCClient

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

MINT_URI_SELECTOR = Web3.keccak(text="mintURI(address,string)")[:4]
BATCH_MINT_URI_SELECTOR = Web3.keccak(text="batchMintURI(address[],string[])")[:4]
TOKEN_URI_SELECTOR = Web3.keccak(text="tokenURI(uint256)")[:4]
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))

# Node-side replacement rules require at least a 10% price bump.
REPLACEMENT_GAS_BUMP_PERCENT = 12

_ALREADY_HANDLED_ERRORS = ("nonce too low", "already known", "replacement transaction underpriced")

# Called with (tx_hash, nonce, gas_limit) once the node accepts a submission.
SubmittedCallback = Callable[[str, int, int], None]


@dataclass
class MintResult:
    """Outcome of a confirmed single mint."""
    token_id: int
    tx_hash: str
    gas_used: int
    block_number: Optional[int] = None


@dataclass
class BatchMintResult:
    """Outcome of a confirmed batchMintURI call."""
    token_ids: List[int]
    tx_hash: str
    gas_used: int
    block_number: Optional[int] = None


@dataclass
class _InflightTx:
    """A submitted transaction whose receipt has not been observed yet."""
    nonce: int
    gas_price: int
    data: str
    gas_limit: int = 0
    tx_hashes: List[str] = field(default_factory=list)


def _hex_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def _topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


class ChainClient:
    """
    Client for the COA token contract.

    Submissions from one signing key must reach the node in nonce order, so
    every write goes through a single asyncio lock and a locally tracked
    nonce.
    """

    def __init__(
        self,
        rpc: ChainRPCClient,
        private_key: str,
        contract_address: str,
        chain_id: int,
        poll_interval_seconds: float = 2.0,
    ):
        self._rpc = rpc
        self._account = Account.from_key(private_key)
        self._contract = Web3.to_checksum_address(contract_address)
        self._chain_id = chain_id
        self._poll_interval = poll_interval_seconds
        self._submit_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._inflight: Optional[_InflightTx] = None

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def contract_address(self) -> str:
        return self._contract

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def rpc(self) -> ChainRPCClient:
        return self._rpc

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    @staticmethod
    def encode_mint_uri(to_address: str, uri: str) -> str:
        params = encode(["address", "string"], [Web3.to_checksum_address(to_address), uri])
        return Web3.to_hex(MINT_URI_SELECTOR + params)

    @staticmethod
    def encode_batch_mint_uri(recipients: Sequence[str], uris: Sequence[str]) -> str:
        if len(recipients) != len(uris):
            raise ValueError("recipients and uris must have the same length")
        params = encode(
            ["address[]", "string[]"],
            [[Web3.to_checksum_address(r) for r in recipients], list(uris)],
        )
        return Web3.to_hex(BATCH_MINT_URI_SELECTOR + params)

    @staticmethod
    def encode_token_uri_call(token_id: int) -> str:
        return Web3.to_hex(TOKEN_URI_SELECTOR + encode(["uint256"], [int(token_id)]))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def token_uri(self, token_id: int) -> str:
        """Read ``tokenURI(tokenId)`` from the contract."""
        result = await self._rpc.eth_call({
            "to": self._contract,
            "data": self.encode_token_uri_call(token_id),
        })
        if not isinstance(result, str):
            raise MetadataError(f"tokenURI({token_id}) returned no data", details={"result": repr(result)})
        try:
            raw = bytes.fromhex(result[2:] if result.startswith("0x") else result)
            (uri,) = decode(["string"], raw)
        except (DecodingError, ValueError) as e:
            raise MetadataError(f"tokenURI({token_id}) returned undecodable data: {e}") from e
        return uri

    async def get_balance(self) -> Decimal:
        """Signer balance in whole native-token units."""
        wei = await self._rpc.get_balance(self.address)
        return Decimal(wei) / Decimal(10**18)

    def extract_minted_token_ids(self, receipt: Dict[str, Any]) -> List[int]:
        """Token ids from ``Transfer(0x0, to, tokenId)`` logs emitted by the contract."""
        token_ids = []
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            if len(topics) != 4 or topics[0].lower() != TRANSFER_TOPIC:
                continue
            if (log.get("address") or "").lower() != self._contract.lower():
                continue
            if _topic_to_address(topics[1]) != ZERO_ADDRESS:
                continue
            token_ids.append(int(topics[3], 16))
        return token_ids

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def estimate_gas(self, data: str) -> int:
        try:
            return await self._rpc.estimate_gas({
                "from": self.address,
                "to": self._contract,
                "data": data,
            })
        except RPCError as e:
            if "revert" in e.message.lower():
                raise ChainRejection(f"Gas estimation reverted: {e.message}", revert_reason=e.message) from e
            raise

    async def estimate_mint_gas(self, to_address: str, uri: str) -> int:
        return await self.estimate_gas(self.encode_mint_uri(to_address, uri))

    async def _reserve_nonce(self) -> int:
        if self._next_nonce is None:
            self._next_nonce = await self._rpc.get_nonce(self.address)
            logger.debug(f"Synced nonce for {self.address}: {self._next_nonce}")
        nonce = self._next_nonce
        self._next_nonce += 1
        return nonce

    def _sign(self, data: str, nonce: int, gas_limit: int, gas_price: int) -> str:
        tx = {
            "to": self._contract,
            "value": 0,
            "data": data,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self._chain_id,
        }
        signed = self._account.sign_transaction(tx)
        return Web3.to_hex(signed.raw_transaction)

    async def _submit(self, data: str, gas_multiplier: float) -> _InflightTx:
        """Submit ``data``; replaces a timed-out submission of the same call."""
        estimate = await self.estimate_gas(data)
        gas_limit = int(estimate * gas_multiplier)
        gas_price = await self._rpc.get_gas_price()

        inflight = self._inflight
        if inflight is not None and inflight.data == data:
            gas_price = max(gas_price, inflight.gas_price * (100 + REPLACEMENT_GAS_BUMP_PERCENT) // 100)
            nonce = inflight.nonce
            logger.info(f"Replacing pending tx at nonce {nonce} (gas price {gas_price})")
        else:
            if inflight is not None:
                # A different call is pending: its fate is unknown, resync from the node.
                self._next_nonce = None
            inflight = _InflightTx(nonce=await self._reserve_nonce(), gas_price=gas_price, data=data)
            nonce = inflight.nonce

        raw = self._sign(data, nonce, gas_limit, gas_price)
        try:
            tx_hash = await self._rpc.send_raw_transaction(raw)
        except RPCError as e:
            lowered = e.message.lower()
            if inflight.tx_hashes and any(s in lowered for s in _ALREADY_HANDLED_ERRORS):
                # The earlier submission is already mined or still pending; keep waiting on it.
                logger.warning(f"Replacement not accepted ({e.message}); waiting on original")
                self._inflight = inflight
                return inflight
            self._next_nonce = None
            self._inflight = None
            if "revert" in lowered:
                raise ChainRejection(f"Transaction rejected: {e.message}", revert_reason=e.message) from e
            raise

        inflight.gas_price = gas_price
        inflight.tx_hashes.append(tx_hash)
        inflight.gas_limit = gas_limit
        self._inflight = inflight
        return inflight

    async def wait_for_receipt(
        self,
        tx_hashes: Sequence[str] | str,
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        """Poll until one of ``tx_hashes`` has a receipt.

        Raises:
            ChainTimeout: no receipt within ``timeout_seconds``
            ChainRejection: the mined transaction has ``status == 0``
        """
        if isinstance(tx_hashes, str):
            tx_hashes = [tx_hashes]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        while True:
            for tx_hash in tx_hashes:
                try:
                    receipt = await self._rpc.get_transaction_receipt(tx_hash)
                except RPCError as e:
                    # The tx is already with the node; a failed poll is not an outcome.
                    logger.warning(f"Receipt poll for {tx_hash} failed, retrying: {e.message}")
                    continue
                if receipt:
                    if _hex_int(receipt.get("status", "0x0")) == 0:
                        raise ChainRejection(f"Transaction {tx_hash} failed on-chain", tx_hash=tx_hash)
                    return receipt
            if loop.time() >= deadline:
                raise ChainTimeout(tx_hashes[-1], timeout_seconds)
            await asyncio.sleep(min(self._poll_interval, max(0.0, deadline - loop.time())))

    async def _submit_and_confirm(
        self,
        data: str,
        gas_multiplier: float,
        receipt_timeout: float,
        on_submitted: Optional[SubmittedCallback] = None,
    ) -> Dict[str, Any]:
        async with self._submit_lock:
            inflight = await self._submit(data, gas_multiplier)
            if on_submitted is not None:
                on_submitted(inflight.tx_hashes[-1], inflight.nonce, inflight.gas_limit)
            receipt = await self.wait_for_receipt(inflight.tx_hashes, receipt_timeout)
            self._inflight = None
            return receipt

    async def mint_uri(
        self,
        to_address: str,
        uri: str,
        gas_multiplier: float = 2.0,
        receipt_timeout: float = 60.0,
        on_submitted: Optional[SubmittedCallback] = None,
    ) -> MintResult:
        """Mint one token and wait for its receipt."""
        data = self.encode_mint_uri(to_address, uri)
        receipt = await self._submit_and_confirm(data, gas_multiplier, receipt_timeout, on_submitted)

        tx_hash = receipt.get("transactionHash")
        token_ids = self.extract_minted_token_ids(receipt)
        if len(token_ids) != 1:
            raise ChainRejection(
                f"Expected one mint Transfer event in {tx_hash}, found {len(token_ids)}",
                tx_hash=tx_hash,
            )
        return MintResult(
            token_id=token_ids[0],
            tx_hash=tx_hash,
            gas_used=_hex_int(receipt.get("gasUsed")),
            block_number=_hex_int(receipt.get("blockNumber")),
        )

    async def batch_mint_uri(
        self,
        recipients: Sequence[str],
        uris: Sequence[str],
        gas_multiplier: float = 2.0,
        receipt_timeout: float = 60.0,
    ) -> BatchMintResult:
        """Mint several tokens in one transaction.

        Large data-URI payloads can exceed block gas limits, which is why the
        orchestrator mints one token per transaction.
        """
        data = self.encode_batch_mint_uri(recipients, uris)
        receipt = await self._submit_and_confirm(data, gas_multiplier, receipt_timeout)
        return BatchMintResult(
            token_ids=self.extract_minted_token_ids(receipt),
            tx_hash=receipt.get("transactionHash"),
            gas_used=_hex_int(receipt.get("gasUsed")),
            block_number=_hex_int(receipt.get("blockNumber")),
        )

    async def close(self) -> None:
        await self._rpc.close()
