import asyncio
import itertools
import logging
import random
import time

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Dict, List, Optional, Sequence, TypeVar

import aiohttp
from cachetools import TTLCache
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ProviderConnectionError, TimeExhausted, TransactionNotFound

from xload.constants import (
    BALANCING_STRATEGIES,
    BASE_FEE_CACHE_TTL,
    DEFAULT_BALANCING_STRATEGY,
    DEFAULT_BASE_FEE,
    RECEIPT_POLL_INTERVAL,
    RECEIPT_TIMEOUT,
    REPLACEMENT_SCAN_DEPTH,
    TRANSFER_GAS_LIMIT,
)
from xload.errors import (
    ConfigurationError,
    ProviderDisconnectedError,
    TransactionReplacedError,
    from_node_error,
)
from xload.fees import Fee_Params

if TYPE_CHECKING:
    from xload.accounts import Load_Account

logger = logging.getLogger("Net")

T = TypeVar("T")

CONNECTION_ERRORS = (aiohttp.ClientConnectionError, ProviderConnectionError, ConnectionError)


def redact_url(url: str) -> str:
    """Strip the query string, which commonly carries API keys."""
    return url.split("?")[0]


def to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return HexBytes(value).to_0x_hex()
    return str(value)


@dataclass(frozen=True)
class Receipt:
    hash: str
    success: bool
    block_number: Optional[int] = None


class Chain_Client:
    """
    Chain access for one RPC endpoint.

    Thin async wrapper over ``AsyncWeb3`` exposing exactly the reads and writes
    the load engine needs. Connection failures surface as
    ``ProviderDisconnectedError``. Rejected submissions with a recognised node
    message become typed errors; every other RPC error propagates unchanged so
    the retry classifier can inspect the node's message.
    """

    def __init__(
        self,
        url: str,
        web3: Optional[AsyncWeb3] = None,
        receipt_timeout: float = RECEIPT_TIMEOUT,
        poll_interval: float = RECEIPT_POLL_INTERVAL,
    ):
        self.url: str = url
        self.web3: AsyncWeb3 = web3 or AsyncWeb3(AsyncHTTPProvider(url))
        self.receipt_timeout: float = receipt_timeout
        self.poll_interval: float = poll_interval
        self.base_fee_cache: TTLCache = TTLCache(maxsize=1, ttl=BASE_FEE_CACHE_TTL)

    def __repr__(self) -> str:
        return f"Chain_Client({self.name})"

    @property
    def name(self) -> str:
        return redact_url(self.url)

    async def _rpc(self, call: Awaitable[T]) -> T:
        try:
            return await call
        except CONNECTION_ERRORS as e:
            raise ProviderDisconnectedError(f"Provider disconnected ({self.name}): {e}") from e

    async def is_connected(self) -> bool:
        try:
            return await self.web3.is_connected()
        except Exception as e:
            logger.warning(f"Connection check failed for {self.name}: {e}")
            return False

    async def chain_id(self) -> int:
        return await self._rpc(self.web3.eth.chain_id)

    async def get_nonce(self, address: str) -> int:
        return await self._rpc(self.web3.eth.get_transaction_count(address, "pending"))

    async def get_balance(self, address: str) -> int:
        return await self._rpc(self.web3.eth.get_balance(address))

    async def estimate_gas(self, call: Dict[str, Any]) -> int:
        return await self._rpc(self.web3.eth.estimate_gas(call))

    async def get_block(self, tag: Any = "latest", full_transactions: bool = False) -> Dict[str, Any]:
        return await self._rpc(self.web3.eth.get_block(tag, full_transactions=full_transactions))

    async def get_base_fee(self) -> int:
        """Latest block base fee, cached briefly; falls back to 1 gwei on pre-London chains."""
        if "base_fee" in self.base_fee_cache:
            return self.base_fee_cache["base_fee"]
        block = await self.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            logger.debug(f"No baseFeePerGas from {self.name}, using default {DEFAULT_BASE_FEE}")
            base_fee = DEFAULT_BASE_FEE
        self.base_fee_cache["base_fee"] = int(base_fee)
        return int(base_fee)

    async def block_number(self) -> int:
        return await self._rpc(self.web3.eth.block_number)

    def sign(self, account: "Load_Account", transaction: Dict[str, Any]) -> bytes:
        """Signs a transaction with the account's private key."""
        try:
            return account.signer.sign_transaction(transaction).raw_transaction
        except KeyError as e:
            logger.error(f"Missing transaction parameter for signing: {e}")
            raise

    async def submit(self, signed_tx: bytes) -> str:
        """
        Broadcast a signed transaction.

        Known node rejections (nonce conflicts, underpriced replacements,
        duplicates) are raised as their typed ``LoadTestError`` counterparts.
        """
        try:
            tx_hash = await self._rpc(self.web3.eth.send_raw_transaction(signed_tx))
        except Exception as e:
            typed = from_node_error(e)
            if typed is None:
                raise
            raise typed from e
        return to_hex(tx_hash)

    async def wait(
        self,
        tx_hash: str,
        sender: Optional[str] = None,
        nonce: Optional[int] = None,
        from_block: Optional[int] = None,
    ) -> Receipt:
        """
        Poll until the transaction is mined or its nonce is consumed by another one.

        :param tx_hash: Hash returned by ``submit``.
        :param sender: Sender address, enables replacement detection.
        :param nonce: Nonce the transaction was sent with.
        :param from_block: Chain head at submission; the replacement search starts there.
        :return: Receipt with the mined status.
        :raises TransactionReplacedError: the sender's mined nonce moved past
            ``nonce`` without our receipt. ``replacement_hash`` is None when the
            replacing transaction could not be located.
        :raises TimeExhausted: nothing happened within ``receipt_timeout``.
        """
        deadline = time.monotonic() + self.receipt_timeout
        track_nonce = sender is not None and nonce is not None
        while True:
            receipt = await self._receipt(tx_hash)
            if receipt is not None:
                return receipt
            if track_nonce:
                mined_nonce = await self._rpc(self.web3.eth.get_transaction_count(sender, "latest"))
                if mined_nonce > nonce:
                    # Ours may have been mined between the two reads.
                    receipt = await self._receipt(tx_hash)
                    if receipt is not None:
                        return receipt
                    replacement = await self._find_replacement(tx_hash, sender, nonce, from_block)
                    if replacement:
                        raise TransactionReplacedError(replacement)
                    raise TransactionReplacedError(
                        None, f"Nonce {nonce} of {sender} was consumed by an unknown transaction"
                    )
            if time.monotonic() >= deadline:
                raise TimeExhausted(
                    f"Transaction {tx_hash} is not in the chain after {self.receipt_timeout} seconds"
                )
            await asyncio.sleep(self.poll_interval)

    async def _receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            receipt = await self._rpc(self.web3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return Receipt(
            hash=to_hex(receipt["transactionHash"]),
            success=receipt.get("status") == 1,
            block_number=receipt.get("blockNumber"),
        )

    async def _find_replacement(
        self,
        tx_hash: str,
        sender: str,
        nonce: int,
        from_block: Optional[int] = None,
    ) -> Optional[str]:
        """Scan blocks from ``from_block`` up to the head for a transaction that consumed ``nonce``."""
        head = await self.block_number()
        if from_block is None:
            from_block = head - REPLACEMENT_SCAN_DEPTH + 1
        for number in range(max(from_block, 0), head + 1):
            block = await self.get_block(number, full_transactions=True)
            for tx in block.get("transactions", []):
                if isinstance(tx, (bytes, str)):
                    continue
                candidate = to_hex(tx["hash"])
                if tx["from"].lower() == sender.lower() and tx["nonce"] == nonce and candidate != tx_hash:
                    logger.debug(f"Transaction {tx_hash} replaced by {candidate} in block {number}")
                    return candidate
        return None

    async def send_value(
        self,
        sender: "Load_Account",
        to: str,
        amount: int,
        fee_params: Fee_Params,
        nonce: int,
        chain_id: int,
        gas_limit: int = TRANSFER_GAS_LIMIT,
    ) -> str:
        """Builds, signs and submits a plain value transfer."""
        transaction = {
            "type": 2,
            "chainId": chain_id,
            "from": sender.address,
            "to": to,
            "value": amount,
            "nonce": nonce,
            "gas": gas_limit,
            **fee_params.as_tx_fields(),
        }
        return await self.submit(self.sign(sender, transaction))

    async def disconnect(self) -> None:
        provider = self.web3.provider
        if hasattr(provider, "disconnect"):
            try:
                await provider.disconnect()
            except Exception as e:
                logger.debug(f"Error disconnecting {self.name}: {e}")


class Endpoint_Balancer:
    """
    Stateless spread of RPC calls across the configured endpoints.

    Any endpoint can serve any account; there is no per-endpoint health
    tracking, an unreachable endpoint surfaces as failed attempts.
    """

    STRATEGIES = BALANCING_STRATEGIES

    def __init__(
        self,
        clients: Sequence[Chain_Client],
        strategy: str = DEFAULT_BALANCING_STRATEGY,
        rng: Optional[random.Random] = None,
    ):
        if not clients:
            raise ConfigurationError("At least one RPC endpoint must be configured")
        if strategy not in self.STRATEGIES:
            raise ValueError(f"Unknown balancing strategy {strategy!r}, expected one of {self.STRATEGIES}")
        self.clients: List[Chain_Client] = list(clients)
        self.strategy: str = strategy
        self._rng: random.Random = rng or random.Random()
        self._cursor = itertools.count()

    def __len__(self) -> int:
        return len(self.clients)

    @property
    def primary(self) -> Chain_Client:
        return self.clients[0]

    def select(self) -> Chain_Client:
        """Endpoint for the next call."""
        if len(self.clients) == 1:
            return self.clients[0]
        if self.strategy == "round_robin":
            return self.clients[next(self._cursor) % len(self.clients)]
        return self._rng.choice(self.clients)

    def current(self) -> Chain_Client:
        """Endpoint for read-only queries such as the base fee lookup."""
        return self._rng.choice(self.clients)

    def by_index(self, index: int) -> Chain_Client:
        return self.clients[index % len(self.clients)]

    async def close(self) -> None:
        for client in self.clients:
            await client.disconnect()
