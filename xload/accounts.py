import asyncio
import logging

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence

from eth_account import Account
from eth_account.signers.local import LocalAccount

from xload.constants import NONCE_FETCH_CHUNK_SIZE

if TYPE_CHECKING:
    from xload.net import Chain_Client, Endpoint_Balancer

logger = logging.getLogger("Accounts")


@dataclass
class Load_Account:
    """A pre-funded signing account and its cached nonce (``None`` when unknown)."""
    signer: LocalAccount = field(repr=False)
    nonce: Optional[int] = None

    @classmethod
    def from_private_key(cls, private_key: str) -> "Load_Account":
        return cls(signer=Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self.signer.address

    @property
    def nonce_known(self) -> bool:
        return self.nonce is not None

    def invalidate_nonce(self) -> None:
        self.nonce = None


class Account_Pool:
    """
    Fixed set of accounts rotated round-robin in batches.

    The pool is a ring over an immutable list: ``next_batch`` reads from the
    head, ``rotate`` advances the head past the batch. Every account is used
    once per full cycle, so an account only comes back after all others have
    had a turn.
    """

    def __init__(self, accounts: Sequence[Load_Account]):
        if not accounts:
            raise ValueError("Account pool needs at least one account")
        addresses = [account.address for account in accounts]
        if len(set(addresses)) != len(addresses):
            raise ValueError("Account pool contains duplicate addresses")
        self._accounts: List[Load_Account] = list(accounts)
        self._head: int = 0

    def __len__(self) -> int:
        return len(self._accounts)

    def __iter__(self) -> Iterator[Load_Account]:
        """Iterate in current rotation order, starting at the head."""
        size = len(self._accounts)
        for offset in range(size):
            yield self._accounts[(self._head + offset) % size]

    @property
    def addresses(self) -> List[str]:
        return [account.address for account in self]

    def next_batch(self, size: int) -> List[Load_Account]:
        """Return the next ``size`` accounts, capped at the pool size."""
        if size <= 0:
            raise ValueError(f"Batch size must be positive, got {size}")
        pool_size = len(self._accounts)
        if size > pool_size:
            logger.debug(f"Batch size {size} exceeds pool size {pool_size}; using whole pool")
            size = pool_size
        return [self._accounts[(self._head + offset) % pool_size] for offset in range(size)]

    def rotate(self, batch: Sequence[Load_Account]) -> None:
        """Move a just-used batch to the back of the pool."""
        if not batch:
            return
        if len(batch) > len(self._accounts) or batch[0] is not self._accounts[self._head]:
            raise ValueError("Only the batch at the head of the pool can be rotated")
        self._head = (self._head + len(batch)) % len(self._accounts)

    async def nonce(self, account: Load_Account, client: "Chain_Client") -> int:
        """Cached nonce, fetched live from the network when unknown."""
        if account.nonce is None:
            account.nonce = await client.get_nonce(account.address)
            logger.debug(f"Fetched nonce {account.nonce} for {account.address[:10]}...")
        return account.nonce

    async def prime_nonces(
        self,
        accounts: Sequence[Load_Account],
        balancer: "Endpoint_Balancer",
        chunk_size: int = NONCE_FETCH_CHUNK_SIZE,
    ) -> int:
        """
        Fetch unknown nonces ahead of a batch, ``chunk_size`` at a time.

        Reads are spread across endpoints by position within the chunk.
        Failures are logged and leave the nonce unknown; the dispatcher
        retries the fetch on its own.

        :return: Number of nonces fetched.
        """
        pending = [account for account in accounts if account.nonce is None]
        fetched = 0
        for start in range(0, len(pending), chunk_size):
            chunk = pending[start:start + chunk_size]
            outcomes = await asyncio.gather(
                *[self.nonce(account, balancer.by_index(index)) for index, account in enumerate(chunk)],
                return_exceptions=True,
            )
            for account, outcome in zip(chunk, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning(f"Nonce prefetch failed for {account.address}: {outcome}")
                else:
                    fetched += 1
        return fetched
