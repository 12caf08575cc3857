import json
import logging

from pathlib import Path
from typing import Any, Dict, List, Sequence

import aiofiles
from eth_account import Account
from web3 import AsyncWeb3

from xload.accounts import Load_Account
from xload.configuration import Key_Store, Stored_Account
from xload.constants import ERROR_FUNDING, FUNDING_CHUNK_SIZE, get_error_message
from xload.errors import LoadTestError, TransactionRevertedError
from xload.monitor import utc_timestamp
from xload.net import Chain_Client

logger = logging.getLogger("Keys")


def generate_key_store(count: int, chain_id: int) -> Key_Store:
    """Create ``count`` fresh random accounts."""
    if count <= 0:
        raise ValueError(f"Account count must be positive, got {count}")
    accounts = []
    for _ in range(count):
        account = Account.create()
        accounts.append(Stored_Account(address=account.address, private_key=account.key.to_0x_hex()))
    return Key_Store(accounts=accounts, created_at=utc_timestamp(), chain_id=chain_id)


def unique_path(base_path: Path) -> Path:
    """``accounts.json``, then ``accounts-1.json``, ``accounts-2.json``... whichever is free."""
    path = base_path
    counter = 0
    while path.exists():
        counter += 1
        path = base_path.with_name(f"{base_path.stem}-{counter}{base_path.suffix}")
    return path


async def save_key_store(key_store: Key_Store, path: Path) -> Path:
    path = unique_path(Path(path))
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(json.dumps(key_store.to_dict(), indent=2))
    logger.info(f"Saved {len(key_store.accounts)} accounts to {path}")
    return path


class Account_Funder:
    """Pre-funds generated accounts through the Fund contract, ``chunk_size`` addresses per transaction."""

    def __init__(
        self,
        client: Chain_Client,
        funder: Load_Account,
        fund_contract_address: str,
        fund_abi: List[Dict[str, Any]],
        chain_id: int,
        chunk_size: int = FUNDING_CHUNK_SIZE,
    ):
        if chunk_size <= 0:
            raise ValueError(f"Funding chunk size must be positive, got {chunk_size}")
        self.client: Chain_Client = client
        self.funder: Load_Account = funder
        self.chain_id: int = chain_id
        self.chunk_size: int = chunk_size
        self.fund_contract = client.web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(fund_contract_address), abi=fund_abi
        )

    async def fund(self, addresses: Sequence[str], amount: int) -> List[str]:
        """
        Send ``amount`` wei to every address.

        :param addresses: Recipients.
        :param amount: Wei per recipient.
        :return: Hashes of the mined funding transactions.
        """
        tx_hashes = []
        nonce = await self.client.get_nonce(self.funder.address)
        for start in range(0, len(addresses), self.chunk_size):
            chunk = [AsyncWeb3.to_checksum_address(address) for address in addresses[start:start + self.chunk_size]]
            try:
                transaction = await self.fund_contract.functions.transferTsscToMany(chunk).build_transaction({
                    "from": self.funder.address,
                    "value": amount * len(chunk),
                    "nonce": nonce,
                    "chainId": self.chain_id,
                })
                tx_hash = await self.client.submit(self.client.sign(self.funder, transaction))
                receipt = await self.client.wait(tx_hash)
                if not receipt.success:
                    raise TransactionRevertedError(receipt.hash)
            except LoadTestError:
                raise
            except Exception as e:
                logger.error(f"Funding transaction for chunk starting at {start} failed: {e}")
                raise LoadTestError(f"{get_error_message(ERROR_FUNDING)}: {e}") from e
            nonce += 1
            tx_hashes.append(receipt.hash)
            logger.info(f"Funded batch of {len(chunk)} accounts with {AsyncWeb3.from_wei(amount, 'ether')} each ✅")
        return tx_hashes
