from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from xload.accounts import Load_Account
from xload.constants import GWEI
from xload.net import Receipt

RECIPIENT = "0x" + "11" * 20
CONTRACT = "0x" + "22" * 20


class Fake_Chain_Client:
    """
    In-memory stand-in for ``Chain_Client``.

    Tracks a confirmed nonce per address and rejects submissions whose nonce
    does not match it, the way a node would. Failures can be scripted per call.
    """

    def __init__(self, name: str = "fake", balance: int = 10**21, base_fee: int = GWEI):
        self.name = name
        self.balance = balance
        self.base_fee = base_fee
        self.base_fee_error: Optional[Exception] = None
        self.gas_estimate = 50_000
        self.gas_estimate_error: Optional[Exception] = None
        self.chain_nonces: Dict[str, int] = defaultdict(int)
        self.nonce_errors: Dict[str, Exception] = {}
        self.send_failures: List[Exception] = []
        self.wait_failures: List[Exception] = []
        self.reverted: bool = False
        self.sent: List[Dict[str, Any]] = []
        self.nonce_queries = 0
        self.on_send = None
        self.disconnected = False
        self.network_chain_id = 1337
        self.connected = True
        self.head = 0
        self.waits: List[Dict[str, Any]] = []

    async def is_connected(self) -> bool:
        return self.connected

    async def chain_id(self) -> int:
        return self.network_chain_id

    async def get_nonce(self, address: str) -> int:
        self.nonce_queries += 1
        if address in self.nonce_errors:
            raise self.nonce_errors[address]
        return self.chain_nonces[address]

    async def get_balance(self, address: str) -> int:
        return self.balance

    async def get_base_fee(self) -> int:
        if self.base_fee_error is not None:
            raise self.base_fee_error
        return self.base_fee

    async def estimate_gas(self, call: Dict[str, Any]) -> int:
        if self.gas_estimate_error is not None:
            raise self.gas_estimate_error
        return self.gas_estimate

    async def send_value(self, sender, to, amount, fee_params, nonce, chain_id, gas_limit=21_000) -> str:
        return self._accept(sender.address, nonce, fee_params, gas_limit)

    def sign(self, account, transaction):
        return transaction

    async def submit(self, transaction) -> str:
        fee_params = (transaction["maxFeePerGas"], transaction["maxPriorityFeePerGas"])
        return self._accept(transaction["from"], transaction["nonce"], fee_params, transaction["gas"])

    def _accept(self, address: str, nonce: int, fee_params: Any, gas_limit: int) -> str:
        self.sent.append({"from": address, "nonce": nonce, "fees": fee_params, "gas": gas_limit})
        if self.on_send is not None:
            self.on_send()
        if self.send_failures:
            raise self.send_failures.pop(0)
        expected = self.chain_nonces[address]
        if nonce < expected:
            raise ValueError({"code": -32000, "message": "nonce too low"})
        if nonce > expected:
            raise ValueError({"code": -32000, "message": "nonce too high"})
        self.chain_nonces[address] += 1
        return "0x%064x" % len(self.sent)

    async def block_number(self) -> int:
        return self.head

    async def wait(
        self,
        tx_hash: str,
        sender: Optional[str] = None,
        nonce: Optional[int] = None,
        from_block: Optional[int] = None,
    ) -> Receipt:
        self.waits.append({"hash": tx_hash, "from": sender, "nonce": nonce, "from_block": from_block})
        if self.wait_failures:
            raise self.wait_failures.pop(0)
        return Receipt(hash=tx_hash, success=not self.reverted, block_number=1)

    async def disconnect(self) -> None:
        self.disconnected = True


@pytest.fixture
def make_accounts():
    def factory(count: int) -> List[Load_Account]:
        return [Load_Account.from_private_key("0x" + f"{i + 1:064x}") for i in range(count)]
    return factory


@pytest.fixture
def make_client():
    return Fake_Chain_Client


@pytest.fixture
def fake_client() -> Fake_Chain_Client:
    return Fake_Chain_Client()
