import logging

from typing import Any, Dict, List

from eth_typing import ChecksumAddress, HexStr
from eth_utils import function_signature_to_4byte_selector
from hexbytes import HexBytes
from web3 import AsyncWeb3

from xload.accounts import Load_Account
from xload.constants import GAS_BUFFER_PERCENTAGE, TRANSFER_GAS_LIMIT
from xload.errors import GasEstimationError, ProviderDisconnectedError
from xload.fees import Fee_Params
from xload.net import Chain_Client

logger = logging.getLogger("Workload")

SET_ARRAY_SIGNATURE = "setArray(uint256)"
SET_ARRAY_SELECTOR = function_signature_to_4byte_selector(SET_ARRAY_SIGNATURE)


class Transfer_Workload:
    """Plain value transfers from every pool account to a single recipient."""

    name: str = "transfer"
    log_message: str = "Transfer completed"

    def __init__(self, recipient: str, amount: int, chain_id: int):
        if amount < 0:
            raise ValueError(f"Transfer amount cannot be negative, got {amount}")
        self.recipient: ChecksumAddress = AsyncWeb3.to_checksum_address(recipient)
        self.amount: int = amount
        self.chain_id: int = chain_id

    def value(self) -> int:
        return self.amount

    async def gas_limit(self, client: Chain_Client, account: Load_Account) -> int:
        return TRANSFER_GAS_LIMIT

    async def submit(
        self,
        client: Chain_Client,
        account: Load_Account,
        fee_params: Fee_Params,
        nonce: int,
        gas_limit: int,
    ) -> str:
        return await client.send_value(
            account, self.recipient, self.amount, fee_params, nonce, self.chain_id, gas_limit
        )


class Contract_Workload:
    """
    ``setArray(array_size)`` calls on the Load contract.

    The array size sets how heavy each transaction is. Gas is estimated per
    attempt and padded by ``gas_buffer_percentage``.
    """

    name: str = "contract"
    log_message: str = "Transaction completed"

    def __init__(
        self,
        contract_address: str,
        calldata: HexStr,
        array_size: int,
        chain_id: int,
        gas_buffer_percentage: int = GAS_BUFFER_PERCENTAGE,
    ):
        self.contract_address: ChecksumAddress = AsyncWeb3.to_checksum_address(contract_address)
        self.calldata: HexStr = calldata
        self.array_size: int = array_size
        self.chain_id: int = chain_id
        self.gas_buffer_percentage: int = gas_buffer_percentage

    @classmethod
    def from_abi(
        cls,
        web3: AsyncWeb3,
        contract_address: str,
        abi: List[Dict[str, Any]],
        array_size: int,
        chain_id: int,
    ) -> "Contract_Workload":
        """Encode ``setArray(array_size)`` and check the ABI yields the expected selector."""
        contract = web3.eth.contract(address=AsyncWeb3.to_checksum_address(contract_address), abi=abi)
        calldata = contract.encode_abi("setArray", args=[array_size])
        if HexBytes(calldata)[:4] != SET_ARRAY_SELECTOR:
            raise ValueError(
                f"Load contract ABI does not encode {SET_ARRAY_SIGNATURE}, got selector {calldata[:10]}"
            )
        return cls(contract_address, calldata, array_size, chain_id)

    def value(self) -> int:
        return 0

    def call(self, account: Load_Account) -> Dict[str, Any]:
        return {"from": account.address, "to": self.contract_address, "data": self.calldata}

    async def gas_limit(self, client: Chain_Client, account: Load_Account) -> int:
        """Estimated gas plus buffer; estimation failures are not retried."""
        try:
            estimate = await client.estimate_gas(self.call(account))
        except ProviderDisconnectedError:
            raise
        except Exception as e:
            raise GasEstimationError(f"Gas estimation failed: {e}") from e
        return estimate * (100 + self.gas_buffer_percentage) // 100

    def build(self, account: Load_Account, fee_params: Fee_Params, nonce: int, gas_limit: int) -> Dict[str, Any]:
        return {
            "type": 2,
            "chainId": self.chain_id,
            "value": 0,
            "nonce": nonce,
            "gas": gas_limit,
            **self.call(account),
            **fee_params.as_tx_fields(),
        }

    async def submit(
        self,
        client: Chain_Client,
        account: Load_Account,
        fee_params: Fee_Params,
        nonce: int,
        gas_limit: int,
    ) -> str:
        return await client.submit(client.sign(account, self.build(account, fee_params, nonce, gas_limit)))
