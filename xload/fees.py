import logging

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Dict

from xload.constants import BASE_FEE_MULTIPLIER, FEE_ESCALATION_FACTOR, PRIORITY_FEE

logger = logging.getLogger("Fees")


@dataclass(frozen=True)
class Fee_Params:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def as_tx_fields(self) -> Dict[str, int]:
        return {
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }


class Fee_Policy:
    """
    EIP-1559 fee parameters that escalate with the retry count.

    ``escalation = escalation_factor ** retry_count``
    ``maxFeePerGas = floor(base_fee * base_fee_multiplier * escalation)``
    ``maxPriorityFeePerGas = floor(priority_fee * escalation)``

    Both fields strictly increase with every retry. When flooring would leave a
    field unchanged (tiny fees), it is bumped by one wei over the previous retry.
    ``maxFeePerGas`` is never below ``maxPriorityFeePerGas`` so that nodes with a
    near-zero base fee still accept the transaction.
    """

    def __init__(
        self,
        escalation_factor: float = FEE_ESCALATION_FACTOR,
        base_fee_multiplier: float = BASE_FEE_MULTIPLIER,
        priority_fee: int = PRIORITY_FEE,
    ):
        if escalation_factor <= 1:
            raise ValueError(f"Escalation factor must be greater than 1, got {escalation_factor}")
        if base_fee_multiplier <= 0:
            raise ValueError(f"Base fee multiplier must be positive, got {base_fee_multiplier}")
        if priority_fee <= 0:
            raise ValueError(f"Priority fee must be positive, got {priority_fee}")
        self.escalation_factor: Decimal = Decimal(str(escalation_factor))
        self.base_fee_multiplier: Decimal = Decimal(str(base_fee_multiplier))
        self.priority_fee: int = priority_fee

    def escalation(self, retry_count: int) -> Decimal:
        return self.escalation_factor ** retry_count

    def compute_fees(self, base_fee: int, retry_count: int) -> Fee_Params:
        """
        Compute fee parameters for a given observed base fee and retry count.

        :param base_fee: Observed base fee per gas in wei.
        :param retry_count: Number of retries already made (0 for the first try).
        :return: Fee parameters for this try.
        """
        if retry_count < 0:
            raise ValueError(f"Retry count cannot be negative, got {retry_count}")
        if base_fee < 0:
            raise ValueError(f"Base fee cannot be negative, got {base_fee}")

        priority_fee = self._escalate(Decimal(self.priority_fee), retry_count)
        max_fee = self._escalate(Decimal(base_fee) * self.base_fee_multiplier, retry_count)
        fee_params = Fee_Params(
            max_fee_per_gas=max(max_fee, priority_fee),
            max_priority_fee_per_gas=priority_fee,
        )
        logger.debug(
            f"Fees for retry {retry_count}: maxFee {fee_params.max_fee_per_gas}, "
            f"priority {fee_params.max_priority_fee_per_gas}"
        )
        return fee_params

    def gas_cost(self, gas_limit: int, fee_params: Fee_Params) -> int:
        """Worst-case gas cost in wei."""
        return gas_limit * fee_params.max_fee_per_gas

    def _escalate(self, amount: Decimal, retry_count: int) -> int:
        value = int((amount * self.escalation(retry_count)).to_integral_value(rounding=ROUND_FLOOR))
        if retry_count > 0:
            value = max(value, self._escalate(amount, retry_count - 1) + 1)
        return value
