import logging

from enum import Enum
from typing import Any, Optional, Tuple, Type

logger = logging.getLogger("Errors")


class LoadTestError(Exception):
    """Base exception for load test failures."""
    def __init__(self, message: str = "Load test failed"):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(LoadTestError):
    """Startup precondition violated: missing env var, unreadable keys file, no endpoints."""
    def __init__(self, message: str = "Configuration loading failed", code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class InsufficientBalanceError(LoadTestError):
    """Account cannot cover gas cost plus transferred value."""
    def __init__(self, balance: int, gas_cost: int, value: int):
        self.balance = balance
        self.gas_cost = gas_cost
        self.value = value
        self.required = gas_cost + value
        super().__init__(
            f"Insufficient balance: {balance} < {self.required} required "
            f"(gas: {gas_cost}, value: {value})"
        )


class GasEstimationError(LoadTestError):
    """Gas estimation for a contract call failed."""


class NonceConflictError(LoadTestError):
    """Nonce was already used or is out of sequence."""


class ReplacementUnderpricedError(LoadTestError):
    """A transaction with the same nonce is pending with a higher fee."""


class AlreadyKnownError(LoadTestError):
    """The node already holds this exact transaction in its mempool."""


class TransactionReplacedError(LoadTestError):
    """The submitted transaction was superseded by a mined transaction with the same nonce."""
    def __init__(self, replacement_hash: Optional[str], message: Optional[str] = None):
        self.replacement_hash = replacement_hash
        super().__init__(message or f"Transaction replaced by {replacement_hash}")


class ProviderDisconnectedError(LoadTestError):
    """The RPC provider could not be reached."""


class TransactionRevertedError(LoadTestError):
    """The transaction was mined with a failed status."""
    def __init__(self, tx_hash: str):
        self.tx_hash = tx_hash
        super().__init__(f"Transaction reverted: {tx_hash}")


class Classification(Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    REPLACED = "replaced"


# Node error messages with a typed counterpart; matched as substrings.
NODE_ERRORS: Tuple[Tuple[str, Type[LoadTestError]], ...] = (
    ("nonce too low", NonceConflictError),
    ("nonce too high", NonceConflictError),
    ("invalid nonce", NonceConflictError),
    ("replacement transaction underpriced", ReplacementUnderpricedError),
    ("already known", AlreadyKnownError),
    ("known transaction", AlreadyKnownError),
)


def _rpc_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return None


def node_message(error: BaseException) -> str:
    """Extract the most specific human-readable message from an error."""
    if isinstance(error, LoadTestError):
        return error.message

    rpc_message = _rpc_message(getattr(error, "rpc_response", None))
    if rpc_message:
        return rpc_message

    if error.args:
        first = error.args[0]
        if isinstance(first, dict) and first.get("message"):
            return str(first["message"])
        rpc_message = _rpc_message(first)
        if rpc_message:
            return rpc_message

    return str(error) or type(error).__name__


def from_node_error(error: BaseException) -> Optional[LoadTestError]:
    """
    Typed counterpart of a raw RPC error, or None when the node's message is
    not one we recognise.
    """
    if isinstance(error, LoadTestError):
        return None
    message = node_message(error)
    lowered = message.lower()
    for signal, error_type in NODE_ERRORS:
        if signal in lowered:
            return error_type(message)
    return None


class Retry_Classifier:
    """
    Maps an attempt failure onto a retry decision.

    Typed errors are classified by type. ``Chain_Client.submit`` already turns
    known node rejections into typed errors; any raw RPC error that still gets
    here (``Web3RPCError`` or the ``ValueError`` payloads of older web3
    releases) is classified by the node's error message.
    """

    RETRYABLE_ERRORS: Tuple[Type[LoadTestError], ...] = (
        NonceConflictError,
        ReplacementUnderpricedError,
        AlreadyKnownError,
    )
    FATAL_ERRORS: Tuple[Type[LoadTestError], ...] = (
        GasEstimationError,
        ProviderDisconnectedError,
        TransactionRevertedError,
        ConfigurationError,
    )

    def classify(self, error: BaseException) -> Classification:
        """Classify an error in priority order."""
        if isinstance(error, InsufficientBalanceError):
            return Classification.INSUFFICIENT_BALANCE
        if isinstance(error, TransactionReplacedError):
            if error.replacement_hash:
                return Classification.REPLACED
            return Classification.FATAL
        if isinstance(error, self.RETRYABLE_ERRORS):
            return Classification.RETRYABLE
        if isinstance(error, self.FATAL_ERRORS):
            return Classification.FATAL

        typed = from_node_error(error)
        if typed is not None:
            return self.classify(typed)

        logger.debug(f"Unclassified error treated as fatal: {type(error).__name__}: {self.describe(error)}")
        return Classification.FATAL

    def describe(self, error: BaseException) -> str:
        return node_message(error)
