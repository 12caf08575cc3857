import pytest

from xload.errors import (
    AlreadyKnownError,
    Classification,
    ConfigurationError,
    GasEstimationError,
    InsufficientBalanceError,
    NonceConflictError,
    ProviderDisconnectedError,
    ReplacementUnderpricedError,
    Retry_Classifier,
    TransactionReplacedError,
    TransactionRevertedError,
    from_node_error,
)


class RPCError(Exception):
    """Mimics web3's ``Web3RPCError``, which carries the raw JSON-RPC response."""
    def __init__(self, message, rpc_response):
        super().__init__(message)
        self.rpc_response = rpc_response


@pytest.fixture
def classifier():
    return Retry_Classifier()


@pytest.mark.parametrize("error, expected", [
    (InsufficientBalanceError(1, 2, 3), Classification.INSUFFICIENT_BALANCE),
    (TransactionReplacedError("0xabc"), Classification.REPLACED),
    (TransactionReplacedError(None), Classification.FATAL),
    (NonceConflictError("nonce too low"), Classification.RETRYABLE),
    (ReplacementUnderpricedError("underpriced"), Classification.RETRYABLE),
    (AlreadyKnownError("known"), Classification.RETRYABLE),
    (GasEstimationError("execution reverted"), Classification.FATAL),
    (ProviderDisconnectedError("down"), Classification.FATAL),
    (TransactionRevertedError("0x1"), Classification.FATAL),
    (ConfigurationError("bad"), Classification.FATAL),
])
def test_typed_errors(classifier, error, expected):
    assert classifier.classify(error) is expected


@pytest.mark.parametrize("message", [
    "nonce too low",
    "Nonce too high",
    "invalid nonce; got 3, expected 4",
    "replacement transaction underpriced",
    "already known",
    "known transaction: 0x12",
])
def test_retryable_node_messages(classifier, message):
    assert classifier.classify(ValueError({"code": -32000, "message": message})) is Classification.RETRYABLE


def test_rpc_response_message(classifier):
    error = RPCError("{'message': 'x'}", {"jsonrpc": "2.0", "error": {"code": -32000, "message": "nonce too low"}})
    assert classifier.describe(error) == "nonce too low"
    assert classifier.classify(error) is Classification.RETRYABLE


def test_unknown_errors_are_fatal(classifier):
    assert classifier.classify(RuntimeError("boom")) is Classification.FATAL
    assert classifier.classify(ValueError({"message": "execution reverted"})) is Classification.FATAL


def test_insufficient_balance_takes_priority_over_message(classifier):
    error = InsufficientBalanceError(0, 21_000, 0)
    assert "Insufficient balance" in classifier.describe(error)
    assert classifier.classify(error) is Classification.INSUFFICIENT_BALANCE


def test_describe_falls_back_to_type_name(classifier):
    assert classifier.describe(RuntimeError()) == "RuntimeError"


def test_insufficient_balance_message():
    error = InsufficientBalanceError(balance=10, gas_cost=21, value=5)
    assert error.required == 26
    assert error.message == "Insufficient balance: 10 < 26 required (gas: 21, value: 5)"


@pytest.mark.parametrize("message, error_type", [
    ("Nonce too high", NonceConflictError),
    ("replacement transaction underpriced", ReplacementUnderpricedError),
    ("known transaction: 0x12", AlreadyKnownError),
])
def test_node_errors_map_to_typed_errors(message, error_type):
    typed = from_node_error(ValueError({"code": -32000, "message": message}))
    assert type(typed) is error_type
    assert typed.message == message


def test_unrecognised_node_errors_stay_untyped():
    assert from_node_error(ValueError({"message": "execution reverted"})) is None
    assert from_node_error(NonceConflictError("nonce too low")) is None
