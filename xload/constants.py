from typing import Dict, Tuple

# Error codes
ERROR_CONFIG_LOAD: int = 1001
ERROR_KEYS_LOAD: int = 1002
ERROR_WEB3_INIT: int = 1003
ERROR_CHAIN_MISMATCH: int = 1004
ERROR_NO_ENDPOINTS: int = 1005
ERROR_CORE_INIT: int = 1006
ERROR_FUNDING: int = 1007
ERROR_ABI_LOAD: int = 1008

# Error messages with default fallbacks
ERROR_MESSAGES: Dict[int, str] = {
    ERROR_CONFIG_LOAD: "Configuration loading failed",
    ERROR_KEYS_LOAD: "Keys file could not be loaded",
    ERROR_WEB3_INIT: "Web3 connection failed",
    ERROR_CHAIN_MISMATCH: "Chain ID mismatch between keys file and network",
    ERROR_NO_ENDPOINTS: "No RPC endpoints configured",
    ERROR_CORE_INIT: "Core initialization failed",
    ERROR_FUNDING: "Account funding failed",
    ERROR_ABI_LOAD: "ABI loading failed",
}

def get_error_message(code: int, default: str = "Unknown error") -> str:
    """Get error message for error code with fallback to default message."""
    return ERROR_MESSAGES.get(code, default)

GWEI: int = 10**9

# Dispatch
MAX_RETRIES: int = 3
RETRY_DELAY: float = 1.0  # Base backoff in seconds, multiplied by the attempt number
RETRY_JITTER: float = 0.25  # Fraction of the backoff added as random jitter
SUBMIT_JITTER: float = 0.05  # Upper bound of the random pre-send delay in seconds
RECEIPT_TIMEOUT: int = 120
RECEIPT_POLL_INTERVAL: float = 1.0
REPLACEMENT_SCAN_DEPTH: int = 5  # Blocks searched for a replacement when the submission block is unknown

# Fees
DEFAULT_BASE_FEE: int = 1 * GWEI  # Used when the chain reports no baseFeePerGas
PRIORITY_FEE: int = GWEI // 10
FEE_ESCALATION_FACTOR: float = 1.2
BASE_FEE_MULTIPLIER: float = 1.5
BASE_FEE_CACHE_TTL: int = 1
TRANSFER_GAS_LIMIT: int = 21_000
GAS_BUFFER_PERCENTAGE: int = 20

# Scheduling
BATCH_SIZE: int = 2000
NONCE_FETCH_CHUNK_SIZE: int = 50
PROGRESS_INTERVAL: float = 1.0
LOG_BATCH_SIZE: int = 50
BALANCING_STRATEGIES: Tuple[str, ...] = ("random", "round_robin")
DEFAULT_BALANCING_STRATEGY: str = "random"

# Setup
DEFAULT_TEST_DURATION: int = 60
DEFAULT_ARRAY_SIZE: int = 100
DEFAULT_KEYS_DIR: str = "keys"
DEFAULT_LOGS_DIR: str = "logs"
FUNDING_CHUNK_SIZE: int = 150
