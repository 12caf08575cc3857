import json
import logging
import os

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles
import dotenv
from web3 import Web3

from xload.constants import (
    BALANCING_STRATEGIES,
    BATCH_SIZE,
    DEFAULT_BALANCING_STRATEGY,
    DEFAULT_ARRAY_SIZE,
    DEFAULT_KEYS_DIR,
    DEFAULT_LOGS_DIR,
    DEFAULT_TEST_DURATION,
    ERROR_CONFIG_LOAD,
    ERROR_KEYS_LOAD,
    ERROR_NO_ENDPOINTS,
    LOG_BATCH_SIZE,
    get_error_message,
)
from xload.errors import ConfigurationError
from xload.net import redact_url

logger = logging.getLogger("Configuration")


@dataclass
class Stored_Account:
    address: str
    private_key: str


@dataclass
class Key_Store:
    """Contents of a keys file: ``{accounts: [{address, privateKey}], createdAt, chainId}``."""
    accounts: List[Stored_Account]
    created_at: str
    chain_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accounts": [
                {"address": account.address, "privateKey": account.private_key}
                for account in self.accounts
            ],
            "createdAt": self.created_at,
            "chainId": self.chain_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Key_Store":
        if not isinstance(data, dict):
            raise ValueError("keys file must contain a JSON object")
        entries = data.get("accounts")
        if not isinstance(entries, list) or not entries:
            raise ValueError("keys file has no accounts")
        accounts = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict) or "address" not in entry or "privateKey" not in entry:
                raise ValueError(f"account #{index} needs 'address' and 'privateKey'")
            accounts.append(Stored_Account(address=entry["address"], private_key=entry["privateKey"]))
        try:
            chain_id = int(data["chainId"])
        except (KeyError, TypeError, ValueError):
            raise ValueError("keys file has no valid 'chainId'")
        return cls(accounts=accounts, created_at=str(data.get("createdAt", "")), chain_id=chain_id)


async def load_key_store(path: Path) -> Key_Store:
    """Read and validate a keys file."""
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            data = json.loads(await f.read())
        key_store = Key_Store.from_dict(data)
    except FileNotFoundError:
        raise ConfigurationError(f"{get_error_message(ERROR_KEYS_LOAD)}: {path} not found", ERROR_KEYS_LOAD)
    except (OSError, json.JSONDecodeError, ValueError) as e:
        raise ConfigurationError(f"{get_error_message(ERROR_KEYS_LOAD)}: {path}: {e}", ERROR_KEYS_LOAD) from e
    logger.debug(f"Loaded {len(key_store.accounts)} accounts from {path} (chain {key_store.chain_id})")
    return key_store


class Configuration:
    """
    Loads run settings from environment variables (``.env`` supported) with
    command-line overrides taking precedence.
    """

    MODES = ("transfer", "contract", "generate-keys")

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        """Initialize configuration attributes with None values."""
        self.overrides: Dict[str, Any] = {
            key: value for key, value in (overrides or {}).items() if value is not None
        }
        self.WORKLOAD: Optional[str] = None
        self.RPC_URL: Optional[str] = None
        self.CHAIN_ID: Optional[int] = None
        self.FUNDER_PRIVATE_KEY: Optional[str] = None
        self.FUND_CONTRACT_ADDRESS: Optional[str] = None
        self.LOAD_CONTRACT_ADDRESS: Optional[str] = None
        self.TEST_DURATION: float = DEFAULT_TEST_DURATION
        self.ARRAY_SIZE: int = DEFAULT_ARRAY_SIZE
        self.BATCH_SIZE: int = BATCH_SIZE
        self.CONCURRENCY: Optional[int] = None
        self.LOG_BATCH_SIZE: int = LOG_BATCH_SIZE
        self.BALANCING_STRATEGY: str = DEFAULT_BALANCING_STRATEGY
        self.ACCOUNT_COUNT: Optional[int] = None
        self.KEYS_DIR: str = DEFAULT_KEYS_DIR
        self.LOGS_DIR: str = DEFAULT_LOGS_DIR
        self.KEYS_FILE: Optional[str] = None
        self.RECIPIENT: Optional[str] = None
        self.TRANSFER_AMOUNT: int = 0
        self.NUM_ACCOUNTS: int = 10
        self.FUND_AMOUNT: int = 0
        self.OUTPUT_FILE: str = "accounts.json"

    def load(self, mode: str = "transfer", env_file: Optional[str] = None) -> "Configuration":
        """Loads the configuration for the given mode."""
        if mode not in self.MODES:
            raise ConfigurationError(f"Unknown mode {mode!r}", ERROR_CONFIG_LOAD)
        dotenv.load_dotenv(env_file)
        self.WORKLOAD = mode
        try:
            self._load_endpoints()
            self._load_run_settings()
            if mode == "generate-keys":
                self._load_key_generation()
            else:
                self._load_load_test(mode)
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{get_error_message(ERROR_CONFIG_LOAD)}: {e}", ERROR_CONFIG_LOAD) from e
        logger.debug(f"Configuration loaded for {mode} ✅")
        return self

    def _load_endpoints(self) -> None:
        self.RPC_URL = self._get_env_variable("RPC_URL")
        if not self.rpc_urls():
            raise ConfigurationError(
                "At least one RPC URL must be provided in RPC_URL", ERROR_NO_ENDPOINTS
            )
        chain_id = self._setting("CHAIN_ID", default=None, cast=int)
        self.CHAIN_ID = chain_id

    def _load_run_settings(self) -> None:
        self.TEST_DURATION = self._setting("TEST_DURATION", DEFAULT_TEST_DURATION, float)
        self.BATCH_SIZE = self._setting("BATCH_SIZE", BATCH_SIZE, int)
        self.CONCURRENCY = self._setting("CONCURRENCY", None, int)
        self.LOG_BATCH_SIZE = self._setting("LOG_BATCH_SIZE", LOG_BATCH_SIZE, int)
        self.BALANCING_STRATEGY = self._setting("BALANCING_STRATEGY", DEFAULT_BALANCING_STRATEGY, str).lower()
        self.ACCOUNT_COUNT = self._setting("ACCOUNT_COUNT", None, int)
        self.KEYS_DIR = self._setting("KEYS_DIR", DEFAULT_KEYS_DIR, str)
        self.LOGS_DIR = self._setting("LOGS_DIR", DEFAULT_LOGS_DIR, str)

        if self.TEST_DURATION <= 0:
            raise ConfigurationError(f"Duration must be positive, got {self.TEST_DURATION}", ERROR_CONFIG_LOAD)
        for name in ("BATCH_SIZE", "LOG_BATCH_SIZE"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive", ERROR_CONFIG_LOAD)
        for name in ("CONCURRENCY", "ACCOUNT_COUNT"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive", ERROR_CONFIG_LOAD)
        if self.BALANCING_STRATEGY not in BALANCING_STRATEGIES:
            raise ConfigurationError(
                f"BALANCING_STRATEGY must be one of {', '.join(BALANCING_STRATEGIES)}, got {self.BALANCING_STRATEGY!r}",
                ERROR_CONFIG_LOAD,
            )

    def _load_load_test(self, mode: str) -> None:
        self.KEYS_FILE = self._setting("KEYS_FILE", None, str)
        if not self.KEYS_FILE:
            raise ConfigurationError("A keys file is required (--keys-file)", ERROR_CONFIG_LOAD)
        if mode == "contract":
            self.LOAD_CONTRACT_ADDRESS = self._address(self._get_env_variable("LOAD_CONTRACT_ADDRESS"))
            self.ARRAY_SIZE = self._setting("ARRAY_SIZE", DEFAULT_ARRAY_SIZE, int)
        else:
            recipient = self._setting("RECIPIENT", None, str)
            if not recipient:
                raise ConfigurationError("A recipient address is required (--to)", ERROR_CONFIG_LOAD)
            self.RECIPIENT = self._address(recipient)
            self.TRANSFER_AMOUNT = self._ether(self._setting("TRANSFER_AMOUNT", None, str), "transfer amount")

    def _load_key_generation(self) -> None:
        if self.CHAIN_ID is None:
            raise ConfigurationError("Missing environment variable: CHAIN_ID", ERROR_CONFIG_LOAD)
        self.FUNDER_PRIVATE_KEY = self._get_env_variable("FUNDER_PRIVATE_KEY")
        self.FUND_CONTRACT_ADDRESS = self._address(self._get_env_variable("FUND_CONTRACT_ADDRESS"))
        self.NUM_ACCOUNTS = self._setting("NUM_ACCOUNTS", 10, int)
        self.FUND_AMOUNT = self._ether(self._setting("FUND_AMOUNT", "1", str), "fund amount")
        self.OUTPUT_FILE = self._setting("OUTPUT_FILE", "accounts.json", str)
        if self.NUM_ACCOUNTS <= 0:
            raise ConfigurationError("NUM_ACCOUNTS must be positive", ERROR_CONFIG_LOAD)

    def _get_env_variable(self, var_name: str, default: Optional[str] = None) -> str:
        value = self.overrides.get(var_name, os.getenv(var_name, default))
        if value is None or str(value).strip() == "":
            raise ConfigurationError(f"Missing environment variable: {var_name}", ERROR_CONFIG_LOAD)
        return str(value)

    def _setting(self, name: str, default: Any, cast: Callable[[Any], Any]) -> Any:
        """Override, then environment, then default."""
        if name in self.overrides:
            return cast(self.overrides[name])
        value = os.getenv(name)
        if value is None or value.strip() == "":
            return default
        return cast(value)

    @staticmethod
    def _address(value: str) -> str:
        if not Web3.is_address(value):
            raise ConfigurationError(f"Invalid address: {value}", ERROR_CONFIG_LOAD)
        return Web3.to_checksum_address(value)

    @staticmethod
    def _ether(value: Optional[str], description: str) -> int:
        if value is None:
            raise ConfigurationError(f"A {description} is required", ERROR_CONFIG_LOAD)
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            raise ConfigurationError(f"Invalid {description}: {value}", ERROR_CONFIG_LOAD)
        if amount < 0:
            raise ConfigurationError(f"The {description} cannot be negative", ERROR_CONFIG_LOAD)
        return int(Web3.to_wei(amount, "ether"))

    def rpc_urls(self) -> List[str]:
        """Comma-separated RPC_URL split into trimmed, non-empty entries."""
        if not self.RPC_URL:
            return []
        return [url.strip() for url in self.RPC_URL.split(",") if url.strip()]

    def redacted_rpc_urls(self) -> List[str]:
        return [redact_url(url) for url in self.rpc_urls()]

    def keys_path(self) -> Path:
        path = Path(self.KEYS_FILE or "")
        if path.is_absolute():
            return path
        return Path(self.KEYS_DIR) / path
