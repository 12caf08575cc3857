import asyncio
import json

from pathlib import Path

import pytest

from xload.configuration import Configuration, Key_Store, load_key_store
from xload.constants import ERROR_KEYS_LOAD, ERROR_NO_ENDPOINTS
from xload.errors import ConfigurationError

RECIPIENT = "0x" + "11" * 20
ENV_VARS = (
    "RPC_URL", "CHAIN_ID", "FUNDER_PRIVATE_KEY", "FUND_CONTRACT_ADDRESS", "LOAD_CONTRACT_ADDRESS",
    "TEST_DURATION", "ARRAY_SIZE", "BATCH_SIZE", "CONCURRENCY", "LOG_BATCH_SIZE", "ACCOUNT_COUNT",
    "KEYS_DIR", "LOGS_DIR", "KEYS_FILE", "RECIPIENT", "TRANSFER_AMOUNT", "BALANCING_STRATEGY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RPC_URL", "http://localhost:8545")


def transfer_overrides(**extra):
    overrides = {"KEYS_FILE": "accounts.json", "RECIPIENT": RECIPIENT, "TRANSFER_AMOUNT": "0.001"}
    overrides.update(extra)
    return overrides


def test_transfer_configuration():
    configuration = Configuration(transfer_overrides(TEST_DURATION=30)).load("transfer")
    assert configuration.WORKLOAD == "transfer"
    assert configuration.TEST_DURATION == 30
    assert configuration.TRANSFER_AMOUNT == 10**15
    assert configuration.BATCH_SIZE == 2000
    assert configuration.LOG_BATCH_SIZE == 50
    assert configuration.BALANCING_STRATEGY == "random"
    assert configuration.CHAIN_ID is None
    assert configuration.keys_path() == Path("keys") / "accounts.json"


def test_environment_values_and_overrides(monkeypatch):
    monkeypatch.setenv("BATCH_SIZE", "100")
    monkeypatch.setenv("CHAIN_ID", "1337")
    monkeypatch.setenv("KEYS_DIR", "secrets")
    configuration = Configuration(transfer_overrides(BATCH_SIZE=25, CONCURRENCY=None)).load("transfer")
    assert configuration.BATCH_SIZE == 25
    assert configuration.CHAIN_ID == 1337
    assert configuration.CONCURRENCY is None
    assert configuration.keys_path() == Path("secrets") / "accounts.json"


def test_balancing_strategy_from_environment(monkeypatch):
    monkeypatch.setenv("BALANCING_STRATEGY", "Round_Robin")
    assert Configuration(transfer_overrides()).load("transfer").BALANCING_STRATEGY == "round_robin"
    assert Configuration(transfer_overrides(BALANCING_STRATEGY="random")).load("transfer").BALANCING_STRATEGY == "random"


def test_absolute_keys_file(tmp_path):
    keys_file = tmp_path / "accounts.json"
    configuration = Configuration(transfer_overrides(KEYS_FILE=str(keys_file))).load("transfer")
    assert configuration.keys_path() == keys_file


def test_rpc_urls_split_and_redacted(monkeypatch):
    monkeypatch.setenv("RPC_URL", " http://a:8545 ,https://b.example/rpc?key=secret,, ")
    configuration = Configuration(transfer_overrides()).load("transfer")
    assert configuration.rpc_urls() == ["http://a:8545", "https://b.example/rpc?key=secret"]
    assert configuration.redacted_rpc_urls() == ["http://a:8545", "https://b.example/rpc"]


def test_missing_rpc_url(monkeypatch):
    monkeypatch.delenv("RPC_URL")
    with pytest.raises(ConfigurationError, match="RPC_URL"):
        Configuration(transfer_overrides()).load("transfer")


def test_blank_rpc_list(monkeypatch):
    monkeypatch.setenv("RPC_URL", " , ")
    with pytest.raises(ConfigurationError) as excinfo:
        Configuration(transfer_overrides()).load("transfer")
    assert excinfo.value.code == ERROR_NO_ENDPOINTS


def test_contract_mode_needs_load_contract(monkeypatch):
    with pytest.raises(ConfigurationError, match="LOAD_CONTRACT_ADDRESS"):
        Configuration({"KEYS_FILE": "accounts.json"}).load("contract")

    monkeypatch.setenv("LOAD_CONTRACT_ADDRESS", "0x" + "22" * 20)
    configuration = Configuration({"KEYS_FILE": "accounts.json", "ARRAY_SIZE": 7}).load("contract")
    assert configuration.ARRAY_SIZE == 7
    assert configuration.LOAD_CONTRACT_ADDRESS == "0x" + "22" * 20


@pytest.mark.parametrize("overrides", [
    transfer_overrides(TEST_DURATION=0),
    transfer_overrides(BATCH_SIZE=-1),
    transfer_overrides(CONCURRENCY=0),
    transfer_overrides(BALANCING_STRATEGY="sticky"),
    transfer_overrides(RECIPIENT="not-an-address"),
    transfer_overrides(TRANSFER_AMOUNT="lots"),
    transfer_overrides(TRANSFER_AMOUNT="-1"),
    transfer_overrides(TEST_DURATION="soon"),
    {"RECIPIENT": RECIPIENT, "TRANSFER_AMOUNT": "1"},
])
def test_invalid_settings(overrides):
    with pytest.raises(ConfigurationError):
        Configuration(overrides).load("transfer")


def test_key_generation_settings(monkeypatch):
    monkeypatch.setenv("CHAIN_ID", "1337")
    monkeypatch.setenv("FUNDER_PRIVATE_KEY", "0x" + "01" * 32)
    monkeypatch.setenv("FUND_CONTRACT_ADDRESS", "0x" + "33" * 20)
    configuration = Configuration({"NUM_ACCOUNTS": 5, "FUND_AMOUNT": "0.5"}).load("generate-keys")
    assert configuration.NUM_ACCOUNTS == 5
    assert configuration.FUND_AMOUNT == 5 * 10**17
    assert configuration.OUTPUT_FILE == "accounts.json"


def test_key_generation_requires_chain_id():
    with pytest.raises(ConfigurationError, match="CHAIN_ID"):
        Configuration().load("generate-keys")


def test_unknown_mode():
    with pytest.raises(ConfigurationError):
        Configuration().load("stress")


def write_keys(path, data):
    path.write_text(json.dumps(data))
    return path


def test_load_key_store(tmp_path):
    path = write_keys(tmp_path / "accounts.json", {
        "accounts": [{"address": "0xa", "privateKey": "0x1"}, {"address": "0xb", "privateKey": "0x2"}],
        "createdAt": "2024-01-01T00:00:00.000Z",
        "chainId": 1337,
    })
    key_store = asyncio.run(load_key_store(path))
    assert key_store.chain_id == 1337
    assert [account.address for account in key_store.accounts] == ["0xa", "0xb"]
    assert Key_Store.from_dict(key_store.to_dict()) == key_store


@pytest.mark.parametrize("content", [
    "not json",
    json.dumps([]),
    json.dumps({"accounts": [], "chainId": 1}),
    json.dumps({"accounts": [{"address": "0xa"}], "chainId": 1}),
    json.dumps({"accounts": [{"address": "0xa", "privateKey": "0x1"}]}),
])
def test_invalid_key_store(tmp_path, content):
    path = tmp_path / "accounts.json"
    path.write_text(content)
    with pytest.raises(ConfigurationError) as excinfo:
        asyncio.run(load_key_store(path))
    assert excinfo.value.code == ERROR_KEYS_LOAD


def test_missing_key_store(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        asyncio.run(load_key_store(tmp_path / "missing.json"))
