import asyncio

import pytest
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3

from xload.abi_registry import ABI_Registry
from xload.configuration import load_key_store
from xload.errors import LoadTestError
from xload.keys import Account_Funder, generate_key_store, save_key_store, unique_path


def test_generated_keys_match_addresses():
    key_store = generate_key_store(3, 1337)
    assert key_store.chain_id == 1337
    assert key_store.created_at.endswith("Z")
    assert len({account.address for account in key_store.accounts}) == 3
    for account in key_store.accounts:
        assert Account.from_key(account.private_key).address == account.address


def test_generate_requires_positive_count():
    with pytest.raises(ValueError):
        generate_key_store(0, 1)


def test_unique_path(tmp_path):
    base = tmp_path / "accounts.json"
    assert unique_path(base) == base
    base.write_text("{}")
    assert unique_path(base) == tmp_path / "accounts-1.json"
    (tmp_path / "accounts-1.json").write_text("{}")
    assert unique_path(base) == tmp_path / "accounts-2.json"


def test_saved_keys_never_overwrite(tmp_path):
    target = tmp_path / "keys" / "accounts.json"
    first = asyncio.run(save_key_store(generate_key_store(2, 1337), target))
    second = asyncio.run(save_key_store(generate_key_store(2, 1337), target))

    assert first == target
    assert second == tmp_path / "keys" / "accounts-1.json"

    loaded = asyncio.run(load_key_store(first))
    assert loaded.chain_id == 1337
    assert len(loaded.accounts) == 2


class Stub_Fund_Contract:
    """Records ``transferTsscToMany`` calls instead of building them against a node."""

    def __init__(self):
        self.calls = []
        self.functions = self

    def transferTsscToMany(self, recipients):
        contract = self

        class Call:
            async def build_transaction(self, params):
                contract.calls.append((list(recipients), params))
                return {**params, "gas": 500_000, "maxFeePerGas": 2, "maxPriorityFeePerGas": 1}

        return Call()


def test_funding_is_chunked(make_accounts, fake_client):
    funder_account, *_ = make_accounts(1)
    fake_client.web3 = AsyncWeb3(AsyncHTTPProvider("http://localhost:8545"))
    fund_abi = asyncio.run(ABI_Registry().load_abi("fund"))
    funder = Account_Funder(fake_client, funder_account, "0x" + "33" * 20, fund_abi, 1337, chunk_size=2)
    funder.fund_contract = Stub_Fund_Contract()
    recipients = [account.address for account in generate_key_store(5, 1337).accounts]

    hashes = asyncio.run(funder.fund(recipients, 10))

    assert len(hashes) == 3
    calls = funder.fund_contract.calls
    assert [len(chunk) for chunk, _ in calls] == [2, 2, 1]
    assert [params["value"] for _, params in calls] == [20, 20, 10]
    assert [params["nonce"] for _, params in calls] == [0, 1, 2]
    assert [address for chunk, _ in calls for address in chunk] == recipients


def test_funding_failure_is_reported(make_accounts, fake_client):
    funder_account, *_ = make_accounts(1)
    fake_client.web3 = AsyncWeb3(AsyncHTTPProvider("http://localhost:8545"))
    fake_client.reverted = True
    fund_abi = asyncio.run(ABI_Registry().load_abi("fund"))
    funder = Account_Funder(fake_client, funder_account, "0x" + "33" * 20, fund_abi, 1337)
    funder.fund_contract = Stub_Fund_Contract()

    with pytest.raises(LoadTestError, match="reverted"):
        asyncio.run(funder.fund([funder_account.address], 10))
