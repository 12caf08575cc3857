#!/usr/bin/env python3
import argparse
import asyncio
import logging
import signal
import sys

from pathlib import Path
from typing import List, Optional

from xload.abi_registry import ABI_Registry
from xload.accounts import Load_Account
from xload.configuration import Configuration
from xload.constants import BALANCING_STRATEGIES, ERROR_ABI_LOAD, ERROR_CHAIN_MISMATCH, get_error_message
from xload.core import Main_Core
from xload.errors import ConfigurationError, LoadTestError
from xload.keys import Account_Funder, generate_key_store, save_key_store
from xload.logger import configure_logging
from xload.monitor import Load_Test_Results
from xload.net import Chain_Client

logger = logging.getLogger("Main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="xload", description="EVM transaction load testing tool")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug console logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_run_options(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("-d", "--duration", type=float, required=True, help="Test duration in seconds")
        sub.add_argument("-k", "--keys-file", required=True, help="Keys file, relative to KEYS_DIR")
        sub.add_argument("--batch-size", type=int, help="Accounts dispatched concurrently per batch")
        sub.add_argument("--concurrency", type=int, help="Ceiling on in-flight transactions per batch")
        sub.add_argument("--account-count", type=int, help="Use only the first N accounts of the keys file")
        sub.add_argument(
            "--balancing",
            choices=BALANCING_STRATEGIES,
            help="How calls are spread across RPC endpoints (default: random)",
        )

    transfer = subparsers.add_parser("transfer", help="Value transfer load test")
    add_run_options(transfer)
    transfer.add_argument("-t", "--to", required=True, help="Address to transfer to")
    transfer.add_argument("-a", "--amount", required=True, help="Amount in ETH to transfer per transaction")

    contract = subparsers.add_parser("contract", help="Load contract setArray load test")
    add_run_options(contract)
    contract.add_argument("-s", "--array-size", type=int, help="Size of array for the Load contract")

    keys = subparsers.add_parser("generate-keys", help="Generate and fund accounts for load testing")
    keys.add_argument("-n", "--num-accounts", type=int, default=10, help="Number of accounts to generate")
    keys.add_argument("-o", "--output", default="accounts.json", help="Output file name")
    keys.add_argument("-f", "--fund-amount", default="1", help="Amount of ETH to fund each account with")
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict:
    return {
        "TEST_DURATION": getattr(args, "duration", None),
        "KEYS_FILE": getattr(args, "keys_file", None),
        "BATCH_SIZE": getattr(args, "batch_size", None),
        "CONCURRENCY": getattr(args, "concurrency", None),
        "ACCOUNT_COUNT": getattr(args, "account_count", None),
        "BALANCING_STRATEGY": getattr(args, "balancing", None),
        "RECIPIENT": getattr(args, "to", None),
        "TRANSFER_AMOUNT": getattr(args, "amount", None),
        "ARRAY_SIZE": getattr(args, "array_size", None),
        "NUM_ACCOUNTS": getattr(args, "num_accounts", None),
        "OUTPUT_FILE": getattr(args, "output", None),
        "FUND_AMOUNT": getattr(args, "fund_amount", None),
    }


def print_banner(configuration: Configuration) -> None:
    print(f"\nStarting {configuration.WORKLOAD} load test with configuration:")
    print("--------------------------------------------")
    print(f"Duration: {configuration.TEST_DURATION} seconds")
    print(f"Keys File: {configuration.keys_path()}")
    print(f"Batch Size: {configuration.BATCH_SIZE} concurrent transactions")
    if configuration.WORKLOAD == "contract":
        print(f"Load Contract: {configuration.LOAD_CONTRACT_ADDRESS}")
        print(f"Array Size: {configuration.ARRAY_SIZE}")
    else:
        print(f"Recipient: {configuration.RECIPIENT}")
        print(f"Transfer Amount: {configuration.TRANSFER_AMOUNT} wei")
    urls = configuration.redacted_rpc_urls()
    for index, url in enumerate(urls, start=1):
        print(f"  RPC {index}: {url}")
    if len(urls) > 1:
        print(f"Load Balancing: Enabled ({len(urls)} RPCs, {configuration.BALANCING_STRATEGY})")
    else:
        print("Load Balancing: Disabled (1 RPC)")
    print("\nPress Ctrl+C to stop the test\n")


def print_summary(results: Load_Test_Results) -> None:
    print("Load Test Results:")
    print("------------------")
    print(f"Total Transactions: {results.total_transactions}")
    print(f"Successful Transactions: {results.successful_transactions}")
    print(f"Failed Transactions: {results.failed_transactions}")
    print(f"Transactions per Second: {results.transactions_per_second:.2f}")
    if results.errors:
        print("\nErrors:")
        for error in results.errors:
            print(f"{error['account']}: {error['error']}")


async def run_load_test(configuration: Configuration) -> Load_Test_Results:
    """Main entry point with graceful shutdown handling."""
    core = Main_Core(configuration)
    loop = asyncio.get_running_loop()
    await core.initialize()

    def shutdown_handler() -> None:
        logger.info("Shutdown signal received")
        core.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
        except NotImplementedError:
            logger.debug(f"Signal handlers not supported for {sig}")

    try:
        print_banner(configuration)
        results = await core.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        await core.stop()

    print_summary(results)
    print(f"\nDetailed logs written to: {core.log_path}")
    return results


async def run_generate_keys(configuration: Configuration) -> None:
    client = Chain_Client(configuration.rpc_urls()[0])
    try:
        network_chain_id = await client.chain_id()
        if network_chain_id != configuration.CHAIN_ID:
            raise ConfigurationError(
                f"{get_error_message(ERROR_CHAIN_MISMATCH)}: expected {configuration.CHAIN_ID}, got {network_chain_id}",
                ERROR_CHAIN_MISMATCH,
            )
        print(f"Generating {configuration.NUM_ACCOUNTS} accounts...")
        key_store = generate_key_store(configuration.NUM_ACCOUNTS, configuration.CHAIN_ID)
        output = await save_key_store(key_store, Path(configuration.KEYS_DIR) / configuration.OUTPUT_FILE)
        print(f"Saved accounts to {output}")

        try:
            fund_abi = await ABI_Registry().load_abi("fund")
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"{get_error_message(ERROR_ABI_LOAD)}: {e}", ERROR_ABI_LOAD) from e
        funder = Account_Funder(
            client,
            Load_Account.from_private_key(configuration.FUNDER_PRIVATE_KEY),
            configuration.FUND_CONTRACT_ADDRESS,
            fund_abi,
            configuration.CHAIN_ID,
        )
        await funder.fund([account.address for account in key_store.accounts], configuration.FUND_AMOUNT)
        print("All accounts generated and funded successfully!")
    finally:
        await client.disconnect()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        configuration = Configuration(overrides_from_args(args)).load(args.command)
        if args.command == "generate-keys":
            asyncio.run(run_generate_keys(configuration))
        else:
            asyncio.run(run_load_test(configuration))
    except ConfigurationError as e:
        logger.critical(f"Startup failed: {e.message}")
        return 1
    except LoadTestError as e:
        logger.critical(f"Error: {e.message}")
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
