import asyncio
import logging
import random
import time

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import async_timeout

from xload.abi_registry import ABI_Registry
from xload.accounts import Account_Pool, Load_Account
from xload.configuration import Configuration, load_key_store
from xload.constants import (
    BATCH_SIZE,
    DEFAULT_BASE_FEE,
    ERROR_ABI_LOAD,
    ERROR_CHAIN_MISMATCH,
    ERROR_CORE_INIT,
    ERROR_WEB3_INIT,
    MAX_RETRIES,
    NONCE_FETCH_CHUNK_SIZE,
    RETRY_DELAY,
    RETRY_JITTER,
    SUBMIT_JITTER,
    get_error_message,
)
from xload.errors import (
    Classification,
    ConfigurationError,
    InsufficientBalanceError,
    Retry_Classifier,
    TransactionReplacedError,
    TransactionRevertedError,
)
from xload.fees import Fee_Params, Fee_Policy
from xload.monitor import Load_Test_Results, Log_Buffer, Metrics_Aggregator, Progress_Reporter, utc_timestamp
from xload.net import Chain_Client, Endpoint_Balancer
from xload.workload import Contract_Workload, Transfer_Workload

logger = logging.getLogger("Core")

Workload = Union[Transfer_Workload, Contract_Workload]


@dataclass
class Attempt_Result:
    """Outcome of one dispatched transaction, including all of its retries."""
    account: str
    success: bool = False
    hash: str = ""
    error: Optional[str] = None
    nonce: Optional[int] = None
    retries: int = 0
    submissions: int = 0
    classification: Optional[Classification] = None
    duration_ms: int = 0
    timestamp: str = ""

    def log_record(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "from": self.account,
            "hash": self.hash,
            "success": self.success,
            "error": self.error,
            "nonce": self.nonce,
            "retries": self.retries,
            "durationMs": self.duration_ms,
        }


class Transaction_Dispatcher:
    """
    Executes one transaction for one account, end to end.

    Each try runs Prepare (nonce, balance) -> FeeCompute -> Submit -> Confirm.
    A failure classified as retryable invalidates the account's nonce, backs
    off and tries again with escalated fees, up to ``max_retries`` times. The
    gas limit is computed once per dispatch, not per try.

    ``dispatch`` never raises: every error ends up in the returned result.
    """

    def __init__(
        self,
        balancer: Endpoint_Balancer,
        workload: Workload,
        account_pool: Account_Pool,
        fee_policy: Optional[Fee_Policy] = None,
        classifier: Optional[Retry_Classifier] = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        submit_jitter: float = SUBMIT_JITTER,
        rng: Optional[random.Random] = None,
    ):
        self.balancer: Endpoint_Balancer = balancer
        self.workload: Workload = workload
        self.account_pool: Account_Pool = account_pool
        self.fee_policy: Fee_Policy = fee_policy or Fee_Policy()
        self.classifier: Retry_Classifier = classifier or Retry_Classifier()
        self.max_retries: int = max_retries
        self.retry_delay: float = retry_delay
        self.submit_jitter: float = submit_jitter
        self._rng: random.Random = rng or random.Random()

    async def dispatch(self, account: Load_Account, base_fee: int) -> Attempt_Result:
        started = time.monotonic()
        result = Attempt_Result(account=account.address)
        try:
            gas_limit = await self.workload.gas_limit(self.balancer.select(), account)
            await self._execute(account, base_fee, gas_limit, result)
        except Exception as e:
            result.success = False
            result.classification = self.classifier.classify(e)
            result.error = self.classifier.describe(e)
            logger.debug(f"Attempt for {account.address} aborted: {result.error}")

        if result.success:
            account.nonce = result.nonce + 1
        elif result.submissions > 0:
            account.invalidate_nonce()

        result.duration_ms = int((time.monotonic() - started) * 1000)
        result.timestamp = utc_timestamp()
        return result

    async def _execute(self, account: Load_Account, base_fee: int, gas_limit: int, result: Attempt_Result) -> None:
        for retry in range(self.max_retries + 1):
            result.retries = retry
            try:
                await self._jitter()
                client = self.balancer.select()

                # Prepare
                nonce = await self.account_pool.nonce(account, client)
                result.nonce = nonce
                balance = await client.get_balance(account.address)

                # FeeCompute
                fee_params = self.fee_policy.compute_fees(base_fee, retry)
                self._check_balance(balance, gas_limit, fee_params)

                # Submit
                submitted_block = await client.block_number()
                result.submissions += 1
                tx_hash = await self.workload.submit(client, account, fee_params, nonce, gas_limit)
                result.hash = tx_hash

                # Confirm
                receipt = await client.wait(tx_hash, account.address, nonce, submitted_block)
                if not receipt.success:
                    raise TransactionRevertedError(receipt.hash)

                result.hash = receipt.hash
                result.success = True
                result.error = None
                return
            except Exception as error:
                classification = self.classifier.classify(error)
                result.classification = classification

                if classification is Classification.REPLACED and isinstance(error, TransactionReplacedError):
                    result.hash = error.replacement_hash
                    result.success = True
                    result.error = None
                    return

                result.error = self.classifier.describe(error)
                if classification is Classification.RETRYABLE and retry < self.max_retries:
                    logger.debug(
                        f"Retryable error for {account.address} (retry {retry + 1}/{self.max_retries}): {result.error}"
                    )
                    account.invalidate_nonce()
                    await self._backoff(retry + 1)
                    continue
                return

    def _check_balance(self, balance: int, gas_limit: int, fee_params: Fee_Params) -> None:
        gas_cost = self.fee_policy.gas_cost(gas_limit, fee_params)
        value = self.workload.value()
        if balance < gas_cost + value:
            raise InsufficientBalanceError(balance, gas_cost, value)

    async def _jitter(self) -> None:
        if self.submit_jitter > 0:
            await asyncio.sleep(self._rng.uniform(0, self.submit_jitter))

    async def _backoff(self, attempt_number: int) -> None:
        delay = self.retry_delay * attempt_number
        if delay > 0:
            await asyncio.sleep(delay + self._rng.uniform(0, delay * RETRY_JITTER))


class Batch_Scheduler:
    """
    Drives fixed-size batches of concurrent dispatches until the deadline.

    The deadline is only checked between batches; a batch in flight always
    drains. Accounts are rotated only after their batch has fully settled, so
    an account never has two attempts in flight.
    """

    def __init__(
        self,
        account_pool: Account_Pool,
        balancer: Endpoint_Balancer,
        dispatcher: Transaction_Dispatcher,
        metrics: Metrics_Aggregator,
        batch_size: int = BATCH_SIZE,
        concurrency: Optional[int] = None,
        nonce_chunk_size: int = NONCE_FETCH_CHUNK_SIZE,
        progress_interval: Optional[float] = None,
    ):
        if batch_size <= 0:
            raise ValueError(f"Batch size must be positive, got {batch_size}")
        self.account_pool: Account_Pool = account_pool
        self.balancer: Endpoint_Balancer = balancer
        self.dispatcher: Transaction_Dispatcher = dispatcher
        self.metrics: Metrics_Aggregator = metrics
        self.batch_size: int = min(batch_size, len(account_pool))
        self.concurrency: int = max(1, min(concurrency or self.batch_size, self.batch_size))
        self.nonce_chunk_size: int = nonce_chunk_size
        self.progress_interval: Optional[float] = progress_interval
        self.batches: int = 0
        self.elapsed: float = 0.0
        self.last_base_fee: Optional[int] = None
        self._stop_requested: bool = False

        if batch_size > len(account_pool):
            logger.warning(f"Batch size {batch_size} exceeds account count {len(account_pool)}; capped")
        elif batch_size == len(account_pool):
            logger.debug("Batch size equals account count; every batch reuses the whole pool")

    def stop(self) -> None:
        """Finish the in-flight batch, then leave the loop."""
        if not self._stop_requested:
            logger.info("Stop requested, draining current batch...")
        self._stop_requested = True

    @property
    def stopping(self) -> bool:
        return self._stop_requested

    async def run(self, duration: float) -> Load_Test_Results:
        started = time.monotonic()
        deadline = started + duration
        self.metrics.start()
        progress = Progress_Reporter(self.metrics, duration)
        if self.progress_interval is not None:
            progress.interval = self.progress_interval

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self.metrics.run())
            tg.create_task(progress.run())
            try:
                while time.monotonic() < deadline and not self._stop_requested:
                    await self.run_batch()
            finally:
                await self.metrics.close()
                progress.stop()

        self.elapsed = time.monotonic() - started
        results = self.metrics.finalize(self.elapsed)
        logger.info(
            f"Run finished after {self.batches} batches in {self.elapsed:.2f}s: "
            f"{results.total_transactions} transactions, {results.transactions_per_second:.2f} TPS"
        )
        return results

    async def run_batch(self) -> List[Attempt_Result]:
        batch = self.account_pool.next_batch(self.batch_size)
        base_fee = await self._current_base_fee()
        await self.account_pool.prime_nonces(batch, self.balancer, self.nonce_chunk_size)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def dispatch_one(account: Load_Account) -> Attempt_Result:
            async with semaphore:
                result = await self.dispatcher.dispatch(account, base_fee)
            self.metrics.record(result)
            return result

        results = await asyncio.gather(*[dispatch_one(account) for account in batch])
        await self.metrics.drain()
        self.account_pool.rotate(batch)
        self.batches += 1
        return results

    async def _current_base_fee(self) -> int:
        """Base fee for the next batch; last known value (or 1 gwei) if the lookup fails."""
        client = self.balancer.current()
        try:
            self.last_base_fee = await client.get_base_fee()
        except Exception as e:
            fallback = self.last_base_fee if self.last_base_fee is not None else DEFAULT_BASE_FEE
            logger.warning(f"Base fee lookup via {client.name} failed: {e}. Using {fallback}")
            return fallback
        return self.last_base_fee


class Main_Core:
    """
    Wires a load test run together: endpoints, accounts, workload and the
    batch scheduler, plus the per-run log file.
    """
    WEB3_MAX_RETRIES: int = 3
    WEB3_RETRY_DELAY: int = 2
    CONNECTION_TIMEOUT: int = 10

    def __init__(self, configuration: Configuration) -> None:
        self.configuration: Configuration = configuration
        self.test_id: str = utc_timestamp().replace(":", "-").replace(".", "-")
        self.balancer: Optional[Endpoint_Balancer] = None
        self.account_pool: Optional[Account_Pool] = None
        self.workload: Optional[Workload] = None
        self.log_buffer: Optional[Log_Buffer] = None
        self.metrics: Optional[Metrics_Aggregator] = None
        self.dispatcher: Optional[Transaction_Dispatcher] = None
        self.scheduler: Optional[Batch_Scheduler] = None
        self.chain_id: Optional[int] = None

    @property
    def log_path(self) -> Path:
        return Path(self.configuration.LOGS_DIR) / f"loadtest-{self.test_id}.log"

    async def initialize(self) -> None:
        """Startup; any failure here aborts the run before the first batch."""
        try:
            await self._initialize_endpoints()
            self.chain_id = await self._verify_chain_id()
            await self._load_accounts()
            await self._initialize_workload()
            self._initialize_components()
            logger.info(f"Core initialized with {len(self.account_pool)} accounts on chain {self.chain_id} ✅")
        except ConfigurationError:
            await self.stop()
            raise
        except Exception as e:
            logger.critical(f"Core initialization failed: {e}")
            await self.stop()
            raise ConfigurationError(f"{get_error_message(ERROR_CORE_INIT)}: {e}", ERROR_CORE_INIT) from e

    async def _initialize_endpoints(self) -> None:
        urls = self.configuration.rpc_urls()
        clients = [Chain_Client(url) for url in urls]
        self.balancer = Endpoint_Balancer(clients, strategy=self.configuration.BALANCING_STRATEGY)
        for client in clients:
            if not await self._test_connection(client):
                raise ConfigurationError(
                    f"{get_error_message(ERROR_WEB3_INIT)}: {client.name}", ERROR_WEB3_INIT
                )
        logger.info(f"Linked to {len(clients)} RPC endpoint(s) ✅")

    async def _test_connection(self, client: Chain_Client) -> bool:
        """Test Web3 connection with retries."""
        for attempt in range(self.WEB3_MAX_RETRIES):
            try:
                async with async_timeout.timeout(self.CONNECTION_TIMEOUT):
                    if await client.is_connected():
                        logger.debug(f"Connected to {client.name}")
                        return True
            except asyncio.TimeoutError:
                logger.warning(f"Connection timeout with {client.name}")
            if attempt < self.WEB3_MAX_RETRIES - 1:
                await asyncio.sleep(self.WEB3_RETRY_DELAY * (attempt + 1))
        logger.error(f"All connection attempts failed for {client.name}")
        return False

    async def _verify_chain_id(self) -> int:
        network_chain_id = await self.balancer.primary.chain_id()
        expected = self.configuration.CHAIN_ID
        if expected is not None and expected != network_chain_id:
            raise ConfigurationError(
                f"{get_error_message(ERROR_CHAIN_MISMATCH)}: expected {expected}, got {network_chain_id}",
                ERROR_CHAIN_MISMATCH,
            )
        return network_chain_id

    async def _load_accounts(self) -> None:
        key_store = await load_key_store(self.configuration.keys_path())
        if key_store.chain_id != self.chain_id:
            raise ConfigurationError(
                f"{get_error_message(ERROR_CHAIN_MISMATCH)}: expected {key_store.chain_id}, got {self.chain_id}",
                ERROR_CHAIN_MISMATCH,
            )
        stored = key_store.accounts
        if self.configuration.ACCOUNT_COUNT:
            stored = stored[:self.configuration.ACCOUNT_COUNT]
        self.account_pool = Account_Pool([Load_Account.from_private_key(entry.private_key) for entry in stored])
        logger.info(f"Loaded {len(self.account_pool)} accounts from {self.configuration.keys_path()}")

    async def _initialize_workload(self) -> None:
        if self.configuration.WORKLOAD == "contract":
            try:
                abi = await ABI_Registry().load_abi("load")
                self.workload = Contract_Workload.from_abi(
                    self.balancer.primary.web3,
                    self.configuration.LOAD_CONTRACT_ADDRESS,
                    abi,
                    self.configuration.ARRAY_SIZE,
                    self.chain_id,
                )
            except (OSError, ValueError) as e:
                raise ConfigurationError(f"{get_error_message(ERROR_ABI_LOAD)}: {e}", ERROR_ABI_LOAD) from e
        else:
            self.workload = Transfer_Workload(
                self.configuration.RECIPIENT,
                self.configuration.TRANSFER_AMOUNT,
                self.chain_id,
            )
        logger.debug(f"Workload: {self.workload.name}")

    def _initialize_components(self) -> None:
        self.log_buffer = Log_Buffer(self.log_path, self.configuration.LOG_BATCH_SIZE)
        self.metrics = Metrics_Aggregator(self.log_buffer, self.workload.log_message)
        self.dispatcher = Transaction_Dispatcher(self.balancer, self.workload, self.account_pool)
        self.scheduler = Batch_Scheduler(
            self.account_pool,
            self.balancer,
            self.dispatcher,
            self.metrics,
            batch_size=self.configuration.BATCH_SIZE,
            concurrency=self.configuration.CONCURRENCY,
        )

    async def run(self) -> Load_Test_Results:
        """Run the load test for the configured duration and return the summary."""
        if self.scheduler is None:
            raise RuntimeError("Main_Core.run() called before initialize()")

        await self.log_buffer.write("Starting load test", {
            "workload": self.workload.name,
            "duration": self.configuration.TEST_DURATION,
            "accountCount": len(self.account_pool),
            "batchSize": self.scheduler.batch_size,
            "concurrency": self.scheduler.concurrency,
            "rpcEndpoints": self.configuration.redacted_rpc_urls(),
            "rpcCount": len(self.balancer),
            "chainId": self.chain_id,
        })
        started = time.monotonic()
        results = await self.scheduler.run(self.configuration.TEST_DURATION)
        await self.log_buffer.write("Load test completed", {
            "results": results.as_dict(),
            "durationSeconds": round(time.monotonic() - started, 3),
        })
        return results

    def request_stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()

    async def stop(self) -> None:
        """Flush logs and close endpoint sessions."""
        try:
            if self.log_buffer is not None:
                await self.log_buffer.close()
        except Exception as e:
            logger.error(f"Error flushing run log: {e}")
        if self.balancer is not None:
            await self.balancer.close()
        logger.debug("Core shutdown complete.")
