import asyncio
import json
import logging
import sys
import time

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, TextIO

import aiofiles

from xload.constants import LOG_BATCH_SIZE, PROGRESS_INTERVAL

if TYPE_CHECKING:
    from xload.core import Attempt_Result

logger = logging.getLogger("Monitor")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class Load_Test_Results:
    total_transactions: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    transactions_per_second: float = 0.0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "totalTransactions": self.total_transactions,
            "successfulTransactions": self.successful_transactions,
            "failedTransactions": self.failed_transactions,
            "transactionsPerSecond": self.transactions_per_second,
            "errors": [dict(error) for error in self.errors],
        }


class Log_Buffer:
    """
    Per-run structured log file with batched writes.

    Lines look like ``<timestamp> | INFO  | [<message>] | <json>`` and are kept
    in memory until ``batch_size`` records are pending, then appended in one
    write.
    """

    def __init__(self, path: Path, batch_size: int = LOG_BATCH_SIZE):
        if batch_size <= 0:
            raise ValueError(f"Log batch size must be positive, got {batch_size}")
        self.path: Path = Path(path)
        self.batch_size: int = batch_size
        self.pending: List[str] = []
        self.lines_written: int = 0

    @staticmethod
    def format_line(message: str, metadata: Optional[Dict[str, Any]] = None, level: str = "INFO") -> str:
        meta = f" | {json.dumps(metadata, default=str)}" if metadata else ""
        return f"{utc_timestamp()} | {level.upper():<5} | [{message}]{meta}"

    async def append(self, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.pending.append(self.format_line(message, metadata))
        if len(self.pending) >= self.batch_size:
            await self.flush()

    async def write(self, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Append a record and flush immediately."""
        self.pending.append(self.format_line(message, metadata))
        await self.flush()

    async def flush(self) -> None:
        if not self.pending:
            return
        lines, self.pending = self.pending, []
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
            await f.write("\n".join(lines) + "\n")
        self.lines_written += len(lines)
        logger.debug(f"Flushed {len(lines)} log lines to {self.path}")

    async def close(self) -> None:
        await self.flush()


class Metrics_Aggregator:
    """
    Single-writer aggregation of attempt outcomes.

    Attempts hand their results to ``record``, which only enqueues. One
    consumer task (``run``) folds each result into the counters and the log
    buffer, so counters are never updated from two places at once.
    """

    def __init__(self, log_buffer: Optional[Log_Buffer] = None, log_message: str = "Transaction completed"):
        self.log_buffer: Optional[Log_Buffer] = log_buffer
        self.log_message: str = log_message
        self.results: Load_Test_Results = Load_Test_Results()
        self.queue: "asyncio.Queue[Optional[Attempt_Result]]" = asyncio.Queue()
        self.started_at: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.monotonic()

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at

    def record(self, result: "Attempt_Result") -> None:
        self.queue.put_nowait(result)

    async def run(self) -> None:
        """Consume results until ``close`` enqueues the stop sentinel."""
        while True:
            result = await self.queue.get()
            try:
                if result is None:
                    return
                await self._fold(result)
            except Exception as e:
                logger.error(f"Error recording attempt result: {e}")
            finally:
                self.queue.task_done()

    async def _fold(self, result: "Attempt_Result") -> None:
        results = self.results
        if result.success:
            results.successful_transactions += 1
        else:
            results.failed_transactions += 1
            results.errors.append({"account": result.account, "error": result.error or "Unknown error"})
        results.total_transactions += 1

        if self.log_buffer is not None:
            await self.log_buffer.append(self.log_message, result.log_record())

    async def drain(self) -> None:
        """Wait until every recorded result has been folded in."""
        await self.queue.join()

    async def close(self) -> None:
        self.queue.put_nowait(None)
        await self.queue.join()

    def current_tps(self) -> float:
        elapsed = self.elapsed()
        return self.results.total_transactions / elapsed if elapsed > 0 else 0.0

    def finalize(self, elapsed_seconds: float) -> Load_Test_Results:
        """Compute TPS over the whole run and return the summary."""
        if elapsed_seconds > 0:
            self.results.transactions_per_second = self.results.total_transactions / elapsed_seconds
        else:
            self.results.transactions_per_second = 0.0
        return self.results


class Progress_Reporter:
    """Writes a one-line progress bar once per interval, independent of batch boundaries."""

    def __init__(
        self,
        metrics: Metrics_Aggregator,
        duration: float,
        interval: float = PROGRESS_INTERVAL,
        stream: Optional[TextIO] = None,
    ):
        self.metrics: Metrics_Aggregator = metrics
        self.duration: float = duration
        self.interval: float = interval
        self.stream: TextIO = stream or sys.stdout
        self.reports: int = 0
        self._stopped: asyncio.Event = asyncio.Event()

    def render(self) -> str:
        elapsed = self.metrics.elapsed()
        progress = min(elapsed / self.duration * 100, 100.0) if self.duration > 0 else 100.0
        results = self.metrics.results
        return (
            f"\rProgress: {progress:.1f}% | Transactions: {results.total_transactions} | "
            f"Success: {results.successful_transactions} | Failed: {results.failed_transactions} | "
            f"Current TPS: {self.metrics.current_tps():.2f}"
        )

    def report(self) -> None:
        self.stream.write(self.render())
        self.stream.flush()
        self.reports += 1

    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                self.report()
        if self.reports:
            self.stream.write("\n\n")
            self.stream.flush()

    def stop(self) -> None:
        self._stopped.set()
