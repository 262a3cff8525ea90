import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from ..config import PipelineConfig
from ..database.token_store import TokenStore
from ..models import Quote, utcnow
from .engine import PriceAggregationEngine

logger = logging.getLogger(__name__)


@dataclass
class PassReport:
    tokens: int = 0
    batches: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0
    started_at: datetime = field(default_factory=utcnow)


class BatchScheduler:
    """
    Periodic price passes over every active token.

    Tokens are split into batches of `price_batch_size`; the members of a batch
    run concurrently, batches run one after another with
    `price_batch_delay_seconds` in between. This caps the request rate against
    the price APIs at roughly batch_size / delay.
    """

    def __init__(
        self,
        store: TokenStore,
        engine: PriceAggregationEngine,
        config: PipelineConfig,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.engine = engine
        self.config = config
        self._stop_event = threading.Event()
        self.sleep = sleep or self._stop_event.wait
        self.clock = clock
        self._thread: Optional[threading.Thread] = None
        self.last_pass: Optional[PassReport] = None

    def update_token(self, address: str) -> Optional[Quote]:
        """Aggregate one token and persist the quote. Errors propagate."""
        quote = self.engine.aggregate(address)
        if quote is None:
            return None
        self.store.update_market_data(address, quote.to_fields())
        return quote

    def force_update_token(self, address: str) -> Optional[Quote]:
        """Out-of-cadence update. Returns the persisted quote, or None; never raises."""
        try:
            quote = self.update_token(address.lower())
        except Exception as e:
            logger.error(f'Force update of {address} failed: {e}', exc_info=True)
            return None
        if quote is not None:
            logger.info(f'Force updated {address}: ${quote.price} via {quote.source}')
        return quote

    def _run_batch(self, pool: ThreadPoolExecutor, batch: List[str], report: PassReport):
        futures = {address: pool.submit(self.update_token, address) for address in batch}
        for address, future in futures.items():
            try:
                quote = future.result()
            except Exception as e:
                report.failed += 1
                logger.error(f'Price update failed for {address}: {e}')
                continue
            if quote is None:
                report.skipped += 1
            else:
                report.updated += 1

    def run_pass(self) -> PassReport:
        report = PassReport()
        started = self.clock()
        try:
            tokens = self.store.list_active()
        except Exception as e:
            logger.error(f'Could not list active tokens, skipping pass: {e}')
            report.duration_seconds = self.clock() - started
            self.last_pass = report
            return report

        addresses = [t.contract_address for t in tokens]
        size = max(1, self.config.price_batch_size)
        batches = [addresses[i:i + size] for i in range(0, len(addresses), size)]
        report.tokens = len(addresses)

        logger.info(f'Price pass: {len(addresses)} tokens in {len(batches)} batches of {size}')
        with ThreadPoolExecutor(max_workers=size, thread_name_prefix='price') as pool:
            for idx, batch in enumerate(batches):
                if self._stop_event.is_set():
                    logger.info('Stop requested, ending price pass early')
                    break
                self._run_batch(pool, batch, report)
                report.batches += 1
                if idx < len(batches) - 1:
                    self.sleep(self.config.price_batch_delay_seconds)

        report.duration_seconds = self.clock() - started
        self.last_pass = report
        logger.info(
            f'Price pass done: {report.updated} updated, {report.failed} failed, '
            f'{report.skipped} without quote in {report.duration_seconds:.1f}s'
        )
        return report

    def run(self):
        logger.info(f'Price scheduler started (every {self.config.price_update_interval_seconds}s)')
        while not self._stop_event.is_set():
            report = self.run_pass()
            remaining = self.config.price_update_interval_seconds - report.duration_seconds
            self._stop_event.wait(max(0.0, remaining))
        logger.info('Price scheduler stopped')

    def start(self):
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name='price-scheduler', daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning('Price scheduler did not stop within timeout')

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
