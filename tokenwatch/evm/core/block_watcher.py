import logging
import threading
import time
from typing import Callable, List, Optional, Set

from ...config import PipelineConfig
from ...errors import BlockUnavailableError, EvmRpcError
from ...models import TokenMetadata
from ..processors.creation_detector import TokenCreationDetector
from ..rpc import EvmRpcClient

logger = logging.getLogger(__name__)


class BlockWatcher:
    """
    Drives the creation detector over the chain.

    Two feeds share one watermark (`last_checked_block`, the highest block below
    which everything has been scanned):

    * live feed: every poll interval the new head is scanned at once and kept in
      the scanned-ahead set;
    * sweep: every sweep interval up to `sweep_max_blocks` blocks above the
      watermark are scanned in order. The first unavailable block stops the
      sweep and is retried on the next tick.

    The watermark moves over any contiguous run of scanned blocks and is saved
    to the checkpoint store when one is configured.
    """

    def __init__(
        self,
        rpc: EvmRpcClient,
        detector: TokenCreationDetector,
        config: PipelineConfig,
        checkpoint=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rpc = rpc
        self.detector = detector
        self.config = config
        self.checkpoint = checkpoint
        self.clock = clock

        self._watermark: Optional[int] = None
        self._scanned_ahead: Set[int] = set()
        self._scan_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_sweep_at: Optional[float] = None

        self.last_head: Optional[int] = None
        self.last_error: Optional[str] = None

    @property
    def last_checked_block(self) -> Optional[int]:
        return self._watermark

    @property
    def scanned_ahead(self) -> Set[int]:
        return set(self._scanned_ahead)

    def _ensure_watermark(self, head: int):
        if self._watermark is not None:
            return
        stored = self.checkpoint.load_watermark() if self.checkpoint is not None else None
        if stored is not None and stored <= head:
            logger.info(f'[{self.rpc.chain}] Resuming from checkpointed block {stored:,} (head {head:,})')
            self._watermark = stored
        else:
            logger.info(f'[{self.rpc.chain}] Starting watermark at head {head:,}')
            self._set_watermark(head)

    def _set_watermark(self, block_number: int):
        self._watermark = block_number
        if self.checkpoint is not None:
            self.checkpoint.save_watermark(block_number)

    def _fast_forward_if_lagging(self, head: int):
        lag = head - self._watermark
        if lag <= self.config.max_block_lag:
            return
        target = head - self.config.sweep_max_blocks
        logger.warning(
            f'[{self.rpc.chain}] Watermark {self._watermark:,} is {lag:,} blocks behind head; '
            f'skipping ahead to {target:,}'
        )
        self._scanned_ahead = {n for n in self._scanned_ahead if n > target}
        self._set_watermark(target)

    def _advance(self):
        moved = False
        watermark = self._watermark
        while watermark + 1 in self._scanned_ahead:
            watermark += 1
            self._scanned_ahead.discard(watermark)
            moved = True
        if moved:
            self._set_watermark(watermark)

    def _scan(self, block_number: int) -> List[TokenMetadata]:
        created = self.detector.scan_block(block_number)
        if block_number > self._watermark:
            self._scanned_ahead.add(block_number)
        return created

    def _head(self) -> int:
        head = self.rpc.block_number()
        self.last_head = head
        self._ensure_watermark(head)
        self._fast_forward_if_lagging(head)
        return head

    def poll_head(self) -> List[TokenMetadata]:
        """Live feed tick: scan the current head if it is new."""
        with self._scan_lock:
            head = self._head()
            if head <= self._watermark or head in self._scanned_ahead:
                return []
            try:
                created = self._scan(head)
            except BlockUnavailableError as e:
                logger.debug(f'[{self.rpc.chain}] Head block not ready: {e}')
                return []
            self._advance()
            return created

    def sweep(self) -> List[TokenMetadata]:
        """Reconciliation tick: scan the blocks right above the watermark."""
        with self._scan_lock:
            head = self._head()
            upper = min(head, self._watermark + self.config.sweep_max_blocks)
            created: List[TokenMetadata] = []
            for block_number in range(self._watermark + 1, upper + 1):
                # Already covered by the live feed, possibly absorbed by _advance
                if block_number <= self._watermark or block_number in self._scanned_ahead:
                    continue
                try:
                    created.extend(self._scan(block_number))
                except BlockUnavailableError as e:
                    logger.warning(f'[{self.rpc.chain}] Sweep stopped at block {block_number:,}: {e}')
                    break
                finally:
                    self._advance()
            if created:
                logger.info(f'[{self.rpc.chain}] Sweep found {len(created)} token(s), watermark {self._watermark:,}')
            return created

    def sync(self, from_block: Optional[int] = None, to_block: Optional[int] = None) -> List[TokenMetadata]:
        """
        Run discovery now.

        Without arguments this is one sweep. With a range, every block in it is
        scanned; unavailable blocks are logged and skipped.
        """
        if from_block is None and to_block is None:
            return self.sweep()

        with self._scan_lock:
            head = self._head()
            start = from_block if from_block is not None else self._watermark + 1
            end = min(to_block if to_block is not None else head, head)
            logger.info(f'[{self.rpc.chain}] Manual sync of blocks {start:,}..{end:,}')
            created: List[TokenMetadata] = []
            for block_number in range(start, end + 1):
                try:
                    created.extend(self._scan(block_number))
                except BlockUnavailableError as e:
                    logger.warning(f'[{self.rpc.chain}] Manual sync skipped block {block_number:,}: {e}')
            self._advance()
            return created

    def tick(self):
        """One loop iteration: live feed, then a sweep when it is due."""
        try:
            self.poll_head()
            now = self.clock()
            if self._last_sweep_at is None or now - self._last_sweep_at >= self.config.sweep_interval_seconds:
                self._last_sweep_at = now
                self.sweep()
            self.last_error = None
        except EvmRpcError as e:
            self.last_error = str(e)
            logger.warning(f'[{self.rpc.chain}] Block watch tick failed: {e}')
        except Exception as e:
            self.last_error = str(e)
            logger.error(f'[{self.rpc.chain}] Unexpected error in block watcher: {e}', exc_info=True)

    def run(self):
        logger.info(f'[{self.rpc.chain}] Block watcher started (poll {self.config.block_poll_interval_seconds}s, '
                    f'sweep {self.config.sweep_interval_seconds}s)')
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self.config.block_poll_interval_seconds)
        logger.info(f'[{self.rpc.chain}] Block watcher stopped at block {self._watermark}')

    def start(self):
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name='block-watcher', daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning('Block watcher did not stop within timeout')

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
