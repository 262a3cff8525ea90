import logging
import signal
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config import Config, PipelineConfig
from ..database.token_store import InMemoryTokenStore, TokenStore
from ..evm.core.block_watcher import BlockWatcher
from ..evm.processors.creation_detector import TokenCreationDetector
from ..evm.processors.deduplicator import CandidateDeduplicator
from ..evm.processors.metadata_resolver import EvmMetadataResolver
from ..evm.rpc import EvmRpcClient
from ..models import TokenMetadata, utcnow
from ..pricing.engine import PriceAggregationEngine
from ..pricing.scheduler import BatchScheduler
from ..pricing.sources import PriceSource, build_default_sources

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 30.0


class PipelineSupervisor:
    """
    Owns every pipeline component and their lifecycle.

    Collaborators are built on first use; initialize() additionally starts the
    block watcher and price scheduler threads and installs signal handlers.
    Tests inject the store, RPC client, price sources and checkpoint.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        store: Optional[TokenStore] = None,
        rpc: Optional[EvmRpcClient] = None,
        sources: Optional[List[PriceSource]] = None,
        checkpoint=None,
    ):
        self.config = config or Config.pipeline_config()
        self.store = store
        self.rpc = rpc
        self.sources = sources
        self.checkpoint = checkpoint
        # Collaborators built here are dropped on shutdown; injected ones are kept
        self._injected = {
            'store': store is not None,
            'rpc': rpc is not None,
            'sources': sources is not None,
            'checkpoint': checkpoint is not None,
        }

        self.detector: Optional[TokenCreationDetector] = None
        self.watcher: Optional[BlockWatcher] = None
        self.engine: Optional[PriceAggregationEngine] = None
        self.scheduler: Optional[BatchScheduler] = None

        self._lock = threading.RLock()
        self._built = False
        self._initialized = False
        self._stopped = threading.Event()
        self._timers: Dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()
        self.started_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _build_store(self) -> TokenStore:
        if self.config.token_store == 'memory':
            logger.warning('Using in-memory token store; nothing will be persisted')
            return InMemoryTokenStore()
        from ..database.postgres import PostgresTokenStore
        return PostgresTokenStore()

    def _build_checkpoint(self):
        if not Config.REDIS_HOST:
            logger.info('REDIS_HOST not set; watermark and candidate cache stay in memory')
            return None
        from ..database.redis_client import RedisCheckpointStore
        return RedisCheckpointStore(self.config.chain)

    def _release_partial(self):
        """Close whatever a failed build already opened; injected objects are left alone."""
        for name in ('checkpoint', 'rpc', 'store'):
            if self._injected[name]:
                continue
            resource = getattr(self, name)
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as e:
                logger.warning(f'Closing {name} after failed startup: {e}')
            setattr(self, name, None)
        if not self._injected['sources']:
            self.sources = None

    def _ensure_built(self):
        with self._lock:
            if self._built:
                return
            Config.validate(self.config)

            cfg = self.config
            try:
                if self.store is None:
                    self.store = self._build_store()
                if self.rpc is None:
                    self.rpc = EvmRpcClient(cfg.chain, cfg.rpc_url, timeout=cfg.rpc_timeout_seconds)
                if self.checkpoint is None:
                    self.checkpoint = self._build_checkpoint()
                if self.sources is None:
                    self.sources = build_default_sources(cfg)
            except Exception:
                self._release_partial()
                raise

            resolver = EvmMetadataResolver(self.rpc)
            deduplicator = CandidateDeduplicator(cfg.candidate_cache_size, checkpoint=self.checkpoint)
            self.detector = TokenCreationDetector(
                self.rpc,
                resolver,
                self.store,
                factory_addresses=cfg.factory_addresses,
                deduplicator=deduplicator,
                on_token_created=self._schedule_initial_price,
            )
            self.watcher = BlockWatcher(self.rpc, self.detector, cfg, checkpoint=self.checkpoint)
            self.engine = PriceAggregationEngine(
                self.sources,
                min_valid_market_cap=cfg.min_valid_market_cap,
                fallback_enabled=cfg.price_fallback_enabled,
            )
            self.scheduler = BatchScheduler(self.store, self.engine, cfg)
            self._built = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> 'PipelineSupervisor':
        """
        Build collaborators and start both loops. Safe to call more than once.

        Raises:
            ConfigurationError: when required settings are missing
        """
        with self._lock:
            if self._initialized:
                logger.debug('Pipeline already initialized')
                return self

            logger.info('=' * 100)
            logger.info('TOKEN DISCOVERY & PRICE PIPELINE')
            logger.info(f'Chain: {self.config.chain}')
            logger.info(f'RPC: {self.config.rpc_url}')
            logger.info(f'Factories: {len(self.config.factory_addresses)}')
            logger.info(f'Store: {self.config.token_store}')
            logger.info('=' * 100)

            self._ensure_built()
            self._stopped.clear()
            self.watcher.start()
            self.scheduler.start()
            self._install_signal_handlers()
            self._initialized = True
            self.started_at = utcnow()
            logger.info('Pipeline initialized')
            return self

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            logger.debug('Not on the main thread; signal handlers not installed')
            return
        names = ['SIGINT', 'SIGTERM', 'SIGUSR2']
        for name in names:
            signum = getattr(signal, name, None)
            if signum is not None:
                signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info(f'Received signal {signal.Signals(signum).name}, shutting down')
        self.shutdown()

    def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT_SECONDS):
        """Stop both loops, wait for in-flight work and release connections."""
        with self._lock:
            if not self._built:
                self._stopped.set()
                return
            logger.info('=' * 100)
            logger.info('SHUTTING DOWN PIPELINE')
            logger.info('=' * 100)

            with self._timers_lock:
                timers = list(self._timers.values())
                self._timers.clear()
            for timer in timers:
                timer.cancel()

            self.watcher.stop(timeout=timeout)
            self.scheduler.stop(timeout=timeout)

            self.engine.close()
            self.rpc.close()
            if self.checkpoint is not None:
                self.checkpoint.close()
            self.store.close()
            for name, injected in self._injected.items():
                if not injected:
                    setattr(self, name, None)

            self._initialized = False
            self._built = False
            self._stopped.set()
            logger.info('Pipeline stopped')

    def wait(self):
        """Block the calling thread until shutdown() has run."""
        # Short waits keep the main thread responsive to signals
        while not self._stopped.wait(1.0):
            pass

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _schedule_initial_price(self, metadata: TokenMetadata):
        delay = self.config.initial_price_delay_seconds
        address = metadata.contract_address
        timer = threading.Timer(delay, self._run_initial_price, args=(address,))
        timer.daemon = True
        with self._timers_lock:
            if self._stopped.is_set():
                return
            previous = self._timers.pop(address, None)
            if previous is not None:
                previous.cancel()
            self._timers[address] = timer
        timer.start()
        logger.debug(f'Initial price fetch for {address} in {delay}s')

    def _run_initial_price(self, address: str):
        with self._timers_lock:
            self._timers.pop(address, None)
        scheduler = self.scheduler
        if scheduler is not None:
            scheduler.force_update_token(address)

    def pending_initial_prices(self) -> List[str]:
        with self._timers_lock:
            return list(self._timers)

    def force_update_token(self, address: str) -> bool:
        """Aggregate and persist one token now. True when a quote was stored; never raises."""
        try:
            self._ensure_built()
        except Exception as e:
            logger.error(f'Cannot force update {address}: {e}')
            return False
        return self.scheduler.force_update_token(address) is not None

    def sync_from_source(self, from_block: Optional[int] = None, to_block: Optional[int] = None) -> List[TokenMetadata]:
        """Run discovery now; returns the tokens created."""
        self._ensure_built()
        return self.watcher.sync(from_block, to_block)

    def update_all_prices(self):
        """One full price pass now, outside the regular cadence."""
        self._ensure_built()
        return self.scheduler.run_pass()

    def health_check(self) -> Dict[str, Any]:
        """Snapshot of loop state. Does no network I/O."""
        watcher_running = bool(self.watcher and self.watcher.is_running())
        scheduler_running = bool(self.scheduler and self.scheduler.is_running())
        if watcher_running and scheduler_running:
            status = 'healthy'
        elif self._initialized:
            status = 'degraded'
        else:
            status = 'stopped'

        last_pass = self.scheduler.last_pass if self.scheduler else None
        return {
            'status': status,
            'timestamp': utcnow().isoformat(),
            'services': {
                'block_watcher': 'running' if watcher_running else 'stopped',
                'price_scheduler': 'running' if scheduler_running else 'stopped',
            },
            'last_checked_block': self.watcher.last_checked_block if self.watcher else None,
            'last_block_error': self.watcher.last_error if self.watcher else None,
            'last_price_pass': {
                'started_at': last_pass.started_at.isoformat(),
                'tokens': last_pass.tokens,
                'updated': last_pass.updated,
                'failed': last_pass.failed,
                'duration_seconds': round(last_pass.duration_seconds, 3),
            } if last_pass else None,
        }
