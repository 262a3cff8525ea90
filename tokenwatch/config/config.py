import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from dotenv import load_dotenv

from ..errors import ConfigurationError

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_addresses(name: str) -> FrozenSet[str]:
    value = os.getenv(name) or ''
    return frozenset(a.strip().lower() for a in value.split(',') if a.strip())


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable settings handed to every pipeline component."""
    chain: str = 'avalanche'
    rpc_url: str = 'https://api.avax.network/ext/bc/C/rpc'
    rpc_timeout_seconds: float = 10.0
    factory_addresses: FrozenSet[str] = field(default_factory=frozenset)

    # Block watch loop
    block_poll_interval_seconds: float = 2.0
    sweep_interval_seconds: float = 30.0
    sweep_max_blocks: int = 10
    max_block_lag: int = 1000
    candidate_cache_size: int = 10000

    # Price scheduler
    price_update_interval_seconds: float = 120.0
    price_batch_size: int = 5
    price_batch_delay_seconds: float = 1.0
    initial_price_delay_seconds: float = 5.0
    min_valid_market_cap: float = 1000.0

    # Price sources
    http_timeout_seconds: float = 10.0
    dexscreener_api_url: str = 'https://api.dexscreener.com/latest/dex'
    coingecko_api_url: str = 'https://api.coingecko.com/api/v3'
    coingecko_platform: str = 'avalanche'
    moralis_api_url: str = 'https://deep-index.moralis.io/api/v2'
    moralis_chain: str = 'avalanche'
    moralis_api_key: Optional[str] = None
    price_fallback_enabled: bool = True

    # Persistence
    token_store: str = 'postgres'


class Config:
    # Chain (single chain, single RPC endpoint)
    EVM_CHAIN = os.getenv('EVM_CHAIN', 'avalanche')
    EVM_RPC_URL = os.getenv('EVM_RPC_URL', os.getenv('AVALANCHE_RPC_URL', 'https://api.avax.network/ext/bc/C/rpc'))
    EVM_RPC_TIMEOUT_SECONDS = float(os.getenv('EVM_RPC_TIMEOUT_SECONDS', '10'))
    TOKEN_FACTORY_ADDRESSES = _env_addresses('TOKEN_FACTORY_ADDRESSES')

    # Block watch loop
    BLOCK_POLL_INTERVAL_SECONDS = float(os.getenv('BLOCK_POLL_INTERVAL_SECONDS', '2'))
    SWEEP_INTERVAL_SECONDS = float(os.getenv('SWEEP_INTERVAL_SECONDS', '30'))
    SWEEP_MAX_BLOCKS = int(os.getenv('SWEEP_MAX_BLOCKS', '10'))
    MAX_BLOCK_LAG = int(os.getenv('MAX_BLOCK_LAG', '1000'))
    CANDIDATE_CACHE_SIZE = int(os.getenv('CANDIDATE_CACHE_SIZE', '10000'))

    # Price scheduler
    PRICE_UPDATE_INTERVAL_SECONDS = float(os.getenv('PRICE_UPDATE_INTERVAL_SECONDS', '120'))
    PRICE_BATCH_SIZE = int(os.getenv('PRICE_BATCH_SIZE', '5'))
    PRICE_BATCH_DELAY_SECONDS = float(os.getenv('PRICE_BATCH_DELAY_SECONDS', '1'))
    INITIAL_PRICE_DELAY_SECONDS = float(os.getenv('INITIAL_PRICE_DELAY_SECONDS', '5'))
    MIN_VALID_MARKET_CAP = float(os.getenv('MIN_VALID_MARKET_CAP', '1000'))

    # Price sources
    HTTP_TIMEOUT_SECONDS = float(os.getenv('HTTP_TIMEOUT_SECONDS', '10'))
    DEXSCREENER_API_URL = os.getenv('DEXSCREENER_API_URL', 'https://api.dexscreener.com/latest/dex')
    COINGECKO_API_URL = os.getenv('COINGECKO_API_URL', 'https://api.coingecko.com/api/v3')
    COINGECKO_PLATFORM = os.getenv('COINGECKO_PLATFORM', 'avalanche')
    MORALIS_API_URL = os.getenv('MORALIS_API_URL', 'https://deep-index.moralis.io/api/v2')
    MORALIS_CHAIN = os.getenv('MORALIS_CHAIN', 'avalanche')
    MORALIS_API_KEY = os.getenv('MORALIS_API_KEY') or None
    PRICE_FALLBACK_ENABLED = _env_bool('PRICE_FALLBACK_ENABLED', True)

    # Persistence gateway: 'postgres' or 'memory' (dry runs)
    TOKEN_STORE = os.getenv('TOKEN_STORE', 'postgres').lower()

    # PostgreSQL Configuration (Storage)
    # Use connection string if provided, otherwise fall back to individual parameters
    POSTGRES_CONNECTION_STRING = os.getenv('POSTGRES_CONNECTION_STRING', None)
    POSTGRES_HOST = os.getenv('POSTGRES_HOST', 'localhost')
    POSTGRES_PORT = int(os.getenv('POSTGRES_PORT', '5432'))
    POSTGRES_USER = os.getenv('POSTGRES_USER', 'postgres')
    POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD', 'postgres')
    POSTGRES_DATABASE = os.getenv('POSTGRES_DATABASE', 'tokenwatch')

    # Redis Configuration (optional watermark checkpoint + candidate dedup)
    REDIS_HOST = os.getenv('REDIS_HOST') or None
    REDIS_PORT = int(os.getenv('REDIS_PORT', '6379'))
    REDIS_DB = int(os.getenv('REDIS_DB', '2'))
    REDIS_PASSWORD = os.getenv('REDIS_PASSWORD', None)
    CHECKPOINT_KEY_PREFIX = os.getenv('CHECKPOINT_KEY_PREFIX', 'tokenwatch')
    CANDIDATE_TTL_SECONDS = int(os.getenv('CANDIDATE_TTL_SECONDS', '86400'))

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    @classmethod
    def pipeline_config(cls) -> PipelineConfig:
        return PipelineConfig(
            chain=cls.EVM_CHAIN,
            rpc_url=cls.EVM_RPC_URL,
            rpc_timeout_seconds=cls.EVM_RPC_TIMEOUT_SECONDS,
            factory_addresses=cls.TOKEN_FACTORY_ADDRESSES,
            block_poll_interval_seconds=cls.BLOCK_POLL_INTERVAL_SECONDS,
            sweep_interval_seconds=cls.SWEEP_INTERVAL_SECONDS,
            sweep_max_blocks=cls.SWEEP_MAX_BLOCKS,
            max_block_lag=cls.MAX_BLOCK_LAG,
            candidate_cache_size=cls.CANDIDATE_CACHE_SIZE,
            price_update_interval_seconds=cls.PRICE_UPDATE_INTERVAL_SECONDS,
            price_batch_size=cls.PRICE_BATCH_SIZE,
            price_batch_delay_seconds=cls.PRICE_BATCH_DELAY_SECONDS,
            initial_price_delay_seconds=cls.INITIAL_PRICE_DELAY_SECONDS,
            min_valid_market_cap=cls.MIN_VALID_MARKET_CAP,
            http_timeout_seconds=cls.HTTP_TIMEOUT_SECONDS,
            dexscreener_api_url=cls.DEXSCREENER_API_URL,
            coingecko_api_url=cls.COINGECKO_API_URL,
            coingecko_platform=cls.COINGECKO_PLATFORM,
            moralis_api_url=cls.MORALIS_API_URL,
            moralis_chain=cls.MORALIS_CHAIN,
            moralis_api_key=cls.MORALIS_API_KEY,
            price_fallback_enabled=cls.PRICE_FALLBACK_ENABLED,
            token_store=cls.TOKEN_STORE,
        )

    @classmethod
    def validate(cls, cfg: Optional[PipelineConfig] = None):
        """
        Check the settings the pipeline cannot start without.

        Raises:
            ConfigurationError: listing every missing or invalid setting
        """
        cfg = cfg or cls.pipeline_config()
        problems = []
        if not cfg.rpc_url:
            problems.append('EVM_RPC_URL')
        if cfg.price_batch_size < 1:
            problems.append('PRICE_BATCH_SIZE (must be >= 1)')
        if cfg.sweep_max_blocks < 1:
            problems.append('SWEEP_MAX_BLOCKS (must be >= 1)')
        if cfg.token_store not in ('postgres', 'memory'):
            problems.append(f"TOKEN_STORE (unknown store '{cfg.token_store}')")
        if cfg.token_store == 'postgres' and not cls.POSTGRES_CONNECTION_STRING:
            required_fields = ['POSTGRES_HOST', 'POSTGRES_PORT', 'POSTGRES_USER', 'POSTGRES_DATABASE']
            for name in required_fields:
                if not getattr(cls, name):
                    problems.append(name)
        if problems:
            raise ConfigurationError(f"Missing required configuration: {', '.join(problems)}")
        return True


def setup_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    # urllib3 logs every retry/connection at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)
