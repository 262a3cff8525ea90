from .engine import PriceAggregationEngine
from .scheduler import BatchScheduler, PassReport
from .sources import (
    CoinGeckoSource,
    DexScreenerSource,
    MoralisSource,
    PriceSource,
    build_default_sources,
    fallback_quote,
)

__all__ = [
    'PriceAggregationEngine',
    'BatchScheduler',
    'PassReport',
    'PriceSource',
    'DexScreenerSource',
    'CoinGeckoSource',
    'MoralisSource',
    'build_default_sources',
    'fallback_quote',
]
