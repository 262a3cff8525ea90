import logging
from typing import List, Optional

import requests

from ..errors import PriceSourceError
from ..models import Quote
from .sources import DexScreenerSource, PriceSource, fallback_quote

logger = logging.getLogger(__name__)


class PriceAggregationEngine:
    """
    Walks the price sources in priority order and returns the first valid quote.

    Quotes are never merged across sources. Only a quote from the primary
    source (DexScreener) can carry has_valid_market_cap, and only above the
    liquidity floor. When every source comes back empty the deterministic
    fallback is returned, unless it has been disabled.
    """

    def __init__(self, sources: List[PriceSource], min_valid_market_cap: float = 1000.0,
                 fallback_enabled: bool = True):
        self.sources = list(sources)
        self.min_valid_market_cap = min_valid_market_cap
        self.fallback_enabled = fallback_enabled

    def is_trusted(self, source: PriceSource) -> bool:
        return source.name == DexScreenerSource.name

    def aggregate(self, address: str) -> Optional[Quote]:
        address = address.lower()
        for source in self.sources:
            if not source.enabled:
                continue
            try:
                quote = source.fetch_quote(address)
            except PriceSourceError as e:
                logger.warning(f'Price source unavailable: {e}')
                continue
            except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f'[{source.name}] {address}: could not parse response: {e}')
                continue
            if quote is None:
                continue

            quote.has_valid_market_cap = (
                self.is_trusted(source) and quote.market_cap > self.min_valid_market_cap
            )
            logger.debug(f'[{source.name}] {address}: price={quote.price} mcap={quote.market_cap}')
            return quote

        if not self.fallback_enabled:
            logger.debug(f'No source had data for {address}; fallback disabled')
            return None
        logger.debug(f'No source had data for {address}; using fallback estimate')
        return fallback_quote(address)

    def close(self):
        for source in self.sources:
            source.close()
