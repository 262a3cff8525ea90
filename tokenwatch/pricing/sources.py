import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from ..errors import PriceSourceError
from ..models import Quote

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = 'fallback'


def _to_float(value: Any) -> float:
    """Parse numbers that APIs send either as JSON numbers or as strings."""
    if value is None or value == '':
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def java_string_hash(value: str) -> int:
    """31-based string hash folded to a signed 32-bit integer."""
    h = 0
    for ch in value:
        h = (31 * h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def fallback_quote(address: str) -> Quote:
    """
    Deterministic placeholder for tokens no source knows yet.

    Holders land in 5..62 and liquidity in 100..3000, both derived from the
    address alone, so repeated calls give the same numbers.
    """
    h = abs(java_string_hash(address))
    return Quote(
        price=0.0,
        market_cap=0.0,
        volume_24h=0.0,
        daily_change=0.0,
        source=FALLBACK_SOURCE,
        holders=5 + (h % 20) * 3,
        liquidity=float(100 + (h % 30) * 100),
        has_valid_market_cap=False,
    )


class PriceSource(ABC):
    """
    One external market-data provider.

    fetch_quote returns None when the provider has no usable data for the token
    and raises PriceSourceError when the provider itself failed (non-2xx,
    timeout, malformed body).
    """

    name = 'unknown'

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return True

    def _get_json(self, address: str, url: str, params: Optional[Dict[str, Any]] = None,
                  headers: Optional[Dict[str, str]] = None) -> Any:
        try:
            resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise PriceSourceError(self.name, address, f'request failed: {e}') from e
        if not 200 <= resp.status_code < 300:
            raise PriceSourceError(self.name, address, 'non-2xx response', status=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise PriceSourceError(self.name, address, f'malformed body: {e}', status=resp.status_code) from e

    @abstractmethod
    def fetch_quote(self, address: str) -> Optional[Quote]:
        pass

    def close(self):
        self.session.close()


class DexScreenerSource(PriceSource):
    """Primary source. Picks the pair with the deepest USD liquidity."""

    name = 'dexscreener'

    @staticmethod
    def best_pair(pairs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        best = None
        best_liquidity = -1.0
        for pair in pairs:
            if not isinstance(pair, dict):
                continue
            liquidity = _to_float((pair.get('liquidity') or {}).get('usd'))
            # Ties keep the first pair listed
            if liquidity > best_liquidity:
                best, best_liquidity = pair, liquidity
        return best

    def fetch_quote(self, address: str) -> Optional[Quote]:
        data = self._get_json(address, f'{self.base_url}/tokens/{address}')
        if not isinstance(data, dict):
            raise PriceSourceError(self.name, address, f'unexpected body type {type(data).__name__}')

        pair = self.best_pair(data.get('pairs') or [])
        if pair is None:
            return None

        price = _to_float(pair.get('priceUsd'))
        market_cap = _to_float(pair.get('marketCap'))
        if price <= 0 or market_cap <= 0:
            logger.debug(f'[{self.name}] {address}: pair without price/market cap')
            return None

        liquidity = (pair.get('liquidity') or {}).get('usd')
        return Quote(
            price=price,
            market_cap=market_cap,
            volume_24h=_to_float((pair.get('volume') or {}).get('h24')),
            daily_change=_to_float((pair.get('priceChange') or {}).get('h24')),
            source=self.name,
            liquidity=_to_float(liquidity) if liquidity is not None else None,
        )


class CoinGeckoSource(PriceSource):
    name = 'coingecko'

    def __init__(self, base_url: str, platform: str = 'avalanche', timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        super().__init__(base_url, timeout=timeout, session=session)
        self.platform = platform

    def fetch_quote(self, address: str) -> Optional[Quote]:
        params = {
            'contract_addresses': address,
            'vs_currencies': 'usd',
            'include_market_cap': 'true',
            'include_24hr_vol': 'true',
            'include_24hr_change': 'true',
        }
        data = self._get_json(address, f'{self.base_url}/simple/token_price/{self.platform}', params=params)
        if not isinstance(data, dict):
            raise PriceSourceError(self.name, address, f'unexpected body type {type(data).__name__}')

        entry = data.get(address.lower())
        if not entry:
            return None
        return Quote(
            price=_to_float(entry.get('usd')),
            market_cap=_to_float(entry.get('usd_market_cap')),
            volume_24h=_to_float(entry.get('usd_24h_vol')),
            daily_change=_to_float(entry.get('usd_24h_change')),
            source=self.name,
        )


class MoralisSource(PriceSource):
    """Price only; disabled without an API key."""

    name = 'moralis'

    def __init__(self, base_url: str, api_key: Optional[str], chain: str = 'avalanche', timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        super().__init__(base_url, timeout=timeout, session=session)
        self.api_key = api_key
        self.chain = chain

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def fetch_quote(self, address: str) -> Optional[Quote]:
        data = self._get_json(
            address,
            f'{self.base_url}/erc20/{address}/price',
            params={'chain': self.chain},
            headers={'X-API-Key': self.api_key},
        )
        if not isinstance(data, dict):
            raise PriceSourceError(self.name, address, f'unexpected body type {type(data).__name__}')
        return Quote(
            price=_to_float(data.get('usdPrice')),
            market_cap=0.0,
            volume_24h=0.0,
            daily_change=0.0,
            source=self.name,
        )


def build_default_sources(config, session: Optional[requests.Session] = None) -> List[PriceSource]:
    """DexScreener, CoinGecko, Moralis in priority order, sharing one HTTP session."""
    session = session or requests.Session()
    timeout = config.http_timeout_seconds
    return [
        DexScreenerSource(config.dexscreener_api_url, timeout=timeout, session=session),
        CoinGeckoSource(config.coingecko_api_url, platform=config.coingecko_platform, timeout=timeout,
                        session=session),
        MoralisSource(config.moralis_api_url, config.moralis_api_key, chain=config.moralis_chain,
                      timeout=timeout, session=session),
    ]
