import unittest
from unittest.mock import MagicMock

import requests

from tokenwatch.errors import PriceSourceError
from tokenwatch.pricing.engine import PriceAggregationEngine
from tokenwatch.pricing.sources import (
    CoinGeckoSource,
    DexScreenerSource,
    MoralisSource,
    fallback_quote,
    java_string_hash,
)

TOKEN = '0x1234567890abcdef1234567890abcdef12345678'


def _response(status=200, body=None, bad_json=False):
    resp = MagicMock()
    resp.status_code = status
    if bad_json:
        resp.json.side_effect = ValueError('Expecting value')
    else:
        resp.json.return_value = body
    return resp


def _session(*responses):
    session = MagicMock()
    session.get.side_effect = list(responses)
    return session


def _dex_pair(price, market_cap, liquidity, volume=0, change=0, fdv=None):
    pair = {
        'priceUsd': str(price),
        'liquidity': {'usd': liquidity},
        'volume': {'h24': volume},
        'priceChange': {'h24': change},
    }
    if market_cap is not None:
        pair['marketCap'] = market_cap
    if fdv is not None:
        pair['fdv'] = fdv
    return pair


class TestPriceAggregationEngine(unittest.TestCase):
    def _engine(self, dex_session, cg_session, moralis_session=None, moralis_key=None, fallback=True):
        sources = [
            DexScreenerSource('https://dex.test/latest/dex', session=dex_session),
            CoinGeckoSource('https://cg.test/api/v3', platform='avalanche', session=cg_session),
            MoralisSource('https://moralis.test/api/v2', moralis_key, session=moralis_session or MagicMock()),
        ]
        return PriceAggregationEngine(sources, min_valid_market_cap=1000, fallback_enabled=fallback)

    def test_primary_source_wins_and_picks_deepest_pair(self):
        dex = _session(_response(body={'pairs': [
            _dex_pair(0.5, 40000, liquidity=1000, volume=10, change=1.0),
            _dex_pair(0.6, 50000, liquidity=9000, volume=250, change=-4.2),
        ]}))
        cg = _session()
        quote = self._engine(dex, cg).aggregate(TOKEN)

        self.assertEqual(quote.source, 'dexscreener')
        self.assertAlmostEqual(quote.price, 0.6)
        self.assertAlmostEqual(quote.market_cap, 50000)
        self.assertAlmostEqual(quote.volume_24h, 250)
        self.assertAlmostEqual(quote.daily_change, -4.2)
        self.assertAlmostEqual(quote.liquidity, 9000)
        self.assertTrue(quote.has_valid_market_cap)
        cg.get.assert_not_called()

    def test_primary_source_below_floor_is_accepted_but_not_valid(self):
        dex = _session(_response(body={'pairs': [_dex_pair(0.001, 500, liquidity=100)]}))
        quote = self._engine(dex, _session()).aggregate(TOKEN)
        self.assertEqual(quote.source, 'dexscreener')
        self.assertFalse(quote.has_valid_market_cap)

    def test_fdv_alone_does_not_count_as_market_cap(self):
        dex = _session(_response(body={'pairs': [_dex_pair(0.01, None, liquidity=100, fdv=50000)]}))
        cg = _session(_response(body={TOKEN: {'usd': 0.01, 'usd_market_cap': 0}}))
        quote = self._engine(dex, cg).aggregate(TOKEN)
        self.assertEqual(quote.source, 'coingecko')
        self.assertFalse(quote.has_valid_market_cap)

    def test_rate_limited_primary_falls_through_to_coingecko(self):
        dex = _session(_response(status=429, body={}))
        cg = _session(_response(body={TOKEN: {
            'usd': 1.25,
            'usd_market_cap': 5000000,
            'usd_24h_vol': 1000,
            'usd_24h_change': 3.5,
        }}))
        quote = self._engine(dex, cg).aggregate(TOKEN)

        self.assertEqual(quote.source, 'coingecko')
        self.assertAlmostEqual(quote.price, 1.25)
        self.assertAlmostEqual(quote.market_cap, 5000000)
        # Only the primary source can vouch for market cap
        self.assertFalse(quote.has_valid_market_cap)

    def test_primary_without_valid_price_falls_through(self):
        dex = _session(_response(body={'pairs': [_dex_pair(0, 0, liquidity=50)]}))
        cg = _session(_response(body={TOKEN: {'usd': 0.1}}))
        quote = self._engine(dex, cg).aggregate(TOKEN)
        self.assertEqual(quote.source, 'coingecko')
        self.assertEqual(quote.market_cap, 0.0)

    def test_malformed_body_and_timeout_are_source_unavailable(self):
        dex = _session(_response(bad_json=True))
        cg = MagicMock()
        cg.get.side_effect = requests.Timeout('read timed out')
        quote = self._engine(dex, cg).aggregate(TOKEN)
        self.assertEqual(quote.source, 'fallback')

    def test_moralis_skipped_without_key(self):
        moralis = MagicMock()
        quote = self._engine(_session(_response(body={'pairs': []})), _session(_response(body={})),
                             moralis_session=moralis).aggregate(TOKEN)
        moralis.get.assert_not_called()
        self.assertEqual(quote.source, 'fallback')

    def test_moralis_used_with_key(self):
        moralis = _session(_response(body={'usdPrice': '0.0042'}))
        quote = self._engine(_session(_response(body={'pairs': None})), _session(_response(body={})),
                             moralis_session=moralis, moralis_key='secret').aggregate(TOKEN)

        self.assertEqual(quote.source, 'moralis')
        self.assertAlmostEqual(quote.price, 0.0042)
        self.assertEqual(quote.market_cap, 0.0)
        self.assertFalse(quote.has_valid_market_cap)
        _, kwargs = moralis.get.call_args
        self.assertEqual(kwargs['headers'], {'X-API-Key': 'secret'})
        self.assertEqual(kwargs['params'], {'chain': 'avalanche'})

    def test_fallback_when_every_source_is_empty(self):
        quote = self._engine(_session(_response(body={'pairs': []})), _session(_response(body={}))).aggregate(TOKEN)
        expected = fallback_quote(TOKEN)
        self.assertEqual(quote.source, 'fallback')
        self.assertEqual(quote.holders, expected.holders)
        self.assertEqual(quote.liquidity, expected.liquidity)
        self.assertEqual(quote.price, 0.0)
        self.assertFalse(quote.has_valid_market_cap)

    def test_fallback_disabled_returns_none(self):
        engine = self._engine(_session(_response(status=500)), _session(_response(status=503)), fallback=False)
        self.assertIsNone(engine.aggregate(TOKEN))


class TestSources(unittest.TestCase):
    def test_non_2xx_raises_price_source_error(self):
        source = DexScreenerSource('https://dex.test', session=_session(_response(status=404)))
        with self.assertRaises(PriceSourceError) as ctx:
            source.fetch_quote(TOKEN)
        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(ctx.exception.source, 'dexscreener')

    def test_dexscreener_url(self):
        session = _session(_response(body={'pairs': []}))
        DexScreenerSource('https://dex.test/latest/dex/', session=session, timeout=7).fetch_quote(TOKEN)
        args, kwargs = session.get.call_args
        self.assertEqual(args[0], f'https://dex.test/latest/dex/tokens/{TOKEN}')
        self.assertEqual(kwargs['timeout'], 7)

    def test_coingecko_request_shape(self):
        session = _session(_response(body={}))
        CoinGeckoSource('https://cg.test/api/v3', platform='avalanche', session=session).fetch_quote(TOKEN)
        args, kwargs = session.get.call_args
        self.assertEqual(args[0], 'https://cg.test/api/v3/simple/token_price/avalanche')
        self.assertEqual(kwargs['params']['contract_addresses'], TOKEN)
        self.assertEqual(kwargs['params']['include_market_cap'], 'true')


class TestFallbackQuote(unittest.TestCase):
    def test_java_string_hash(self):
        self.assertEqual(java_string_hash(''), 0)
        self.assertEqual(java_string_hash('hello'), 99162322)
        # Wraps to the most negative 32-bit value
        self.assertEqual(java_string_hash('polygenelubricants'), -2147483648)

    def test_fallback_is_deterministic(self):
        first = fallback_quote(TOKEN)
        second = fallback_quote(TOKEN)
        self.assertEqual((first.holders, first.liquidity), (second.holders, second.liquidity))

    def test_fallback_ranges(self):
        for address in (TOKEN, '0x' + 'f' * 40, '0x' + '0' * 40, 'polygenelubricants'):
            quote = fallback_quote(address)
            self.assertGreaterEqual(quote.holders, 5)
            self.assertLessEqual(quote.holders, 62)
            self.assertGreaterEqual(quote.liquidity, 100)
            self.assertLessEqual(quote.liquidity, 3000)
            self.assertEqual(quote.market_cap, 0.0)

    def test_fallback_from_min_int_hash(self):
        quote = fallback_quote('polygenelubricants')
        self.assertEqual(quote.holders, 29)
        self.assertEqual(quote.liquidity, 900.0)


if __name__ == '__main__':
    unittest.main()
