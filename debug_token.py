#!/usr/bin/env python3
"""
Debug script to trace metadata and pricing for a specific token.
Shows: ERC-20 reads, category, every price source's answer, the merged quote.

Nothing is written to the database.

Usage: python debug_token.py <token_address>
Example: python debug_token.py 0xb31f66aa3c1e785363f0875a1b74e27b85fd66c7
"""

import sys

from tokenwatch.config import Config, setup_logging
from tokenwatch.errors import EvmRpcError, PriceSourceError
from tokenwatch.evm.processors.metadata_resolver import classify
from tokenwatch.evm.rpc import EvmRpcClient
from tokenwatch.pricing.engine import PriceAggregationEngine
from tokenwatch.pricing.sources import build_default_sources, fallback_quote

setup_logging()


def debug_token(token_address: str):
    cfg = Config.pipeline_config()
    address = token_address.lower()

    print("=" * 100)
    print(f"DEBUG TOKEN: {address}")
    print(f"Chain: {cfg.chain} | RPC: {cfg.rpc_url}")
    print("=" * 100)
    print()

    print("1. ERC-20 METADATA")
    print("-" * 100)
    rpc = EvmRpcClient(cfg.chain, cfg.rpc_url, timeout=cfg.rpc_timeout_seconds)
    try:
        meta = rpc.get_token_metadata(address)
    except EvmRpcError as e:
        print(f"RPC error: {e}")
        meta = {}
    finally:
        rpc.close()
    for key in ('name', 'symbol', 'decimals', 'total_supply'):
        print(f"  {key:<14} {meta.get(key)}")
    if meta.get('name') and meta.get('symbol'):
        print(f"  {'category':<14} {classify(meta['name'], meta['symbol']).value}")
    else:
        print("  -> not a fungible token (missing name/symbol)")
    print()

    print("2. PRICE SOURCES (priority order)")
    print("-" * 100)
    sources = build_default_sources(cfg)
    for source in sources:
        if not source.enabled:
            print(f"  {source.name:<12} disabled")
            continue
        try:
            quote = source.fetch_quote(address)
        except PriceSourceError as e:
            print(f"  {source.name:<12} unavailable: {e}")
            continue
        if quote is None:
            print(f"  {source.name:<12} no data")
        else:
            print(f"  {source.name:<12} price=${quote.price:.10f} mcap=${quote.market_cap:,.2f} "
                  f"vol24h=${quote.volume_24h:,.2f} change24h={quote.daily_change:.2f}%")
    print()

    print("3. AGGREGATED QUOTE")
    print("-" * 100)
    engine = PriceAggregationEngine(sources, min_valid_market_cap=cfg.min_valid_market_cap,
                                    fallback_enabled=cfg.price_fallback_enabled)
    quote = engine.aggregate(address)
    engine.close()
    if quote is None:
        print("  No quote (fallback disabled)")
    else:
        for key, value in quote.to_fields().items():
            print(f"  {key:<22} {value}")
    estimate = fallback_quote(address)
    print(f"  (fallback estimate would be holders={estimate.holders}, liquidity=${estimate.liquidity:,.0f})")
    print("=" * 100)


if __name__ == '__main__':
    if len(sys.argv) < 2:
        print("Usage: python debug_token.py <token_address>")
        sys.exit(1)
    debug_token(sys.argv[1])
