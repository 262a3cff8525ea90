import logging
from typing import Optional, Tuple

from ...errors import EvmRpcError
from ...models import TokenCategory, TokenMetadata
from ..rpc import EvmRpcClient

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18

# Ordered rule table: first keyword hit wins, anything else is a meme token.
# Plain substring matching, so "Startup" is 'artist' and "Display" is 'gamer'.
# The tag is advisory only and never validated.
CATEGORY_RULES: Tuple[Tuple[TokenCategory, Tuple[str, ...]], ...] = (
    (TokenCategory.ARTIST, ('art', 'nft', 'creative')),
    (TokenCategory.GAMER, ('game', 'play', 'gaming')),
    (TokenCategory.DEV, ('dev', 'build', 'protocol')),
)


def classify(name: str, symbol: str) -> TokenCategory:
    """Coarse category from name/symbol keywords. Known-approximate heuristic."""
    haystack = f'{name or ""} {symbol or ""}'.lower()
    for category, keywords in CATEGORY_RULES:
        if any(keyword in haystack for keyword in keywords):
            return category
    return TokenCategory.MEME


class EvmMetadataResolver:
    """
    Confirms a candidate address is a fungible token and reads its metadata.

    Returns None for anything that is not a token, including when the RPC
    endpoint is unreachable; it never raises.
    """

    def __init__(self, rpc: EvmRpcClient):
        self.rpc = rpc

    def resolve(self, contract_address: str, creator_address: Optional[str] = None) -> Optional[TokenMetadata]:
        address = contract_address.lower()
        try:
            meta = self.rpc.get_token_metadata(address)
        except EvmRpcError as e:
            logger.warning(f'[{self.rpc.chain}] Metadata lookup failed for {address}: {e}')
            return None

        name, symbol = meta.get('name'), meta.get('symbol')
        if not name or not symbol:
            logger.debug(f'[{self.rpc.chain}] {address} has no name/symbol, not a fungible token')
            return None

        decimals = meta.get('decimals')
        total_supply = meta.get('total_supply')
        return TokenMetadata(
            contract_address=address,
            name=name,
            symbol=symbol,
            decimals=DEFAULT_DECIMALS if decimals is None else decimals,
            total_supply=total_supply or 0,
            creator_address=creator_address.lower() if creator_address else None,
            category=classify(name, symbol),
        )
