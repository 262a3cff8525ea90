from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_from_timestamp(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, timezone.utc).replace(tzinfo=None)


class TokenCategory(str, Enum):
    ARTIST = 'artist'
    GAMER = 'gamer'
    DEV = 'dev'
    MEME = 'meme'


# Columns the price pipeline must never rewrite once a token exists.
IMMUTABLE_FIELDS = frozenset({
    'contract_address',
    'name',
    'symbol',
    'creator_address',
    'category',
    'decimals',
    'total_supply',
    'description',
    'dex_screener_url',
    'created_at',
})


@dataclass
class Token:
    contract_address: str
    name: str
    symbol: str
    creator_address: Optional[str] = None
    category: TokenCategory = TokenCategory.MEME
    decimals: int = 18
    total_supply: str = '0'
    description: Optional[str] = None
    dex_screener_url: Optional[str] = None
    price: float = 0.0
    market_cap: float = 0.0
    volume_24h: float = 0.0
    daily_change: float = 0.0
    holders: Optional[int] = None
    liquidity: Optional[float] = None
    has_valid_market_cap: bool = False
    price_source: Optional[str] = None
    is_active: bool = True
    last_price_update: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Token':
        known = {k: v for k, v in row.items() if k in cls.__dataclass_fields__}
        if known.get('category') is not None:
            known['category'] = TokenCategory(known['category'])
        for key in ('price', 'market_cap', 'volume_24h', 'daily_change'):
            if known.get(key) is None:
                known.pop(key, None)
            else:
                known[key] = float(known[key])
        if known.get('total_supply') is not None:
            known['total_supply'] = str(known['total_supply'])
        return cls(**known)


@dataclass
class TokenMetadata:
    contract_address: str
    name: str
    symbol: str
    decimals: int = 18
    total_supply: int = 0
    creator_address: Optional[str] = None
    category: TokenCategory = TokenCategory.MEME

    def to_fields(self, chain: str = 'avalanche', created_at: Optional[datetime] = None) -> Dict[str, Any]:
        """Row for the create path: identity plus a zeroed market snapshot."""
        created_at = created_at or utcnow()
        return {
            'name': self.name,
            'symbol': self.symbol,
            'creator_address': self.creator_address,
            'category': self.category.value,
            'decimals': self.decimals,
            'total_supply': str(self.total_supply),
            'description': f'New token: {self.name}',
            'dex_screener_url': f'https://dexscreener.com/{chain}/{self.contract_address}',
            'price': 0.0,
            'market_cap': 0.0,
            'volume_24h': 0.0,
            'daily_change': 0.0,
            'has_valid_market_cap': False,
            'is_active': True,
            'created_at': created_at,
            'last_price_update': created_at,
        }


@dataclass(frozen=True)
class TokenCandidate:
    contract_address: str
    creator_address: Optional[str]
    tx_hash: str
    block_number: int
    block_timestamp: Optional[int] = None
    signal: str = 'contract_creation'


@dataclass
class Quote:
    """One normalized market snapshot for one token from one source."""
    price: float
    market_cap: float
    volume_24h: float
    daily_change: float
    source: str
    holders: Optional[int] = None
    liquidity: Optional[float] = None
    has_valid_market_cap: bool = False
    fetched_at: datetime = field(default_factory=utcnow)

    def to_fields(self) -> Dict[str, Any]:
        fields = {
            'price': float(self.price),
            'market_cap': float(self.market_cap),
            'volume_24h': float(self.volume_24h),
            'daily_change': float(self.daily_change),
            'has_valid_market_cap': bool(self.has_valid_market_cap),
            'price_source': self.source,
            'last_price_update': self.fetched_at,
        }
        # Unknown holders/liquidity must not blank a previously stored value
        if self.holders is not None:
            fields['holders'] = int(self.holders)
        if self.liquidity is not None:
            fields['liquidity'] = float(self.liquidity)
        return fields
