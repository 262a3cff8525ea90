import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import PersistenceError
from ..models import IMMUTABLE_FIELDS, Token, TokenMetadata, utcnow

logger = logging.getLogger(__name__)


class TokenStore(ABC):
    """
    Persistence gateway for tokens.

    The contract address (lower-cased) is the idempotency key. Implementations
    must make each upsert atomic for its address; concurrent writers to the same
    row resolve last-writer-wins.
    """

    @abstractmethod
    def upsert_by_address(self, address: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert the row if missing, otherwise update it.

        Fields in IMMUTABLE_FIELDS keep their stored value when the row exists.
        Returns the stored row as a dict.
        """

    @abstractmethod
    def insert_if_absent(self, address: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Insert the row if missing. An existing row is returned untouched."""

    @abstractmethod
    def list_active(self) -> List[Token]:
        """All tokens with is_active = true."""

    def create_token(
        self,
        metadata: TokenMetadata,
        chain: str = 'avalanche',
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Create path of the discovery half.

        Insert-only: seeing a known token again leaves its market snapshot and
        its is_active flag alone.
        """
        fields = metadata.to_fields(chain=chain, created_at=created_at)
        return self.insert_if_absent(metadata.contract_address, fields)

    def update_market_data(self, address: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Update path of the price half; identity fields are stripped."""
        market_fields = {k: v for k, v in fields.items() if k not in IMMUTABLE_FIELDS}
        return self.upsert_by_address(address, market_fields)

    def close(self):
        pass


class InMemoryTokenStore(TokenStore):
    """Dict-backed gateway for tests and dry runs (TOKEN_STORE=memory)."""

    def __init__(self):
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _insert(self, key: str, fields: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        if not fields.get('name') or not fields.get('symbol'):
            # Same outcome as the NOT NULL constraint in PostgreSQL
            raise PersistenceError(f'Token {key} does not exist and cannot be created without name/symbol')
        row = {'contract_address': key, 'is_active': True, 'created_at': now}
        row.update(fields)
        row['updated_at'] = now
        self._rows[key] = row
        logger.debug(f'Inserted token {key}')
        return row

    def upsert_by_address(self, address: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        key = address.lower()
        now = utcnow()
        with self._lock:
            row = self._rows.get(key)
            if row is None:
                row = self._insert(key, fields, now)
            else:
                for name, value in fields.items():
                    if name in IMMUTABLE_FIELDS and row.get(name) is not None:
                        continue
                    row[name] = value
                row['updated_at'] = now
            return dict(row)

    def insert_if_absent(self, address: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        key = address.lower()
        with self._lock:
            row = self._rows.get(key)
            if row is None:
                row = self._insert(key, fields, utcnow())
            return dict(row)

    def list_active(self) -> List[Token]:
        with self._lock:
            rows = [dict(r) for r in self._rows.values() if r.get('is_active', True)]
        return [Token.from_row(r) for r in rows]

    def get(self, address: str) -> Dict[str, Any]:
        with self._lock:
            row = self._rows.get(address.lower())
            return dict(row) if row else None

    def set_active(self, address: str, is_active: bool):
        with self._lock:
            self._rows[address.lower()]['is_active'] = is_active

    def __len__(self) -> int:
        return len(self._rows)
