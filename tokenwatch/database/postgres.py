import logging
import threading
from typing import Any, Dict, List, Optional

import psycopg2
import psycopg2.extras

from ..config import Config
from ..errors import PersistenceError
from ..models import IMMUTABLE_FIELDS, Token, utcnow
from .token_store import TokenStore

logger = logging.getLogger(__name__)

# Writable columns; anything else passed to upsert_by_address is rejected.
TOKEN_COLUMNS = (
    'name',
    'symbol',
    'creator_address',
    'category',
    'decimals',
    'total_supply',
    'description',
    'dex_screener_url',
    'price',
    'market_cap',
    'volume_24h',
    'daily_change',
    'holders',
    'liquidity',
    'has_valid_market_cap',
    'price_source',
    'is_active',
    'last_price_update',
    'created_at',
)


class PostgresTokenStore(TokenStore):
    """
    PostgreSQL gateway for the tokens table.

    One connection shared behind a lock; every upsert is a single
    INSERT ... ON CONFLICT statement, so it is atomic per address.
    """

    def __init__(self, connection_string: Optional[str] = None):
        self.connection_string = connection_string if connection_string is not None else Config.POSTGRES_CONNECTION_STRING
        self.connection = None
        self.cursor = None
        self._lock = threading.Lock()
        self._connect()

    def _connect(self):
        """Establish connection to PostgreSQL."""
        try:
            if self.connection_string:
                logger.info('Connecting to PostgreSQL using connection string')
                self.connection = psycopg2.connect(self.connection_string, connect_timeout=10)
            else:
                logger.info(f'Connecting to PostgreSQL at {Config.POSTGRES_HOST}:{Config.POSTGRES_PORT}')
                self.connection = psycopg2.connect(
                    host=Config.POSTGRES_HOST,
                    port=Config.POSTGRES_PORT,
                    database=Config.POSTGRES_DATABASE,
                    user=Config.POSTGRES_USER,
                    password=Config.POSTGRES_PASSWORD,
                    connect_timeout=10
                )
            self.connection.autocommit = False
            self.cursor = self.connection.cursor(cursor_factory=psycopg2.extras.DictCursor)
            self._ensure_table_exists()
            logger.info('Connected to PostgreSQL')
        except psycopg2.Error as e:
            logger.error(f'Failed to connect to PostgreSQL: {e}')
            raise PersistenceError(f'Failed to connect to PostgreSQL: {e}') from e

    def _ensure_table_exists(self):
        """Create tokens table if it doesn't exist."""
        create_table_sql = """
        CREATE TABLE IF NOT EXISTS tokens (
            id BIGSERIAL PRIMARY KEY,
            contract_address VARCHAR(42) NOT NULL,
            name VARCHAR(255) NOT NULL,
            symbol VARCHAR(64) NOT NULL,
            creator_address VARCHAR(42),
            category VARCHAR(16) NOT NULL DEFAULT 'meme',
            decimals INTEGER NOT NULL DEFAULT 18,
            total_supply NUMERIC(78, 0) NOT NULL DEFAULT 0,
            description TEXT,
            dex_screener_url TEXT,
            price DOUBLE PRECISION DEFAULT 0,
            market_cap DOUBLE PRECISION DEFAULT 0,
            volume_24h DOUBLE PRECISION DEFAULT 0,
            daily_change DOUBLE PRECISION DEFAULT 0,
            holders INTEGER,
            liquidity DOUBLE PRECISION,
            has_valid_market_cap BOOLEAN NOT NULL DEFAULT FALSE,
            price_source VARCHAR(32),
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            last_price_update TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CONSTRAINT unique_token_address UNIQUE (contract_address)
        );

        CREATE INDEX IF NOT EXISTS idx_tokens_is_active ON tokens(is_active);
        CREATE INDEX IF NOT EXISTS idx_tokens_category ON tokens(category);
        CREATE INDEX IF NOT EXISTS idx_tokens_market_cap ON tokens(market_cap DESC);
        """
        try:
            self.cursor.execute(create_table_sql)
            self.connection.commit()
            logger.info('Ensured tokens table exists')
        except psycopg2.Error as e:
            logger.error(f'Failed to create tokens table: {e}')
            self.connection.rollback()
            raise

    def _reconnect(self):
        logger.warning('Reconnecting to PostgreSQL...')
        self.close()
        self._connect()

    @staticmethod
    def build_upsert(columns: List[str]) -> str:
        """
        INSERT ... ON CONFLICT statement for the given columns.

        Identity columns are guarded with COALESCE so an existing value always
        wins over the incoming one.
        """
        assignments = []
        for column in columns:
            if column in IMMUTABLE_FIELDS:
                assignments.append(f'{column} = COALESCE(tokens.{column}, EXCLUDED.{column})')
            else:
                assignments.append(f'{column} = EXCLUDED.{column}')
        assignments.append('updated_at = EXCLUDED.updated_at')

        all_columns = ['contract_address'] + columns + ['updated_at']
        placeholders = ', '.join(['%s'] * len(all_columns))
        return (
            f"INSERT INTO tokens ({', '.join(all_columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT (contract_address) DO UPDATE SET {', '.join(assignments)} "
            f"RETURNING *"
        )

    @staticmethod
    def build_insert(columns: List[str]) -> str:
        """INSERT that leaves an existing row alone; returns nothing on conflict."""
        all_columns = ['contract_address'] + columns + ['updated_at']
        placeholders = ', '.join(['%s'] * len(all_columns))
        return (
            f"INSERT INTO tokens ({', '.join(all_columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT (contract_address) DO NOTHING "
            f"RETURNING *"
        )

    def _params(self, address: str, fields: Dict[str, Any]):
        unknown = set(fields) - set(TOKEN_COLUMNS)
        if unknown:
            raise PersistenceError(f'Unknown token columns: {sorted(unknown)}')
        columns = [c for c in TOKEN_COLUMNS if c in fields]
        params = [address.lower()] + [fields[c] for c in columns] + [utcnow()]
        return columns, params

    def upsert_by_address(self, address: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        columns, params = self._params(address, fields)
        query = self.build_upsert(columns)

        with self._lock:
            try:
                self.cursor.execute(query, params)
                row = self.cursor.fetchone()
                self.connection.commit()
            except psycopg2.InterfaceError as e:
                # Connection dropped under us; next call starts fresh
                logger.error(f'PostgreSQL connection lost during upsert of {address}: {e}')
                self._reconnect()
                raise PersistenceError(f'Upsert of {address} failed: {e}') from e
            except psycopg2.Error as e:
                logger.error(f'Failed to upsert token {address}: {e}')
                self.connection.rollback()
                raise PersistenceError(f'Upsert of {address} failed: {e}') from e
        return dict(row) if row else {}

    def insert_if_absent(self, address: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        columns, params = self._params(address, fields)
        query = self.build_insert(columns)

        with self._lock:
            try:
                self.cursor.execute(query, params)
                row = self.cursor.fetchone()
                if row is None:
                    logger.debug(f'Token {address} already stored, leaving row untouched')
                    self.cursor.execute('SELECT * FROM tokens WHERE contract_address = %s', (address.lower(),))
                    row = self.cursor.fetchone()
                self.connection.commit()
            except psycopg2.InterfaceError as e:
                logger.error(f'PostgreSQL connection lost during insert of {address}: {e}')
                self._reconnect()
                raise PersistenceError(f'Insert of {address} failed: {e}') from e
            except psycopg2.Error as e:
                logger.error(f'Failed to insert token {address}: {e}')
                self.connection.rollback()
                raise PersistenceError(f'Insert of {address} failed: {e}') from e
        return dict(row) if row else {}

    def list_active(self) -> List[Token]:
        query = 'SELECT * FROM tokens WHERE is_active = TRUE ORDER BY created_at'
        with self._lock:
            try:
                self.cursor.execute(query)
                rows = self.cursor.fetchall()
                self.connection.commit()
            except psycopg2.Error as e:
                logger.error(f'Failed to list active tokens: {e}')
                self.connection.rollback()
                raise PersistenceError(f'Listing active tokens failed: {e}') from e
        return [Token.from_row(dict(r)) for r in rows]

    def get(self, address: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            try:
                self.cursor.execute('SELECT * FROM tokens WHERE contract_address = %s', (address.lower(),))
                row = self.cursor.fetchone()
                self.connection.commit()
            except psycopg2.Error as e:
                self.connection.rollback()
                raise PersistenceError(f'Lookup of {address} failed: {e}') from e
        return dict(row) if row else None

    def ping(self) -> bool:
        with self._lock:
            try:
                self.cursor.execute('SELECT 1')
                self.cursor.fetchone()
                self.connection.commit()
                return True
            except psycopg2.Error as e:
                logger.warning(f'PostgreSQL ping failed: {e}')
                return False

    def close(self):
        """Close database connection."""
        if self.cursor:
            try:
                self.cursor.close()
            except psycopg2.Error:
                pass
        if self.connection:
            try:
                self.connection.close()
            except psycopg2.Error:
                pass
            logger.info('PostgreSQL connection closed')
        self.cursor = None
        self.connection = None
