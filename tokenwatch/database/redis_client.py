import logging
from typing import Optional

import redis

from ..config import Config

logger = logging.getLogger(__name__)


class RedisConnectionError(Exception):
    """Raised when Redis is configured but cannot be reached at startup."""
    pass


class RedisCheckpointStore:
    """
    Optional Redis backing for the block watermark and candidate deduplication.

    Keys:
        {prefix}:{chain}:watermark          last fully scanned block
        {prefix}:{chain}:candidate:{addr}   seen marker, expires after the TTL

    Startup failures raise RedisConnectionError. After startup every read or
    write failure is logged and treated as a miss, so the pipeline keeps
    running on its in-memory state.
    """

    def __init__(self, chain: str, client: Optional[redis.Redis] = None, prefix: Optional[str] = None,
                 candidate_ttl: Optional[int] = None):
        self.chain = chain
        self.prefix = prefix or Config.CHECKPOINT_KEY_PREFIX
        self.candidate_ttl = candidate_ttl or Config.CANDIDATE_TTL_SECONDS

        if client is not None:
            self.client = client
            return

        logger.info("=" * 60)
        logger.info("REDIS CONNECTION")
        logger.info("=" * 60)
        logger.info(f"Connecting to Redis: {Config.REDIS_HOST}:{Config.REDIS_PORT}/{Config.REDIS_DB}")

        try:
            self.client = redis.Redis(
                host=Config.REDIS_HOST,
                port=Config.REDIS_PORT,
                db=Config.REDIS_DB,
                password=Config.REDIS_PASSWORD,
                decode_responses=True,
                socket_timeout=5.0
            )
            self.client.ping()
            logger.info(f"Connected to Redis at {Config.REDIS_HOST}:{Config.REDIS_PORT}/{Config.REDIS_DB}")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise RedisConnectionError(f"Failed to connect to Redis at {Config.REDIS_HOST}:{Config.REDIS_PORT}: {e}")

        logger.info("=" * 60)

    @property
    def watermark_key(self) -> str:
        return f"{self.prefix}:{self.chain}:watermark"

    def candidate_key(self, address: str) -> str:
        return f"{self.prefix}:{self.chain}:candidate:{address.lower()}"

    def load_watermark(self) -> Optional[int]:
        try:
            value = self.client.get(self.watermark_key)
        except redis.RedisError as e:
            logger.warning(f"Could not read watermark from Redis: {e}")
            return None
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Ignoring malformed watermark {value!r} in {self.watermark_key}")
            return None

    def save_watermark(self, block_number: int):
        try:
            self.client.set(self.watermark_key, int(block_number))
        except redis.RedisError as e:
            logger.warning(f"Could not persist watermark {block_number}: {e}")

    def is_candidate_known(self, address: str) -> bool:
        try:
            return bool(self.client.exists(self.candidate_key(address)))
        except redis.RedisError as e:
            logger.warning(f"Redis candidate lookup failed for {address}: {e}")
            return False

    def remember_candidate(self, address: str) -> bool:
        """SET NX with TTL. True when this call created the marker."""
        try:
            return bool(self.client.set(self.candidate_key(address), 1, nx=True, ex=self.candidate_ttl))
        except redis.RedisError as e:
            logger.warning(f"Redis candidate write failed for {address}: {e}")
            return False

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def close(self):
        try:
            self.client.close()
        except redis.RedisError as e:
            logger.debug(f"Error closing Redis client: {e}")
