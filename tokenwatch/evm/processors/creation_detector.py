import logging
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from ...database.token_store import TokenStore
from ...errors import BlockUnavailableError, EvmRpcError, PersistenceError
from ...models import TokenCandidate, TokenMetadata, utc_from_timestamp
from ..rpc import EvmRpcClient
from .deduplicator import CandidateDeduplicator
from .metadata_resolver import EvmMetadataResolver

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = '0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef'
ZERO_TOPIC = '0x' + '0' * 64


def _hex_to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(value, 16)
    except (TypeError, ValueError):
        return None


def is_mint_log(log: Dict[str, Any]) -> bool:
    """Transfer event whose `from` is the zero address."""
    topics = log.get('topics') or []
    if len(topics) < 2:
        return False
    return topics[0].lower() == TRANSFER_TOPIC and topics[1].lower() == ZERO_TOPIC


class TokenCreationDetector:
    """
    Heuristic scan of one block for freshly deployed fungible tokens.

    A transaction qualifies when it creates a contract (`to` is null) or calls
    one of the configured factories. The candidate is the emitter of the first
    mint Transfer in the receipt, else the created contract. Misses tokens
    deployed through unknown factories and can pick up NFT mints; both are
    accepted for a monitor of this kind.
    """

    def __init__(
        self,
        rpc: EvmRpcClient,
        resolver: EvmMetadataResolver,
        store: TokenStore,
        factory_addresses: FrozenSet[str] = frozenset(),
        deduplicator: Optional[CandidateDeduplicator] = None,
        on_token_created: Optional[Callable[[TokenMetadata], None]] = None,
    ):
        self.rpc = rpc
        self.resolver = resolver
        self.store = store
        self.chain = rpc.chain
        self.factory_addresses = frozenset(a.lower() for a in factory_addresses)
        self.deduplicator = deduplicator or CandidateDeduplicator()
        self.on_token_created = on_token_created

    def _qualifies(self, tx: Dict[str, Any]) -> Optional[str]:
        to = tx.get('to')
        if not to:
            return 'contract_creation'
        if to.lower() in self.factory_addresses:
            return 'factory_mint'
        return None

    def candidate_from_receipt(self, tx: Dict[str, Any], receipt: Dict[str, Any], signal: str,
                               block_number: int, block_timestamp: Optional[int] = None) -> Optional[TokenCandidate]:
        if _hex_to_int(receipt.get('status')) == 0:
            logger.debug(f"[{self.chain}] Skipping reverted tx {tx.get('hash')}")
            return None

        address = None
        for log in receipt.get('logs') or []:
            if is_mint_log(log) and log.get('address'):
                address = log['address']
                break
        if address is None and signal == 'contract_creation':
            address = receipt.get('contractAddress')
        if not address:
            return None

        creator = tx.get('from')
        return TokenCandidate(
            contract_address=address.lower(),
            creator_address=creator.lower() if creator else None,
            tx_hash=tx.get('hash'),
            block_number=block_number,
            block_timestamp=block_timestamp,
            signal=signal,
        )

    def find_candidates(self, block_number: int) -> List[TokenCandidate]:
        try:
            block = self.rpc.get_block(block_number, full_transactions=True)
        except EvmRpcError as e:
            raise BlockUnavailableError(block_number, str(e)) from e
        if not block:
            raise BlockUnavailableError(block_number)

        timestamp = _hex_to_int(block.get('timestamp'))
        candidates = []
        for tx in block.get('transactions') or []:
            if not isinstance(tx, dict):
                continue
            signal = self._qualifies(tx)
            if signal is None:
                continue
            tx_hash = tx.get('hash')
            try:
                receipt = self.rpc.get_transaction_receipt(tx_hash)
            except EvmRpcError as e:
                logger.warning(f'[{self.chain}] Receipt for {tx_hash} in block {block_number} unavailable: {e}')
                continue
            if not receipt:
                logger.warning(f'[{self.chain}] No receipt yet for {tx_hash} in block {block_number}')
                continue
            candidate = self.candidate_from_receipt(tx, receipt, signal, block_number, timestamp)
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    def process_candidate(self, candidate: TokenCandidate) -> Optional[TokenMetadata]:
        """Resolve and create one candidate. Returns the metadata when a token was stored."""
        address = candidate.contract_address
        if self.deduplicator.is_known(address):
            logger.debug(f'[{self.chain}] {address} already processed')
            return None

        metadata = self.resolver.resolve(address, candidate.creator_address)
        if metadata is None:
            return None

        created_at = utc_from_timestamp(candidate.block_timestamp) if candidate.block_timestamp else None
        try:
            self.store.create_token(metadata, chain=self.chain, created_at=created_at)
        except PersistenceError as e:
            logger.error(f'[{self.chain}] Failed to store token {address}: {e}')
            return None

        self.deduplicator.remember(address)
        logger.info(
            f'[{self.chain}] New token {metadata.name} ({metadata.symbol}) at {address} '
            f'[{metadata.category.value}] block {candidate.block_number}'
        )
        if self.on_token_created is not None:
            try:
                self.on_token_created(metadata)
            except Exception as e:
                logger.error(f'[{self.chain}] Token-created hook failed for {address}: {e}', exc_info=True)
        return metadata

    def scan_block(self, block_number: int) -> List[TokenMetadata]:
        """
        Scan one block and create every token found in it.

        Raises BlockUnavailableError when the block itself cannot be fetched;
        failures for a single transaction or candidate are logged and skipped.
        """
        created = []
        for candidate in self.find_candidates(block_number):
            try:
                metadata = self.process_candidate(candidate)
            except Exception as e:
                logger.error(f'[{self.chain}] Candidate {candidate.contract_address} failed: {e}', exc_info=True)
                continue
            if metadata is not None:
                created.append(metadata)
        return created
