import logging
import threading
from collections import OrderedDict
from typing import Optional

logger = logging.getLogger(__name__)


class CandidateDeduplicator:
    """
    Remembers candidate addresses that were already turned into tokens.

    Bounded LRU in process; when a checkpoint store is given, markers are also
    written to Redis with SET NX and a TTL so a restarted process skips them too.
    """

    def __init__(self, max_size: int = 10000, checkpoint=None):
        self.max_size = max_size
        self.checkpoint = checkpoint
        self._seen: 'OrderedDict[str, None]' = OrderedDict()
        self._lock = threading.Lock()

    def is_known(self, address: str) -> bool:
        key = address.lower()
        with self._lock:
            if key in self._seen:
                self._seen.move_to_end(key)
                return True
        if self.checkpoint is not None and self.checkpoint.is_candidate_known(key):
            self._remember_local(key)
            return True
        return False

    def remember(self, address: str):
        key = address.lower()
        self._remember_local(key)
        if self.checkpoint is not None:
            self.checkpoint.remember_candidate(key)

    def _remember_local(self, key: str):
        with self._lock:
            self._seen[key] = None
            self._seen.move_to_end(key)
            while len(self._seen) > self.max_size:
                evicted, _ = self._seen.popitem(last=False)
                logger.debug(f'Evicted {evicted} from candidate cache')

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, address: Optional[str]) -> bool:
        return bool(address) and address.lower() in self._seen
