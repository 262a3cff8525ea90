from .creation_detector import TokenCreationDetector
from .deduplicator import CandidateDeduplicator
from .metadata_resolver import EvmMetadataResolver, classify

__all__ = [
    'TokenCreationDetector',
    'CandidateDeduplicator',
    'EvmMetadataResolver',
    'classify',
]
