class TokenwatchError(Exception):
    """Base class for every error raised by the pipeline."""
    pass


class ConfigurationError(TokenwatchError):
    """A required setting is missing or invalid. Fatal at startup."""
    pass


class EvmRpcError(TokenwatchError):
    pass


class BlockUnavailableError(EvmRpcError):
    """A whole block could not be fetched; the sweep retries it later."""

    def __init__(self, block_number: int, message: str = ''):
        self.block_number = block_number
        super().__init__(message or f'Block {block_number} is unavailable')


class PriceSourceError(TokenwatchError):
    """A price source answered with a non-2xx status or an unusable body."""

    def __init__(self, source: str, address: str, message: str, status=None):
        self.source = source
        self.address = address
        self.status = status
        super().__init__(f'[{source}] {address}: {message} (status={status})')


class PersistenceError(TokenwatchError):
    pass
