from .token_store import TokenStore, InMemoryTokenStore

# psycopg2 and redis are imported on demand by the supervisor so that
# TOKEN_STORE=memory runs do not open any connection.

__all__ = [
    'TokenStore',
    'InMemoryTokenStore',
]
