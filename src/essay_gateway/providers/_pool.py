"""Ordered credential pool for API key rotation.

Usage:
    GEMINI_API_KEYS=key1,key2,key3

The pool itself holds no rotation state. Where to start is decided by the
shared index store; the pool only resolves positions modulo its size.
"""

from essay_gateway.errors import ConfigError


class CredentialPool:
    """Immutable, ordered list of API keys built for a single request."""

    def __init__(self, credentials):
        self._credentials = tuple(c.strip() for c in credentials if c and c.strip())
        if not self._credentials:
            raise ConfigError("no valid credentials")

    @classmethod
    def parse(cls, keys_str: str) -> "CredentialPool":
        """Comma-separated list -> pool. Blank entries are dropped."""
        return cls(keys_str.split(","))

    def at(self, index: int) -> str:
        return self._credentials[self.normalize(index)]

    def normalize(self, index: int) -> int:
        """Reduce any integer (stale, negative, from a larger pool) into [0, N)."""
        return index % len(self._credentials)

    def __len__(self):
        return len(self._credentials)

    def __iter__(self):
        return iter(self._credentials)
