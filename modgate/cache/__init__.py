"""Response cache with pluggable persistence."""

from .persistence import InMemoryKeyValueStore, KeyValueStore
from .store import MOD_TTL, SEARCH_TTL, CacheStore, mod_key

__all__ = [
    "CacheStore",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "MOD_TTL",
    "SEARCH_TTL",
    "mod_key",
]
