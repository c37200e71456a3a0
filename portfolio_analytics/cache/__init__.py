"""Artifact cache with per-key status tracking and compute coordination."""

from .client import close_valkey_client, get_valkey_client, valkey_healthcheck
from .coordinator import CacheCoordinator, CachePolicy, CacheResult
from .distributed_lock import DistributedLock
from .entries import ArtifactKind, CacheEntry, CacheKey, CacheStatus
from .payloads import decode_payload, encode_payload
from .store import CacheEntryStore, MemoryCacheEntryStore


__all__ = [
    # Entries
    "ArtifactKind",
    "CacheEntry",
    "CacheKey",
    "CacheStatus",
    # Storage
    "CacheEntryStore",
    "MemoryCacheEntryStore",
    "decode_payload",
    "encode_payload",
    # Coordination
    "CacheCoordinator",
    "CachePolicy",
    "CacheResult",
    # Valkey
    "get_valkey_client",
    "close_valkey_client",
    "valkey_healthcheck",
    "DistributedLock",
]
