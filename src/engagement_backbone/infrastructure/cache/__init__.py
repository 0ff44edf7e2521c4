"""
Cache Module

Provides namespaced caching (broker primary + in-memory fallback).
"""

from .cache_service import CacheService
from .distributed_cache import DistributedCache

__all__ = [
    "CacheService",
    "DistributedCache",
]
