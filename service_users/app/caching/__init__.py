"""
Users caching package.

Read endpoints cache pre-serialized payloads under a shared tag; every
mutation drops the whole tag rather than individual keys.
"""

from .tag_cache import MemoryTagStore, RedisTagStore, TagAwareCache, create_tag_cache

__all__ = ["MemoryTagStore", "RedisTagStore", "TagAwareCache", "create_tag_cache"]
