"""Volatile key-value storage."""
from .kv_store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore, create_kv_store

__all__ = ["InMemoryKeyValueStore", "KeyValueStore", "RedisKeyValueStore", "create_kv_store"]
