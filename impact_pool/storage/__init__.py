"""
impact_pool.storage — Durable key-value persistence.

Modules:
    store       — KeyValueStore interface, FileStore and RedisStore.
    repository  — Typed records on top of a store (activity, metrics,
                  status, allocations).
"""
