"""
Process-wide lazy clients: the record store and the Redis task queue.
"""

import os
import logging
from typing import Optional

import redis

from . import queue as task_queue
from .store import RecordStore, build_store

logger = logging.getLogger(__name__)

# ── Lazy record store ─────────────────────────────────────────────────────────
_store: Optional[RecordStore] = None


def get_store() -> RecordStore:
    global _store
    if _store is None:
        _store = build_store()
    return _store


def set_store(store: Optional[RecordStore]):
    """Swap the process-wide store (local runs and tests)."""
    global _store
    _store = store


# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            client = redis.from_url(redis_url, decode_responses=False)
            try:
                client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
                _redis_client = client
            except redis.RedisError as e:
                logger.error(f"Redis connection failed: {e}")
    return _redis_client


def set_redis(client):
    global _redis_client
    _redis_client = client


def dispatch(handler: str, payload: dict, delay_seconds: float = 0, redis_client=None) -> str:
    """Enqueue a task for `handler` on the shared queue. Returns the task id."""
    r = redis_client or get_redis()
    if r is None:
        raise RuntimeError(f"REDIS_URL must be set to dispatch {handler} tasks")
    return task_queue.enqueue_task(r, handler, payload, delay_seconds=delay_seconds)
