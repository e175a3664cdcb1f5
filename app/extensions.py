"""
Shared client instances — Redis and the rq queue built on it.

The Redis client is created lazily by redis-py (no connection until first
command), so importing this module is always safe even without a server.
"""
import logging
import redis

from app.config import REDIS_URL

logger = logging.getLogger('app.extensions')

# ── Redis ─────────────────────────────────────────────────────────────────────
redis_client = redis.from_url(REDIS_URL, decode_responses=True)

# ── rq ────────────────────────────────────────────────────────────────────────
# rq stores pickled job payloads, so it needs its own non-decoding connection.
_queue = None


def get_queue():
    """Return the default rq Queue (created on first use)."""
    global _queue
    if _queue is None:
        from rq import Queue
        _queue = Queue(connection=redis.from_url(REDIS_URL))
        logger.info("rq queue initialized on %s", REDIS_URL.split('@')[-1])
    return _queue
