"""
redis_client.py — Optional shared Redis connection.

Used by services.py (geocode cache) and auth.py (login and AI-endpoint rate
limiters). When REDIS_URL is unset or the server cannot be reached,
get_redis() returns None and each caller falls back to a per-process dict,
which is fine for a single worker in development.
"""

import logging
from urllib.parse import urlparse, urlunparse

import config

logger = logging.getLogger(__name__)

_redis_client = None
_redis_checked = False


def get_redis():
    """Return a connected Redis client, or None if Redis is unavailable.

    The connection attempt happens once per process.
    """
    global _redis_client, _redis_checked

    if _redis_checked:
        return _redis_client

    _redis_checked = True
    url = config.REDIS_URL
    if not url:
        logger.info('REDIS_URL not set; geocode cache and rate limiters are in-memory')
        return None

    try:
        import redis
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=3,
        )
        client.ping()
        logger.info('Redis connected: %s', _redact_url(url))
        _redis_client = client
    except Exception as exc:
        logger.warning('Redis unavailable (%s); using in-memory fallbacks', exc)
        _redis_client = None

    return _redis_client


def _redact_url(url: str) -> str:
    """Return the Redis URL with the password replaced by ***."""
    p = urlparse(url)
    if p.password:
        netloc = f'{p.username or ""}:***@{p.hostname}' + (f':{p.port}' if p.port else '')
        return urlunparse(p._replace(netloc=netloc))
    return url
