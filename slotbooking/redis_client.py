# slotbooking/redis_client.py

from redis import Redis


def build_redis(redis_url: str) -> Redis:
    """Synchronous client used by the request path (event emission)."""
    return Redis.from_url(redis_url, decode_responses=True)
