from redis import Redis

from .config import settings

# Connection is lazy: nothing is opened until the first command
redis_client = Redis.from_url(settings.redis_url, decode_responses=True)


# Dependency for FastAPI; overridden with None to run without the slot cache
def get_redis() -> Redis | None:
    return redis_client
