from redis.asyncio import Redis
from redis.exceptions import RedisError
from .config import settings


# last known driver locations live here, see services.update_driver_location
redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)


async def ping() -> bool:
    try:
        return bool(await redis_client.ping())
    except (RedisError, OSError):
        return False


async def close():
    await redis_client.aclose()
