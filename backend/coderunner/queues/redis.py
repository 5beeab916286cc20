from redis import asyncio as aioredis
from coderunner.core.config import get_settings
from coderunner.db.enums import Language

settings = get_settings()


def connect(url: str | None = None):
    return aioredis.from_url(url or settings.REDIS_URL, decode_responses=False)


def stream_key(language: Language) -> str:
    return f"{settings.QUEUE_STREAM_PREFIX}{language.value}"


QUEUE_GROUP = settings.QUEUE_GROUP
EVENT_PREFIX = settings.EVENT_CHANNEL_PREFIX
QUOTA_PREFIX = settings.RATE_LIMIT_PREFIX
