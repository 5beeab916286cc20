"""Admission: validation and per-client submission quota.

The quota is a sliding window kept in a Redis sorted set per client
(one member per accepted submission, scored by its timestamp). It does not
look at queue depth or worker availability.
"""
import logging, math, time
from uuid import uuid4
from coderunner.core.errors import JobValidationError, ThrottledError
from coderunner.db.enums import Language
from coderunner.db.models import Job
from coderunner.queues.partition import QueuePartition
from coderunner.queues.redis import QUOTA_PREFIX
from coderunner.services.lifecycle import JobCoordinator

log = logging.getLogger("admission")


def parse_language(language) -> Language:
    try:
        return Language(language)
    except ValueError:
        supported = ", ".join(lang.value for lang in Language)
        raise JobValidationError(f"Unsupported language. Supported: {supported}") from None


class AdmissionController:
    def __init__(
        self,
        redis,
        coordinator: JobCoordinator,
        partitions: dict[Language, QueuePartition],
        max_requests: int,
        window_s: int,
    ):
        self.redis = redis
        self.coordinator = coordinator
        self.partitions = partitions
        self.max_requests = max_requests
        self.window_s = window_s

    async def submit(
        self, client_id: str, language, source_code: str | None, stdin: str | None = None
    ) -> Job:
        if not source_code or not language:
            raise JobValidationError("Missing required fields: code, language")
        lang = parse_language(language)
        token = await self.consume_quota(client_id)

        try:
            job = await self.coordinator.create(lang, source_code, stdin or "", client_id)
        except Exception:
            await self.refund_quota(client_id, token)
            raise
        try:
            handle = await self.partitions[lang].add(job.id)
            await self.coordinator.attach_handle(job.id, handle)
        except Exception:
            log.exception("failed to enqueue job", extra={"job_id": job.id})
            await self.coordinator.discard(job.id)
            await self.refund_quota(client_id, token)
            raise
        job.handle = handle
        log.info(
            "new execution request",
            extra={"job_id": job.id, "language": lang.value, "client_id": client_id},
        )
        return job

    async def consume_quota(self, client_id: str) -> str:
        """Record one submission for the client and return its window token."""
        key = f"{QUOTA_PREFIX}{client_id}"
        now = time.time()
        token = f"{now:.6f}:{uuid4().hex}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now - self.window_s)
            pipe.zcard(key)
            pipe.zadd(key, {token: now})
            pipe.expire(key, self.window_s)
            results = await pipe.execute()
        used = results[1]
        if used < self.max_requests:
            return token
        await self.redis.zrem(key, token)
        retry_after = await self._retry_after(key, now)
        log.warning(
            "rate limit exceeded: %d/%d in %ds",
            used,
            self.max_requests,
            self.window_s,
            extra={"client_id": client_id},
        )
        raise ThrottledError(client_id, retry_after)

    async def refund_quota(self, client_id: str, token: str):
        try:
            await self.redis.zrem(f"{QUOTA_PREFIX}{client_id}", token)
        except Exception:
            log.warning("failed to refund quota", extra={"client_id": client_id}, exc_info=True)

    async def _retry_after(self, key: str, now: float) -> int:
        oldest = await self.redis.zrange(key, 0, 0, withscores=True)
        if not oldest:
            return 1
        _member, score = oldest[0]
        return max(1, math.ceil(score + self.window_s - now))
