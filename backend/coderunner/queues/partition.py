"""Per-language job queue on top of a Redis stream and consumer group.

The stream holds job ids in admission order. Claims go through XREADGROUP,
so each entry is delivered to exactly one consumer of the group; an entry
stays in the group's pending list until the worker acknowledges it.
"""
import json, logging
from dataclasses import dataclass
from redis.exceptions import ResponseError
from coderunner.db.enums import Language
from coderunner.queues.redis import stream_key, QUEUE_GROUP

log = logging.getLogger("queue")


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


@dataclass(frozen=True)
class Claim:
    handle: str
    job_id: str


class QueuePartition:
    def __init__(self, redis, language: Language, group: str = QUEUE_GROUP):
        self.redis = redis
        self.language = language
        self.stream = stream_key(language)
        self.group = group

    async def ensure_group(self):
        # id=0 so entries added while no group existed are still delivered
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def add(self, job_id: str) -> str:
        payload = {"job_id": job_id, "language": self.language.value}
        handle = await self.redis.xadd(
            self.stream, {b"json": json.dumps(payload).encode()}
        )
        log.info("job queued", extra={"job_id": job_id, "language": self.language.value})
        return _text(handle)

    async def claim_next(self, worker_id: str, block_ms: int | None = None) -> Claim | None:
        """Claim the oldest undelivered entry, or return None.

        ``block_ms=None`` returns immediately when the partition is empty.
        """
        resp = await self.redis.xreadgroup(
            self.group, worker_id, streams={self.stream: ">"}, count=1, block=block_ms
        )
        if not resp:
            return None
        for _stream, messages in resp:
            for msg_id, data in messages:
                claim = self._to_claim(msg_id, data)
                if claim is None:
                    await self.remove(_text(msg_id))
                return claim
        return None

    async def ack(self, handle: str):
        await self.redis.xack(self.stream, self.group, handle)

    async def remove(self, handle: str):
        await self.redis.xack(self.stream, self.group, handle)
        await self.redis.xdel(self.stream, handle)

    async def reclaim_idle(self, consumer: str, min_idle_ms: int) -> list[Claim]:
        """Take over entries delivered to some consumer but never acknowledged."""
        resp = await self.redis.xautoclaim(
            self.stream, self.group, consumer, min_idle_ms, start_id="0-0", count=100
        )
        claims = []
        for msg_id, data in resp[1]:
            claim = self._to_claim(msg_id, data)
            if claim is None:
                await self.remove(_text(msg_id))
                continue
            claims.append(claim)
        return claims

    async def depth(self) -> int:
        return await self.redis.xlen(self.stream)

    def _to_claim(self, msg_id, data) -> Claim | None:
        """Decode an entry; unreadable ones are logged and yield None."""
        try:
            payload = json.loads(data[b"json"].decode())
            return Claim(handle=_text(msg_id), job_id=str(payload["job_id"]))
        except (TypeError, KeyError, ValueError):
            log.warning(
                "dropping undecodable queue entry %s",
                _text(msg_id),
                extra={"language": self.language.value},
            )
            return None
