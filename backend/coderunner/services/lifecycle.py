"""Job state machine, result store and completion waits.

    queued -> active -> completed | failed -> (row deleted)

Every transition is a single UPDATE guarded by the expected current state,
so concurrent writers cannot both win. Waiters hold futures in a
``CompletionHub``; the hub is fed directly by workers in this process and by
the Redis event channel for workers running elsewhere.
"""
import asyncio, json, logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from sqlalchemy import select, update, delete
from coderunner.core.errors import WaitTimeoutError, JobNotFoundError, JobBusyError
from coderunner.db.enums import JobState, FailureKind, Language
from coderunner.db.models import Job, gen_id
from coderunner.queues.partition import QueuePartition
from coderunner.queues.redis import EVENT_PREFIX
from coderunner.services.sandbox import RunResult

log = logging.getLogger("lifecycle")

TERMINAL_STATES = (JobState.completed.value, JobState.failed.value)


def utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobView:
    id: str
    language: Language
    state: JobState
    output: str | None = None
    execution_time_ms: int | None = None
    failure_kind: FailureKind | None = None
    failure_detail: str | None = None

    @classmethod
    def from_row(cls, row: Job) -> "JobView":
        return cls(
            id=row.id,
            language=Language(row.language),
            state=JobState(row.state),
            output=row.output,
            execution_time_ms=row.execution_time_ms,
            failure_kind=FailureKind(row.failure_kind) if row.failure_kind else None,
            failure_detail=row.failure_detail,
        )

    @classmethod
    def from_event(cls, data: dict) -> "JobView":
        kind = data.get("failure_kind")
        return cls(
            id=data["id"],
            language=Language(data["language"]),
            state=JobState(data["state"]),
            output=data.get("output"),
            execution_time_ms=data.get("execution_time_ms"),
            failure_kind=FailureKind(kind) if kind else None,
            failure_detail=data.get("failure_detail"),
        )

    def to_event(self) -> dict:
        return {"type": "update", **asdict(self)}


class CompletionHub:
    """One future per waiter, all resolved by the job's terminal transition."""

    def __init__(self):
        self._waiters: dict[str, set[asyncio.Future]] = {}

    def register(self, job_id: str) -> asyncio.Future:
        fut = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, set()).add(fut)
        return fut

    def discard(self, job_id: str, fut: asyncio.Future):
        waiters = self._waiters.get(job_id)
        if waiters is None:
            return
        waiters.discard(fut)
        if not waiters:
            del self._waiters[job_id]

    def resolve(self, view: JobView):
        for fut in self._waiters.pop(view.id, ()):
            if not fut.done():
                fut.set_result(view)

    def waiting(self, job_id: str) -> int:
        return len(self._waiters.get(job_id, ()))


class JobCoordinator:
    def __init__(
        self,
        session_factory,
        redis,
        partitions: dict[Language, QueuePartition],
        hub: CompletionHub | None = None,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.partitions = partitions
        self.hub = hub or CompletionHub()

    async def create(self, language: Language, source_code: str, stdin: str, client_id: str) -> Job:
        job = Job(
            id=gen_id(),
            language=language.value,
            source_code=source_code,
            stdin=stdin or "",
            client_id=client_id,
            state=JobState.queued.value,
        )
        async with self.session_factory() as db:
            db.add(job)
            await db.commit()
        return job

    async def attach_handle(self, job_id: str, handle: str):
        async with self.session_factory() as db:
            await db.execute(update(Job).where(Job.id == job_id).values(handle=handle))
            await db.commit()

    async def activate(self, job_id: str, worker_id: str) -> Job | None:
        """queued -> active. Returns the job, or None if it was not queued."""
        won = await self._transition(
            job_id,
            JobState.queued,
            state=JobState.active.value,
            claimed_by=worker_id,
            started_at=utcnow(),
        )
        if not won:
            return None
        async with self.session_factory() as db:
            return await db.get(Job, job_id)

    async def complete(self, job_id: str, worker_id: str, result: RunResult) -> bool:
        won = await self._transition(
            job_id,
            JobState.active,
            worker_id=worker_id,
            state=JobState.completed.value,
            output=result.output,
            execution_time_ms=result.execution_time_ms,
            claimed_by=None,
            finished_at=utcnow(),
        )
        if won:
            await self._announce(job_id)
        return won

    async def fail(
        self, job_id: str, kind: FailureKind, detail: str, worker_id: str | None = None
    ) -> bool:
        won = await self._transition(
            job_id,
            JobState.active,
            worker_id=worker_id,
            state=JobState.failed.value,
            failure_kind=kind.value,
            failure_detail=detail,
            claimed_by=None,
            finished_at=utcnow(),
        )
        if won:
            await self._announce(job_id)
        return won

    async def fail_abandoned(self, job_id: str) -> bool:
        return await self.fail(job_id, FailureKind.worker_lost, "worker stopped before finishing")

    async def get_state(self, job_id: str) -> JobView | None:
        async with self.session_factory() as db:
            row = await db.get(Job, job_id)
            return JobView.from_row(row) if row else None

    async def await_completion(self, job_id: str, timeout: float) -> JobView:
        """Wait for the terminal state without polling.

        A timeout only ends the wait; the job keeps running and stays
        retrievable.
        """
        # register before reading so a transition in between is not missed
        fut = self.hub.register(job_id)
        try:
            view = await self.get_state(job_id)
            if view is None:
                raise JobNotFoundError(job_id)
            if view.state.terminal:
                return view
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            raise WaitTimeoutError(job_id, timeout) from None
        finally:
            self.hub.discard(job_id, fut)

    async def remove(self, job_id: str) -> bool:
        """Delete everything stored for a finished job. Safe to repeat.

        Raises ``JobBusyError`` while the job is still queued or active.
        """
        async with self.session_factory() as db:
            res = await db.execute(
                select(Job.handle, Job.language, Job.state).where(Job.id == job_id)
            )
            found = res.first()
            if found is None:
                return False
            handle, language, state = found
            res = await db.execute(
                delete(Job).where(Job.id == job_id, Job.state.in_(TERMINAL_STATES))
            )
            deleted = res.rowcount == 1
            await db.commit()
        if not deleted:
            if state in TERMINAL_STATES:
                # purged by someone else in between
                return False
            raise JobBusyError(job_id, state)
        await self._drop_entry(Language(language), handle)
        log.info("job removed", extra={"job_id": job_id, "language": language})
        return True

    async def discard(self, job_id: str):
        """Roll back a submission whose queue entry could not be written."""
        async with self.session_factory() as db:
            res = await db.execute(
                select(Job.handle, Job.language).where(
                    Job.id == job_id, Job.state == JobState.queued.value
                )
            )
            found = res.first()
            await db.execute(
                delete(Job).where(Job.id == job_id, Job.state == JobState.queued.value)
            )
            await db.commit()
        if found is not None:
            await self._drop_entry(Language(found.language), found.handle)

    async def _drop_entry(self, language: Language, handle: str | None):
        if handle:
            await self.partitions[language].remove(handle)

    async def purge_expired(self, ttl_seconds: int, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - timedelta(seconds=ttl_seconds)
        async with self.session_factory() as db:
            res = await db.execute(
                select(Job.id).where(
                    Job.state.in_(TERMINAL_STATES),
                    Job.finished_at < cutoff,
                )
            )
            expired = list(res.scalars().all())
        for job_id in expired:
            await self.remove(job_id)
        if expired:
            log.info("purged %d expired jobs", len(expired))
        return len(expired)

    async def listen(self, stop: asyncio.Event):
        """Feed the hub from terminal events published by other processes."""
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(f"{EVENT_PREFIX}*")
        try:
            while not stop.is_set():
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if msg is None or msg["type"] != "pmessage":
                    continue
                try:
                    view = JobView.from_event(json.loads(msg["data"]))
                except (ValueError, KeyError):
                    log.warning("ignoring malformed job event on %s", msg["channel"])
                    continue
                self.hub.resolve(view)
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()

    async def _transition(self, job_id: str, expected: JobState, worker_id: str | None = None, **values) -> bool:
        stmt = update(Job).where(Job.id == job_id, Job.state == expected.value)
        if worker_id is not None:
            stmt = stmt.where(Job.claimed_by == worker_id)
        async with self.session_factory() as db:
            res = await db.execute(stmt.values(**values))
            won = res.rowcount == 1
            await db.commit()
        if won:
            log.info(
                "job %s -> %s",
                expected.value,
                values["state"],
                extra={"job_id": job_id, "worker_id": worker_id},
            )
        return won

    async def _announce(self, job_id: str):
        view = await self.get_state(job_id)
        if view is None:
            return
        self.hub.resolve(view)
        try:
            await self.redis.publish(
                EVENT_PREFIX + job_id, json.dumps(view.to_event()).encode()
            )
        except Exception:
            # local waiters are already resolved; remote ones can fall back to get_state
            log.warning("failed to publish job event", extra={"job_id": job_id}, exc_info=True)
