"""Process-wide context: one queue partition and one worker pool per language.

``start()`` brings up the pools and the background tasks; ``stop()`` drains
them (no new claims, in-flight jobs get ``DRAIN_TIMEOUT_S``) and releases
the Redis connection.
"""
import asyncio, logging
from coderunner.core.config import Settings, get_settings
from coderunner.db.enums import JobState, Language
from coderunner.queues.partition import Claim, QueuePartition
from coderunner.queues.redis import connect
from coderunner.services.admission import AdmissionController
from coderunner.services.backend import DockerBackend
from coderunner.services.lifecycle import JobCoordinator
from coderunner.services.sandbox import SandboxDirectory
from coderunner.worker.consumer import WorkerPool

log = logging.getLogger("runtime")

JANITOR_CONSUMER = "janitor"


class ExecutionRuntime:
    def __init__(
        self,
        redis,
        session_factory,
        backend,
        settings: Settings,
        run_workers: bool = True,
        listen_events: bool = True,
        owns_redis: bool = False,
    ):
        self.settings = settings
        self.redis = redis
        self.backend = backend
        self.partitions = {lang: QueuePartition(redis, lang) for lang in Language}
        self.coordinator = JobCoordinator(session_factory, redis, self.partitions)
        self.admission = AdmissionController(
            redis,
            self.coordinator,
            self.partitions,
            max_requests=settings.RATE_LIMIT_MAX,
            window_s=settings.RATE_LIMIT_WINDOW_S,
        )
        self.pools: dict[Language, WorkerPool] = {}
        if run_workers:
            self.pools = {
                lang: WorkerPool(
                    lang,
                    partition,
                    self.coordinator,
                    backend,
                    size=settings.WORKERS_PER_LANGUAGE,
                    sandbox_root=settings.SANDBOX_ROOT,
                    block_ms=settings.CLAIM_BLOCK_MS,
                    idle_sleep_s=settings.CLAIM_IDLE_SLEEP_S,
                )
                for lang, partition in self.partitions.items()
            }
        # a lease shorter than the execution limit would reap live jobs
        self.lease_ms = max(settings.CLAIM_LEASE_MS, settings.RUN_TIME_LIMIT_S * 2000)
        self.listen_events = listen_events
        self.owns_redis = owns_redis
        self._stop = asyncio.Event()
        self._background: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings | None = None, run_workers: bool | None = None):
        from coderunner.db.session import AsyncSessionLocal

        settings = settings or get_settings()
        return cls(
            connect(settings.REDIS_URL),
            AsyncSessionLocal,
            DockerBackend.from_settings(settings),
            settings,
            run_workers=settings.RUN_WORKERS if run_workers is None else run_workers,
            listen_events=settings.EVENT_LISTENER_ENABLED,
            owns_redis=True,
        )

    async def start(self):
        self._stop.clear()
        for partition in self.partitions.values():
            await partition.ensure_group()
        for pool in self.pools.values():
            await pool.start()
        if self.listen_events:
            self._background.append(
                asyncio.create_task(self.coordinator.listen(self._stop), name="job-events")
            )
        self._background.append(asyncio.create_task(self._janitor(), name="janitor"))
        log.info("runtime started with %d worker pools", len(self.pools))

    async def stop(self):
        self._stop.set()
        await asyncio.gather(
            *(pool.stop(self.settings.DRAIN_TIMEOUT_S) for pool in self.pools.values())
        )
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []
        if self.owns_redis:
            await self.redis.aclose()
        log.info("runtime stopped")

    async def sweep(self):
        """Drop expired results and recover entries whose worker disappeared."""
        await self.coordinator.purge_expired(self.settings.RESULT_TTL_SECONDS)
        for partition in self.partitions.values():
            for claim in await partition.reclaim_idle(JANITOR_CONSUMER, self.lease_ms):
                await self.recover(partition, claim)

    async def recover(self, partition: QueuePartition, claim: Claim):
        view = await self.coordinator.get_state(claim.job_id)
        if view is None or view.state.terminal:
            await partition.ack(claim.handle)
            return
        # whatever the lost worker left on disk must not outlive its claim
        SandboxDirectory(self.settings.SANDBOX_ROOT, partition.language, claim.job_id).destroy()
        if view.state is JobState.queued:
            # delivered but never activated, so nothing ran: hand it out again
            handle = await partition.add(claim.job_id)
            await self.coordinator.attach_handle(claim.job_id, handle)
            await partition.remove(claim.handle)
            log.warning("requeued job from a lost worker", extra={"job_id": claim.job_id})
        else:
            await self.coordinator.fail_abandoned(claim.job_id)
            await partition.ack(claim.handle)
            log.warning("job lost its worker", extra={"job_id": claim.job_id})

    async def _janitor(self):
        while not self._stop.is_set():
            try:
                await self.sweep()
            except Exception:
                log.exception("janitor sweep failed")
            try:
                await asyncio.wait_for(self._stop.wait(), self.settings.JANITOR_INTERVAL_S)
            except asyncio.TimeoutError:
                pass
