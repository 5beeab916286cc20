import asyncio, logging, os, signal, socket
from dataclasses import dataclass
from pathlib import Path
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from coderunner.core.config import get_settings
from coderunner.core.errors import MalformedResultError
from coderunner.core.logging import setup_logging
from coderunner.db.enums import FailureKind, Language
from coderunner.db.models import Job
from coderunner.queues.partition import Claim, QueuePartition
from coderunner.services.backend import ExitKind, ExitOutcome
from coderunner.services.lifecycle import JobCoordinator
from coderunner.services.sandbox import RunResult, sandbox_directory

log = logging.getLogger("worker")


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    detail: str


def failure_for(outcome: ExitOutcome) -> Failure:
    if outcome.kind is ExitKind.timed_out:
        return Failure(FailureKind.timed_out, "time limit exceeded")
    if outcome.kind is ExitKind.invocation_error:
        return Failure(FailureKind.invocation_error, "execution backend unavailable")
    return Failure(
        FailureKind.execution_failed, f"program exited with status {outcome.returncode}"
    )


class Worker:
    """Claims one job at a time from a partition and runs it to a terminal state."""

    def __init__(
        self,
        worker_id: str,
        partition: QueuePartition,
        coordinator: JobCoordinator,
        backend,
        sandbox_root: str | Path,
        block_ms: int | None = None,
        idle_sleep_s: float = 0.2,
        backoff_s: float = 1.0,
    ):
        self.worker_id = worker_id
        self.backoff_s = backoff_s
        self.partition = partition
        self.coordinator = coordinator
        self.backend = backend
        self.sandbox_root = sandbox_root
        self.block_ms = block_ms
        self.idle_sleep_s = idle_sleep_s

    @property
    def _ctx(self) -> dict:
        return {"worker_id": self.worker_id, "language": self.partition.language.value}

    async def run(self, stop: asyncio.Event):
        log.info("worker started", extra=self._ctx)
        while not stop.is_set():
            try:
                claim = await self.partition.claim_next(self.worker_id, self.block_ms)
            except Exception:
                log.exception("claim failed, backing off", extra=self._ctx)
                await asyncio.sleep(self.backoff_s)
                continue
            if claim is None:
                if not self.block_ms:
                    await asyncio.sleep(self.idle_sleep_s)
                continue
            try:
                await self.process(claim)
            except (RedisError, OSError, SQLAlchemyError):
                # entry stays pending; the janitor recovers it after the lease
                log.exception("failed to report job", extra={"job_id": claim.job_id, **self._ctx})
            except Exception:
                log.exception("unexpected error in worker loop", extra={"job_id": claim.job_id, **self._ctx})
                await asyncio.sleep(self.backoff_s)
        log.info("worker stopped", extra=self._ctx)

    async def process(self, claim: Claim) -> bool:
        """Run one claimed job. Returns False when the job was not ours to run."""
        job = await self.coordinator.activate(claim.job_id, self.worker_id)
        if job is None:
            log.info("skipping job that is no longer queued", extra={"job_id": claim.job_id, **self._ctx})
            await self.partition.ack(claim.handle)
            return False

        try:
            outcome = await self.execute(job)
        except asyncio.CancelledError:
            await self.coordinator.fail(
                job.id, FailureKind.internal_error, "worker shut down", self.worker_id
            )
            await self.partition.ack(claim.handle)
            raise

        if isinstance(outcome, RunResult):
            await self.coordinator.complete(job.id, self.worker_id, outcome)
            log.info("job completed", extra={"job_id": job.id, **self._ctx})
        else:
            await self.coordinator.fail(job.id, outcome.kind, outcome.detail, self.worker_id)
            log.warning(
                "job failed: %s",
                outcome.detail,
                extra={"job_id": job.id, "kind": outcome.kind.value, **self._ctx},
            )
        await self.partition.ack(claim.handle)
        return True

    async def execute(self, job: Job) -> RunResult | Failure:
        language = Language(job.language)
        try:
            with sandbox_directory(self.sandbox_root, language, job.id) as box:
                box.write_inputs(job.source_code, job.stdin)
                exit_outcome = await self.backend.run(box.path, language)
                if exit_outcome.kind is ExitKind.normal_exit:
                    return box.read_result()
        except MalformedResultError as e:
            return Failure(FailureKind.malformed_result, str(e))
        except Exception:
            log.exception("unexpected error while running job", extra={"job_id": job.id, **self._ctx})
            return Failure(FailureKind.internal_error, "internal error while running job")

        if exit_outcome.stderr:
            log.info(
                "backend stderr: %s",
                exit_outcome.stderr,
                extra={"job_id": job.id, **self._ctx},
            )
        return failure_for(exit_outcome)


class WorkerPool:
    def __init__(
        self,
        language: Language,
        partition: QueuePartition,
        coordinator: JobCoordinator,
        backend,
        size: int,
        sandbox_root: str | Path,
        block_ms: int | None = None,
        idle_sleep_s: float = 0.2,
    ):
        if size < 1:
            raise ValueError("a worker pool needs at least one worker")
        self.language = language
        self.partition = partition
        prefix = f"{language.value}-{socket.gethostname()}-{os.getpid()}"
        self.workers = [
            Worker(
                f"{prefix}-{i}",
                partition,
                coordinator,
                backend,
                sandbox_root,
                block_ms=block_ms,
                idle_sleep_s=idle_sleep_s,
            )
            for i in range(size)
        ]
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        await self.partition.ensure_group()
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(w.run(self._stop), name=w.worker_id) for w in self.workers
        ]
        log.info("started %d workers", len(self.workers), extra={"language": self.language.value})

    async def stop(self, timeout: float):
        """Stop claiming, give in-flight jobs `timeout` seconds, then cancel."""
        self._stop.set()
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []


async def main():
    from coderunner.runtime import ExecutionRuntime

    setup_logging()
    settings = get_settings()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    runtime = ExecutionRuntime.from_settings(settings, run_workers=True)
    await runtime.start()
    try:
        await stop.wait()
        log.info("shutdown signal received, draining workers")
    finally:
        await runtime.stop()


if __name__ == "__main__":
    asyncio.run(main())
