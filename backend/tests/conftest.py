from __future__ import annotations

from pathlib import Path

import fakeredis
import pytest
import pytest_asyncio

from coderunner.core.config import Settings
from coderunner.db.enums import Language
from coderunner.db.models import Base
from coderunner.db.session import make_engine, make_session_factory
from coderunner.queues.partition import QueuePartition
from coderunner.services.admission import AdmissionController
from coderunner.services.backend import ExitKind, ExitOutcome
from coderunner.services.lifecycle import JobCoordinator
from coderunner.services.sandbox import INPUT_FILE, OUTPUT_FILE, TIME_FILE


class EchoBackend:
    """Plays the runner images: the 'program' copies stdin to stdout.

    ``kind`` picks the exit outcome; ``write_result=False`` leaves the
    result files out even on a normal exit.
    """

    def __init__(self, kind: ExitKind = ExitKind.normal_exit, write_result: bool = True, elapsed: str = "7"):
        self.kind = kind
        self.write_result = write_result
        self.elapsed = elapsed
        self.calls: list[dict] = []

    async def run(self, sandbox_dir, language: Language) -> ExitOutcome:
        path = Path(sandbox_dir)
        self.calls.append(
            {
                "path": path,
                "language": language,
                "job_id": path.name,
                "existed": path.is_dir(),
                "files": sorted(p.name for p in path.iterdir()),
            }
        )
        if self.kind is ExitKind.normal_exit:
            if self.write_result:
                (path / OUTPUT_FILE).write_text((path / INPUT_FILE).read_text())
                (path / TIME_FILE).write_text(self.elapsed)
            return ExitOutcome(ExitKind.normal_exit, 0)
        if self.kind is ExitKind.non_zero_exit:
            return ExitOutcome(ExitKind.non_zero_exit, 1, "Traceback: boom")
        return ExitOutcome(self.kind)


class ExplodingBackend:
    async def run(self, sandbox_dir, language):
        raise RuntimeError("backend adapter bug")


@pytest_asyncio.fixture
async def redis():
    r = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
    yield r
    await r.aclose()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def partitions(redis):
    parts = {lang: QueuePartition(redis, lang) for lang in Language}
    for part in parts.values():
        await part.ensure_group()
    return parts


@pytest.fixture
def coordinator(session_factory, redis, partitions):
    return JobCoordinator(session_factory, redis, partitions)


@pytest.fixture
def admission(redis, coordinator, partitions):
    return AdmissionController(redis, coordinator, partitions, max_requests=3, window_s=60)


@pytest.fixture
def sandbox_root(tmp_path):
    root = tmp_path / "sandboxes"
    root.mkdir()
    return root


def make_settings(sandbox_root, **overrides) -> Settings:
    values = dict(
        CLAIM_BLOCK_MS=None,
        CLAIM_IDLE_SLEEP_S=0.01,
        SANDBOX_ROOT=str(sandbox_root),
        WORKERS_PER_LANGUAGE=1,
        RATE_LIMIT_MAX=3,
        SYNC_WAIT_TIMEOUT_S=5,
        JANITOR_INTERVAL_S=3600,
        DRAIN_TIMEOUT_S=1,
    )
    values.update(overrides)
    return Settings(**values)
