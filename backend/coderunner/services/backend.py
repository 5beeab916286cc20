"""Adapter around the Docker runner images.

The adapter never looks at submitted code. It starts one container bound to
the job's sandbox directory, with the same fixed limits for every job, and
waits for it under a supervisory deadline.
"""
import asyncio, enum, logging, subprocess, time, uuid
from dataclasses import dataclass
from pathlib import Path
from coderunner.core.config import Settings, get_settings
from coderunner.db.enums import Language

log = logging.getLogger("backend")

# `docker run` exits with 125 when the daemon itself fails
DOCKER_DAEMON_ERROR = 125
STDERR_TAIL = 2000


class ExitKind(str, enum.Enum):
    normal_exit = "normal_exit"
    non_zero_exit = "non_zero_exit"
    timed_out = "timed_out"
    invocation_error = "invocation_error"


@dataclass(frozen=True)
class ExitOutcome:
    kind: ExitKind
    returncode: int | None = None
    stderr: str = ""
    wall_ms: int = 0


@dataclass(frozen=True)
class ResourceLimits:
    cpus: str
    memory: str
    pids_limit: int
    network: str = "none"


class DockerBackend:
    def __init__(
        self,
        limits: ResourceLimits,
        images: dict[Language, str],
        time_limit_s: float,
        docker_bin: str = "docker",
    ):
        missing = [lang.value for lang in Language if lang not in images]
        if missing:
            raise ValueError(f"no runner image configured for {', '.join(missing)}")
        self.limits = limits
        self.images = images
        self.time_limit_s = time_limit_s
        self.docker_bin = docker_bin

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DockerBackend":
        settings = settings or get_settings()
        limits = ResourceLimits(
            cpus=settings.RUN_CPUS,
            memory=settings.RUN_MEMORY,
            pids_limit=settings.RUN_PIDS_LIMIT,
        )
        images = {
            lang: settings.RUNNER_IMAGES[lang.value]
            for lang in Language
            if lang.value in settings.RUNNER_IMAGES
        }
        return cls(limits, images, settings.RUN_TIME_LIMIT_S, settings.DOCKER_BIN)

    def build_command(self, sandbox_dir: str | Path, language: Language, container: str) -> list[str]:
        mount = f"{Path(sandbox_dir).resolve()}:/app"
        return [
            self.docker_bin,
            "run",
            "--rm",
            "--name",
            container,
            f"--cpus={self.limits.cpus}",
            f"--memory={self.limits.memory}",
            f"--memory-swap={self.limits.memory}",
            f"--pids-limit={self.limits.pids_limit}",
            f"--network={self.limits.network}",
            "-v",
            mount,
            self.images[language],
        ]

    async def run(self, sandbox_dir: str | Path, language: Language) -> ExitOutcome:
        container = f"sandbox-{uuid.uuid4().hex[:16]}"
        argv = self.build_command(sandbox_dir, language, container)
        start = time.monotonic()
        try:
            proc = await asyncio.to_thread(
                subprocess.run,
                argv,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.time_limit_s,
            )
        except subprocess.TimeoutExpired:
            # killing the CLI leaves the container running
            await self._force_remove(container)
            return ExitOutcome(
                ExitKind.timed_out,
                stderr=f"execution exceeded {self.time_limit_s:g}s",
                wall_ms=_elapsed_ms(start),
            )
        except OSError as e:
            log.error("could not start docker: %s", e, extra={"language": language.value})
            return ExitOutcome(ExitKind.invocation_error, stderr=str(e))
        except asyncio.CancelledError:
            # the CLI thread cannot be interrupted; stop the container instead
            await asyncio.shield(self._force_remove(container))
            raise

        stderr = (proc.stderr or "")[-STDERR_TAIL:]
        wall_ms = _elapsed_ms(start)
        if proc.returncode == 0:
            return ExitOutcome(ExitKind.normal_exit, 0, stderr, wall_ms)
        if proc.returncode == DOCKER_DAEMON_ERROR:
            return ExitOutcome(ExitKind.invocation_error, proc.returncode, stderr, wall_ms)
        return ExitOutcome(ExitKind.non_zero_exit, proc.returncode, stderr, wall_ms)

    async def _force_remove(self, container: str):
        try:
            await asyncio.to_thread(
                subprocess.run,
                [self.docker_bin, "rm", "-f", container],
                capture_output=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired):
            log.warning("failed to remove container %s", container, exc_info=True)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
