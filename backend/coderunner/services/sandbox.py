"""Job-scoped directories used as the file contract with the runner images.

Layout of ``<root>/<language>/<job_id>``::

    main.cpp | main.py   code, written before the run
    input.txt            stdin payload, may be empty
    output.txt           stdout captured by the runner
    time.txt             elapsed milliseconds, written by the runner
"""
import logging, math, shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from coderunner.core.errors import MalformedResultError
from coderunner.db.enums import Language

log = logging.getLogger("sandbox")

SOURCE_FILES = {Language.cpp: "main.cpp", Language.python: "main.py"}
INPUT_FILE = "input.txt"
OUTPUT_FILE = "output.txt"
TIME_FILE = "time.txt"
MAX_OUTPUT_BYTES = 1 << 20


@dataclass(frozen=True)
class RunResult:
    output: str
    execution_time_ms: int


class SandboxDirectory:
    def __init__(self, root: str | Path, language: Language, job_id: str):
        self.language = language
        self.job_id = job_id
        self.path = Path(root).resolve() / language.value / job_id

    def create(self) -> "SandboxDirectory":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # a leftover directory means another run used this id; never share it
        self.path.mkdir()
        return self

    def write_inputs(self, source_code: str, stdin: str | None):
        (self.path / SOURCE_FILES[self.language]).write_text(source_code, encoding="utf-8")
        (self.path / INPUT_FILE).write_text(stdin or "", encoding="utf-8")

    def read_result(self) -> RunResult:
        output = self._read(OUTPUT_FILE)
        if len(output) > MAX_OUTPUT_BYTES:
            log.warning("output truncated", extra={"job_id": self.job_id})
            output = output[:MAX_OUTPUT_BYTES]
        raw_time = self._read(TIME_FILE).decode("utf-8", errors="replace").strip()
        try:
            elapsed = float(raw_time.removesuffix("ms").strip())
        except ValueError:
            raise MalformedResultError(f"{TIME_FILE} is not a number")
        if not math.isfinite(elapsed):
            raise MalformedResultError(f"{TIME_FILE} is not a finite number")
        if elapsed < 0:
            raise MalformedResultError(f"{TIME_FILE} is negative")
        return RunResult(
            output=output.decode("utf-8", errors="replace"),
            execution_time_ms=int(elapsed),
        )

    def _read(self, name: str) -> bytes:
        target = self.path / name
        # the runner controls these files; do not follow links out of the box
        if target.is_symlink():
            raise MalformedResultError(f"{name} is a symlink")
        try:
            with target.open("rb") as f:
                return f.read(MAX_OUTPUT_BYTES + 1)
        except OSError as e:
            raise MalformedResultError(f"{name} missing or unreadable") from e

    def destroy(self) -> bool:
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            return True
        except OSError:
            log.warning(
                "failed to clean up sandbox directory",
                extra={"job_id": self.job_id, "language": self.language.value},
                exc_info=True,
            )
            return False
        log.debug("sandbox directory removed", extra={"job_id": self.job_id})
        return True


@contextmanager
def sandbox_directory(root: str | Path, language: Language, job_id: str):
    """Create the job's directory and remove it on every exit path."""
    box = SandboxDirectory(root, language, job_id).create()
    try:
        yield box
    finally:
        box.destroy()
