import enum


class Language(str, enum.Enum):
    cpp = "cpp"
    python = "python"


class JobState(str, enum.Enum):
    queued = "queued"
    active = "active"
    completed = "completed"
    failed = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.completed, JobState.failed)


class FailureKind(str, enum.Enum):
    execution_failed = "execution_failed"
    timed_out = "timed_out"
    malformed_result = "malformed_result"
    invocation_error = "invocation_error"
    worker_lost = "worker_lost"
    internal_error = "internal_error"
