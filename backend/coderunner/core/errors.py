"""Errors raised by the job pipeline.

Admission-time errors (validation, throttling) never touch a queue. Errors
that happen while a worker holds a job are not raised to callers at all:
they end the job in the failed state with a ``FailureKind`` tag.
"""


class RunnerError(Exception):
    pass


class JobValidationError(RunnerError):
    """The submission is malformed or names an unsupported language."""


class ThrottledError(RunnerError):
    def __init__(self, client_id: str, retry_after: int):
        super().__init__(f"Too many code execution requests, retry in {retry_after}s")
        self.client_id = client_id
        self.retry_after = retry_after


class WaitTimeoutError(RunnerError):
    """The wait deadline elapsed; the job itself keeps going."""

    def __init__(self, job_id: str, timeout: float):
        super().__init__(f"job {job_id} not finished after {timeout:g}s")
        self.job_id = job_id
        self.timeout = timeout


class MalformedResultError(RunnerError):
    """The backend exited normally but left no readable result files."""


class JobNotFoundError(RunnerError):
    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class JobBusyError(RunnerError):
    """Removal was asked for a job that has not reached a terminal state."""

    def __init__(self, job_id: str, state: str):
        super().__init__(f"job {job_id} is {state}; only finished jobs can be removed")
        self.job_id = job_id
        self.state = state
