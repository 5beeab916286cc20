from pydantic import BaseModel
from coderunner.db.enums import JobState


class RunRequest(BaseModel):
    # optional here so missing fields are reported by admission as a 400
    code: str | None = None
    input: str | None = ""
    language: str | None = None


class JobAccepted(BaseModel):
    jobId: str
    language: str
    state: JobState


class RunOut(BaseModel):
    state: JobState
    output: str
    executionTime: str
    executionTimeMillis: int
    jobId: str
    language: str


class JobStatus(BaseModel):
    jobId: str
    language: str
    state: JobState
    output: str | None = None
    executionTimeMillis: int | None = None
    error: str | None = None
    detail: str | None = None
