from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from coderunner.api.deps import get_client_identity, get_runtime
from coderunner.core.errors import WaitTimeoutError
from coderunner.db.enums import JobState
from coderunner.runtime import ExecutionRuntime
from coderunner.schemas.job import JobAccepted, JobStatus, RunOut, RunRequest
from coderunner.services.admission import parse_language

router = APIRouter(tags=["jobs"])


@router.post("/run", response_model=RunOut)
async def run_code(
    payload: RunRequest,
    runtime: ExecutionRuntime = Depends(get_runtime),
    client_id: str = Depends(get_client_identity),
):
    job = await runtime.admission.submit(
        client_id, payload.language, payload.code, payload.input
    )
    try:
        view = await runtime.coordinator.await_completion(
            job.id, runtime.settings.SYNC_WAIT_TIMEOUT_S
        )
    except WaitTimeoutError:
        # the job keeps running; the client can poll or delete it by id
        return JSONResponse(
            status_code=504,
            content={"error": "Job did not finish in time", "jobId": job.id},
        )
    # result retrieved: drop the job to bound storage
    await runtime.coordinator.remove(job.id)
    if view.state is JobState.failed:
        return JSONResponse(
            status_code=500,
            content={
                "error": "Job failed",
                "kind": view.failure_kind.value,
                "detail": view.failure_detail,
                "jobId": job.id,
            },
        )
    return RunOut(
        state=view.state,
        output=view.output,
        executionTime=f"{view.execution_time_ms}ms",
        executionTimeMillis=view.execution_time_ms,
        jobId=job.id,
        language=view.language.value,
    )


@router.post("/jobs", response_model=JobAccepted, status_code=202)
async def submit_job(
    payload: RunRequest,
    runtime: ExecutionRuntime = Depends(get_runtime),
    client_id: str = Depends(get_client_identity),
):
    job = await runtime.admission.submit(
        client_id, payload.language, payload.code, payload.input
    )
    return JobAccepted(jobId=job.id, language=job.language, state=JobState.queued)


@router.get("/jobs/{language}/{job_id}", response_model=JobStatus)
async def get_job(
    language: str, job_id: str, runtime: ExecutionRuntime = Depends(get_runtime)
):
    lang = parse_language(language)
    view = await runtime.coordinator.get_state(job_id)
    if view is None or view.language is not lang:
        raise HTTPException(404, "job not found")
    status = JobStatus(jobId=view.id, language=view.language.value, state=view.state)
    if view.state is JobState.completed:
        status.output = view.output
        status.executionTimeMillis = view.execution_time_ms
    elif view.state is JobState.failed:
        status.error = view.failure_kind.value
        status.detail = view.failure_detail
    return status


@router.delete("/jobs/{job_id}")
async def delete_job(job_id: str, runtime: ExecutionRuntime = Depends(get_runtime)):
    removed = await runtime.coordinator.remove(job_id)
    return {"jobId": job_id, "removed": removed}
