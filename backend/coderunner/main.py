import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from coderunner.core.config import get_settings
from coderunner.core.errors import (
    JobBusyError,
    JobNotFoundError,
    JobValidationError,
    ThrottledError,
)
from coderunner.core.logging import setup_logging
from coderunner.api.routers import jobs as r_jobs
from coderunner.runtime import ExecutionRuntime

setup_logging()
settings = get_settings()
log = logging.getLogger("api")

app = FastAPI(title=settings.APP_NAME)
app.add_middleware(
    CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"]
)

app.include_router(r_jobs.router, prefix=settings.API_PREFIX)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    log.info("%s %s", request.method, request.url.path)
    return await call_next(request)


@app.exception_handler(JobValidationError)
async def on_validation_error(request: Request, exc: JobValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(ThrottledError)
async def on_throttled(request: Request, exc: ThrottledError):
    return JSONResponse(
        status_code=429,
        content={"error": str(exc)},
        headers={"Retry-After": str(exc.retry_after)},
    )


@app.exception_handler(JobNotFoundError)
async def on_not_found(request: Request, exc: JobNotFoundError):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(JobBusyError)
async def on_busy(request: Request, exc: JobBusyError):
    return JSONResponse(
        status_code=409, content={"error": str(exc), "jobId": exc.job_id, "state": exc.state}
    )


@app.get(f"{settings.API_PREFIX}/health")
async def health():
    return {"status": "ok"}


@app.on_event("startup")
async def start_runtime():
    # a runtime may be installed on app.state before startup
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = ExecutionRuntime.from_settings(settings)
    await app.state.runtime.start()


@app.on_event("shutdown")
async def stop_runtime():
    await app.state.runtime.stop()
