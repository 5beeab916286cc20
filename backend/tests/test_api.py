import httpx
import pytest
import pytest_asyncio

from conftest import EchoBackend, make_settings
from coderunner.core.security import create_access_token
from coderunner.db.enums import Language
from coderunner.main import app
from coderunner.runtime import ExecutionRuntime
from coderunner.services.backend import ExitKind


async def _client_for(runtime):
    app.state.runtime = runtime
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture
async def runtime(redis, session_factory, sandbox_root):
    rt = ExecutionRuntime(
        redis, session_factory, EchoBackend(), make_settings(sandbox_root), listen_events=False
    )
    await rt.start()
    yield rt
    await rt.stop()
    app.state.runtime = None


@pytest_asyncio.fixture
async def client(runtime):
    async with await _client_for(runtime) as c:
        yield c


async def _queued_total(runtime) -> int:
    return sum([await p.depth() for p in runtime.partitions.values()])


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
@pytest.mark.parametrize("language", ["python", "cpp"])
async def test_run_returns_output_and_removes_job(client, runtime, language):
    r = await client.post(
        "/run", json={"code": "echo", "input": "hello\n", "language": language}
    )
    assert r.status_code == 200
    body = r.json()
    assert body["state"] == "completed"
    assert body["output"] == "hello\n"
    assert body["executionTime"] == "7ms"
    assert body["executionTimeMillis"] == 7
    assert body["language"] == language
    assert await runtime.coordinator.get_state(body["jobId"]) is None


@pytest.mark.asyncio
async def test_unsupported_language_is_rejected(client, runtime, sandbox_root):
    r = await client.post("/run", json={"code": "int main(){}", "language": "cpp_extra"})
    assert r.status_code == 400
    assert "Unsupported language" in r.json()["error"]
    assert await _queued_total(runtime) == 0
    assert runtime.backend.calls == []
    assert list(sandbox_root.iterdir()) == []


@pytest.mark.asyncio
async def test_missing_code_is_rejected(client):
    r = await client.post("/run", json={"language": "python"})
    assert r.status_code == 400
    assert r.json()["error"] == "Missing required fields: code, language"


@pytest.mark.asyncio
async def test_throttled_client_gets_429(client, runtime):
    for i in range(3):
        r = await client.post("/jobs", json={"code": "x", "language": "python"})
        assert r.status_code == 202
    r = await client.post("/jobs", json={"code": "x", "language": "python"})
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1
    assert await runtime.partitions[Language.python].depth() == 3


@pytest.mark.asyncio
async def test_token_holders_have_their_own_quota(client):
    for _ in range(3):
        await client.post("/jobs", json={"code": "x", "language": "python"})
    headers = {"Authorization": f"Bearer {create_access_token('alice')}"}
    r = await client.post("/jobs", json={"code": "x", "language": "python"}, headers=headers)
    assert r.status_code == 202


@pytest.mark.asyncio
async def test_bad_token_is_rejected(client):
    headers = {"Authorization": "Bearer not-a-token"}
    r = await client.post("/jobs", json={"code": "x", "language": "python"}, headers=headers)
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_async_submit_status_and_delete(client, runtime):
    r = await client.post("/jobs", json={"code": "x", "input": "abc", "language": "cpp"})
    assert r.status_code == 202
    job_id = r.json()["jobId"]
    await runtime.coordinator.await_completion(job_id, timeout=5)

    r = await client.get(f"/jobs/cpp/{job_id}")
    assert r.status_code == 200
    assert r.json()["state"] == "completed"
    assert r.json()["output"] == "abc"

    assert (await client.get(f"/jobs/python/{job_id}")).status_code == 404
    assert (await client.get(f"/jobs/cpp_extra/{job_id}")).status_code == 400

    r = await client.delete(f"/jobs/{job_id}")
    assert r.json() == {"jobId": job_id, "removed": True}
    assert (await client.get(f"/jobs/cpp/{job_id}")).status_code == 404
    r = await client.delete(f"/jobs/{job_id}")
    assert r.json()["removed"] is False


@pytest.mark.asyncio
async def test_failed_run_reports_kind(client, runtime):
    runtime.backend.kind = ExitKind.non_zero_exit
    r = await client.post("/run", json={"code": "exit(1)", "language": "python"})
    assert r.status_code == 500
    body = r.json()
    assert body["kind"] == "execution_failed"
    assert "Traceback" not in body["detail"]
    assert await runtime.coordinator.get_state(body["jobId"]) is None


@pytest.mark.asyncio
async def test_sync_wait_timeout_keeps_job_until_it_finishes(redis, session_factory, sandbox_root):
    rt = ExecutionRuntime(
        redis,
        session_factory,
        EchoBackend(),
        make_settings(sandbox_root, SYNC_WAIT_TIMEOUT_S=0.1),
        run_workers=False,
        listen_events=False,
    )
    await rt.start()
    try:
        async with await _client_for(rt) as c:
            r = await c.post("/run", json={"code": "x", "language": "python"})
            assert r.status_code == 504
            job_id = r.json()["jobId"]
            status = await c.get(f"/jobs/python/{job_id}")
            assert status.json()["state"] == "queued"
            assert status.json().get("output") is None
            r = await c.delete(f"/jobs/{job_id}")
            assert r.status_code == 409
            assert r.json()["state"] == "queued"
            assert (await c.get(f"/jobs/python/{job_id}")).status_code == 200
    finally:
        await rt.stop()
        app.state.runtime = None
