import asyncio
import json

import httpx
import pytest

from backend.errors import BackendUnavailableError, ErrorKind
from backend.health import HealthProbe
from backend.local_client import LocalBackendClient
from backend.model import GenerationContext, GenerationRequest, RemoteHttpResponse
from backend.orchestrator import Orchestrator, OrchestratorState
from backend.timeouts import TimeoutPolicy
from tests.fakes import FakeConnection, FakeTransport, event

BASE = "http://gpu.local:8000"
CONTEXT = GenerationContext(user_id="42", channel_id="7")
FAST_MONITOR = {"poll_interval": 0.001, "close_delay": 0, "reconnect_delay": 0.001}

REMOTE_OK = {
    "prompt": "a cat",
    "image": "https://cdn.example.com/cat.png",
    "model": "flux",
    "provider": "replicate",
    "type": "url",
    "params": {"size": "1024x1024"},
    "requestId": "remote-1",
}


DEFAULT_MODELS = {
    "broken": {"error": "failed to load"},
    "sd15": {"model_name": "SD 1.5", "device": "cuda"},
}


class FakeLocalBackend:
    """Server local giả cho httpx.MockTransport. Mỗi lần submit cấp job-1, job-2, ..."""

    def __init__(self, online=True, submit_status=200, task_status="processing", error=None, models=None):
        self.online = online
        self.submit_status = submit_status
        self.task_status = task_status
        self.statuses = {}
        self.error = error
        self.models = DEFAULT_MODELS if models is None else models
        self.submitted = []
        self.polls = 0
        self.image_requested = asyncio.Event()
        # clear() để giữ request /image/ cho tới khi set() lại
        self.image_gate = asyncio.Event()
        self.image_gate.set()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/health":
            return httpx.Response(200 if self.online else 503)
        if path == "/models":
            return httpx.Response(200, json=self.models)
        if path == "/generate":
            self.submitted.append(json.loads(request.content))
            if self.submit_status != 200:
                return httpx.Response(self.submit_status, text="queue full")
            return httpx.Response(200, json={"task_id": f"job-{len(self.submitted)}", "status": "pending"})
        if path.startswith("/task/"):
            self.polls += 1
            job_id = path.rsplit("/", 1)[1]
            status = self.statuses.get(job_id, self.task_status)
            body = event(status, 100 if status == "completed" else 40, job_id=job_id)
            if status == "completed":
                body["output_paths"] = ["out/1.png"]
            if self.error:
                body["error"] = self.error
            return httpx.Response(200, json=body)
        if path.startswith("/image/"):
            self.image_requested.set()
            await self.image_gate.wait()
            return httpx.Response(200, content=b"\x89PNG-local", headers={"Content-Type": "image/png"})
        return httpx.Response(404)


class FakeRemote:
    def __init__(self, body=None, error=None):
        self.body = body if body is not None else REMOTE_OK
        self.error = error
        self.calls = []

    async def imagine(self, prompt, context):
        self.calls.append((prompt, context))
        if self.error is not None:
            raise self.error
        return RemoteHttpResponse(status=200, content_type="application/json", body=json.dumps(self.body).encode())


class FakeCanceller:
    def __init__(self, acknowledged=True):
        self.acknowledged = acknowledged
        self.calls = []

    async def cancel(self, job_id):
        self.calls.append(job_id)
        return self.acknowledged


def make_orchestrator(http, remote=None, canceller=None, transport=None, policy=None, with_local=True):
    local = LocalBackendClient(BASE, http=http) if with_local else None
    return Orchestrator(
        HealthProbe(ttl=30, min_interval=5),
        local=local,
        remote=remote,
        canceller=canceller,
        timeout_policy=policy,
        stream_transport=transport,
        monitor_options=FAST_MONITOR,
    )


def mock_http(backend):
    return httpx.AsyncClient(transport=httpx.MockTransport(backend))


async def wait_for(predicate, attempts=400):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


@pytest.mark.anyio
async def test_local_success_with_streamed_progress():
    backend = FakeLocalBackend()
    conn = FakeConnection([event("processing", 0.5), event("completed", 1.0, output_paths=["out/1.png"])])
    seen = []

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, remote=FakeRemote(), transport=FakeTransport(conn))
        handle = orch.start(GenerationRequest(prompt="a cat", model="sd15"), CONTEXT, progress=seen.append)
        result = await handle.result()

    assert result.ok
    assert result.image_buffer == b"\x89PNG-local"
    assert result.image_url == f"{BASE}/image/job-1/1"
    assert result.metadata.provider == "local-ai"
    # backend không gửi generation_time: dùng thời gian đo phía bot
    assert result.metadata.execution_time is not None
    assert result.metadata.execution_time >= 0
    assert [e.progress for e in seen] == [50, 100]
    assert handle.state == OrchestratorState.SUCCEEDED
    assert handle.history == [
        OrchestratorState.IDLE,
        OrchestratorState.PROBING_HEALTH,
        OrchestratorState.SUBMITTING_LOCAL,
        OrchestratorState.AWAITING_LOCAL,
        OrchestratorState.SUCCEEDED,
    ]
    assert orch.active_jobs() == []
    assert len(orch.waits) == 0


@pytest.mark.anyio
async def test_auto_model_resolves_to_first_available_local_model():
    backend = FakeLocalBackend(task_status="completed")
    async with mock_http(backend) as http:
        orch = make_orchestrator(http)
        result = await orch.generate(GenerationRequest(prompt="a cat"), CONTEXT)

    assert result.ok
    assert backend.submitted[0]["model"] == "sd15"


@pytest.mark.anyio
async def test_submit_failure_falls_back_to_remote_exactly_once():
    backend = FakeLocalBackend(submit_status=503)
    remote = FakeRemote()
    canceller = FakeCanceller()

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, remote=remote, canceller=canceller)
        handle = orch.start(GenerationRequest(prompt="a cat", model="sd15"), CONTEXT)
        result = await handle.result()

    assert result.ok
    assert result.image_url == "https://cdn.example.com/cat.png"
    assert len(remote.calls) == 1
    assert canceller.calls == []
    assert OrchestratorState.CALLING_REMOTE in handle.history
    assert OrchestratorState.AWAITING_LOCAL not in handle.history


@pytest.mark.anyio
async def test_offline_local_goes_straight_to_remote():
    backend = FakeLocalBackend(online=False)
    remote = FakeRemote()

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, remote=remote)
        result = await orch.generate(GenerationRequest(prompt="a cat"), CONTEXT)

    assert result.ok
    assert backend.submitted == []
    assert remote.calls == [("a cat", CONTEXT)]


@pytest.mark.anyio
async def test_accepted_job_failure_does_not_fall_back():
    backend = FakeLocalBackend(task_status="failed", error="CUDA out of memory")
    remote = FakeRemote()

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, remote=remote)
        result = await orch.generate(GenerationRequest(prompt="a cat", model="sd15"), CONTEXT)

    assert not result.ok
    assert result.kind == ErrorKind.RESOURCE_EXHAUSTED
    assert result.metadata.request_id == "job-1"
    assert remote.calls == []


@pytest.mark.anyio
async def test_cancel_wins_over_late_completion():
    backend = FakeLocalBackend(task_status="processing")
    canceller = FakeCanceller()

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, remote=FakeRemote(), canceller=canceller)
        handle = orch.start(GenerationRequest(prompt="a cat", model="sd15"), CONTEXT)
        await wait_for(lambda: handle.job_id is not None and backend.polls > 0)

        assert await handle.cancel() is True
        backend.task_status = "completed"
        result = await handle.result()

    assert not result.ok
    assert result.kind == ErrorKind.CANCELLED
    assert handle.state == OrchestratorState.CANCELLED
    assert canceller.calls == ["job-1"]
    assert len(orch.waits) == 0


@pytest.mark.anyio
async def test_cancel_force_stops_open_stream():
    backend = FakeLocalBackend()
    conn = FakeConnection([event("processing", 10)], hold=True)
    seen = []

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, canceller=FakeCanceller(acknowledged=False), transport=FakeTransport(conn))
        handle = orch.start(GenerationRequest(prompt="a cat", model="sd15"), CONTEXT, progress=seen.append)
        await wait_for(lambda: bool(seen))

        assert await orch.cancel("job-1") is False
        result = await handle.result()

    assert result.kind == ErrorKind.CANCELLED
    assert conn.closed_with == 1001


@pytest.mark.anyio
async def test_cancel_before_submission_skips_every_backend():
    backend = FakeLocalBackend()
    remote = FakeRemote()

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, remote=remote)
        handle = orch.start(GenerationRequest(prompt="a cat"), CONTEXT)
        assert await handle.cancel() is False
        result = await handle.result()

    assert result.kind == ErrorKind.CANCELLED
    assert backend.submitted == []
    assert remote.calls == []


@pytest.mark.anyio
async def test_wait_timeout_is_reported_as_timeout():
    backend = FakeLocalBackend(task_status="processing")
    policy = TimeoutPolicy(base=0.05, per_step=0, per_megapixel=0, high_guidance=0, maximum=0.05)

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, remote=FakeRemote(), policy=policy)
        result = await orch.generate(GenerationRequest(prompt="a cat", model="sd15"), CONTEXT)

    assert result.kind == ErrorKind.TIMEOUT
    assert len(orch.waits) == 0


@pytest.mark.anyio
async def test_remote_network_error_becomes_failure():
    remote = FakeRemote(error=BackendUnavailableError("Remote webhook unreachable"))

    async with mock_http(FakeLocalBackend()) as http:
        orch = make_orchestrator(http, remote=remote, with_local=False)
        result = await orch.generate(GenerationRequest(prompt="a cat"), CONTEXT)

    assert result.kind == ErrorKind.NETWORK
    assert "unreachable" in result.reason


@pytest.mark.anyio
async def test_no_backend_available():
    async with mock_http(FakeLocalBackend(online=False)) as http:
        orch = make_orchestrator(http)
        result = await orch.generate(GenerationRequest(prompt="a cat"), CONTEXT)

    assert result.kind == ErrorKind.NETWORK


@pytest.mark.anyio
async def test_remote_policy_rejection_passes_through():
    remote = FakeRemote(body={"meta": {"reason": "Blocked by safety filter"}})

    async with mock_http(FakeLocalBackend(online=False)) as http:
        orch = make_orchestrator(http, remote=remote)
        handle = orch.start(GenerationRequest(prompt="a cat"), CONTEXT)
        result = await handle.result()

    assert result.kind == ErrorKind.CONTENT_POLICY
    assert handle.state == OrchestratorState.FAILED


@pytest.mark.anyio
async def test_auto_model_falls_back_when_no_local_model_is_available():
    backend = FakeLocalBackend(task_status="completed", models={"broken": {"error": "oom"}})
    async with mock_http(backend) as http:
        orch = make_orchestrator(http)
        result = await orch.generate(GenerationRequest(prompt="a cat"), CONTEXT)

    assert result.ok
    assert backend.submitted[0]["model"] == "stable-diffusion-v1.5"


@pytest.mark.anyio
async def test_cancel_during_image_download_discards_the_image():
    backend = FakeLocalBackend(task_status="completed")
    backend.image_gate.clear()
    canceller = FakeCanceller()

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, canceller=canceller)
        handle = orch.start(GenerationRequest(prompt="a cat", model="sd15"), CONTEXT)
        await asyncio.wait_for(backend.image_requested.wait(), 2)

        assert await handle.cancel() is True
        backend.image_gate.set()
        result = await handle.result()

    assert not result.ok
    assert result.kind == ErrorKind.CANCELLED
    assert handle.state == OrchestratorState.CANCELLED
    assert canceller.calls == ["job-1"]
    assert orch.active_jobs() == []


@pytest.mark.anyio
async def test_concurrent_generations_are_tracked_independently():
    backend = FakeLocalBackend(task_status="processing")
    canceller = FakeCanceller()

    async with mock_http(backend) as http:
        orch = make_orchestrator(http, canceller=canceller)
        first = orch.start(GenerationRequest(prompt="a cat", model="sd15"), CONTEXT)
        second = orch.start(GenerationRequest(prompt="a dog", model="sd15"), CONTEXT)
        await wait_for(lambda: first.job_id is not None and second.job_id is not None)

        assert {first.job_id, second.job_id} == {"job-1", "job-2"}
        assert sorted(orch.active_jobs()) == ["job-1", "job-2"]
        assert len(orch.waits) == 2

        finished, cancelled = (first, second) if first.job_id == "job-1" else (second, first)
        assert await orch.cancel("job-2") is True
        cancelled_result = await cancelled.result()
        # job kia vẫn đang chờ, không bị ảnh hưởng
        assert "job-1" in orch.waits
        assert finished.state == OrchestratorState.AWAITING_LOCAL

        backend.statuses["job-1"] = "completed"
        finished_result = await finished.result()

    assert cancelled_result.kind == ErrorKind.CANCELLED
    assert cancelled_result.metadata.request_id == "job-2"
    assert finished_result.ok
    assert finished_result.image_url == f"{BASE}/image/job-1/1"
    assert finished_result.metadata.request_id == "job-1"
    assert canceller.calls == ["job-2"]
    assert finished.monitor is not cancelled.monitor
    assert len(orch.waits) == 0
    assert orch.active_jobs() == []
