# backend/orchestrator.py
import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import aiohttp
import httpx

from .cancellation import CancellationClient
from .catalog import FALLBACK_LOCAL_MODEL
from .errors import ErrorKind, GenerationCancelled, GenerationError
from .health import LOCAL_SERVICE, HealthProbe
from .local_client import LocalBackendClient
from .model import (
    GenerationContext,
    GenerationFailure,
    GenerationRequest,
    GenerationSuccess,
    ImageMetadata,
)
from .normalizer import failure, from_exception, local_metadata, local_success, normalize_remote
from .progress import (
    GOING_AWAY,
    NORMAL_CLOSURE,
    AiohttpStreamTransport,
    ProgressSink,
    ProgressStreamMonitor,
    StreamTransport,
)
from .remote_client import RemoteWebhookClient
from .timeouts import TimeoutPolicy, estimate_timeout
from .utils import gen_request_id, get_timestamp_ms
from .waits import PendingWaitTable

logger = logging.getLogger(__name__)

Result = Union[GenerationSuccess, GenerationFailure]


class OrchestratorState(str, Enum):
    IDLE = "idle"
    PROBING_HEALTH = "probing_health"
    SUBMITTING_LOCAL = "submitting_local"
    AWAITING_LOCAL = "awaiting_local"
    CALLING_REMOTE = "calling_remote"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINAL_STATES = (OrchestratorState.SUCCEEDED, OrchestratorState.FAILED, OrchestratorState.CANCELLED)


class GenerationHandle:
    """Trạng thái của một lần generate, dùng để huỷ hoặc chờ kết quả."""

    def __init__(self, orchestrator: "Orchestrator", request: GenerationRequest, context: GenerationContext):
        self._orchestrator = orchestrator
        self.request = request
        self.context = context
        self.request_id = gen_request_id()
        self.state = OrchestratorState.IDLE
        self.history: List[OrchestratorState] = [OrchestratorState.IDLE]
        self.job_id: Optional[str] = None
        self.model: Optional[str] = None
        self.backend: Optional[str] = None
        self.cancel_requested = False
        self.started_ms = get_timestamp_ms()
        self.monitor: Optional[ProgressStreamMonitor] = None
        self._task: Optional["asyncio.Task[Result]"] = None

    def transition(self, state: OrchestratorState) -> None:
        if self.state in FINAL_STATES:
            return
        logger.debug("Generation %s: %s -> %s", self.request_id, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    @property
    def done(self) -> bool:
        return self.state in FINAL_STATES

    async def cancel(self) -> bool:
        return await self._orchestrator._cancel_handle(self)

    async def result(self) -> Result:
        if self._task is None:
            raise RuntimeError("generation was not started with Orchestrator.start()")
        return await self._task


class Orchestrator:
    """
    Điều phối một lần sinh ảnh:

    PROBING_HEALTH -> SUBMITTING_LOCAL -> AWAITING_LOCAL -> SUCCEEDED | FAILED | CANCELLED
                   \\-> CALLING_REMOTE -> SUCCEEDED | FAILED

    Chỉ fallback sang remote khi job local chưa được nhận (backend offline
    hoặc submit lỗi). Job đã có task_id mà lỗi thì trả lỗi luôn.
    """

    def __init__(
        self,
        health: HealthProbe,
        local: Optional[LocalBackendClient] = None,
        remote: Optional[RemoteWebhookClient] = None,
        canceller: Optional[CancellationClient] = None,
        waits: Optional[PendingWaitTable] = None,
        timeout_policy: Optional[TimeoutPolicy] = None,
        stream_transport: Optional[StreamTransport] = None,
        poll_fallback: bool = True,
        monitor_options: Optional[Dict[str, Any]] = None,
    ):
        self._health = health
        self.local = local
        self.remote = remote
        self._canceller = canceller
        self._waits = waits or PendingWaitTable()
        self._policy = timeout_policy or TimeoutPolicy()
        self._transport = stream_transport
        self._poll_fallback = poll_fallback
        self._monitor_options = monitor_options or {}
        self._active: Dict[str, GenerationHandle] = {}

        if local is not None:
            health.register(LOCAL_SERVICE, local.ping)

    @classmethod
    def from_settings(
        cls,
        settings,
        http: httpx.AsyncClient,
        session: aiohttp.ClientSession,
        health: Optional[HealthProbe] = None,
    ) -> "Orchestrator":
        health = health or HealthProbe(ttl=settings.health_cache_ttl, min_interval=settings.health_min_interval)
        local = canceller = transport = None
        if settings.local_ai_url:
            local = LocalBackendClient(settings.local_ai_url, http=http)
            canceller = CancellationClient(settings.local_ai_url, http=http)
            transport = AiohttpStreamTransport(session)
        remote = None
        if settings.n8n_imagine_url:
            remote = RemoteWebhookClient(
                settings.n8n_imagine_url,
                session,
                username=settings.n8n_username,
                password=settings.n8n_password,
                request_timeout=settings.remote_timeout,
            )
        return cls(
            health,
            local=local,
            remote=remote,
            canceller=canceller,
            timeout_policy=TimeoutPolicy.from_settings(settings),
            stream_transport=transport,
        )

    @property
    def waits(self) -> PendingWaitTable:
        return self._waits

    @property
    def health(self) -> HealthProbe:
        return self._health

    def active_jobs(self) -> List[str]:
        return list(self._active)

    # ==========================
    # API cho UI
    # ==========================

    def start(
        self,
        request: GenerationRequest,
        context: GenerationContext,
        progress: Optional[ProgressSink] = None,
    ) -> GenerationHandle:
        handle = GenerationHandle(self, request, context)
        handle._task = asyncio.create_task(
            self.generate(request, context, progress, handle=handle),
            name=f"generation-{handle.request_id}",
        )
        return handle

    async def generate(
        self,
        request: GenerationRequest,
        context: GenerationContext,
        progress: Optional[ProgressSink] = None,
        handle: Optional[GenerationHandle] = None,
    ) -> Result:
        handle = handle or GenerationHandle(self, request, context)
        logger.info(
            "Generation %s for user %s: %r (%s, %s steps)",
            handle.request_id, context.user_id, request.prompt[:80], request.size, request.steps,
        )
        try:
            return await self._run(handle, progress)
        except asyncio.CancelledError:
            logger.info("Generation %s task cancelled", handle.request_id)
            if handle.job_id is not None and not handle.done:
                await self._cancel_local(handle)
            handle.transition(OrchestratorState.CANCELLED)
            raise
        except Exception as e:
            logger.exception("Unexpected error in generation %s", handle.request_id)
            handle.transition(OrchestratorState.FAILED)
            return from_exception(e)

    async def cancel(self, job_id: str) -> bool:
        """Huỷ job local theo task_id. True nếu backend xác nhận."""
        handle = self._active.get(job_id)
        if handle is not None:
            return await self._cancel_handle(handle)
        if self._canceller is None:
            return False
        return await self._canceller.cancel(job_id)

    async def aclose(self) -> None:
        handles = list(self._active.values())
        await asyncio.gather(
            *(h.monitor.force_stop() for h in handles if h.monitor is not None),
            return_exceptions=True,
        )

    # ==========================
    # luồng chính
    # ==========================

    async def _run(self, handle: GenerationHandle, progress: Optional[ProgressSink]) -> Result:
        request = handle.request
        if handle.cancel_requested:
            return self._cancelled(handle)

        handle.transition(OrchestratorState.PROBING_HEALTH)
        local_online = self.local is not None and await self._health.is_online(LOCAL_SERVICE)

        submit_error: Optional[GenerationError] = None
        if local_online:
            handle.transition(OrchestratorState.SUBMITTING_LOCAL)
            model = await self._resolve_model(request)
            handle.model = model
            try:
                job_id = await self.local.submit(request, model=model)
            except GenerationError as e:
                submit_error = e
                logger.warning("Local submission failed for %s, trying remote: %s", handle.request_id, e)
            else:
                return await self._await_local(handle, job_id, model, progress)
        elif self.local is not None:
            logger.info("Local backend offline, using remote for %s", handle.request_id)

        if handle.cancel_requested:
            return self._cancelled(handle)
        return await self._call_remote(handle, submit_error)

    async def _resolve_model(self, request: GenerationRequest) -> str:
        if request.model and request.model != "auto":
            return request.model
        try:
            models = [m for m in await self.local.list_models() if m.available]
        except GenerationError as e:
            logger.warning("Could not list local models, using %s: %s", FALLBACK_LOCAL_MODEL, e)
            return FALLBACK_LOCAL_MODEL
        if not models:
            return FALLBACK_LOCAL_MODEL
        logger.info("Auto-selected local model %s", models[0].slug)
        return models[0].slug

    async def _await_local(
        self,
        handle: GenerationHandle,
        job_id: str,
        model: str,
        progress: Optional[ProgressSink],
    ) -> Result:
        request = handle.request
        handle.job_id = job_id
        handle.backend = "local"
        self._active[job_id] = handle
        metadata = local_metadata(request, job_id, model)

        estimate = estimate_timeout(
            request.steps, request.width, request.height, request.guidance_scale, self._policy
        )
        if estimate.was_clamped:
            logger.warning("Timeout for job %s clamped to %.0fs", job_id, estimate.timeout_seconds)

        handle.transition(OrchestratorState.AWAITING_LOCAL)
        future = self._waits.register(job_id, estimate.timeout_seconds)
        monitor = self._make_monitor(job_id, progress)
        handle.monitor = monitor
        monitor.start()

        try:
            if handle.cancel_requested:
                # user bấm huỷ trong lúc đang submit
                await self._cancel_local(handle)

            try:
                event = await future
            except GenerationError as e:
                if handle.cancel_requested or e.kind == ErrorKind.CANCELLED:
                    return self._cancelled(handle, metadata, e.reason)
                handle.transition(OrchestratorState.FAILED)
                return from_exception(e, metadata)

            if handle.cancel_requested:
                logger.info("Discarding completion of job %s: already cancelled", job_id)
                return self._cancelled(handle, metadata)

            image_url = self.local.image_url(job_id)
            image_buffer = await self.local.download_image(job_id)
            if handle.cancel_requested:
                logger.info("Discarding image of job %s: cancelled during download", job_id)
                return self._cancelled(handle, metadata)

            elapsed = (get_timestamp_ms() - handle.started_ms) / 1000
            result = local_success(
                event, request, job_id, model, image_url=image_url, image_buffer=image_buffer, execution_time=elapsed
            )
            handle.transition(OrchestratorState.SUCCEEDED if result.ok else OrchestratorState.FAILED)
            return result
        finally:
            self._waits.discard(job_id)
            self._active.pop(job_id, None)
            # huỷ bởi user -> đóng stream với 1001
            await monitor.stop(GOING_AWAY if handle.cancel_requested else NORMAL_CLOSURE)

    def _make_monitor(self, job_id: str, progress: Optional[ProgressSink]) -> ProgressStreamMonitor:
        poll = self.local.get_task
        if progress is not None and self._transport is not None:
            return ProgressStreamMonitor(
                job_id,
                self._waits,
                sink=progress,
                transport=self._transport,
                stream_url=self.local.stream_url(job_id),
                poll=poll if self._poll_fallback else None,
                **self._monitor_options,
            )
        # không cần progress (hoặc không có WebSocket): chỉ poll
        return ProgressStreamMonitor(job_id, self._waits, sink=progress, poll=poll, **self._monitor_options)

    async def _call_remote(self, handle: GenerationHandle, submit_error: Optional[GenerationError]) -> Result:
        if self.remote is None:
            handle.transition(OrchestratorState.FAILED)
            if submit_error is not None:
                return from_exception(submit_error)
            return failure(ErrorKind.NETWORK, "Local backend is offline and no remote backend is configured")

        handle.transition(OrchestratorState.CALLING_REMOTE)
        handle.backend = "remote"
        prompt = handle.request.prompt
        try:
            response = await self.remote.imagine(prompt, handle.context)
        except GenerationError as e:
            logger.warning("Remote generation failed for %s: %s", handle.request_id, e)
            result: Result = from_exception(e)
        else:
            result = normalize_remote(response, prompt)

        handle.transition(OrchestratorState.SUCCEEDED if result.ok else OrchestratorState.FAILED)
        return result

    # ==========================
    # huỷ
    # ==========================

    async def _cancel_handle(self, handle: GenerationHandle) -> bool:
        if handle.done:
            return False
        handle.cancel_requested = True
        if handle.job_id is None:
            logger.info("Cancel requested for %s before a job was accepted", handle.request_id)
            return False
        return await self._cancel_local(handle)

    async def _cancel_local(self, handle: GenerationHandle) -> bool:
        """
        Ngừng chờ ngay (reject PendingWait), đồng thời báo backend huỷ
        và đóng monitor. Kết quả muộn sau đó bị bỏ qua.
        """
        job_id = handle.job_id
        handle.cancel_requested = True
        self._waits.reject(job_id, GenerationCancelled("Cancelled by user"))
        handle.transition(OrchestratorState.CANCELLED)

        monitor_stop = handle.monitor.force_stop() if handle.monitor is not None else asyncio.sleep(0)
        backend_cancel = self._canceller.cancel(job_id) if self._canceller is not None else _not_acknowledged()
        _, acknowledged = await asyncio.gather(monitor_stop, backend_cancel, return_exceptions=True)
        if acknowledged is not True:
            logger.info("Cancellation of job %s not confirmed by backend", job_id)
            return False
        return True

    def _cancelled(
        self,
        handle: GenerationHandle,
        metadata: Optional[ImageMetadata] = None,
        reason: str = "Generation cancelled by user",
    ) -> GenerationFailure:
        handle.transition(OrchestratorState.CANCELLED)
        return failure(ErrorKind.CANCELLED, reason, metadata)


async def _not_acknowledged() -> bool:
    return False
