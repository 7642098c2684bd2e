# backend/progress.py
import asyncio
import json
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional, Protocol, Tuple

import aiohttp
from pydantic import ValidationError

from config.settings import POLL_INTERVAL, WEBSOCKET_CONNECT_TIMEOUT

from .errors import ErrorKind, GenerationError, TaskFailedError
from .local_client import DEFAULT_HEADERS
from .model import ProgressEvent
from .waits import PendingWaitTable

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
GOING_AWAY = 1001

ProgressSink = Callable[[ProgressEvent], None]
TaskPoller = Callable[[str], Awaitable[ProgressEvent]]


# ==========================
# Channel cho UI
# ==========================

_CLOSED = object()


class ProgressChannel:
    """
    Kênh progress có giới hạn, dùng được như sink (gọi trực tiếp)
    và đọc bằng `async for`.

    Đầy thì bỏ event cũ nhất: UI chỉ cần snapshot mới nhất.
    """

    def __init__(self, maxsize: int = 16):
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    def __call__(self, event: ProgressEvent) -> None:
        self.publish(event)

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self._put(event)

    def _put(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(_CLOSED)

    def __aiter__(self) -> "ProgressChannel":
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            # để các consumer khác cũng thấy kênh đã đóng
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


# ==========================
# Tốc độ và ETA
# ==========================

class ProgressMetrics:
    """Ước lượng steps/s từ vài mẫu gần nhất, suy ra thời gian còn lại."""

    def __init__(self, history_size: int = 10, window: int = 3, clock: Callable[[], float] = time.monotonic):
        self._samples: Deque[Tuple[float, int]] = deque(maxlen=history_size)
        self.window = window
        self._clock = clock

    def update(self, event: ProgressEvent) -> Tuple[Optional[float], Optional[float]]:
        if event.current_step is None:
            return None, None
        self._samples.append((self._clock(), event.current_step))
        if len(self._samples) < 2:
            return None, None

        recent = list(self._samples)[-self.window:]
        (t0, s0), (t1, s1) = recent[0], recent[-1]
        elapsed = t1 - t0
        done = s1 - s0
        if elapsed <= 0 or done <= 0:
            return None, None

        rate = done / elapsed
        eta = None
        if event.total_steps:
            eta = max(0, event.total_steps - event.current_step) / rate
        return rate, eta


# ==========================
# Transport WebSocket
# ==========================

class StreamConnection(Protocol):
    close_code: Optional[int]

    async def receive(self) -> Optional[str]:
        """Message text tiếp theo, None khi kết nối đã đóng."""

    async def close(self, code: int) -> None:
        ...


class StreamTransport(Protocol):
    async def connect(self, url: str) -> StreamConnection:
        ...


class AiohttpStreamConnection:
    def __init__(self, ws: aiohttp.ClientWebSocketResponse):
        self._ws = ws

    @property
    def close_code(self) -> Optional[int]:
        return self._ws.close_code

    async def receive(self) -> Optional[str]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                return None
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("WebSocket error: %s", self._ws.exception())
                return None

    async def close(self, code: int) -> None:
        await self._ws.close(code=code)


class AiohttpStreamTransport:
    def __init__(self, session: aiohttp.ClientSession, heartbeat: Optional[float] = 30.0):
        self._session = session
        self.heartbeat = heartbeat

    async def connect(self, url: str) -> AiohttpStreamConnection:
        ws = await self._session.ws_connect(url, headers=DEFAULT_HEADERS, heartbeat=self.heartbeat)
        return AiohttpStreamConnection(ws)


# ==========================
# Monitor
# ==========================

class MonitorState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    POLLING = "polling"
    CLOSED = "closed"


class ProgressStreamMonitor:
    """
    Theo dõi một task local qua WebSocket /ws/task/{id}.

    CONNECTING -> OPEN -> (RECONNECTING <-> OPEN)* -> CLOSED

    - Đóng bất thường (code != 1000) khi task chưa xong: reconnect,
      delay = reconnect_delay * attempt, tối đa max_reconnects lần.
    - Nhận event terminal: resolve/reject PendingWait rồi tự đóng sau close_delay.
    - Không có transport: chỉ poll GET /task/{id}.
    - Có `poll` và stream hỏng hẳn: chuyển sang poll. Không có `poll` thì
      để PendingWait tự hết hạn.
    """

    def __init__(
        self,
        job_id: str,
        waits: PendingWaitTable,
        sink: Optional[ProgressSink] = None,
        transport: Optional[StreamTransport] = None,
        stream_url: Optional[str] = None,
        poll: Optional[TaskPoller] = None,
        max_reconnects: int = 3,
        reconnect_delay: float = 2.0,
        close_delay: float = 0.1,
        poll_interval: float = POLL_INTERVAL,
        connect_timeout: float = WEBSOCKET_CONNECT_TIMEOUT,
        metrics: Optional[ProgressMetrics] = None,
    ):
        if transport is not None and not stream_url:
            raise ValueError("stream_url is required with a transport")
        if transport is None and poll is None:
            raise ValueError("either a transport or a poll function is required")

        self.job_id = job_id
        self._waits = waits
        self._sink = sink
        self._transport = transport
        self.stream_url = stream_url
        self._poll = poll
        self.max_reconnects = max_reconnects
        self.reconnect_delay = reconnect_delay
        self.close_delay = close_delay
        self.poll_interval = poll_interval
        self.connect_timeout = connect_timeout
        self.metrics = metrics or ProgressMetrics()

        self.state = MonitorState.CONNECTING
        self.reconnect_attempts = 0
        self.close_code: Optional[int] = None
        self.delivered = 0
        self._last_rank: Optional[int] = None
        self._terminal_seen = False
        self._stopped = False
        self._conn: Optional[StreamConnection] = None
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def terminal_seen(self) -> bool:
        return self._terminal_seen

    def start(self) -> "ProgressStreamMonitor":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"progress-{self.job_id}")
        return self

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def stop(self, code: int = NORMAL_CLOSURE) -> None:
        """Dừng theo dõi (user huỷ, hoặc orchestrator không cần nữa). Gọi nhiều lần không sao."""
        if self._stopped:
            return
        self._stopped = True
        self.close_code = code

        conn = self._conn
        if conn is not None:
            await self._close_connection(conn, code)

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.state = MonitorState.CLOSED

    async def force_stop(self) -> None:
        await self.stop(GOING_AWAY)

    # --------------------------
    # vòng lặp chính
    # --------------------------

    async def _run(self) -> None:
        try:
            if self._transport is None:
                await self._poll_loop()
                return

            if not await self._stream_loop() and self._poll is not None and not self._stopped:
                logger.warning("Streaming unavailable for job %s, falling back to polling", self.job_id)
                await self._poll_loop()
        finally:
            self._conn = None
            self.state = MonitorState.CLOSED

    async def _stream_loop(self) -> bool:
        """True nếu stream kết thúc êm (terminal hoặc bị stop)."""
        attempt = 0
        while not self._stopped and not self._terminal_seen:
            self.state = MonitorState.CONNECTING if attempt == 0 else MonitorState.RECONNECTING
            code = await self._connect_and_pump()

            if self._stopped or self._terminal_seen:
                return True
            if code == NORMAL_CLOSURE:
                logger.info("Stream for job %s closed by server before a final status", self.job_id)
                return False

            attempt = self.reconnect_attempts + 1
            if attempt > self.max_reconnects:
                logger.warning(
                    "Giving up on stream for job %s after %d reconnect attempts", self.job_id, self.max_reconnects
                )
                return False
            self.reconnect_attempts = attempt
            self.state = MonitorState.RECONNECTING
            delay = self.reconnect_delay * attempt
            logger.info(
                "Stream for job %s closed (code=%s), reconnect %d/%d in %.1fs",
                self.job_id, code, attempt, self.max_reconnects, delay,
            )
            await asyncio.sleep(delay)
        return True

    async def _connect_and_pump(self) -> Optional[int]:
        try:
            conn = await asyncio.wait_for(self._transport.connect(self.stream_url), self.connect_timeout)
        except asyncio.TimeoutError:
            logger.warning("Stream connect timeout for job %s", self.job_id)
            return None
        except (aiohttp.ClientError, OSError) as e:
            logger.warning("Stream connect failed for job %s: %s", self.job_id, e)
            return None

        if self._stopped:
            await self._close_connection(conn, self.close_code or NORMAL_CLOSURE)
            return self.close_code

        self._conn = conn
        self.state = MonitorState.OPEN
        self.reconnect_attempts = 0
        logger.debug("Stream open for job %s", self.job_id)
        try:
            return await self._pump(conn)
        except (aiohttp.ClientError, OSError) as e:
            logger.warning("Stream for job %s dropped: %s", self.job_id, e)
            return None
        finally:
            self._conn = None

    async def _pump(self, conn: StreamConnection) -> Optional[int]:
        while not self._stopped:
            raw = await conn.receive()
            if raw is None:
                break
            self._handle_raw(raw)
            if self._terminal_seen:
                await asyncio.sleep(self.close_delay)
                await self._close_connection(conn, NORMAL_CLOSURE)
                return NORMAL_CLOSURE
        return conn.close_code

    async def _poll_loop(self) -> None:
        self.state = MonitorState.POLLING
        while not self._stopped and not self._terminal_seen:
            try:
                event = await self._poll(self.job_id)
            except GenerationError as e:
                logger.warning("Polling job %s failed: %s", self.job_id, e)
            else:
                self.deliver(event)
            if self._terminal_seen:
                break
            await asyncio.sleep(self.poll_interval)

    async def _close_connection(self, conn: StreamConnection, code: int) -> None:
        try:
            await conn.close(code)
        except (aiohttp.ClientError, OSError) as e:
            logger.debug("Error closing stream for job %s: %s", self.job_id, e)

    # --------------------------
    # xử lý event
    # --------------------------

    def _handle_raw(self, raw: str) -> None:
        try:
            data = json.loads(raw)
            if isinstance(data, dict):
                data.setdefault("task_id", self.job_id)
            event = ProgressEvent.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning("Dropping malformed progress payload for job %s: %s (%r)", self.job_id, e, raw[:200])
            return

        if event.task_id != self.job_id:
            logger.debug("Ignoring event for job %s on stream of %s", event.task_id, self.job_id)
            return
        self.deliver(event)

    def deliver(self, event: ProgressEvent) -> None:
        if self._terminal_seen:
            logger.debug("Suppressing %s event after final status for job %s", event.status, self.job_id)
            return
        if self._last_rank is not None and event.rank < self._last_rank:
            logger.debug("Dropping out-of-order %s event for job %s", event.status, self.job_id)
            return

        rate, eta = self.metrics.update(event)
        if rate is not None:
            event = event.model_copy(update={"steps_per_second": rate, "eta_seconds": eta})

        self._last_rank = event.rank
        if event.is_terminal:
            self._terminal_seen = True

        if self._sink is not None:
            try:
                self._sink(event)
            except Exception:
                logger.exception("Progress sink raised for job %s", self.job_id)
        self.delivered += 1

        if event.is_terminal:
            self._settle(event)

    def _settle(self, event: ProgressEvent) -> None:
        if event.status == "completed":
            self._waits.resolve(self.job_id, event)
            logger.info("Job %s completed", self.job_id)
            return

        kind = ErrorKind.CANCELLED if event.status == "cancelled" else ErrorKind.PROCESSING_FAILED
        reason = event.error or event.message or f"Job {event.status}"
        self._waits.reject(self.job_id, TaskFailedError(reason, event=event, kind=kind))
        logger.info("Job %s ended with status %s: %s", self.job_id, event.status, reason)
