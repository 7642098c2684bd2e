# backend/waits.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import WaitTimeoutError
from .model import ProgressEvent

logger = logging.getLogger(__name__)


@dataclass
class PendingWait:
    job_id: str
    future: "asyncio.Future[ProgressEvent]"
    timer: Optional[asyncio.TimerHandle] = None


class PendingWaitTable:
    """
    Bảng job_id -> PendingWait, dùng chung cho mọi generation đang chạy.

    Mỗi entry chỉ bị lấy ra đúng một lần (resolve, reject hoặc timeout,
    cái nào đến trước), timer của nó bị huỷ ngay khi entry bị lấy ra.
    """

    def __init__(self) -> None:
        self._waits: Dict[str, PendingWait] = {}

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._waits

    def __len__(self) -> int:
        return len(self._waits)

    def register(self, job_id: str, timeout: float) -> "asyncio.Future[ProgressEvent]":
        if job_id in self._waits:
            raise RuntimeError(f"A pending wait already exists for job {job_id}")

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[ProgressEvent]" = loop.create_future()
        wait = PendingWait(job_id=job_id, future=future)
        wait.timer = loop.call_later(timeout, self._expire, job_id, timeout)
        self._waits[job_id] = wait
        return future

    def _take(self, job_id: str) -> Optional[PendingWait]:
        wait = self._waits.pop(job_id, None)
        if wait is None:
            return None
        if wait.timer is not None:
            wait.timer.cancel()
        if wait.future.done():
            return None
        return wait

    def resolve(self, job_id: str, event: ProgressEvent) -> bool:
        wait = self._take(job_id)
        if wait is None:
            return False
        wait.future.set_result(event)
        return True

    def reject(self, job_id: str, error: BaseException) -> bool:
        wait = self._take(job_id)
        if wait is None:
            return False
        wait.future.set_exception(error)
        return True

    def discard(self, job_id: str) -> None:
        """Bỏ wait mà không đánh thức ai (future bị cancel nếu còn treo)."""
        wait = self._take(job_id)
        if wait is not None:
            wait.future.cancel()

    def _expire(self, job_id: str, timeout: float) -> None:
        if self.reject(job_id, WaitTimeoutError(f"Generation timed out after {timeout:.0f}s")):
            logger.warning("Pending wait for job %s timed out after %.0fs", job_id, timeout)
