# backend/health.py
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[bool]]

LOCAL_SERVICE = "local-ai"


@dataclass
class HealthEntry:
    is_online: bool
    last_checked: float
    last_success: float


class HealthProbe:
    """
    Cache trạng thái online của từng backend.

    - Còn trong TTL (tính từ lần probe thành công gần nhất): trả cache.
    - Chưa qua min_interval kể từ lần probe trước: trả cache dù đã hết TTL.
    - Probe lỗi (network, timeout...): giữ giá trị cũ nếu có, còn không thì offline.
    Không bao giờ raise.
    """

    def __init__(
        self,
        ttl: float = 30.0,
        min_interval: float = 5.0,
        stale_grace: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if min_interval >= ttl:
            raise ValueError("min_interval must be shorter than ttl")
        self.ttl = ttl
        self.min_interval = min_interval
        # Sau khoảng này không có probe thành công thì lỗi network = offline
        self.stale_grace = stale_grace if stale_grace is not None else ttl * 10
        self._clock = clock
        self._checks: Dict[str, HealthCheck] = {}
        self._entries: Dict[str, HealthEntry] = {}
        self._inflight: Dict[str, "asyncio.Task[bool]"] = {}

    def register(self, service_key: str, check: HealthCheck) -> None:
        self._checks[service_key] = check

    def entry(self, service_key: str) -> Optional[HealthEntry]:
        return self._entries.get(service_key)

    def invalidate(self, service_key: str) -> None:
        self._entries.pop(service_key, None)

    async def is_online(self, service_key: str) -> bool:
        check = self._checks.get(service_key)
        if check is None:
            return False

        now = self._clock()
        entry = self._entries.get(service_key)
        if entry is not None:
            if entry.is_online and now - entry.last_success < self.ttl:
                logger.debug("Health cache hit for %s (online)", service_key)
                return True
            if now - entry.last_checked < self.min_interval:
                logger.debug("Health for %s checked %.1fs ago, reusing", service_key, now - entry.last_checked)
                return entry.is_online

        task = self._inflight.get(service_key)
        if task is None:
            task = asyncio.ensure_future(self._probe(service_key, check))
            self._inflight[service_key] = task
            task.add_done_callback(lambda _t, key=service_key: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _probe(self, service_key: str, check: HealthCheck) -> bool:
        try:
            online = bool(await check())
        except Exception as e:
            return self._degrade(service_key, e)

        now = self._clock()
        previous = self._entries.get(service_key)
        last_success = now if online else (previous.last_success if previous else 0.0)
        self._entries[service_key] = HealthEntry(
            is_online=online, last_checked=now, last_success=last_success
        )
        if previous is None or previous.is_online != online:
            logger.info("Backend %s is now %s", service_key, "online" if online else "offline")
        return online

    def _degrade(self, service_key: str, error: Exception) -> bool:
        now = self._clock()
        entry = self._entries.get(service_key)
        if entry is None:
            logger.warning("Health probe for %s failed: %s", service_key, error)
            self._entries[service_key] = HealthEntry(is_online=False, last_checked=now, last_success=0.0)
            return False

        if entry.is_online and now - entry.last_success > self.stale_grace:
            logger.warning(
                "Health probe for %s failed and last success is %.0fs old: %s",
                service_key, now - entry.last_success, error,
            )
            entry.is_online = False
        else:
            logger.warning(
                "Health probe for %s failed, keeping last known state (%s): %s",
                service_key, "online" if entry.is_online else "offline", error,
            )
        entry.last_checked = now
        return entry.is_online
