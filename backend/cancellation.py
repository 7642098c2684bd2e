# backend/cancellation.py
import logging

import httpx

from config.settings import TASK_CANCEL_TIMEOUT

from .local_client import DEFAULT_HEADERS

logger = logging.getLogger(__name__)


class CancellationClient:
    """
    Huỷ task trên backend local.
    Thử DELETE /task/{id} trước, không được thì POST /task/{id}/cancel (API cũ).
    Best effort: mọi lỗi đều thành False, không raise.
    """

    def __init__(self, base_url: str, http: httpx.AsyncClient, timeout: float = TASK_CANCEL_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self._http = http
        self.timeout = timeout

    async def cancel(self, job_id: str) -> bool:
        url = f"{self.base_url}/task/{job_id}"

        if await self._attempt("DELETE", url, job_id):
            return True
        if await self._attempt("POST", f"{url}/cancel", job_id):
            return True

        logger.warning("Backend did not acknowledge cancellation of job %s", job_id)
        return False

    async def _attempt(self, method: str, url: str, job_id: str) -> bool:
        try:
            r = await self._http.request(method, url, headers=DEFAULT_HEADERS, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("Cancel %s %s failed: %s", method, url, e)
            return False

        if not r.is_success:
            logger.info("Cancel %s for job %s returned HTTP %s", method, job_id, r.status_code)
            return False

        message = None
        try:
            body = r.json()
            if isinstance(body, dict):
                message = body.get("message")
        except ValueError:
            pass
        logger.info("Job %s cancelled via %s%s", job_id, method, f": {message}" if message else "")
        return True
