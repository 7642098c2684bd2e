# backend/remote_client.py
import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from .errors import BackendUnavailableError
from .model import GenerationContext, RemoteHttpResponse

logger = logging.getLogger(__name__)


class RemoteWebhookClient:
    """
    Gọi webhook n8n (backend dự phòng) đúng một lần.
    Không parse body ở đây: normalizer lo việc đó.
    """

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession,
        username: Optional[str] = None,
        password: Optional[str] = None,
        request_timeout: float = 120.0,
    ):
        self.url = url
        self._session = session
        self._auth = aiohttp.BasicAuth(username, password) if username and password else None
        self.request_timeout = request_timeout

    async def imagine(self, prompt: str, context: GenerationContext) -> RemoteHttpResponse:
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "userId": context.user_id,
            "channelId": context.channel_id,
        }
        if context.is_super_user:
            payload["isSuperUser"] = True

        logger.info("Sending prompt to remote webhook: %r", prompt[:80])
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with self._session.post(self.url, json=payload, auth=self._auth, timeout=timeout) as resp:
                body = await resp.read()
                if resp.status >= 400:
                    logger.warning(
                        "Remote webhook returned HTTP %s: %s",
                        resp.status, body[:300].decode("utf-8", errors="replace"),
                    )
                return RemoteHttpResponse(
                    status=resp.status,
                    content_type=resp.headers.get("Content-Type", ""),
                    body=body,
                )
        except asyncio.TimeoutError as e:
            raise BackendUnavailableError(f"Remote webhook timed out after {self.request_timeout:.0f}s") from e
        except aiohttp.ClientError as e:
            raise BackendUnavailableError(f"Remote webhook unreachable: {e}") from e
