# backend/local_client.py
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from config.settings import (
    GENERATION_SUBMIT_TIMEOUT,
    HEALTH_CHECK_TIMEOUT,
    HTTP_REQUEST_TIMEOUT,
    IMAGE_DOWNLOAD_TIMEOUT,
    MODEL_FETCH_TIMEOUT,
)

from .errors import BackendUnavailableError, MalformedResponseError, SubmissionError
from .model import GenerationRequest, LocalModel, ProgressEvent, SubmitResponse

logger = logging.getLogger(__name__)

# Backend local thường được expose qua ngrok
DEFAULT_HEADERS = {"ngrok-skip-browser-warning": "true"}


class LocalBackendClient:
    """Client REST cho server sinh ảnh tự host (LOCAL_AI_URL)."""

    def __init__(self, base_url: str, http: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=HTTP_REQUEST_TIMEOUT)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def ping(self) -> bool:
        """GET /health: 200 -> True, status khác -> False, lỗi network thì raise."""
        r = await self._http.get(self._url("/health"), headers=DEFAULT_HEADERS, timeout=HEALTH_CHECK_TIMEOUT)
        return r.status_code == 200

    async def list_models(self) -> List[LocalModel]:
        try:
            r = await self._http.get(self._url("/models"), headers=DEFAULT_HEADERS, timeout=MODEL_FETCH_TIMEOUT)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Cannot fetch local models: {e}") from e
        except ValueError as e:
            raise MalformedResponseError(f"Invalid /models response: {e}") from e

        if not isinstance(data, dict):
            raise MalformedResponseError("Invalid /models response: expected an object")

        models = []
        for slug, descriptor in data.items():
            # Model load lỗi thì bỏ qua
            if not isinstance(descriptor, dict) or "error" in descriptor:
                continue
            models.append(LocalModel.from_descriptor(slug, descriptor))
        return models

    async def submit(self, request: GenerationRequest, model: Optional[str] = None) -> str:
        """
        POST /generate, trả về task_id.
        Không retry: fallback là việc của orchestrator.
        """
        payload = request.to_payload(model=model)
        try:
            r = await self._http.post(
                self._url("/generate"),
                json=payload,
                headers=DEFAULT_HEADERS,
                timeout=GENERATION_SUBMIT_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise SubmissionError(f"Local backend unreachable: {e}") from e

        if not r.is_success:
            logger.warning("Local backend rejected job: HTTP %s %s", r.status_code, r.text[:300])
            raise SubmissionError(f"Local backend returned HTTP {r.status_code}")

        try:
            data = SubmitResponse.model_validate(r.json())
        except (ValueError, ValidationError) as e:
            raise SubmissionError(f"Local backend did not return a task_id: {r.text[:200]}") from e

        logger.info("Submitted job %s (model=%s, %s)", data.task_id, payload["model"], request.size)
        return data.task_id

    async def get_task(self, task_id: str) -> ProgressEvent:
        try:
            r = await self._http.get(self._url(f"/task/{task_id}"), headers=DEFAULT_HEADERS)
            r.raise_for_status()
            body: Dict[str, Any] = r.json()
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Cannot poll task {task_id}: {e}") from e
        except ValueError as e:
            raise MalformedResponseError(f"Invalid task payload for {task_id}: {e}") from e

        if isinstance(body, dict):
            body.setdefault("task_id", task_id)
        try:
            return ProgressEvent.model_validate(body)
        except ValidationError as e:
            raise MalformedResponseError(f"Invalid task payload for {task_id}: {e}") from e

    def image_url(self, task_id: str, index: int = 1) -> str:
        return self._url(f"/image/{task_id}/{index}")

    def stream_url(self, task_id: str) -> str:
        if self.base_url.startswith("https://"):
            ws_base = "wss://" + self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            ws_base = "ws://" + self.base_url[len("http://"):]
        else:
            ws_base = self.base_url
        return f"{ws_base}/ws/task/{task_id}"

    async def download_image(self, task_id: str, index: int = 1) -> Optional[bytes]:
        """Tải ảnh output. Lỗi thì trả None, kết quả vẫn giữ URL."""
        url = self.image_url(task_id, index)
        try:
            r = await self._http.get(url, headers=DEFAULT_HEADERS, timeout=IMAGE_DOWNLOAD_TIMEOUT)
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Could not download image %s: %s", url, e)
            return None
        return r.content
