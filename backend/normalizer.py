# backend/normalizer.py
"""
Gom mọi kiểu kết quả (task local, webhook trả URL / base64 / binary)
về một dạng duy nhất: GenerationSuccess hoặc GenerationFailure.
Phía sau module này không ai phải rẽ nhánh theo format backend nữa.
"""
import base64
import binascii
import json
import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from .errors import ErrorKind, GenerationError, TaskFailedError
from .model import (
    GenerationFailure,
    GenerationParams,
    GenerationRequest,
    GenerationSuccess,
    ImageMetadata,
    ProgressEvent,
    RemoteHttpResponse,
    RemoteImageReply,
)
from .utils import gen_request_id

logger = logging.getLogger(__name__)

LOCAL_PROVIDER = "local-ai"
REMOTE_PROVIDER = "n8n"

OOM_MARKERS = ("out of memory", "outofmemory")

# Các key thường chứa base64 khi payload bị bọc trong JSON
BASE64_ENVELOPE_KEYS = ("b64_json", "base64", "data", "image")

BINARY_CONTENT_TYPES = ("image/", "application/octet-stream")

Result = Union[GenerationSuccess, GenerationFailure]


def failure(kind: ErrorKind, reason: str, metadata: Optional[ImageMetadata] = None) -> GenerationFailure:
    return GenerationFailure(kind=kind, reason=reason.strip() or kind.value, metadata=metadata)


def local_metadata(request: GenerationRequest, job_id: str, model: str, execution_time: Optional[float] = None) -> ImageMetadata:
    return ImageMetadata(
        model=model,
        provider=LOCAL_PROVIDER,
        execution_time=execution_time,
        parameters=GenerationParams(
            size=request.size,
            steps=request.steps,
            cfg=request.guidance_scale,
            seed=request.seed,
        ),
        prompt=request.prompt,
        request_id=job_id,
    )


# ==========================
# Backend local
# ==========================

def local_success(
    event: ProgressEvent,
    request: GenerationRequest,
    job_id: str,
    model: str,
    image_url: Optional[str] = None,
    image_buffer: Optional[bytes] = None,
    execution_time: Optional[float] = None,
) -> Result:
    # generation_time của backend ưu tiên hơn thời gian đo phía bot
    took = event.generation_time if event.generation_time is not None else execution_time
    metadata = local_metadata(request, job_id, event.model_used or model, took)
    if not event.output_paths:
        return failure(ErrorKind.PROCESSING_FAILED, "Generation finished without any output image", metadata)
    if not image_url and not image_buffer:
        return failure(ErrorKind.PROCESSING_FAILED, "No image reference for completed job", metadata)
    return GenerationSuccess(image_buffer=image_buffer or None, image_url=image_url, metadata=metadata)


def is_out_of_memory(text: Optional[str]) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in OOM_MARKERS)


def local_failure(status: str, reason: Optional[str], metadata: Optional[ImageMetadata] = None) -> GenerationFailure:
    reason = (reason or "").strip()
    if status == "cancelled":
        return failure(ErrorKind.CANCELLED, reason or "Generation cancelled", metadata)
    if is_out_of_memory(reason):
        return failure(ErrorKind.RESOURCE_EXHAUSTED, reason, metadata)
    return failure(ErrorKind.PROCESSING_FAILED, reason or "Generation failed", metadata)


def from_exception(error: BaseException, metadata: Optional[ImageMetadata] = None) -> GenerationFailure:
    if isinstance(error, TaskFailedError):
        event = error.event
        if isinstance(event, ProgressEvent):
            text = event.error or event.message
            return local_failure(event.status, text or error.reason, metadata)
        if error.kind == ErrorKind.CANCELLED:
            return failure(ErrorKind.CANCELLED, error.reason, metadata)
        return local_failure("failed", error.reason, metadata)
    if isinstance(error, GenerationError):
        return failure(error.kind, error.reason, metadata)
    return failure(ErrorKind.PROCESSING_FAILED, str(error) or type(error).__name__, metadata)


# ==========================
# Webhook remote
# ==========================

def _find_base64(obj: Any) -> Optional[str]:
    if isinstance(obj, str):
        return obj
    if isinstance(obj, list):
        for item in obj:
            found = _find_base64(item)
            if found:
                return found
        return None
    if isinstance(obj, dict):
        for key in BASE64_ENVELOPE_KEYS:
            if key in obj:
                found = _find_base64(obj[key])
                if found:
                    return found
    return None


def strip_base64_payload(payload: str) -> str:
    """
    Bỏ lớp bọc quanh base64:
      '{"b64_json": "AAAA"}'          -> 'AAAA'
      'data:image/png;base64,AAAA'    -> 'AAAA'
    """
    text = payload.strip()
    if text.startswith(("{", "[")):
        try:
            found = _find_base64(json.loads(text))
        except ValueError:
            found = None
        if found:
            text = found.strip()
    if text.startswith("data:") and "," in text:
        text = text.split(",", 1)[1]
    return "".join(text.split())


def decode_base64_image(payload: str) -> bytes:
    data = strip_base64_payload(payload)
    data += "=" * (-len(data) % 4)
    return base64.b64decode(data, validate=True)


def _remote_metadata(reply: RemoteImageReply, prompt: str) -> ImageMetadata:
    params = reply.params
    return ImageMetadata(
        model=reply.model,
        provider=reply.provider or REMOTE_PROVIDER,
        execution_time=None,
        parameters=GenerationParams(
            size=params.size or "unknown",
            steps=params.steps,
            cfg=params.cfg,
            seed=params.seed,
        ),
        prompt=reply.prompt or prompt,
        request_id=reply.request_id or gen_request_id(),
    )


def normalize_remote(response: RemoteHttpResponse, prompt: str) -> Result:
    if not response.is_success:
        return failure(ErrorKind.NETWORK, f"Remote backend returned HTTP {response.status}")

    content_type = response.content_type.split(";", 1)[0].strip().lower()
    if content_type.startswith(BINARY_CONTENT_TYPES):
        if not response.body:
            return failure(ErrorKind.API_ERROR, "Remote backend returned an empty image")
        metadata = ImageMetadata(
            model="unknown",
            provider=REMOTE_PROVIDER,
            parameters=GenerationParams(size="unknown"),
            prompt=prompt,
            request_id=gen_request_id(),
        )
        return GenerationSuccess(image_buffer=response.body, metadata=metadata)

    try:
        body = json.loads(response.body)
    except ValueError:
        return failure(ErrorKind.API_ERROR, "Remote backend returned a non-JSON response")

    # n8n đôi khi bọc object trong mảng 1 phần tử
    if isinstance(body, list):
        if not body:
            return failure(ErrorKind.API_ERROR, "Remote backend returned an empty array")
        body = body[0]
    if not isinstance(body, dict):
        return failure(ErrorKind.API_ERROR, "Remote backend returned an unexpected response shape")

    meta = body.get("meta")
    if isinstance(meta, dict) and meta.get("reason"):
        logger.info("Remote backend rejected prompt: %s", meta["reason"])
        return failure(ErrorKind.CONTENT_POLICY, str(meta["reason"]))

    try:
        reply = RemoteImageReply.model_validate(body)
    except ValidationError as e:
        missing = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
        return failure(ErrorKind.API_ERROR, f"Invalid remote response ({missing or 'bad shape'})")

    metadata = _remote_metadata(reply, prompt)
    if reply.type == "url":
        return GenerationSuccess(image_url=reply.image, metadata=metadata)

    try:
        image = decode_base64_image(reply.image)
    except (binascii.Error, ValueError):
        return failure(ErrorKind.API_ERROR, "Remote backend returned an undecodable base64 image", metadata)
    if not image:
        return failure(ErrorKind.API_ERROR, "Remote backend returned an empty base64 image", metadata)
    return GenerationSuccess(image_buffer=image, metadata=metadata)
