import base64
import json

import pytest

from backend.errors import (
    BackendUnavailableError,
    ErrorKind,
    GenerationCancelled,
    TaskFailedError,
    WaitTimeoutError,
)
from backend.model import GenerationRequest, ProgressEvent, RemoteHttpResponse
from backend.normalizer import (
    decode_base64_image,
    from_exception,
    local_failure,
    local_success,
    normalize_remote,
    strip_base64_payload,
)

REQUEST = GenerationRequest(prompt="a lighthouse at dusk", width=768, height=512, steps=25, guidance_scale=6.5, seed=7)

REMOTE_OBJECT = {
    "prompt": "a lighthouse at dusk",
    "image": "https://cdn.example.com/img.png",
    "model": "flux",
    "provider": "replicate",
    "type": "url",
    "params": {"seed": 1, "cfg": 3.5, "size": "1024x1024", "steps": 4},
    "requestId": "r1",
}


def remote(body, status=200, content_type="application/json"):
    raw = body if isinstance(body, bytes) else json.dumps(body).encode()
    return RemoteHttpResponse(status=status, content_type=content_type, body=raw)


def test_array_wrapped_reply_normalizes_like_object():
    wrapped = normalize_remote(remote([REMOTE_OBJECT]), "p")
    plain = normalize_remote(remote(REMOTE_OBJECT), "p")

    assert wrapped == plain
    assert wrapped.ok
    assert wrapped.image_url == "https://cdn.example.com/img.png"
    assert wrapped.metadata.request_id == "r1"
    assert wrapped.metadata.provider == "replicate"
    assert wrapped.metadata.parameters.size == "1024x1024"


def test_empty_array_is_api_error():
    result = normalize_remote(remote([]), "p")
    assert result.kind == ErrorKind.API_ERROR


def test_policy_marker_becomes_content_policy_violation():
    result = normalize_remote(remote({"meta": {"reason": "Prompt contains disallowed content"}}), "p")
    assert result.kind == ErrorKind.CONTENT_POLICY
    assert result.reason == "Prompt contains disallowed content"


@pytest.mark.parametrize("missing", ["image", "model", "type"])
def test_missing_required_field_is_api_error(missing):
    body = dict(REMOTE_OBJECT)
    del body[missing]
    result = normalize_remote(remote(body), "p")
    assert result.kind == ErrorKind.API_ERROR
    assert missing in result.reason


def test_data_uri_and_json_envelope_strip_to_same_bytes():
    assert strip_base64_payload("data:image/png;base64,AAAA") == "AAAA"
    assert strip_base64_payload('{"b64_json":"AAAA"}') == "AAAA"
    assert decode_base64_image("data:image/png;base64,AAAA") == decode_base64_image('{"b64_json":"AAAA"}')
    assert decode_base64_image("AAAA") == base64.b64decode("AAAA")


def test_nested_envelope_is_unwrapped():
    payload = json.dumps({"data": [{"b64_json": "data:image/png;base64,AAAA"}]})
    assert strip_base64_payload(payload) == "AAAA"


def test_base64_reply_decodes_to_buffer():
    png = b"\x89PNG\r\n\x1a\nfake"
    body = dict(REMOTE_OBJECT, type="base64", image="data:image/png;base64," + base64.b64encode(png).decode())
    result = normalize_remote(remote(body), "p")
    assert result.ok
    assert result.image_buffer == png
    assert result.image_url is None


def test_undecodable_base64_is_api_error():
    body = dict(REMOTE_OBJECT, type="base64", image="%%%not-base64%%%")
    assert normalize_remote(remote(body), "p").kind == ErrorKind.API_ERROR


def test_binary_image_reply_is_success():
    result = normalize_remote(remote(b"\x89PNGdata", content_type="image/png"), "a cat")
    assert result.ok
    assert result.image_buffer == b"\x89PNGdata"
    assert result.metadata.prompt == "a cat"


def test_non_2xx_is_network_error():
    result = normalize_remote(remote(b"bad gateway", status=502, content_type="text/plain"), "p")
    assert result.kind == ErrorKind.NETWORK


def test_non_json_body_is_api_error():
    result = normalize_remote(remote(b"<html>", content_type="text/html"), "p")
    assert result.kind == ErrorKind.API_ERROR


# ==========================
# local
# ==========================

def test_local_success_requires_output_paths():
    done = ProgressEvent(task_id="t", status="completed", progress=100, output_paths=[])
    result = local_success(done, REQUEST, "t", "sd15", image_url="http://x/image/t/1")
    assert result.kind == ErrorKind.PROCESSING_FAILED


def test_local_success_metadata():
    done = ProgressEvent(
        task_id="t", status="completed", progress=100, output_paths=["a.png"], generation_time=12.5, model_used="sd15-fp16"
    )
    result = local_success(done, REQUEST, "t", "sd15", image_url="http://x/image/t/1", image_buffer=b"png")
    assert result.ok
    meta = result.metadata
    assert meta.model == "sd15-fp16"
    assert meta.provider == "local-ai"
    assert meta.execution_time == 12.5
    assert meta.parameters.size == "768x512"
    assert meta.parameters.steps == 25
    assert meta.parameters.cfg == 6.5
    assert meta.parameters.seed == 7
    assert meta.request_id == "t"


@pytest.mark.parametrize(
    "status,reason,kind",
    [
        ("failed", "CUDA out of memory. Tried to allocate 2.00 GiB", ErrorKind.RESOURCE_EXHAUSTED),
        ("failed", "RuntimeError: Out Of Memory", ErrorKind.RESOURCE_EXHAUSTED),
        ("failed", "model not found", ErrorKind.PROCESSING_FAILED),
        ("cancelled", "out of memory", ErrorKind.CANCELLED),
        ("failed", "", ErrorKind.PROCESSING_FAILED),
    ],
)
def test_local_failure_classification(status, reason, kind):
    result = local_failure(status, reason)
    assert result.kind == kind
    assert result.reason


def test_from_exception_maps_kinds():
    failed = ProgressEvent(task_id="t", status="failed", error="CUDA out of memory")
    assert from_exception(TaskFailedError("x", event=failed)).kind == ErrorKind.RESOURCE_EXHAUSTED
    assert from_exception(GenerationCancelled()).kind == ErrorKind.CANCELLED
    assert from_exception(WaitTimeoutError("too slow")).kind == ErrorKind.TIMEOUT
    assert from_exception(BackendUnavailableError("down")).kind == ErrorKind.NETWORK
    unexpected = from_exception(KeyError("boom"))
    assert unexpected.kind == ErrorKind.PROCESSING_FAILED
    assert unexpected.reason
