# backend/errors.py

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "ValidationError"
    NETWORK = "NetworkError"
    SUBMISSION = "SubmissionError"
    RESOURCE_EXHAUSTED = "ResourceExhausted"
    PROCESSING_FAILED = "ProcessingFailed"
    CANCELLED = "Cancelled"
    CONTENT_POLICY = "ContentPolicyViolation"
    API_ERROR = "ApiError"
    TIMEOUT = "Timeout"


class GenerationError(Exception):
    """
    Lỗi gốc của pipeline sinh ảnh.
    Mỗi lỗi mang theo `kind` để normalizer chuyển thành kết quả có cấu trúc.
    """

    kind: ErrorKind = ErrorKind.PROCESSING_FAILED

    def __init__(self, reason: str, kind: Optional[ErrorKind] = None):
        super().__init__(reason)
        self.reason = reason
        if kind is not None:
            self.kind = kind


class InvalidRequestError(GenerationError):
    kind = ErrorKind.VALIDATION


class BackendUnavailableError(GenerationError):
    kind = ErrorKind.NETWORK


class SubmissionError(GenerationError):
    kind = ErrorKind.SUBMISSION


class MalformedResponseError(GenerationError):
    kind = ErrorKind.API_ERROR


class WaitTimeoutError(GenerationError):
    kind = ErrorKind.TIMEOUT


class GenerationCancelled(GenerationError):
    kind = ErrorKind.CANCELLED

    def __init__(self, reason: str = "Generation cancelled"):
        super().__init__(reason)


class TaskFailedError(GenerationError):
    """Task local kết thúc với status failed/cancelled; giữ lại event cuối."""

    def __init__(self, reason: str, event: Any = None, kind: Optional[ErrorKind] = None):
        super().__init__(reason, kind)
        self.event = event
