# backend/model.py
import math
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ErrorKind

TaskStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]

TERMINAL_STATUSES = ("completed", "failed", "cancelled")

# Thứ tự "nặng" của status, dùng để bỏ event đến trễ (processing sau completed...)
STATUS_RANK: Dict[str, int] = {
    "pending": 0,
    "processing": 1,
    "completed": 2,
    "failed": 2,
    "cancelled": 2,
}


class GenerationRequest(BaseModel):
    """Một lần user gọi lệnh sinh ảnh. Không thay đổi sau khi tạo."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    prompt: str = Field(min_length=1, max_length=1000)
    negative_prompt: Optional[str] = None
    model: str = "auto"
    width: int = Field(1024, ge=64, le=4096)
    height: int = Field(1024, ge=64, le=4096)
    steps: int = Field(20, ge=1, le=150)
    guidance_scale: float = Field(7.5, ge=0, le=30)
    seed: Optional[int] = Field(None, ge=0, le=2**32 - 1)
    scheduler: Optional[str] = None
    eta: Optional[float] = Field(None, ge=0, le=1)
    num_images: int = Field(1, ge=1, le=4)

    use_attention_slicing: Optional[bool] = None
    use_vae_slicing: Optional[bool] = None
    use_cpu_offload: Optional[bool] = None
    enhance_sharpness: Optional[bool] = None
    enhance_contrast: Optional[bool] = None
    enhance_color: Optional[bool] = None
    enhance_brightness: Optional[bool] = None
    apply_unsharp_mask: Optional[bool] = None

    @field_validator("prompt")
    @classmethod
    def _strip_prompt(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("prompt must not be empty")
        return value

    @property
    def size(self) -> str:
        return f"{self.width}x{self.height}"

    def to_payload(self, model: Optional[str] = None) -> Dict[str, Any]:
        """
        Body JSON cho POST /generate của backend local.
        Field nào chưa set thì bỏ hẳn khỏi payload.
        """
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "prompt": self.prompt,
            "width": self.width,
            "height": self.height,
            "num_inference_steps": self.steps,
            "guidance_scale": self.guidance_scale,
            "num_images_per_prompt": self.num_images,
        }
        optional = {
            "negative_prompt": self.negative_prompt,
            "seed": self.seed,
            "scheduler": self.scheduler,
            "eta": self.eta,
            "use_attention_slicing": self.use_attention_slicing,
            "use_vae_slicing": self.use_vae_slicing,
            "use_cpu_offload": self.use_cpu_offload,
            "enhance_sharpness": self.enhance_sharpness,
            "enhance_contrast": self.enhance_contrast,
            "enhance_color": self.enhance_color,
            "enhance_brightness": self.enhance_brightness,
            "apply_unsharp_mask": self.apply_unsharp_mask,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload


class GenerationContext(BaseModel):
    """Ai gọi lệnh, ở kênh nào. Gửi kèm cho webhook remote."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    channel_id: Optional[str] = None
    is_super_user: bool = False


class PerformanceStats(BaseModel):
    model_config = ConfigDict(extra="ignore")

    device: Optional[str] = None
    cpu_percent: Optional[float] = None
    memory_percent: Optional[float] = None
    memory_used_gb: Optional[float] = None
    memory_total_gb: Optional[float] = None
    model_loaded: Optional[bool] = None


class ColorChannels(BaseModel):
    red: Optional[float] = None
    green: Optional[float] = None
    blue: Optional[float] = None


class ImageStats(BaseModel):
    model_config = ConfigDict(extra="ignore")

    width: Optional[int] = None
    height: Optional[int] = None
    channels: Optional[int] = None
    avg_brightness: Optional[float] = None
    contrast_std: Optional[float] = None
    color_channels: Optional[ColorChannels] = None


class ProgressEvent(BaseModel):
    """Snapshot trạng thái task, nhận từ WebSocket hoặc GET /task/{id}."""

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    task_id: str
    status: TaskStatus
    message: str = ""
    progress: float = 0.0
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    performance_stats: Optional[PerformanceStats] = None
    image_stats: Optional[ImageStats] = None
    output_paths: List[str] = Field(default_factory=list)
    generation_time: Optional[float] = None
    model_used: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    # Do monitor tính, không đến từ backend
    steps_per_second: Optional[float] = None
    eta_seconds: Optional[float] = None

    @field_validator("progress", mode="before")
    @classmethod
    def _normalize_progress(cls, value: Any) -> float:
        # Backend có lúc gửi 0-1, có lúc 0-100: > 1 coi như phần trăm
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.0
        if math.isnan(value):
            return 0.0
        if value <= 1:
            value *= 100
        return max(0.0, min(100.0, value))

    @field_validator("output_paths", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _strip_outputs(self) -> "ProgressEvent":
        # Chỉ event cuối cùng được mang output_paths
        if not self.is_terminal and self.output_paths:
            self.output_paths = []
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return STATUS_RANK[self.status]


class LocalModel(BaseModel):
    slug: str
    name: str
    description: str
    resolution: str
    memory_usage: str
    available: bool

    @classmethod
    def from_descriptor(cls, slug: str, data: Dict[str, Any]) -> "LocalModel":
        max_res = data.get("max_resolution") or 512
        memory = data.get("memory_usage_gb")
        return cls(
            slug=slug,
            name=data.get("model_name") or data.get("name") or slug,
            description=data.get("description") or f"Model {slug}",
            resolution=data.get("resolution") or f"{max_res}x{max_res}",
            memory_usage=f"{memory if memory is not None else 'N/A'}GB",
            available="error" not in data and bool(data.get("device")),
        )


class SubmitResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task_id: str = Field(min_length=1)
    status: Optional[str] = None
    message: Optional[str] = None


class GenerationParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: str
    steps: Optional[int] = None
    cfg: Optional[float] = None
    seed: Optional[int] = None


class ImageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    provider: str
    execution_time: Optional[float] = None
    parameters: GenerationParams
    prompt: str
    request_id: str


class GenerationSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Literal["success"] = "success"
    image_buffer: Optional[bytes] = None
    image_url: Optional[str] = None
    metadata: ImageMetadata

    @model_validator(mode="after")
    def _require_image(self) -> "GenerationSuccess":
        if not self.image_buffer and not self.image_url:
            raise ValueError("success result needs an image buffer or an image url")
        return self

    @property
    def ok(self) -> bool:
        return True


class GenerationFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Literal["error"] = "error"
    kind: ErrorKind
    reason: str = Field(min_length=1)
    metadata: Optional[ImageMetadata] = None

    @property
    def ok(self) -> bool:
        return False


NormalizedResult = Annotated[
    Union[GenerationSuccess, GenerationFailure], Field(discriminator="outcome")
]


class RemoteParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    seed: Optional[int] = None
    cfg: Optional[float] = None
    size: Optional[str] = None
    steps: Optional[int] = None


class RemoteMeta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reason: Optional[str] = None


class RemoteImageReply(BaseModel):
    """Body JSON webhook trả về (đã unwrap nếu bị bọc trong mảng)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    prompt: Optional[str] = None
    image: str = Field(min_length=1)
    model: str = Field(min_length=1)
    provider: Optional[str] = None
    type: Literal["url", "base64"]
    params: RemoteParams = Field(default_factory=RemoteParams)
    request_id: Optional[str] = Field(None, alias="requestId")
    meta: Optional[RemoteMeta] = None


class RemoteHttpResponse(BaseModel):
    status: int
    content_type: str = ""
    body: bytes = b""

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300
