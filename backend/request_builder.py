# backend/request_builder.py
import logging
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .errors import InvalidRequestError
from .model import GenerationRequest

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 1000

# preset -> (steps, guidance_scale, width, height)
QUALITY_PRESETS: Dict[str, Tuple[int, float, int, int]] = {
    "fast": (10, 6.0, 512, 512),
    "balanced": (20, 7.5, 1024, 1024),
    "high": (30, 8.0, 1024, 1024),
}
DEFAULT_QUALITY = "balanced"

SIZE_CHOICES = ("512x512", "1024x1024", "1152x896", "896x1152", "1280x720", "1920x1080")

SCHEDULER_CHOICES = ("auto", "DPM++ 2M Karras", "Euler a", "DDIM", "LMS")

# Mặc định của /imagine-pro: bật slicing để đỡ tốn VRAM, tắt các bước hậu kỳ
PRO_TOGGLE_DEFAULTS: Dict[str, bool] = {
    "use_attention_slicing": True,
    "use_vae_slicing": True,
    "use_cpu_offload": False,
    "enhance_sharpness": False,
    "enhance_contrast": False,
    "enhance_color": False,
    "enhance_brightness": False,
    "apply_unsharp_mask": False,
}


def validate_prompt(prompt: Optional[str]) -> str:
    text = (prompt or "").strip()
    if not text:
        raise InvalidRequestError("Prompt must not be empty")
    if len(text) > MAX_PROMPT_LENGTH:
        raise InvalidRequestError(f"Prompt is too long (max {MAX_PROMPT_LENGTH} characters)")
    return text


def parse_dimensions(size: str) -> Tuple[int, int]:
    """'1280x720' -> (1280, 720)."""
    try:
        width_s, height_s = size.lower().replace(" ", "").split("x", 1)
        width, height = int(width_s), int(height_s)
    except (AttributeError, ValueError) as e:
        raise InvalidRequestError(f"Invalid size {size!r}, expected WIDTHxHEIGHT") from e
    if width <= 0 or height <= 0:
        raise InvalidRequestError(f"Invalid size {size!r}")
    return width, height


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def build_generation_request(prompt: str, model: Optional[str] = None, **options: Any) -> GenerationRequest:
    """
    Tạo GenerationRequest từ option của slash command.
    Option None bị bỏ qua (dùng default); scheduler 'auto' nghĩa là để backend tự chọn.
    """
    data: Dict[str, Any] = {"prompt": validate_prompt(prompt), "model": model or "auto"}

    size = options.pop("size", None)
    if size:
        data["width"], data["height"] = parse_dimensions(size)

    if options.get("scheduler") == "auto":
        options["scheduler"] = None

    data.update({k: v for k, v in options.items() if v is not None})
    try:
        return GenerationRequest(**data)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid generation options: {_first_error(e)}") from e


def build_pro_request(prompt: str, model: Optional[str] = None, **options: Any) -> GenerationRequest:
    merged = dict(PRO_TOGGLE_DEFAULTS)
    merged.update({k: v for k, v in options.items() if v is not None})
    return build_generation_request(prompt, model, **merged)


def build_quality_request(prompt: str, quality: Optional[str] = None, model: Optional[str] = None) -> GenerationRequest:
    preset_name = quality or DEFAULT_QUALITY
    if preset_name not in QUALITY_PRESETS:
        raise InvalidRequestError(f"Unknown quality preset {preset_name!r}")
    steps, cfg, width, height = QUALITY_PRESETS[preset_name]
    logger.debug("Using quality preset %s (%s steps, cfg %s, %sx%s)", preset_name, steps, cfg, width, height)
    return build_generation_request(
        prompt, model, steps=steps, guidance_scale=cfg, width=width, height=height
    )
