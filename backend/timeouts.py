# backend/timeouts.py
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Giá trị mặc định khi thiếu tham số
DEFAULT_STEPS = 20
DEFAULT_SIZE = 1024
DEFAULT_GUIDANCE = 7.0

HIGH_GUIDANCE_THRESHOLD = 10.0


@dataclass(frozen=True)
class TimeoutPolicy:
    """Các hệ số ước lượng timeout, đơn vị giây."""

    base: float = 1800
    per_step: float = 20
    per_megapixel: float = 90
    high_guidance: float = 45
    maximum: float = 7200

    @classmethod
    def from_settings(cls, settings) -> "TimeoutPolicy":
        return cls(
            base=settings.ai_timeout_base,
            per_step=settings.ai_timeout_per_step,
            per_megapixel=settings.ai_timeout_per_mp,
            high_guidance=settings.ai_timeout_high_cfg,
            maximum=settings.ai_timeout_max,
        )


@dataclass(frozen=True)
class TimeoutEstimate:
    timeout_ms: int
    was_clamped: bool
    breakdown: Dict[str, float] = field(default_factory=dict)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


def _non_negative(value: Optional[float]) -> float:
    # None, NaN, inf hoặc số âm -> không đóng góp gì
    if value is None:
        return 0.0
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value) or value < 0:
        return 0.0
    return value


def estimate_timeout(
    steps: Optional[float] = DEFAULT_STEPS,
    width: Optional[float] = DEFAULT_SIZE,
    height: Optional[float] = DEFAULT_SIZE,
    guidance_scale: Optional[float] = DEFAULT_GUIDANCE,
    policy: Optional[TimeoutPolicy] = None,
) -> TimeoutEstimate:
    """
    Ước lượng thời gian chờ tối đa cho một lần generate.

    base + steps * per_step
         + (MP - 1) * per_megapixel   nếu ảnh > 1 megapixel
         + (cfg - 10) * high_guidance nếu cfg > 10
    rồi kẹp lại ở policy.maximum.
    """
    policy = policy or TimeoutPolicy()

    steps_v = _non_negative(steps)
    megapixels = _non_negative(width) * _non_negative(height) / (1024 * 1024)
    cfg = _non_negative(guidance_scale)

    steps_part = steps_v * policy.per_step
    resolution_part = (megapixels - 1) * policy.per_megapixel if megapixels > 1 else 0.0
    guidance_part = (
        (cfg - HIGH_GUIDANCE_THRESHOLD) * policy.high_guidance
        if cfg > HIGH_GUIDANCE_THRESHOLD
        else 0.0
    )

    total = policy.base + steps_part + resolution_part + guidance_part
    was_clamped = total > policy.maximum
    final = min(total, policy.maximum)

    breakdown = {
        "base": float(policy.base),
        "steps": steps_part,
        "resolution": resolution_part,
        "guidance": guidance_part,
        "total": final,
    }
    logger.debug(
        "Timeout estimate: steps=%s %.2fMP cfg=%s -> %.0fs%s",
        steps_v, megapixels, cfg, final, " (clamped)" if was_clamped else "",
    )
    return TimeoutEstimate(timeout_ms=int(round(final * 1000)), was_clamped=was_clamped, breakdown=breakdown)
