import time
import uuid
from typing import Iterable, Optional, Union


def gen_request_id() -> str:
    return str(uuid.uuid4())


def get_timestamp_ms() -> int:
    return int(time.time() * 1000)


def is_super_user(user_id: Union[int, str], super_users: Iterable[str]) -> bool:
    return str(user_id) in {str(u) for u in super_users}


def format_duration(seconds: Optional[float]) -> str:
    """12.3 -> '12.3s', 95 -> '1m 35s'."""
    if seconds is None or seconds < 0:
        return "N/A"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."
