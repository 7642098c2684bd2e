import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

# Load biến môi trường trong .env (thư mục gốc project trước, sau đó cwd)
BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")
load_dotenv()


class ConfigError(Exception):
    """Cấu hình thiếu hoặc sai."""


# Timeout cố định cho từng loại request (giây)
HEALTH_CHECK_TIMEOUT = 5.0
MODEL_FETCH_TIMEOUT = 10.0
GENERATION_SUBMIT_TIMEOUT = 30.0
POLL_INTERVAL = 2.0
WEBSOCKET_CONNECT_TIMEOUT = 15.0
HTTP_REQUEST_TIMEOUT = 20.0
TASK_CANCEL_TIMEOUT = 5.0
IMAGE_DOWNLOAD_TIMEOUT = 30.0


def _split_ids(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseModel):
    discord_token: Optional[str] = None
    discord_app_id: Optional[str] = None
    dev_guild_id: Optional[int] = None
    restrict_to_channel_id: Optional[int] = None
    super_users: List[str] = Field(default_factory=list)

    local_ai_url: Optional[str] = None
    n8n_imagine_url: Optional[str] = None
    n8n_username: Optional[str] = None
    n8n_password: Optional[str] = None

    # Các tham số ước lượng timeout (giây)
    ai_timeout_base: int = Field(1800, ge=30, le=7200)
    ai_timeout_per_step: int = Field(20, ge=1, le=120)
    ai_timeout_per_mp: int = Field(90, ge=10, le=600)
    ai_timeout_high_cfg: int = Field(45, ge=0, le=300)
    ai_timeout_max: int = Field(7200, ge=300, le=14400)

    health_cache_ttl: float = Field(30.0, gt=0)
    health_min_interval: float = Field(5.0, gt=0)
    remote_timeout: float = Field(120.0, gt=0)

    ai_models_file: str = "ai_models.json"
    log_level: str = "INFO"

    @field_validator("local_ai_url", "n8n_imagine_url")
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().rstrip("/")
        if not value:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://: {value}")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _check_bounds(self) -> "Settings":
        if self.ai_timeout_base > self.ai_timeout_max:
            raise ValueError("AI_TIMEOUT_BASE must not exceed AI_TIMEOUT_MAX")
        if self.health_min_interval >= self.health_cache_ttl:
            raise ValueError("HEALTH_MIN_INTERVAL must be shorter than HEALTH_CACHE_TTL")
        return self

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """
        Đọc cấu hình từ biến môi trường.
        Biến rỗng được coi như không khai báo (dùng default).
        """
        env = os.environ if environ is None else environ
        mapping = {
            "discord_token": "DISCORD_TOKEN",
            "discord_app_id": "DISCORD_APP_ID",
            "dev_guild_id": "DEV_GUILD_ID",
            "restrict_to_channel_id": "RESTRICT_TO_CHANNEL_ID",
            "local_ai_url": "LOCAL_AI_URL",
            "n8n_imagine_url": "N8N_IMAGINE_URL",
            "n8n_username": "N8N_USERNAME",
            "n8n_password": "N8N_PASSWORD",
            "ai_timeout_base": "AI_TIMEOUT_BASE",
            "ai_timeout_per_step": "AI_TIMEOUT_PER_STEP",
            "ai_timeout_per_mp": "AI_TIMEOUT_PER_MP",
            "ai_timeout_high_cfg": "AI_TIMEOUT_HIGH_CFG",
            "ai_timeout_max": "AI_TIMEOUT_MAX",
            "health_cache_ttl": "HEALTH_CACHE_TTL",
            "health_min_interval": "HEALTH_MIN_INTERVAL",
            "remote_timeout": "REMOTE_TIMEOUT",
            "ai_models_file": "AI_MODELS_FILE",
            "log_level": "LOG_LEVEL",
        }
        data = {}
        for field_name, env_name in mapping.items():
            raw = env.get(env_name)
            if raw is not None and raw.strip():
                data[field_name] = raw.strip()
        data["super_users"] = _split_ids(env.get("SUPER_USERS"))

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @property
    def local_enabled(self) -> bool:
        return bool(self.local_ai_url)

    @property
    def remote_enabled(self) -> bool:
        return bool(self.n8n_imagine_url)

    def validate_runtime(self) -> Tuple[List[str], List[str]]:
        """Trả về (errors, warnings) cho cấu hình lúc khởi động bot."""
        errors: List[str] = []
        warnings: List[str] = []

        if not self.local_enabled and not self.remote_enabled:
            errors.append("Configure LOCAL_AI_URL or N8N_IMAGINE_URL")
        if self.remote_enabled and not (self.n8n_username and self.n8n_password):
            warnings.append("N8N_IMAGINE_URL is set without N8N_USERNAME/N8N_PASSWORD")
        if self.ai_timeout_base < 300:
            warnings.append(
                f"AI_TIMEOUT_BASE is very low ({self.ai_timeout_base}s), generations may time out"
            )
        if self.ai_timeout_max > 10800:
            warnings.append(
                f"AI_TIMEOUT_MAX is very high ({self.ai_timeout_max}s), hung jobs will block for hours"
            )
        return errors, warnings

    def require_discord(self) -> None:
        missing = [
            name
            for name, value in (("DISCORD_TOKEN", self.discord_token), ("DISCORD_APP_ID", self.discord_app_id))
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings của process, đọc env lần đầu được gọi (lỗi -> ConfigError)."""
    return Settings.from_env()
