# backend/catalog.py
import json
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import GenerationError
from .health import LOCAL_SERVICE, HealthProbe
from .local_client import LocalBackendClient
from .model import LocalModel

logger = logging.getLogger(__name__)

# Discord cho tối đa 25 choice, name/description tối đa 100 ký tự
MAX_OPTIONS = 25
MAX_LABEL = 100

FALLBACK_LOCAL_MODEL = "stable-diffusion-v1.5"


class ModelOption(BaseModel):
    name: str
    value: str
    description: str = ""


class RemoteModelSpec(BaseModel):
    """Một entry trong ai_models.json (model của webhook remote)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    slug: str
    best_for: Optional[str] = Field(None, alias="bestFor")


AUTO_OPTION = ModelOption(name="🤖 Auto", value="auto", description="Let the bot pick the best available model")


def load_remote_models(path: Path) -> List[RemoteModelSpec]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return [RemoteModelSpec.model_validate(m) for m in data.get("models", [])]
    except (OSError, ValueError, AttributeError, ValidationError) as e:
        logger.error("Could not load remote models from %s: %s", path, e)
        return []


class ModelCatalog:
    """
    Danh sách model hiển thị cho user.
    Local online -> model local, ngược lại -> model remote trong ai_models.json.
    """

    def __init__(
        self,
        health: HealthProbe,
        local: Optional[LocalBackendClient],
        models_file: Path,
    ):
        self._health = health
        self._local = local
        self.models_file = Path(models_file)

    async def _local_online(self) -> bool:
        return self._local is not None and await self._health.is_online(LOCAL_SERVICE)

    async def local_models(self) -> List[LocalModel]:
        if self._local is None:
            return []
        return [m for m in await self._local.list_models() if m.available]

    async def options(self) -> List[ModelOption]:
        try:
            if await self._local_online():
                models = await self.local_models()
                options = [
                    ModelOption(
                        name=f"🖥️ {m.name}"[:MAX_LABEL],
                        value=m.slug,
                        description=(m.description or "Local model")[:MAX_LABEL],
                    )
                    for m in models[: MAX_OPTIONS - 1]
                ]
            else:
                options = [
                    ModelOption(
                        name=f"☁️ {m.name}"[:MAX_LABEL],
                        value=m.slug,
                        description=(m.best_for or "Remote model")[:MAX_LABEL],
                    )
                    for m in load_remote_models(self.models_file)[: MAX_OPTIONS - 1]
                ]
        except GenerationError as e:
            logger.error("Could not list models: %s", e)
            return [AUTO_OPTION]

        return [AUTO_OPTION] + options

    async def is_available(self, slug: str) -> bool:
        return any(option.value == slug for option in await self.options())
