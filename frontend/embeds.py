# frontend/embeds.py
import logging
from io import BytesIO
from typing import Iterable, Optional

import discord
from PIL import Image, UnidentifiedImageError

from backend.errors import ErrorKind
from backend.model import GenerationFailure, GenerationSuccess, ProgressEvent
from backend.utils import format_duration, truncate

logger = logging.getLogger(__name__)

PRIMARY = 0xFFD700
ERROR = 0xED4245
WARNING = 0xFEE75C
PROGRESS = 0x7289DA
CANCEL = 0xFF6B35
SUCCESS = 0x57F287

IMAGE_BASENAME = "stella-image"

# Discord giới hạn description 4096 ký tự; prompt chỉ hiện một phần
PROMPT_PREVIEW = 1000
MEMORY_WARNING_PERCENT = 90
MAX_ETA_DISPLAY = 300


def attachment_filename(image: bytes) -> str:
    """Đoán định dạng ảnh bằng Pillow để đặt đuôi file cho đúng."""
    try:
        with Image.open(BytesIO(image)) as img:
            fmt = (img.format or "PNG").lower()
    except (UnidentifiedImageError, OSError):
        logger.debug("Could not identify image format, defaulting to png")
        fmt = "png"
    if fmt == "jpeg":
        fmt = "jpg"
    return f"{IMAGE_BASENAME}.{fmt}"


def progress_bar(percent: float, width: int = 20) -> str:
    percent = max(0.0, min(100.0, percent))
    filled = int(round(width * percent / 100))
    return "█" * filled + "░" * (width - filled)


def _prompt_line(prompt: str) -> str:
    return f"**Prompt:** {truncate(prompt, PROMPT_PREVIEW)}"


def loading_embed(prompt: str, requested_by: str, avatar_url: Optional[str] = None, status: Optional[str] = None) -> discord.Embed:
    embed = discord.Embed(
        title="🎨 Starting generation",
        description=f"{_prompt_line(prompt)}\n\n{status or '🔍 Checking available backends...'}",
        color=PROGRESS,
        timestamp=discord.utils.utcnow(),
    )
    embed.set_footer(text=f"Requested by {requested_by}", icon_url=avatar_url)
    return embed


def progress_embed(event: ProgressEvent, prompt: str, requested_by: str, avatar_url: Optional[str] = None) -> discord.Embed:
    percent = round(event.progress)
    lines = [_prompt_line(prompt), "", f"`{progress_bar(event.progress)}` {percent}%"]

    if event.current_step is not None and event.total_steps:
        step_line = f"Step {event.current_step}/{event.total_steps}"
        if event.steps_per_second:
            step_line += f" • {event.steps_per_second:.2f} it/s"
        if event.eta_seconds is not None and event.eta_seconds < MAX_ETA_DISPLAY:
            step_line += f" • ETA {format_duration(event.eta_seconds)}"
        lines.append(step_line)

    stats = event.performance_stats
    if stats is not None and stats.memory_percent is not None and stats.memory_percent > MEMORY_WARNING_PERCENT:
        lines.append(f"⚠️ Memory: {stats.memory_percent:.0f}%")
    if event.model_used:
        lines.append(f"**Model:** {event.model_used}")
    if event.message:
        lines.append(f"*{truncate(event.message, 200)}*")

    embed = discord.Embed(
        title="🎨 Generation in progress",
        description="\n".join(lines),
        color=PROGRESS,
        timestamp=discord.utils.utcnow(),
    )
    embed.set_footer(text=f"Requested by {requested_by}", icon_url=avatar_url)
    return embed


def success_embed(
    result: GenerationSuccess,
    requested_by: str,
    avatar_url: Optional[str] = None,
    attachment_name: Optional[str] = None,
) -> discord.Embed:
    meta = result.metadata
    params = meta.parameters
    embed = discord.Embed(
        title="☀️✨ Your image is ready!",
        description=_prompt_line(meta.prompt),
        color=PRIMARY,
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(name="🤖 Model", value=meta.model, inline=False)
    embed.add_field(name="⏱️ Time", value=format_duration(meta.execution_time) if meta.execution_time else "N/A", inline=True)
    embed.add_field(name="📐 Size", value=params.size, inline=True)
    embed.add_field(name="🔧 Steps", value=str(params.steps) if params.steps is not None else "N/A", inline=True)
    embed.add_field(name="⚙️ CFG", value=str(params.cfg) if params.cfg is not None else "N/A", inline=True)
    embed.add_field(name="🎲 Seed", value=str(params.seed) if params.seed is not None else "Random", inline=True)
    embed.set_footer(text=f"Created by {requested_by} • Provider: {meta.provider}", icon_url=avatar_url)

    if attachment_name:
        embed.set_image(url=f"attachment://{attachment_name}")
    elif result.image_url:
        embed.set_image(url=result.image_url)
    return embed


def failure_message(result: GenerationFailure) -> str:
    kind = result.kind
    if kind == ErrorKind.TIMEOUT:
        return "⏱️ The generation took too long and was stopped. Try fewer steps or a smaller size."
    if kind == ErrorKind.RESOURCE_EXHAUSTED:
        return (
            f"💥 **Not enough GPU memory!**\n\n{truncate(result.reason, 500)}\n\n"
            "*Try a lower resolution or fewer steps.*"
        )
    if kind == ErrorKind.CONTENT_POLICY:
        return f"🚫 **The prompt was rejected by the content policy.**\n\n{truncate(result.reason, 500)}"
    if kind == ErrorKind.CANCELLED:
        return "🚫 The generation was cancelled."
    if kind == ErrorKind.VALIDATION:
        return f"✏️ {truncate(result.reason, 500)}"
    if kind == ErrorKind.NETWORK:
        return "🔌 Could not reach the image service. Please try again in a few minutes."
    return f"❌ **Generation failed:**\n\n{truncate(result.reason, 500)}"


def error_embed(description: str) -> discord.Embed:
    return discord.Embed(title="⛈️ Something went wrong", description=description, color=ERROR)


def failure_embed(result: GenerationFailure) -> discord.Embed:
    if result.kind == ErrorKind.CANCELLED:
        return cancel_embed()
    return error_embed(failure_message(result))


def warning_embed(description: str) -> discord.Embed:
    return discord.Embed(title="⚠️ Heads up", description=description, color=WARNING)


def cancel_embed(acknowledged: Optional[bool] = None) -> discord.Embed:
    description = "🚫 The generation was cancelled."
    if acknowledged is False:
        description += "\n*The server did not confirm the cancellation; it may finish in the background.*"
    return discord.Embed(title="🚫 Generation cancelled", description=description, color=CANCEL)


def models_embed(options: Iterable, backend_label: str) -> discord.Embed:
    lines = [f"**{opt.name}** (`{opt.value}`)\n{opt.description}" for opt in options]
    return discord.Embed(
        title=f"🤖 Available models ({backend_label})",
        description=truncate("\n\n".join(lines) or "No models available.", 4000),
        color=PRIMARY,
    )
