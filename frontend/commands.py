# frontend/commands.py
import asyncio
import logging
import time
from io import BytesIO
from typing import List, Optional

import discord
from discord import app_commands
from discord.ext import commands

from backend.catalog import ModelCatalog
from backend.errors import ErrorKind, InvalidRequestError
from backend.health import LOCAL_SERVICE
from backend.model import GenerationContext, GenerationRequest, GenerationSuccess, ProgressEvent
from backend.orchestrator import Orchestrator
from backend.progress import ProgressChannel
from backend.request_builder import (
    QUALITY_PRESETS,
    SCHEDULER_CHOICES,
    SIZE_CHOICES,
    build_pro_request,
    build_quality_request,
)
from backend.utils import is_super_user
from config.settings import Settings

from . import embeds
from .views import CancelGenerationView

logger = logging.getLogger(__name__)

PROGRESS_EDIT_INTERVAL = 1.5


class ProgressThrottle:
    """Giới hạn số lần edit message (Discord rate limit)."""

    def __init__(self, min_interval: float = PROGRESS_EDIT_INTERVAL, clock=time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last: Optional[float] = None

    def should_render(self, event: ProgressEvent) -> bool:
        now = self._clock()
        if event.is_terminal or self._last is None or now - self._last >= self.min_interval:
            self._last = now
            return True
        return False


def _context(interaction: discord.Interaction, settings: Settings) -> GenerationContext:
    return GenerationContext(
        user_id=str(interaction.user.id),
        channel_id=str(interaction.channel_id) if interaction.channel_id else None,
        is_super_user=is_super_user(interaction.user.id, settings.super_users),
    )


def _avatar(interaction: discord.Interaction) -> str:
    return interaction.user.display_avatar.url


class GenerationCommands(commands.Cog):
    def __init__(self, orchestrator: Orchestrator, catalog: ModelCatalog, settings: Settings):
        self.orchestrator = orchestrator
        self.catalog = catalog
        self.settings = settings

    # ==========================
    # /imagine
    # ==========================

    @app_commands.command(name="imagine", description="✨ Create an image from a text prompt")
    @app_commands.describe(prompt="Your idea for the image (in English)", quality="Speed/quality trade-off")
    @app_commands.choices(
        quality=[app_commands.Choice(name=name.capitalize(), value=name) for name in QUALITY_PRESETS]
    )
    async def imagine(
        self,
        interaction: discord.Interaction,
        prompt: str,
        quality: Optional[app_commands.Choice[str]] = None,
    ) -> None:
        try:
            request = build_quality_request(prompt, quality.value if quality else None)
        except InvalidRequestError as e:
            await interaction.response.send_message(embed=embeds.warning_embed(e.reason), ephemeral=True)
            return

        await interaction.response.send_message(
            embed=embeds.loading_embed(request.prompt, interaction.user.display_name, _avatar(interaction))
        )
        result = await self.orchestrator.generate(request, _context(interaction, self.settings))
        await self._send_result(interaction, result)

    # ==========================
    # /imagine-pro
    # ==========================

    @app_commands.command(name="imagine-pro", description="🎛️ Create an image with full control over the parameters")
    @app_commands.describe(
        prompt="Your idea for the image (in English)",
        model="Model to use (auto picks the first available)",
        size="Image size",
        steps="Inference steps (10-100)",
        cfg="Guidance scale (1-20)",
        seed="Seed for reproducible results",
        scheduler="Sampler/scheduler",
        negative_prompt="What the image should NOT contain",
        eta="Noise eta (0-1)",
        attention_slicing="Lower VRAM usage (default on)",
        vae_slicing="Lower VRAM usage while decoding (default on)",
        cpu_offload="Offload layers to CPU (slow, default off)",
        sharpness="Enhance sharpness",
        contrast="Enhance contrast",
        color="Enhance color",
        brightness="Enhance brightness",
        unsharp_mask="Apply an unsharp mask",
    )
    @app_commands.choices(
        size=[app_commands.Choice(name=s, value=s) for s in SIZE_CHOICES],
        scheduler=[app_commands.Choice(name=s, value=s) for s in SCHEDULER_CHOICES],
    )
    async def imagine_pro(
        self,
        interaction: discord.Interaction,
        prompt: str,
        model: Optional[str] = None,
        size: Optional[app_commands.Choice[str]] = None,
        steps: Optional[app_commands.Range[int, 10, 100]] = None,
        cfg: Optional[app_commands.Range[float, 1.0, 20.0]] = None,
        seed: Optional[app_commands.Range[int, 0, 2147483647]] = None,
        scheduler: Optional[app_commands.Choice[str]] = None,
        negative_prompt: Optional[str] = None,
        eta: Optional[app_commands.Range[float, 0.0, 1.0]] = None,
        attention_slicing: Optional[bool] = None,
        vae_slicing: Optional[bool] = None,
        cpu_offload: Optional[bool] = None,
        sharpness: Optional[bool] = None,
        contrast: Optional[bool] = None,
        color: Optional[bool] = None,
        brightness: Optional[bool] = None,
        unsharp_mask: Optional[bool] = None,
    ) -> None:
        try:
            request = build_pro_request(
                prompt,
                model,
                size=size.value if size else "1024x1024",
                steps=steps if steps is not None else 20,
                guidance_scale=cfg if cfg is not None else 7.5,
                seed=seed,
                scheduler=scheduler.value if scheduler else None,
                negative_prompt=negative_prompt,
                eta=eta,
                use_attention_slicing=attention_slicing,
                use_vae_slicing=vae_slicing,
                use_cpu_offload=cpu_offload,
                enhance_sharpness=sharpness,
                enhance_contrast=contrast,
                enhance_color=color,
                enhance_brightness=brightness,
                apply_unsharp_mask=unsharp_mask,
            )
        except InvalidRequestError as e:
            await interaction.response.send_message(embed=embeds.warning_embed(e.reason), ephemeral=True)
            return

        await self._run_with_progress(interaction, request)

    @imagine_pro.autocomplete("model")
    async def _model_autocomplete(self, interaction: discord.Interaction, current: str) -> List[app_commands.Choice[str]]:
        options = await self.catalog.options()
        needle = current.lower()
        return [
            app_commands.Choice(name=opt.name, value=opt.value)
            for opt in options
            if needle in opt.name.lower() or needle in opt.value.lower()
        ][:25]

    # ==========================
    # /models
    # ==========================

    @app_commands.command(name="models", description="🤖 List the models you can use")
    async def models(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(thinking=True)
        options = await self.catalog.options()
        local_online = self.orchestrator.local is not None and await self.orchestrator.health.is_online(LOCAL_SERVICE)
        label = "local" if local_online else "remote"
        await interaction.followup.send(embed=embeds.models_embed(options, label))

    # ==========================
    # helpers
    # ==========================

    async def _run_with_progress(self, interaction: discord.Interaction, request: GenerationRequest) -> None:
        user = interaction.user
        channel = ProgressChannel()
        handle = self.orchestrator.start(request, _context(interaction, self.settings), progress=channel)
        view = CancelGenerationView(handle, owner_id=user.id)

        await interaction.response.send_message(
            embed=embeds.loading_embed(request.prompt, user.display_name, _avatar(interaction)),
            view=view,
        )
        renderer = asyncio.create_task(self._render_progress(interaction, channel, request, view))
        try:
            result = await handle.result()
        finally:
            channel.close()
            await renderer

        view.stop()
        if not result.ok and result.kind == ErrorKind.CANCELLED:
            # kết quả Cancelled có thể về trước khi backend xác nhận huỷ
            acknowledged = await view.cancel_outcome()
            await self._safe_edit(interaction, embed=embeds.cancel_embed(acknowledged), view=None)
            return
        await self._send_result(interaction, result)

    async def _render_progress(
        self,
        interaction: discord.Interaction,
        channel: ProgressChannel,
        request: GenerationRequest,
        view: CancelGenerationView,
    ) -> None:
        throttle = ProgressThrottle()
        user = interaction.user
        async for event in channel:
            # event cuối do _send_result vẽ
            if event.is_terminal or view.is_finished() or not throttle.should_render(event):
                continue
            embed = embeds.progress_embed(event, request.prompt, user.display_name, _avatar(interaction))
            await self._safe_edit(interaction, embed=embed, view=view)

    async def _send_result(self, interaction: discord.Interaction, result) -> None:
        user = interaction.user
        if not isinstance(result, GenerationSuccess):
            await self._safe_edit(interaction, embed=embeds.failure_embed(result), view=None)
            return

        attachments = []
        filename = None
        if result.image_buffer:
            filename = embeds.attachment_filename(result.image_buffer)
            attachments.append(discord.File(BytesIO(result.image_buffer), filename=filename))
        embed = embeds.success_embed(result, user.display_name, _avatar(interaction), attachment_name=filename)
        await self._safe_edit(interaction, embed=embed, attachments=attachments, view=None)

    async def _safe_edit(self, interaction: discord.Interaction, **kwargs) -> None:
        try:
            await interaction.edit_original_response(**kwargs)
        except discord.HTTPException as e:
            logger.error("Failed to update interaction response: %s", e)
