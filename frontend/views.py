# frontend/views.py
import asyncio
import logging
from typing import Optional

import discord

from backend.orchestrator import GenerationHandle

from .embeds import cancel_embed

logger = logging.getLogger(__name__)


class CancelGenerationView(discord.ui.View):
    """Nút huỷ dưới embed progress, chỉ người gọi lệnh được bấm."""

    def __init__(self, handle: GenerationHandle, owner_id: int, timeout: Optional[float] = None):
        super().__init__(timeout=timeout)
        self.handle = handle
        self.owner_id = owner_id
        self.acknowledged: Optional[bool] = None
        self._cancelling: Optional["asyncio.Task[bool]"] = None

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.owner_id:
            await interaction.response.send_message(
                "❌ Only the person who started this generation can cancel it.", ephemeral=True
            )
            return False
        return True

    # không đặt custom_id: mỗi generation có nút riêng
    @discord.ui.button(label="🚫 Cancel", style=discord.ButtonStyle.danger)
    async def cancel_button(self, interaction: discord.Interaction, button: discord.ui.Button) -> None:
        button.disabled = True
        await interaction.response.edit_message(embed=cancel_embed(), view=None)
        logger.info("User %s cancelled generation %s", interaction.user.id, self.handle.request_id)
        await self.request_cancel()
        self.stop()

    async def request_cancel(self) -> Optional[bool]:
        if self._cancelling is None:
            self._cancelling = asyncio.create_task(self.handle.cancel())
        self.acknowledged = await self._cancelling
        return self.acknowledged

    async def cancel_outcome(self) -> Optional[bool]:
        """Chờ backend trả lời yêu cầu huỷ (nếu có). None nếu chưa ai bấm huỷ."""
        if self._cancelling is None:
            return None
        self.acknowledged = await self._cancelling
        return self.acknowledged
