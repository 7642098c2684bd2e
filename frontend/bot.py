# frontend/bot.py
import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from backend.catalog import ModelCatalog
from backend.orchestrator import Orchestrator
from backend.utils import is_super_user
from config.settings import Settings

from .commands import GenerationCommands
from .embeds import error_embed, warning_embed

logger = logging.getLogger(__name__)


def channel_allowed(channel_id: Optional[int], user_id: int, settings: Settings) -> bool:
    """RESTRICT_TO_CHANNEL_ID giới hạn kênh, super user thì dùng ở đâu cũng được."""
    if settings.restrict_to_channel_id is None:
        return True
    if is_super_user(user_id, settings.super_users):
        return True
    return channel_id == settings.restrict_to_channel_id


class ImagineCommandTree(app_commands.CommandTree):
    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        settings: Settings = self.client.settings
        if channel_allowed(interaction.channel_id, interaction.user.id, settings):
            return True
        logger.info("Blocked command from user %s in channel %s", interaction.user.id, interaction.channel_id)
        if interaction.type == discord.InteractionType.application_command:
            await interaction.response.send_message(
                embed=warning_embed(f"This bot only works in <#{settings.restrict_to_channel_id}>."),
                ephemeral=True,
            )
        return False

    async def on_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError) -> None:
        if isinstance(error, app_commands.CheckFailure):
            return
        command = interaction.command.name if interaction.command else "?"
        logger.error("Error in command /%s", command, exc_info=error)
        embed = error_embed("An unexpected error occurred! Please try again.")
        try:
            if interaction.response.is_done():
                await interaction.edit_original_response(embed=embed, view=None)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException as e:
            logger.error("Could not report error to user: %s", e)


class ImagineBot(commands.Bot):
    def __init__(self, settings: Settings, orchestrator: Orchestrator, catalog: ModelCatalog):
        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=discord.Intents.default(),
            application_id=int(settings.discord_app_id) if settings.discord_app_id else None,
            tree_cls=ImagineCommandTree,
        )
        self.settings = settings
        self.orchestrator = orchestrator
        self.catalog = catalog

    async def setup_hook(self) -> None:
        await self.add_cog(GenerationCommands(self.orchestrator, self.catalog, self.settings))

        if self.settings.dev_guild_id:
            guild = discord.Object(id=self.settings.dev_guild_id)
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), self.settings.dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d global commands", len(synced))

    async def on_ready(self) -> None:
        logger.info("Logged in as %s (id=%s)", self.user, self.user.id if self.user else "?")

    async def close(self) -> None:
        await self.orchestrator.aclose()
        await super().close()
