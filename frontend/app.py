# frontend/app.py
import asyncio
import logging
import sys
from pathlib import Path

import aiohttp
import httpx

from backend.catalog import ModelCatalog
from backend.orchestrator import Orchestrator
from config.settings import HTTP_REQUEST_TIMEOUT, ConfigError, Settings, get_settings

from .bot import ImagineBot

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    logging.getLogger("discord.http").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    error = context.get("exception")
    logger.error("Unhandled error in event loop: %s", context.get("message"), exc_info=error)


async def run_bot(settings: Settings) -> None:
    settings.require_discord()
    asyncio.get_running_loop().set_exception_handler(_handle_loop_exception)

    async with httpx.AsyncClient(timeout=HTTP_REQUEST_TIMEOUT) as http, aiohttp.ClientSession() as session:
        orchestrator = Orchestrator.from_settings(settings, http=http, session=session)
        catalog = ModelCatalog(orchestrator.health, orchestrator.local, Path(settings.ai_models_file))
        bot = ImagineBot(settings, orchestrator, catalog)
        async with bot:
            await bot.start(settings.discord_token)


def main() -> int:
    try:
        settings = get_settings()
    except ConfigError as e:
        setup_logging("INFO")
        logger.error("%s", e)
        return 1
    setup_logging(settings.log_level)

    errors, warnings = settings.validate_runtime()
    for warning in warnings:
        logger.warning(warning)
    if errors:
        for error in errors:
            logger.error(error)
        return 1

    logger.info(
        "Starting bot (local=%s, remote=%s)",
        settings.local_ai_url or "-", "configured" if settings.remote_enabled else "-",
    )
    try:
        asyncio.run(run_bot(settings))
    except ConfigError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
