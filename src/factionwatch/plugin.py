from __future__ import annotations

from nonebot import get_driver, logger, on_command
from nonebot.plugin import require

from factionwatch.config import settings
from factionwatch.service import build_service, format_status

require("nonebot_plugin_apscheduler")
from nonebot_plugin_apscheduler import scheduler


driver = get_driver()
service = build_service(settings, scheduler)

status_cmd = on_command("fwstatus", priority=10, block=True)


@driver.on_startup
async def _on_startup() -> None:
    await service.init()
    logger.info("factionwatch repository initialized at {}", settings.db_path)
    await service.start_scheduler()
    logger.info("factionwatch collector started")


@driver.on_shutdown
async def _on_shutdown() -> None:
    finished = await service.stop_scheduler()
    if not finished:
        logger.warning("factionwatch shut down with a collection still in flight")
    await service.close()


@status_cmd.handle()
async def _handle_status() -> None:
    try:
        status = await service.get_status()
    except Exception:
        logger.exception("Status query failed")
        await status_cmd.finish("Status query failed, check the bot log.")
    await status_cmd.finish(format_status(status))
