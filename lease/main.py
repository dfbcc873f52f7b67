import asyncio
import logging
import sys

from aiogram import Bot
from aiogram.enums import ParseMode
from aiogram.client.default import DefaultBotProperties

from lease.config import config
from lease.cron import scheduler_loop
from lease.services.notification_service import setup_notifications


async def main():
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        stream=sys.stdout,
    )

    bot = None
    if config.BOT_TOKEN:
        bot = Bot(
            token=config.BOT_TOKEN,
            default=DefaultBotProperties(parse_mode=ParseMode.HTML)
        )
    else:
        logging.warning("BOT_TOKEN is not set, notifications will only be logged.")

    # Notifications go out in background tasks, never blocking a transaction
    dispatcher = setup_notifications(bot, background=True)

    logging.info("Starting lease scheduler...")
    try:
        await scheduler_loop()
    finally:
        await dispatcher.drain()
        if bot is not None:
            await bot.session.close()


def run():
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Lease scheduler stopped.")


if __name__ == "__main__":
    run()
