import asyncio

import structlog

from application.ingestion import SwipeIngestor
from infrastructure.bootstrap import build_context
from infrastructure.config import load_settings
from infrastructure.logging_config import configure_logging
from interfaces.discord.handlers import DiscordReporter, create_discord_bot
from interfaces.log_reporter import LogReporter

logger = structlog.get_logger(__name__)


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)

    if not settings.discord_token:
        raise RuntimeError("DISCORD_TOKEN environment variable is not set.")

    ctx = build_context(settings)
    bot = create_discord_bot(ctx, settings.admin_ids)

    ingestor = SwipeIngestor(ctx.reader, ctx.build_router(), [LogReporter(), DiscordReporter(bot, ctx)])
    failures = []
    started = []

    def on_reader_failure(exc):
        failures.append(exc)
        asyncio.run_coroutine_threadsafe(bot.close(), bot.loop)

    async def start_ingestion():
        # on_ready fires again after reconnects; start only once.
        if started:
            return
        started.append(True)
        ingestor.run_in_thread(on_failure=on_reader_failure)

    bot.add_listener(start_ingestion, "on_ready")
    try:
        bot.run(settings.discord_token, log_handler=None)
    finally:
        ingestor.stop()

    if failures:
        raise SystemExit(f"swipe ingestion failed: {failures[0]}")


if __name__ == "__main__":
    main()
