import structlog

from application.ingestion import SwipeIngestor
from infrastructure.bootstrap import build_context
from infrastructure.config import load_settings
from infrastructure.logging_config import configure_logging
from interfaces.log_reporter import LogReporter
from interfaces.telegram.handlers import TelegramReporter, create_telegram_bot

logger = structlog.get_logger(__name__)


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)

    if not settings.telegram_token:
        raise RuntimeError("TELEGRAM_TOKEN environment variable is not set.")

    ctx = build_context(settings)
    bot = create_telegram_bot(settings.telegram_token, ctx, settings.admin_ids)

    ingestor = SwipeIngestor(ctx.reader, ctx.build_router(), [LogReporter(), TelegramReporter(bot, ctx)])
    failures = []

    def on_reader_failure(exc):
        failures.append(exc)
        bot.stop_polling()

    ingestor.run_in_thread(on_failure=on_reader_failure)
    logger.info("telegram_bot_starting", reader=settings.reader)
    try:
        bot.infinity_polling()
    finally:
        ingestor.stop()

    if failures:
        raise SystemExit(f"swipe ingestion failed: {failures[0]}")


if __name__ == "__main__":
    main()
