import structlog

from application.ingestion import SwipeIngestor
from domain.errors import ReaderError
from infrastructure.bootstrap import build_context
from infrastructure.config import load_settings
from infrastructure.logging_config import configure_logging
from interfaces.log_reporter import LogReporter

logger = structlog.get_logger(__name__)


def main() -> None:
    """Run the till without a chat frontend; results only go to the log."""

    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)

    ctx = build_context(settings)
    ingestor = SwipeIngestor(ctx.reader, ctx.build_router(), [LogReporter()])

    logger.info("reader_starting", reader=settings.reader)
    try:
        ingestor.run()
    except ReaderError as exc:
        raise SystemExit(f"card reader failed: {exc}") from exc
    except KeyboardInterrupt:
        ingestor.stop()


if __name__ == "__main__":
    main()
