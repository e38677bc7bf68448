from __future__ import annotations

import structlog

from domain.models import RouteOutcome

from .messages import format_outcome

logger = structlog.get_logger("kasse.display")


class LogReporter:
    """Writes every card event to the log; the display of a headless till."""

    def report(self, outcome: RouteOutcome) -> None:
        code = outcome.result.code.value if outcome.result else None
        logger.info(
            format_outcome(outcome),
            card_id=outcome.card_id.hex(),
            registered=outcome.registered,
            code=code,
            balance=outcome.result.balance if outcome.result else None,
        )
