"""
Log Notifier
Default handler notification channel. Chat/webhook delivery plugs in behind
the same Notifier interface.
"""
import logging

from leadflow.domain.interfaces.notifier import Notifier
from leadflow.domain.models.opportunity import Opportunity
from leadflow.domain.models.availability import Availability

logger = logging.getLogger(__name__)


class LogNotifier(Notifier):
    """Writes assignment notifications to the log."""

    async def notify_assignment(self, opportunity: Opportunity, handler: Availability) -> None:
        logger.info(
            f"Assigned opportunity {opportunity.id} ({opportunity.destination}) "
            f"to {handler.name or handler.id} [{handler.process.value}]"
        )
