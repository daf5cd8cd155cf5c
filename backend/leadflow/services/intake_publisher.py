"""
Intake Publisher
Helper for intake channels (forms, ads webhooks, imports) to enqueue leads.
"""
import logging
from typing import Any, Dict, Optional

from leadflow.domain.interfaces.durable_queue import DurableQueue
from leadflow.domain.models.messages import IntakeMessage, parse_payload

logger = logging.getLogger(__name__)


class IntakePublisher:

    def __init__(self, queue: DurableQueue, topic: str):
        self.queue = queue
        self.topic = topic

    async def publish_lead(
        self,
        source: str,
        phone: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        destination: Optional[str] = None,
        **extra: Any
    ) -> str:
        """
        Validate and publish one lead.

        Returns:
            message_id of the intake message

        Raises:
            MalformedMessageError: lead data fails validation
        """
        lead_data: Dict[str, Any] = {
            "name": name,
            "phone": phone,
            "email": email,
            "destination": destination,
            **extra
        }
        message = parse_payload(IntakeMessage, {"source": source, "leadData": lead_data})
        return await self.publish(message)

    async def publish(self, message: IntakeMessage) -> str:
        payload = message.model_dump(by_alias=True, exclude_none=True)
        message_id = await self.queue.publish(self.topic, payload)
        logger.info(f"Enqueued lead from {message.source} as {message_id}")
        return message_id
