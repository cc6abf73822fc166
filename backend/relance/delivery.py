import logging
from dataclasses import dataclass
from typing import List

from .domain import Reminder

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Transient failure; the reminder stays pending and is retried."""


class PermanentDeliveryError(DeliveryError):
    """The gateway will never accept this reminder (bad address, blocked number...)."""


@dataclass(frozen=True)
class OutgoingMessage:
    reminder_id: str
    case_id: str
    channel: str
    sender: str
    recipient: str
    subject: str
    body: str


class DeliveryGateway:
    """Sends one rendered relance. Implementations raise DeliveryError or
    PermanentDeliveryError; returning means delivery is confirmed."""

    def deliver(self, reminder: Reminder, message: OutgoingMessage) -> None:
        raise NotImplementedError


class LoggingDeliveryGateway(DeliveryGateway):
    """Writes messages to the log and keeps them in ``outbox``."""

    def __init__(self):
        self.outbox: List[OutgoingMessage] = []

    def deliver(self, reminder: Reminder, message: OutgoingMessage) -> None:
        if not message.recipient:
            raise PermanentDeliveryError("destinataire manquant")
        logger.info("[%s] %s -> %s | %s | %s",
                    message.channel, message.sender, message.recipient, message.subject, message.body)
        self.outbox.append(message)
