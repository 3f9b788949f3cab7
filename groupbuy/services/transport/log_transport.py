from typing import List

from groupbuy.schemas.notification_schemas import OutboundMessage
from groupbuy.services.transport.base import MessageTransport
from groupbuy.utils.logging import get_logger

logger = get_logger()


class LogTransport(MessageTransport):
    """Development transport: logs the message instead of delivering it."""

    name = "log"

    def __init__(self):
        self.sent: List[OutboundMessage] = []

    async def send(self, message: OutboundMessage) -> None:
        self.sent.append(message)
        logger.info(
            f"[log transport] to={message.recipient} subject={message.subject!r}",
            attachments=[a.filename for a in message.attachments],
        )
