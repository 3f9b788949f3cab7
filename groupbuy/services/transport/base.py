from abc import ABC, abstractmethod

from groupbuy.schemas.notification_schemas import OutboundMessage


class MessageTransport(ABC):
    """Delivers one concrete message.

    Implementations raise ``TransientDeliveryError`` for failures worth retrying
    (network, timeouts, rate limits, 5xx) and ``PermanentDeliveryError`` for
    everything that can never succeed.
    """

    name: str = "transport"

    @abstractmethod
    async def send(self, message: OutboundMessage) -> None:
        pass


def is_retryable_status(status_code: int) -> bool:
    """True when an HTTP failure status is worth retrying."""
    return status_code == 429 or status_code >= 500
