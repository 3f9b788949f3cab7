import base64

import httpx

from groupbuy.config.settings import settings
from groupbuy.schemas.notification_schemas import OutboundMessage
from groupbuy.services.transport.base import MessageTransport, is_retryable_status
from groupbuy.utils.errors import PermanentDeliveryError, TransientDeliveryError
from groupbuy.utils.logging import get_logger

logger = get_logger()


class ResendEmailTransport(MessageTransport):
    """Sends email through the Resend transactional email HTTP API."""

    name = "resend"

    def __init__(
        self,
        api_key: str = "",
        sender: str = "",
        api_url: str = "",
        timeout: float = 0,
    ):
        self.api_key = api_key or settings.RESEND_API_KEY
        self.sender = sender or settings.SENDER_EMAIL
        self.api_url = api_url or settings.RESEND_API_URL
        self.timeout = timeout or settings.TRANSPORT_TIMEOUT_SECONDS

    def _payload(self, message: OutboundMessage) -> dict:
        payload = {
            "from": self.sender,
            "to": [message.recipient],
            "subject": message.subject,
            "text": message.body,
        }
        if message.attachments:
            payload["attachments"] = [
                {
                    "filename": attachment.filename,
                    "content": base64.b64encode(attachment.content).decode("ascii"),
                    "content_type": attachment.content_type,
                }
                for attachment in message.attachments
            ]
        return payload

    async def send(self, message: OutboundMessage) -> None:
        if not self.api_key:
            raise PermanentDeliveryError(
                "RESEND_API_KEY is not configured", error_code="TRANSPORT_NOT_CONFIGURED"
            )

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.api_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=self._payload(message),
                    timeout=self.timeout,
                )
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(
                f"Email API timed out: {e}", error_code="TRANSPORT_TIMEOUT"
            )
        except httpx.HTTPError as e:
            raise TransientDeliveryError(
                f"Email API unreachable: {e}", error_code="TRANSPORT_NETWORK_ERROR"
            )

        if response.status_code < 400:
            logger.debug(f"Email accepted for {message.recipient}")
            return

        error = f"Email API returned {response.status_code}: {response.text[:500]}"
        if is_retryable_status(response.status_code):
            raise TransientDeliveryError(
                error, error_code=f"TRANSPORT_HTTP_{response.status_code}"
            )
        raise PermanentDeliveryError(
            error, error_code=f"TRANSPORT_HTTP_{response.status_code}"
        )
