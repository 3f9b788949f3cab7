from groupbuy.config.settings import settings
from groupbuy.services.transport.base import MessageTransport
from groupbuy.services.transport.log_transport import LogTransport
from groupbuy.services.transport.resend_transport import ResendEmailTransport

_TRANSPORTS = {
    "log": LogTransport,
    "resend": ResendEmailTransport,
}


def get_transport(name: str = "") -> MessageTransport:
    """Build the transport selected by EMAIL_TRANSPORT."""
    key = (name or settings.EMAIL_TRANSPORT).lower()
    if key not in _TRANSPORTS:
        raise ValueError(f"Unknown EMAIL_TRANSPORT: {key}")
    return _TRANSPORTS[key]()


__all__ = [
    "MessageTransport",
    "LogTransport",
    "ResendEmailTransport",
    "get_transport",
]
