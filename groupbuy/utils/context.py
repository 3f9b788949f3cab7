import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_context.get()


@contextmanager
def request_id_scope(request_id: Optional[str] = None) -> Iterator[str]:
    """Bind a request ID (a fresh one when omitted) for the duration of a tick."""
    value = request_id or str(uuid.uuid4())
    token = request_id_context.set(value)
    try:
        yield value
    finally:
        request_id_context.reset(token)
