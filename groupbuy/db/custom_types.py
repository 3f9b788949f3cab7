from sqlalchemy import String, TypeDecorator
import uuid


class GUID(TypeDecorator):
    """Stores UUIDs as 36-character strings on every backend; Python side always sees ``str``."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        """Convert Python value to database value."""
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        """Convert database value to Python value (always string)."""
        if value is None:
            return value
        return str(value)


def new_guid() -> str:
    return str(uuid.uuid4())
