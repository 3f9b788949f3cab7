from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def naive_utc_now() -> datetime:
    """
    Get current UTC datetime as a naive datetime (no timezone info).
    All timestamp columns store naive UTC.

    Returns:
        datetime: Current UTC datetime without timezone info
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to naive UTC (no timezone info).

    Args:
        dt: Datetime object to convert; naive input is assumed to already be UTC

    Returns:
        datetime: Naive UTC datetime
    """
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into naive UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(value))


def format_local(
    dt: Optional[datetime], zone: str, fmt: str = "%d/%m/%Y %H:%M"
) -> str:
    """
    Render a stored naive-UTC datetime in the shop's display timezone.

    Args:
        dt: Naive UTC datetime (``None`` renders as an empty string)
        zone: IANA timezone name
        fmt: strftime format
    """
    if dt is None:
        return ""
    return dt.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(zone)).strftime(fmt)
