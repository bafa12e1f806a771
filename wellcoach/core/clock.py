from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_storage_utc(value: datetime) -> datetime:
    """Normalize to the naive-UTC form the SQLite columns hold."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
