from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_ms(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)
