from datetime import datetime, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_seconds() -> datetime:
    """UTC now truncated to whole seconds (storage resolution)."""
    return now_utc().replace(microsecond=0)
