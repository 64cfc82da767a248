"""Time utilities."""
from datetime import UTC, datetime, timedelta, timezone

# Daraja timestamps are expressed in East Africa Time.
MPESA_TZ = timezone(timedelta(hours=3), name="EAT")
MPESA_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def mpesa_timestamp(now: datetime | None = None) -> str:
    """Return the ``YYYYMMDDHHmmss`` timestamp used to sign Daraja requests."""

    moment = now or utcnow()
    return moment.astimezone(MPESA_TZ).strftime(MPESA_TIMESTAMP_FORMAT)


def parse_mpesa_timestamp(value: str | int | None) -> datetime | None:
    """Parse a compact Daraja ``TransactionDate`` into an aware UTC datetime.

    Returns ``None`` for missing or malformed values; the transaction date is
    informational and must never block a confirmation.
    """

    if value is None:
        return None
    raw = str(value).strip()
    if len(raw) < 14:
        return None
    try:
        local = datetime.strptime(raw[:14], MPESA_TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return local.replace(tzinfo=MPESA_TZ).astimezone(UTC)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""

    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


__all__ = [
    "MPESA_TZ",
    "ensure_aware",
    "mpesa_timestamp",
    "parse_mpesa_timestamp",
    "utcnow",
]
