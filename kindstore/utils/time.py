"""Time helpers and the nanosecond timestamp type."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

NANOS_PER_SECOND = 1_000_000_000

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)

_RFC3339_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[Tt](?P<time>\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d{1,9}))?(?P<zone>[Zz]|[+-]\d{2}:\d{2})$"
)


def as_utc(value: datetime) -> datetime:
    """Normalise a datetime to UTC, treating naive values as already UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """Absolute instant with nanosecond precision.

    ``datetime`` stops at microseconds; values that must survive a round trip
    through the wire format unchanged should use this type instead.
    """

    seconds: int = 0
    nanos: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.nanos < NANOS_PER_SECOND:
            raise ValueError(f"nanos out of range: {self.nanos}")

    @classmethod
    def from_datetime(cls, value: datetime) -> "Timestamp":
        delta = as_utc(value) - EPOCH
        return cls(seconds=delta.days * 86400 + delta.seconds, nanos=delta.microseconds * 1000)

    @classmethod
    def zero(cls) -> "Timestamp":
        return cls.from_datetime(ZERO_TIME)

    def is_zero(self) -> bool:
        return self == Timestamp.zero()

    def to_datetime(self) -> datetime:
        """Convert to an aware UTC datetime, truncating to microseconds."""
        return EPOCH + timedelta(seconds=self.seconds, microseconds=self.nanos // 1000)

    def isoformat(self) -> str:
        return format_rfc3339(self)

    def __str__(self) -> str:
        return self.isoformat()


def format_rfc3339(value: Timestamp | datetime) -> str:
    """Render an instant as RFC3339 in UTC with trailing fractional zeros trimmed."""
    stamp = value if isinstance(value, Timestamp) else Timestamp.from_datetime(value)
    moment = EPOCH + timedelta(seconds=stamp.seconds)
    # strftime does not zero-pad years below 1000 on every platform
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if stamp.nanos:
        text += "." + f"{stamp.nanos:09d}".rstrip("0")
    return text + "Z"


def parse_rfc3339(text: str) -> Timestamp:
    """Parse an RFC3339 timestamp with up to nine fractional digits."""
    match = _RFC3339_RE.match(text)
    if match is None:
        raise ValueError(f"invalid RFC3339 timestamp: {text!r}")
    zone = match.group("zone")
    offset = "+00:00" if zone in ("Z", "z") else zone
    moment = datetime.fromisoformat(f"{match.group('date')}T{match.group('time')}{offset}")
    frac = match.group("frac") or ""
    nanos = int(frac.ljust(9, "0")) if frac else 0
    return Timestamp(seconds=Timestamp.from_datetime(moment).seconds, nanos=nanos)


__all__ = [
    "EPOCH",
    "Timestamp",
    "ZERO_TIME",
    "as_utc",
    "format_rfc3339",
    "parse_rfc3339",
]
