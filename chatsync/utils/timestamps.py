"""Timestamp normalization.

Records reach us from several writers: the remote store hands back ``datetime``
objects, older clients wrote epoch numbers (seconds or milliseconds) or ISO
strings, and some documents carry wire timestamps (``{seconds, nanoseconds}``)
or unresolved server-timestamp placeholders.  Every one of them is turned into
the same canonical string, ``YYYY-MM-DDTHH:MM:SS.mmmZ``, whose lexical order is
its chronological order.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Union


logger = logging.getLogger(__name__)

# Epoch values at or above this are milliseconds (1e11 s is the year 5138).
MILLIS_THRESHOLD = 1e11

DEFAULT_SKEW_OFFSET = timedelta(hours=7)
DEFAULT_FUTURE_TOLERANCE = timedelta(minutes=5)

SERVER_TIMESTAMP = object()

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Millis:
    value: float


@dataclass(frozen=True)
class Iso:
    value: datetime


@dataclass(frozen=True)
class SecondsNanos:
    seconds: float
    nanos: float = 0


@dataclass(frozen=True)
class Native:
    value: datetime


@dataclass(frozen=True)
class Deferred:
    convert: Callable[[], Any]


TimestampRepr = Union[Millis, Iso, SecondsNanos, Native, Deferred]


def to_iso(value: datetime) -> str:
    """Render a datetime in the canonical form (UTC, millisecond precision)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    # strftime does not zero-pad years before 1000
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}.{value.microsecond // 1000:03d}Z"
    )


def parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_placeholder(raw: Any) -> bool:
    if raw is SERVER_TIMESTAMP:
        return True
    return isinstance(raw, Mapping) and raw.get("_methodName") == "serverTimestamp"


def _wire_parts(raw: Any) -> Optional[SecondsNanos]:
    if isinstance(raw, Mapping):
        seconds = raw.get("seconds", raw.get("_seconds"))
        nanos = raw.get("nanoseconds", raw.get("_nanoseconds", 0))
    else:
        seconds = getattr(raw, "seconds", None)
        nanos = getattr(raw, "nanoseconds", 0)
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        return None
    if isinstance(nanos, bool) or not isinstance(nanos, (int, float)):
        nanos = 0
    return SecondsNanos(seconds=seconds, nanos=nanos)


def classify(raw: Any) -> Optional[TimestampRepr]:
    """Map a raw value onto a timestamp variant, or None if it is unusable."""
    if raw is None or isinstance(raw, bool) or _is_placeholder(raw):
        return None
    if isinstance(raw, datetime):
        return Native(raw)
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            return None
        return Millis(raw if abs(raw) >= MILLIS_THRESHOLD else raw * 1000)
    if isinstance(raw, str):
        parsed = parse_iso(raw)
        return Iso(parsed) if parsed else None
    wire = _wire_parts(raw)
    if wire is not None:
        return wire
    for name in ("as_datetime", "to_datetime", "toDate"):
        convert = getattr(raw, name, None)
        if callable(convert):
            return Deferred(convert)
    return None


def to_datetime(repr_: TimestampRepr) -> datetime:
    if isinstance(repr_, Millis):
        return datetime.fromtimestamp(repr_.value / 1000.0, tz=timezone.utc)
    if isinstance(repr_, SecondsNanos):
        millis = repr_.seconds * 1000 + repr_.nanos / 1_000_000
        return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
    if isinstance(repr_, (Iso, Native)):
        value = repr_.value
    elif isinstance(repr_, Deferred):
        value = repr_.convert()
        if not isinstance(value, datetime):
            raise TypeError(f"deferred conversion returned {type(value).__name__}")
    else:
        raise TypeError(f"unknown timestamp representation {repr_!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class TimestampNormalizer:

    def __init__(
        self,
        skew_offset: timedelta = DEFAULT_SKEW_OFFSET,
        future_tolerance: timedelta = DEFAULT_FUTURE_TOLERANCE,
        clock: Clock = utc_now,
    ) -> None:
        self.skew_offset = skew_offset
        self.future_tolerance = future_tolerance
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def to_datetime(self, raw: Any) -> datetime:
        now = self._clock()
        repr_ = classify(raw)
        if repr_ is None:
            if raw is not None and not _is_placeholder(raw):
                logger.debug("Unusable timestamp %r, using current time", raw)
            return now
        try:
            value = to_datetime(repr_)
        except Exception as exc:
            # deferred conversions run foreign code
            logger.debug("Timestamp %r could not be converted (%s), using current time", raw, exc)
            return now
        if self.skew_offset and value > now + self.future_tolerance:
            corrected = value - self.skew_offset
            logger.warning("Future timestamp %s corrected by -%s to %s", to_iso(value), self.skew_offset, to_iso(corrected))
            value = corrected
        return value

    def normalize(self, raw: Any) -> str:
        try:
            return to_iso(self.to_datetime(raw))
        except (OverflowError, ValueError) as exc:
            logger.debug("Timestamp %r out of range (%s), using current time", raw, exc)
            return to_iso(self._clock())


_default = TimestampNormalizer()


def normalize(raw: Any) -> str:
    return _default.normalize(raw)


def sort_key(value: Optional[str]) -> datetime:
    """Ordering key for optional canonical timestamps; missing sorts oldest."""
    parsed = parse_iso(value)
    return parsed if parsed else datetime.min.replace(tzinfo=timezone.utc)


def format_time_display(value: Optional[str], now: Optional[datetime] = None) -> str:
    parsed = parse_iso(value)
    if parsed is None:
        return ""
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(now.tzinfo)
    if parsed.date() == now.date():
        hour = parsed.hour % 12 or 12
        return f"{hour}:{parsed.minute:02d} {'AM' if parsed.hour < 12 else 'PM'}"
    if parsed.date() == (now - timedelta(days=1)).date():
        return "Yesterday"
    label = f"{parsed.strftime('%b')} {parsed.day}"
    if parsed.year == now.year:
        return label
    return f"{label}, {parsed.year}"
