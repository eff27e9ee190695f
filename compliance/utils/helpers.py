"""Date and time helpers shared by services, models and blueprints.

Every engine operation works in aware UTC. ``ensure_utc`` repairs the naive
values SQLite hands back; the ``parse_*`` pair accepts ISO dates,
ISO datetimes and the DD.MM.YYYY form field users type.
"""
import logging
from datetime import date, datetime, time, timezone

logger = logging.getLogger(__name__)

_DAY_FIRST = "%d.%m.%Y"


def utcnow():
    return datetime.now(timezone.utc)


def ensure_utc(value):
    """Return ``value`` as an aware UTC datetime (naive input is read as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_or_none(value):
    return value.isoformat() if value is not None else None


def start_of_day(day):
    """Midnight UTC at the start of ``day``."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day(day):
    """23:59:59 UTC on ``day``."""
    return datetime.combine(day, time(23, 59, 59), tzinfo=timezone.utc)


def parse_date(value):
    """Coerce ``value`` to a ``date``; None when it is empty or unparseable."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    for parse in (date.fromisoformat,
                  lambda s: datetime.fromisoformat(s).date(),
                  lambda s: datetime.strptime(s, _DAY_FIRST).date()):
        try:
            return parse(text)
        except ValueError:
            continue
    return None


def parse_date_input(value):
    """Like ``parse_date`` but a non-empty bad value raises ValueError."""
    if not value:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError("Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY.")
    return parsed
