import re
from datetime import date, datetime, timezone
from typing import Optional, Union

# PostgREST trims trailing zeros from fractional seconds ("...:05.12+00:00").
_FRACTION = re.compile(r"\.(\d+)(?=[+-]\d{2}:?\d{2}$|$)")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_today(now: Optional[datetime] = None) -> date:
    """Session date: the UTC calendar date of ``now``."""
    now = now or utc_now()
    return now.astimezone(timezone.utc).date()


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a Postgres/PostgREST timestamp into an aware UTC datetime.

    Accepts ``...Z`` suffixes, fractional seconds of any length and naive
    values (taken as UTC).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        raw = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), raw)
        dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
