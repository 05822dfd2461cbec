import calendar
import re
from datetime import date, datetime
from typing import Tuple

# -------------------------
# YM helpers (YYYY-MM)
# -------------------------

_YM_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def month_now() -> str:
    return datetime.now().strftime("%Y-%m")


def is_ym(ym: str) -> bool:
    """Validate year-month string in format YYYY-MM."""
    if ym is None:
        return False
    ym = str(ym).strip()
    return bool(_YM_RE.match(ym))


def as_date(value) -> date:
    """Accept date, datetime or ISO string (YYYY-MM-DD, extra time part ignored)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value or "").strip()
    if not s:
        raise ValueError("date is required")
    return date.fromisoformat(s[:10])


def ym_of(value) -> str:
    d = as_date(value)
    return f"{d.year:04d}-{d.month:02d}"


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(int(year), int(month))[1]


def month_bounds(anchor) -> Tuple[date, date]:
    """First and last calendar day of the anchor's month.

    The last day comes from the real month length, so a Feb 28 anchor never
    reaches into March.
    """
    d = as_date(anchor)
    first = d.replace(day=1)
    last = d.replace(day=days_in_month(d.year, d.month))
    return first, last


def ym_first_day(ym: str) -> date:
    if not is_ym(ym):
        raise ValueError(f"invalid ym: {ym!r}")
    y, m = map(int, ym.split("-"))
    return date(y, m, 1)