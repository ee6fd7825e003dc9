"""
Date coercion for the date comparison operators.

Accepted inputs: ``YYYY-MM-DD``, ``YYYY-MM-DDTHH:MM[:SS]`` (read as UTC),
ISO date-times with a ``Z`` or ``+HH:MM`` offset, and numeric epoch
milliseconds. When a locale is given, short numeric dates such as
``01/15/2024`` or ``15.01.24`` are also read, in the field order of that
locale's short date format. Anything else coerces to None, which makes the
comparison false instead of raising.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional, Tuple

from babel import Locale, UnknownLocaleError

from ruleflow.runtime.paths import is_number

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_LOCALE = "en-US"

_DATE_ONLY = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_LOCAL_DATE_TIME = re.compile(r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2})(?::(\d{2}))?$")
_ZONED_DATE_TIME = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2})?(\.\d+)?(Z|[+-]\d{2}:\d{2})$")
_LOCALE_DATE = re.compile(r"^(\d{1,4})[/.-](\d{1,4})[/.-](\d{1,4})$")


def _utc_ms(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> Optional[float]:
    try:
        moment = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    except ValueError:
        return None
    return moment.timestamp() * 1000


@lru_cache(maxsize=64)
def date_order(locale: str) -> str:
    """
    Field order of the locale's short date format: "ymd", "mdy" or "dmy".

    Unknown or malformed locales read as "mdy"; orders other than "ymd"
    and "mdy" read as "dmy".
    """
    try:
        pattern = Locale.parse(locale.replace("-", "_")).date_formats["short"].pattern
    except (UnknownLocaleError, ValueError, TypeError, AttributeError):
        return "mdy"
    positions = {field: pattern.find(field) for field in "yMd"}
    if min(positions.values()) < 0:
        return "mdy"
    order = "".join(sorted(positions, key=positions.get)).lower()
    return order if order in ("ymd", "mdy") else "dmy"


def parse_locale_date(text: str, locale: str = DEFAULT_LOCALE) -> Optional[float]:
    """Epoch milliseconds (UTC midnight) for a short numeric date, or None."""
    match = _LOCALE_DATE.match(text)
    if not match:
        return None
    fields = dict(zip(date_order(locale), (int(part) for part in match.groups())))
    year, month, day = fields["y"], fields["m"], fields["d"]
    if year < 100:
        # two-digit years pivot at 70
        year += 1900 if year >= 70 else 2000
    if not (1 <= month <= 12 and 1 <= day <= 31):
        return None
    return _utc_ms(year, month, day)


def coerce_date_ms(value: Any, locale: Optional[str] = None) -> Optional[float]:
    """Epoch milliseconds for a date-like value, or None. Without a locale only ISO forms are read."""
    if value is None:
        return None
    if is_number(value):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    match = _DATE_ONLY.match(text)
    if match:
        return _utc_ms(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = _LOCAL_DATE_TIME.match(text)
    if match:
        return _utc_ms(
            int(match.group(1)), int(match.group(2)), int(match.group(3)),
            int(match.group(4)), int(match.group(5)), int(match.group(6) or 0),
        )

    if _ZONED_DATE_TIME.match(text):
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed.timestamp() * 1000

    if locale:
        return parse_locale_date(text, locale)
    return None


def is_date_literal(value: Any) -> bool:
    return coerce_date_ms(value) is not None


def coerce_date_range(value: Any, locale: Optional[str] = None) -> Optional[Tuple[float, float]]:
    if not isinstance(value, list) or len(value) < 2:
        return None
    start = coerce_date_ms(value[0], locale)
    end = coerce_date_ms(value[1], locale)
    if start is None or end is None:
        return None
    return start, end


def shift_days(base_ms: float, days: Any) -> Optional[float]:
    if isinstance(days, str):
        try:
            days = float(days)
        except ValueError:
            return None
    if not is_number(days) or not math.isfinite(days):
        return None
    # whole days, rounded half up
    return base_ms + math.floor(days + 0.5) * DAY_MS


def coerce_plus_days(value: Any, locale: Optional[str] = None) -> Optional[float]:
    """``[date, days]`` or ``{"date": ..., "days": ...}`` -> shifted epoch ms."""
    if isinstance(value, list) and len(value) >= 2:
        base, days = value[0], value[1]
    elif isinstance(value, dict):
        base, days = value.get("date"), value.get("days")
    else:
        return None
    base_ms = coerce_date_ms(base, locale)
    if base_ms is None:
        return None
    return shift_days(base_ms, days)


def compare_dates(op: str, left: Any, right: Any, locale: str = DEFAULT_LOCALE) -> bool:
    left_ms = coerce_date_ms(left, locale)
    if left_ms is None:
        return False

    if op == "dateBetween":
        bounds = coerce_date_range(right, locale)
        if bounds is None:
            return False
        return bounds[0] <= left_ms <= bounds[1]

    if op == "plusDays":
        shifted = coerce_plus_days(right, locale)
        return shifted is not None and left_ms == shifted

    right_ms = coerce_date_ms(right, locale)
    if right_ms is None:
        return False
    if op in ("dateEq", "on"):
        return left_ms == right_ms
    if op in ("dateBefore", "before"):
        return left_ms < right_ms
    if op in ("dateAfter", "after"):
        return left_ms > right_ms
    return False
