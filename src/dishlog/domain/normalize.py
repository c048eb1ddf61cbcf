import re
from datetime import datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..logging import get_logger

_LOG = get_logger("normalize")


def clean_name(value: Any) -> Optional[str]:
    """Trim a user/model supplied name; None when it is not a non-blank string."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def name_key(name: str) -> str:
    """Identity key for restaurant and dish names: trimmed, case-folded.

    Only case is ignored. Whitespace inside the name, punctuation and spelling
    variants still produce distinct keys.
    """
    return (name or "").strip().casefold()


def normalize_amount(val: Any) -> Optional[str]:
    """Normalize price values to dot-decimal with two decimals.

    Handles numbers and strings like '14,70', '14.70', '1.470,00', '1,470.00',
    '$12.99', '1.470.000'. Booleans, unparseable input and strings with three
    or more digits after a single dot (such as '12.345') return None.
    """
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float, Decimal)):
        try:
            num = Decimal(str(val))
        except InvalidOperation:
            return None
        if not num.is_finite():
            return None
        return f"{num:.2f}"
    s = str(val).strip().replace(" ", "")
    if not s:
        return None
    has_dot = "." in s
    has_comma = "," in s
    s2 = s
    if has_dot and has_comma:
        if re.search(r",\d{1,2}$", s):
            s2 = s.replace(".", "").replace(",", ".")
        else:
            s2 = s.replace(",", "")
    elif has_comma:
        if re.search(r",\d{1,2}$", s):
            s2 = s.replace(",", ".")
        else:
            s2 = s.replace(",", "")
    elif s.count(".") > 1:
        s2 = s.replace(".", "")
    elif re.search(r"\.\d{3,}", s):
        # 12.345 is neither cents nor an unambiguous thousands group
        return None

    m = re.search(r"-?\d+(?:\.\d{1,2})?", s2)
    if not m:
        return None
    try:
        num = Decimal(m.group(0))
    except InvalidOperation:
        return None
    return f"{num:.2f}"


def coerce_number(val: Any) -> Optional[float]:
    """Return a float for numbers and numeric strings, else None."""
    if val is not None and not isinstance(val, (int, float, Decimal, str)):
        _LOG.debug(f"Ignoring non-numeric value of type {type(val).__name__}")
        return None
    amount = normalize_amount(val)
    return float(amount) if amount is not None else None


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO-8601 date or datetime.

    - A trailing ``Z`` is read as UTC.
    - A date without time maps to noon, matching the extraction prompt.
    Raises ValueError when the value is not ISO-8601.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("datetime must be a non-empty ISO-8601 string")
    v = value.strip()
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", v):
        return datetime.combine(datetime.fromisoformat(v).date(), time(12, 0))
    if v.endswith(("Z", "z")):
        v = v[:-1] + "+00:00"
    return datetime.fromisoformat(v)


def to_storage_datetime(dt: datetime) -> str:
    """Aware datetimes are stored in UTC; naive ones as given."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="seconds")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
