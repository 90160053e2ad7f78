import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..logging import get_logger

_LOG = get_logger("normalize")


def normalize_date_iso(value: Any) -> Optional[str]:
    """Normalize common date strings to ISO YYYY-MM-DD.

    Supports:
    - DD.MM.YYYY, D.M.YYYY, DD/MM/YYYY, etc.
    - YYYY-MM-DD passthrough (a trailing time part is dropped)
    - Two-digit years map to 19xx for >=70 else 20xx
    """
    if not value:
        return None
    v = str(value).strip()
    if not v:
        return None
    m = re.match(r"(\d{4})-(\d{1,2})-(\d{1,2})", v)
    if m:
        y, mth, d = m.groups()
        return f"{int(y):04d}-{int(mth):02d}-{int(d):02d}"
    m = re.fullmatch(r"(\d{1,2})[\./](\d{1,2})[\./](\d{2,4})", v)
    if m:
        d, mth, y = m.groups()
        if len(y) == 2:
            y = ("20" + y) if int(y) < 70 else ("19" + y)
        return f"{int(y):04d}-{int(mth):02d}-{int(d):02d}"
    _LOG.debug(f"Unrecognized date format: {v!r}")
    return None


def normalize_amount(val: Any) -> Optional[float]:
    """Parse a price into a float rounded to cents.

    Handles inputs like '14,70', '14.70', '1.470,00', '1,470.00', '€ 89,90', numbers.
    """
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return round(float(val), 2)
    s = re.sub(r"[^\d,.\-]", "", str(val))
    if not s:
        return None
    has_dot = "." in s
    has_comma = "," in s
    if has_dot and has_comma:
        if re.search(r",\d{1,2}$", s):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif has_comma:
        if re.search(r",\d{1,2}$", s):
            s = s.replace(",", ".")
        else:
            s = s.replace(",", "")
    elif has_dot and not re.search(r"\.\d{1,2}$", s):
        s = s.replace(".", "")

    m = re.search(r"-?\d+(?:\.\d{1,2})?", s)
    if not m:
        return None
    try:
        return float(round(Decimal(m.group(0)), 2))
    except InvalidOperation:
        return None


def normalize_mileage(val: Any) -> Optional[int]:
    """Parse odometer readings such as '52.000 km', '52,000' or 52000.0."""
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return int(val)
    digits = re.sub(r"[^\d]", "", str(val))
    return int(digits) if digits else None


def detect_currency(text: str) -> str:
    """Detect EUR/USD/GBP/CHF using symbol or token; default EUR."""
    t = text or ""
    if "€" in t or re.search(r"\bEUR\b", t, re.IGNORECASE):
        return "EUR"
    if "$" in t or re.search(r"\bUSD\b", t, re.IGNORECASE):
        return "USD"
    if "£" in t or re.search(r"\bGBP\b", t, re.IGNORECASE):
        return "GBP"
    if re.search(r"\bCHF\b", t, re.IGNORECASE):
        return "CHF"
    return "EUR"
