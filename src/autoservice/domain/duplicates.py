from __future__ import annotations

from typing import Iterable, Optional

from ..logging import get_logger
from .models import Invoice

LOG = get_logger("duplicates")

AMOUNT_TOLERANCE = 0.005


def _same_workshop(a: Optional[str], b: Optional[str]) -> bool:
    left = " ".join((a or "").split()).casefold()
    right = " ".join((b or "").split()).casefold()
    return bool(left) and left == right


def _same_amount(a: Optional[float], b: Optional[float]) -> bool:
    if a is None or b is None:
        return False
    return abs(float(a) - float(b)) < AMOUNT_TOLERANCE


def find_duplicate(
    existing: Iterable[Invoice],
    vehicle_id: str,
    date: str,
    workshop_name: Optional[str],
    total_amount: Optional[float],
) -> Optional[Invoice]:
    """Return the stored invoice that a new one would duplicate, if any.

    Same vehicle and same date, plus either the same workshop (case and
    whitespace insensitive) or the same total.
    """
    for inv in existing:
        if inv.vehicle_id != vehicle_id or inv.date != date:
            continue
        if _same_workshop(inv.workshop_name, workshop_name) or _same_amount(inv.total_amount, total_amount):
            LOG.info(f"Duplicate of invoice {inv.id}: {inv.workshop_name} {inv.date} {inv.total_amount}")
            return inv
    return None
