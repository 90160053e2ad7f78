"""Maintenance intervals and due/overdue computation.

Schedule source for a vehicle, in order: its custom schedule (typically read
from a service booklet), the brand table for its make, the generic default.
"""

from __future__ import annotations

import calendar
import datetime as dt
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..logging import get_logger
from . import categories as c
from .models import MaintenanceEntry, MaintenanceScheduleItem, Vehicle

LOG = get_logger("schedule")


def _item(type_: str, label: str, km: int, months: int) -> MaintenanceScheduleItem:
    return MaintenanceScheduleItem(type=type_, label=label, interval_km=km, interval_months=months)


DEFAULT_SCHEDULE: List[MaintenanceScheduleItem] = [
    _item(c.OIL_CHANGE, "Oil change", 15000, 12),
    _item(c.INSPECTION, "Inspection", 30000, 24),
    _item(c.BRAKES, "Brake check", 30000, 24),
    _item(c.TIRES, "Tire change", 40000, 48),
    _item(c.AIR_FILTER, "Air filter", 40000, 36),
    _item(c.TIMING_BELT, "Timing belt", 120000, 72),
    _item(c.BRAKE_FLUID, "Brake fluid", 60000, 24),
    _item(c.AIR_CONDITIONING, "A/C service", 0, 24),
    _item(c.STATUTORY_INSPECTION, "Statutory inspection (MOT/TUV)", 0, 24),
]

BRAND_SCHEDULES: Dict[str, List[MaintenanceScheduleItem]] = {
    "bmw": [
        _item(c.OIL_CHANGE, "Oil change", 15000, 12),
        _item(c.INSPECTION, "Inspection", 30000, 24),
        _item(c.BRAKES, "Brake check", 30000, 24),
        _item(c.TIRES, "Tire change", 40000, 48),
        _item(c.AIR_FILTER, "Air filter", 60000, 48),
        _item(c.TIMING_BELT, "Timing chain (visual check)", 100000, 60),
        _item(c.BRAKE_FLUID, "Brake fluid", 0, 24),
        _item(c.AIR_CONDITIONING, "A/C service", 0, 24),
        _item(c.STATUTORY_INSPECTION, "Statutory inspection (MOT/TUV)", 0, 24),
    ],
}


@dataclass
class DueResult:
    type: str
    label: str
    status: str  # done | due | overdue
    last_done_at: Optional[str] = None
    last_mileage: Optional[int] = None
    next_due_date: Optional[str] = None
    next_due_mileage: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def brand_schedule(make: Optional[str]) -> List[MaintenanceScheduleItem]:
    return list(BRAND_SCHEDULES.get((make or "").strip().lower(), DEFAULT_SCHEDULE))


def resolve_schedule(vehicle: Vehicle) -> List[MaintenanceScheduleItem]:
    if vehicle.custom_schedule:
        return list(vehicle.custom_schedule)
    return brand_schedule(vehicle.make)


def add_months(day: dt.date, months: int) -> dt.date:
    """Calendar month addition, clamping to the last day of the target month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return dt.date(year, month, min(day.day, last_day))


def _parse_date(value: Optional[str]) -> Optional[dt.date]:
    if not value:
        return None
    try:
        return dt.date.fromisoformat(str(value)[:10])
    except ValueError:
        LOG.warning(f"Ignoring unparseable maintenance date {value!r}")
        return None


def latest_by_type(entries: Iterable[MaintenanceEntry]) -> Dict[str, MaintenanceEntry]:
    """Keep the most recent entry per category (by date, then mileage)."""
    latest: Dict[str, MaintenanceEntry] = {}
    for entry in entries:
        current = latest.get(entry.type)
        key = (entry.done_at or "", entry.mileage_at_service or 0)
        if current is None or key > (current.done_at or "", current.mileage_at_service or 0):
            latest[entry.type] = entry
    return latest


def due_status(
    current_mileage: int,
    last_maintenances: Sequence[MaintenanceEntry],
    schedule: Sequence[MaintenanceScheduleItem],
    today: Optional[dt.date] = None,
) -> List[DueResult]:
    today = today or dt.date.today()
    latest = latest_by_type(last_maintenances)
    results: List[DueResult] = []
    scheduled = set()

    for item in schedule:
        scheduled.add(item.type)
        last = latest.get(item.type)
        if last is None:
            results.append(DueResult(type=item.type, label=item.label, status="due"))
            continue

        next_mileage: Optional[int] = None
        if item.interval_km > 0 and last.mileage_at_service is not None:
            next_mileage = last.mileage_at_service + item.interval_km

        next_date: Optional[dt.date] = None
        last_date = _parse_date(last.done_at)
        if item.interval_months > 0 and last_date is not None:
            next_date = add_months(last_date, item.interval_months)

        overdue = (next_mileage is not None and current_mileage >= next_mileage) or (
            next_date is not None and today >= next_date
        )
        results.append(
            DueResult(
                type=item.type,
                label=item.label,
                status="overdue" if overdue else "done",
                last_done_at=last.done_at,
                last_mileage=last.mileage_at_service,
                next_due_date=next_date.isoformat() if next_date else None,
                next_due_mileage=next_mileage,
            )
        )

    # Ad-hoc repairs (bodywork, electrical, ...) never recur; every one is listed.
    for entry in last_maintenances:
        if entry.type in scheduled:
            continue
        results.append(
            DueResult(
                type=entry.type,
                label=c.category_label(entry.type),
                status="done",
                last_done_at=entry.done_at,
                last_mileage=entry.mileage_at_service,
            )
        )
    return results


def next_due_for(
    item_type: str,
    done_at: str,
    mileage: Optional[int],
    schedule: Sequence[MaintenanceScheduleItem],
) -> Tuple[Optional[str], Optional[int]]:
    """(next_due_date, next_due_mileage) for a freshly recorded entry."""
    for item in schedule:
        if item.type != item_type:
            continue
        next_mileage = mileage + item.interval_km if (item.interval_km > 0 and mileage is not None) else None
        day = _parse_date(done_at)
        next_date = add_months(day, item.interval_months).isoformat() if (day and item.interval_months > 0) else None
        return next_date, next_mileage
    return None, None
