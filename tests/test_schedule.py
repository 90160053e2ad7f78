import datetime as dt

from autoservice.domain import categories as c
from autoservice.domain.models import MaintenanceEntry, MaintenanceScheduleItem, Vehicle
from autoservice.domain.schedule import (
    DEFAULT_SCHEDULE,
    add_months,
    due_status,
    latest_by_type,
    next_due_for,
    resolve_schedule,
)

OIL_ONLY = [MaintenanceScheduleItem(type=c.OIL_CHANGE, label="Oil change", interval_km=15000, interval_months=12)]


def _entry(type_=c.OIL_CHANGE, done_at="2024-01-10", km=40000, id_="m1"):
    return MaintenanceEntry(id=id_, vehicle_id="v1", type=type_, description="", done_at=done_at, mileage_at_service=km)


def test_oil_change_done_until_interval_reached():
    today = dt.date(2024, 6, 1)
    [status] = due_status(52000, [_entry()], OIL_ONLY, today=today)
    assert status.status == "done"
    assert status.next_due_mileage == 55000
    assert status.next_due_date == "2025-01-10"


def test_oil_change_overdue_past_mileage():
    [status] = due_status(56000, [_entry()], OIL_ONLY, today=dt.date(2024, 6, 1))
    assert status.status == "overdue"


def test_overdue_by_date_alone():
    [status] = due_status(41000, [_entry()], OIL_ONLY, today=dt.date(2025, 1, 10))
    assert status.status == "overdue"


def test_never_done_is_due():
    [status] = due_status(10000, [], OIL_ONLY)
    assert status.status == "due"
    assert status.next_due_mileage is None


def test_time_only_item_ignores_mileage():
    schedule = [MaintenanceScheduleItem(type=c.BRAKE_FLUID, label="Brake fluid", interval_km=0, interval_months=24)]
    entry = _entry(type_=c.BRAKE_FLUID, done_at="2023-05-01", km=10000)
    [status] = due_status(900000, [entry], schedule, today=dt.date(2024, 5, 1))
    assert status.status == "done"
    assert status.next_due_mileage is None
    assert status.next_due_date == "2025-05-01"


def test_unscheduled_repairs_are_listed_as_done():
    results = due_status(50000, [_entry(type_=c.EXHAUST)], OIL_ONLY, today=dt.date(2024, 2, 1))
    types = {r.type: r.status for r in results}
    assert types == {c.OIL_CHANGE: "due", c.EXHAUST: "done"}


def test_every_unscheduled_repair_is_kept():
    first = _entry(type_=c.BODYWORK, done_at="2023-01-10", km=30000, id_="b1")
    second = _entry(type_=c.BODYWORK, done_at="2024-05-02", km=44000, id_="b2")
    oil = _entry(done_at="2024-01-10", km=40000, id_="o1")
    results = due_status(45000, [first, oil, second], OIL_ONLY, today=dt.date(2024, 6, 1))
    bodywork = [r for r in results if r.type == c.BODYWORK]
    assert [r.last_done_at for r in bodywork] == ["2023-01-10", "2024-05-02"]
    assert all(r.status == "done" and r.next_due_date is None for r in bodywork)
    assert [r.type for r in results].count(c.OIL_CHANGE) == 1


def test_latest_entry_per_type_wins():
    older = _entry(done_at="2023-01-01", km=30000, id_="old")
    newer = _entry(done_at="2024-01-01", km=45000, id_="new")
    assert latest_by_type([newer, older])[c.OIL_CHANGE].id == "new"


def test_custom_schedule_takes_precedence_over_brand():
    custom = [MaintenanceScheduleItem(type=c.OIL_CHANGE, label="Oil", interval_km=30000, interval_months=24)]
    bmw = Vehicle(id="v1", make="BMW", model="320d", custom_schedule=custom)
    assert resolve_schedule(bmw) == custom
    generic = Vehicle(id="v2", make="Dacia", model="Sandero")
    assert resolve_schedule(generic) == DEFAULT_SCHEDULE
    brand = resolve_schedule(Vehicle(id="v3", make=" bmw ", model="X1"))
    assert any(i.label.startswith("Timing chain") for i in brand)


def test_add_months_clamps_to_month_end():
    assert add_months(dt.date(2024, 1, 31), 1) == dt.date(2024, 2, 29)
    assert add_months(dt.date(2023, 11, 15), 14) == dt.date(2025, 1, 15)


def test_next_due_for_recorded_entry():
    assert next_due_for(c.OIL_CHANGE, "2024-01-10", 40000, OIL_ONLY) == ("2025-01-10", 55000)
    assert next_due_for(c.OIL_CHANGE, "2024-01-10", None, OIL_ONLY) == ("2025-01-10", None)
    assert next_due_for(c.EXHAUST, "2024-01-10", 40000, OIL_ONLY) == (None, None)
