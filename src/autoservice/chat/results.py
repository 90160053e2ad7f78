"""Tool outcomes as tagged variants, plus the text summarizer over them.

Every tool handler returns exactly one of these. `to_payload()` is what the
model sees (`{success, message, data?}`); `summarize()` is the fallback reply
text when the model runs tools without writing prose.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import singledispatch
from typing import Any, Dict, List, Optional

from ..domain.categories import category_label
from ..domain.models import Invoice, MaintenanceEntry, MaintenanceScheduleItem, Vehicle
from ..domain.schedule import DueResult


@dataclass
class Outcome:
    success = True

    @property
    def message(self) -> str:
        return summarize(self).splitlines()[0]

    def data(self) -> Optional[Dict[str, Any]]:
        return None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "message": self.message}
        data = self.data()
        if data is not None:
            payload["data"] = data
        return payload


@dataclass
class VehicleList(Outcome):
    vehicles: List[Vehicle] = field(default_factory=list)

    def data(self) -> Dict[str, Any]:
        return {
            "vehicles": [
                {
                    "id": v.id,
                    "make": v.make,
                    "model": v.model,
                    "year": v.year,
                    "mileage": v.mileage,
                    "license_plate": v.license_plate,
                    "has_custom_schedule": v.has_custom_schedule,
                }
                for v in self.vehicles
            ]
        }


@dataclass
class VehicleCreated(Outcome):
    vehicle: Vehicle

    def data(self) -> Dict[str, Any]:
        v = self.vehicle
        return {
            "vehicle_id": v.id,
            "make": v.make,
            "model": v.model,
            "year": v.year,
            "mileage": v.mileage,
            "license_plate": v.license_plate,
            "vin": v.vin,
        }


@dataclass
class FieldsChanged(Outcome):
    vehicle_id: str = ""
    name: str = ""
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)

    def data(self) -> Dict[str, Any]:
        return {"vehicle_id": self.vehicle_id, "vehicle": self.name, "changes": {"before": self.before, "after": self.after}}


@dataclass
class RecordsDeleted(Outcome):
    kind: str = ""            # vehicle | invoice
    label: str = ""
    counts: Dict[str, int] = field(default_factory=dict)

    def data(self) -> Dict[str, Any]:
        return {"deleted": {"kind": self.kind, "label": self.label, **self.counts}}


@dataclass
class VehicleDetails(Outcome):
    vehicle: Vehicle
    invoices: List[Invoice] = field(default_factory=list)
    maintenances: List[MaintenanceEntry] = field(default_factory=list)

    def data(self) -> Dict[str, Any]:
        v = self.vehicle
        return {
            "vehicle": {
                "id": v.id,
                "make": v.make,
                "model": v.model,
                "year": v.year,
                "mileage": v.mileage,
                "license_plate": v.license_plate,
                "vin": v.vin,
                "has_custom_schedule": v.has_custom_schedule,
            },
            "invoices": [
                {
                    "id": i.id,
                    "workshop_name": i.workshop_name,
                    "date": i.date,
                    "total_amount": i.total_amount,
                    "currency": i.currency,
                    "items": [{"description": it.description, "category": it.category, "amount": it.amount} for it in i.items],
                    "has_ocr_text": bool(i.ocr_cache_id),
                }
                for i in self.invoices
            ],
            "maintenances": [
                {
                    "type": m.type,
                    "description": m.description,
                    "done_at": m.done_at,
                    "mileage_at_service": m.mileage_at_service,
                    "invoice_id": m.invoice_id,
                }
                for m in self.maintenances
            ],
        }


@dataclass
class MaintenanceStatus(Outcome):
    vehicle_name: str = ""
    has_custom_schedule: bool = False
    items: List[DueResult] = field(default_factory=list)

    def data(self) -> Dict[str, Any]:
        return {
            "vehicle": self.vehicle_name,
            "has_custom_schedule": self.has_custom_schedule,
            "items": [i.to_dict() for i in self.items],
        }


@dataclass
class ScheduleSaved(Outcome):
    vehicle_name: str = ""
    schedule: List[MaintenanceScheduleItem] = field(default_factory=list)

    def data(self) -> Dict[str, Any]:
        return {
            "vehicle": self.vehicle_name,
            "schedule": [{"label": s.label, "type": s.type, "interval": format_interval(s)} for s in self.schedule],
        }


@dataclass
class InvoiceRecorded(Outcome):
    invoice: Invoice
    entries: int = 0
    new_mileage: Optional[int] = None

    def data(self) -> Dict[str, Any]:
        inv = self.invoice
        return {
            "invoice_id": inv.id,
            "vehicle_id": inv.vehicle_id,
            "workshop_name": inv.workshop_name,
            "date": inv.date,
            "total_amount": inv.total_amount,
            "currency": inv.currency,
            "mileage_at_service": inv.mileage_at_service,
            "items": [{"description": i.description, "category": i.category, "amount": i.amount} for i in inv.items],
            "maintenance_entries": self.entries,
            "has_image": bool(inv.image_data),
        }


@dataclass
class MaintenanceRecorded(Outcome):
    entry: MaintenanceEntry
    vehicle_name: str = ""
    new_mileage: Optional[int] = None

    def data(self) -> Dict[str, Any]:
        e = self.entry
        return {
            "maintenance_id": e.id,
            "vehicle": self.vehicle_name,
            "type": e.type,
            "description": e.description,
            "done_at": e.done_at,
            "mileage_at_service": e.mileage_at_service,
        }


@dataclass
class OcrText(Outcome):
    invoice_id: str = ""
    text: str = ""

    def data(self) -> Dict[str, Any]:
        return {"invoice_id": self.invoice_id, "ocr_text": self.text}


@dataclass
class DocumentScanned(Outcome):
    document_type: str = ""
    fields: Dict[str, Any] = field(default_factory=dict)
    reconciled: Optional[bool] = None

    def data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.document_type, "fields": self.fields}
        if self.reconciled is not None:
            data["items_match_total"] = self.reconciled
        return data


@dataclass
class DuplicateFound(Outcome):
    success = False
    existing: Invoice


@dataclass
class Failure(Outcome):
    success = False
    reason: str = ""
    kind: str = "invalid"      # invalid | not_found | error
    partial: Optional[Dict[str, Any]] = None

    def data(self) -> Optional[Dict[str, Any]]:
        return {"partial": self.partial} if self.partial else None


def format_interval(item: MaintenanceScheduleItem) -> str:
    parts = []
    if item.interval_km > 0:
        parts.append(f"{item.interval_km:,} km")
    if item.interval_months > 0:
        parts.append(f"{item.interval_months} months")
    return " / ".join(parts)


def _money(amount: float, currency: str) -> str:
    return f"{amount:.2f} {currency}"


@singledispatch
def summarize(outcome: Outcome) -> str:
    raise TypeError(f"No summary for {type(outcome).__name__}")


@summarize.register
def _(outcome: VehicleList) -> str:
    if not outcome.vehicles:
        return "No vehicles stored yet."
    lines = [f"{len(outcome.vehicles)} vehicle(s):"]
    lines += [f"- {v.display_name()}, {v.year or '?'}, {v.mileage} km" for v in outcome.vehicles]
    return "\n".join(lines)


@summarize.register
def _(outcome: VehicleCreated) -> str:
    v = outcome.vehicle
    line = f"Make: {v.make}, model: {v.model}, year: {v.year or '?'}, km: {v.mileage}"
    if v.license_plate:
        line += f", plate: {v.license_plate}"
    return f"Vehicle created\n{line}"


@summarize.register
def _(outcome: FieldsChanged) -> str:
    lines = [f"{outcome.name} updated"]
    lines += [f"{key}: {outcome.before.get(key)} -> {outcome.after[key]}" for key in outcome.after]
    return "\n".join(lines)


@summarize.register
def _(outcome: RecordsDeleted) -> str:
    if outcome.kind == "vehicle":
        return (
            f"Vehicle deleted\nDeleted: {outcome.label} "
            f"({outcome.counts.get('invoices', 0)} invoices, {outcome.counts.get('maintenances', 0)} maintenance entries)"
        )
    return f"Invoice deleted\nDeleted: {outcome.label} ({outcome.counts.get('maintenances', 0)} maintenance entries)"


@summarize.register
def _(outcome: VehicleDetails) -> str:
    v = outcome.vehicle
    return (
        f"{v.display_name()}: {v.mileage} km, {len(outcome.invoices)} invoice(s), "
        f"{len(outcome.maintenances)} maintenance entr{'y' if len(outcome.maintenances) == 1 else 'ies'}"
    )


@summarize.register
def _(outcome: MaintenanceStatus) -> str:
    lines = [f"Maintenance status for {outcome.vehicle_name}"]
    for item in outcome.items:
        detail = ""
        if item.next_due_mileage:
            detail = f", next at {item.next_due_mileage:,} km"
        elif item.next_due_date:
            detail = f", next by {item.next_due_date}"
        lines.append(f"- {item.label}: {item.status}{detail}")
    return "\n".join(lines)


@summarize.register
def _(outcome: ScheduleSaved) -> str:
    lines = [f"Maintenance schedule for {outcome.vehicle_name} saved ({len(outcome.schedule)} items)"]
    lines += [f"- {s.label}: {format_interval(s)}" for s in outcome.schedule]
    return "\n".join(lines)


@summarize.register
def _(outcome: InvoiceRecorded) -> str:
    inv = outcome.invoice
    lines = [
        "Invoice recorded",
        f"Workshop: {inv.workshop_name}, date: {inv.date}, amount: {_money(inv.total_amount, inv.currency)}",
    ]
    if inv.items:
        lines.append("Items: " + ", ".join(f"{i.description} ({i.amount:.2f})" for i in inv.items))
    if outcome.new_mileage is not None:
        lines.append(f"Mileage updated to {outcome.new_mileage} km")
    return "\n".join(lines)


@summarize.register
def _(outcome: MaintenanceRecorded) -> str:
    e = outcome.entry
    line = f"Type: {category_label(e.type)}, description: {e.description}, date: {e.done_at}"
    if e.mileage_at_service:
        line += f", km: {e.mileage_at_service}"
    return f"Maintenance recorded for {outcome.vehicle_name}\n{line}"


@summarize.register
def _(outcome: OcrText) -> str:
    return f"OCR text of invoice {outcome.invoice_id} ({len(outcome.text)} characters)"


@summarize.register
def _(outcome: DocumentScanned) -> str:
    return f"Scanned {outcome.document_type.replace('_', ' ')}: {len(outcome.fields)} field(s) recognized"


@summarize.register
def _(outcome: DuplicateFound) -> str:
    inv = outcome.existing
    return (
        f"This invoice already exists: {inv.workshop_name}, {inv.date}, "
        f"{_money(inv.total_amount, inv.currency)}. Not recorded twice."
    )


@summarize.register
def _(outcome: Failure) -> str:
    return outcome.reason or "The action failed."
