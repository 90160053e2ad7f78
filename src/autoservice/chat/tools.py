"""Tool registry and the actions the assistant may run against the store.

Every handler takes a validated pydantic argument model and returns one
Outcome variant. Invalid arguments and unknown ids come back to the model as
a Failure; anything else that goes wrong propagates and aborts the turn.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Optional, Sequence, Type

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..domain.categories import CATEGORY_HINT, normalize_category
from ..domain.category_rules import correct_category
from ..domain.duplicates import find_duplicate
from ..domain.models import Invoice, InvoiceLineItem, MaintenanceEntry, MaintenanceScheduleItem, Vehicle
from ..domain.normalize import normalize_date_iso
from ..domain.schedule import due_status, next_due_for, resolve_schedule
from ..errors import NotFound, OcrUnavailable
from ..logging import get_logger
from ..pipeline.extraction import InvoiceExtraction, reconcile
from ..pipeline.ocr_cache import OcrCache, content_hash
from ..store.db import INVOICES, MAINTENANCES, VEHICLES, Delete, DocumentStore, Operation, Patch, Put
from .results import (
    DocumentScanned,
    DuplicateFound,
    Failure,
    FieldsChanged,
    InvoiceRecorded,
    MaintenanceRecorded,
    MaintenanceStatus,
    OcrText,
    Outcome,
    RecordsDeleted,
    ScheduleSaved,
    VehicleCreated,
    VehicleDetails,
    VehicleList,
)

LOG = get_logger("tools")

SCAN_DOCUMENT = "scan_document"


# ---------- argument models -------------------------------------------------


def _iso_date(value: Any) -> str:
    iso = normalize_date_iso(value)
    if iso is None:
        raise ValueError("date must be YYYY-MM-DD")
    return iso


def _clean_plate(value: Optional[str]) -> Optional[str]:
    return " ".join((value or "").split()) or None


def _clean_vin(value: Optional[str]) -> Optional[str]:
    return "".join((value or "").split()).upper() or None


class NoArgs(BaseModel):
    pass


class VehicleRef(BaseModel):
    vehicle_id: str = Field(description="Vehicle id from the vehicle list")


class InvoiceRef(BaseModel):
    invoice_id: str = Field(description="Invoice id")


class AddVehicleArgs(BaseModel):
    make: str = Field(description="Make, e.g. BMW, Audi, VW")
    model: str = Field(description="Model, e.g. 320d, A4, Golf")
    year: int = Field(description="Model year")
    mileage: Optional[int] = Field(default=None, ge=0, description="Odometer reading in km")
    license_plate: Optional[str] = Field(default=None, description="License plate (short code, never the VIN)")
    vin: Optional[str] = Field(default=None, description="VIN, exactly 17 characters")


class UpdateVehicleArgs(BaseModel):
    vehicle_id: str = Field(description="Vehicle id")
    make: Optional[str] = Field(default=None, description="New make")
    model: Optional[str] = Field(default=None, description="New model")
    year: Optional[int] = Field(default=None, description="New model year")
    mileage: Optional[int] = Field(default=None, ge=0, description="New odometer reading in km")
    license_plate: Optional[str] = Field(default=None, description="New license plate")
    vin: Optional[str] = Field(default=None, description="New VIN")


class ScheduleItemArgs(BaseModel):
    type: str = Field(description=f"Maintenance category. {CATEGORY_HINT}")
    label: str = Field(description="Description, e.g. 'Engine oil + oil filter'")
    interval_km: int = Field(ge=0, description="Interval in km (0 if only time-based)")
    interval_months: int = Field(ge=0, description="Interval in months (0 if only distance-based)")


class SetScheduleArgs(BaseModel):
    vehicle_id: str = Field(description="Vehicle id")
    schedule: List[ScheduleItemArgs] = Field(description="Maintenance intervals from the service booklet")


class InvoiceItemArgs(BaseModel):
    description: str = Field(description="Work performed or part supplied")
    category: str = Field(description=f"Category. {CATEGORY_HINT}")
    amount: float = Field(description="Amount of this item")


class AddInvoiceArgs(BaseModel):
    vehicle_id: str = Field(description="Vehicle id")
    workshop_name: str = Field(description="Name of the workshop")
    date: str = Field(description="Date as YYYY-MM-DD")
    total_amount: float = Field(description="Total amount")
    currency: str = Field(default="EUR", description="Currency, e.g. EUR, CHF, USD")
    mileage_at_service: Optional[int] = Field(default=None, ge=0, description="Odometer reading in km")
    image_index: Optional[int] = Field(default=None, ge=0, description="0-based index of the matching image")
    items: List[InvoiceItemArgs] = Field(default_factory=list, description="Invoice items")

    @field_validator("date", mode="before")
    @classmethod
    def _check_date(cls, v: Any) -> str:
        return _iso_date(v)


class AddMaintenanceArgs(BaseModel):
    vehicle_id: str = Field(description="Vehicle id")
    type: str = Field(description=f"Category. {CATEGORY_HINT}")
    description: str = Field(description="What was done")
    done_at: str = Field(description="Date as YYYY-MM-DD")
    mileage_at_service: Optional[int] = Field(default=None, ge=0, description="Odometer reading at the service")

    @field_validator("done_at", mode="before")
    @classmethod
    def _check_done_at(cls, v: Any) -> str:
        return _iso_date(v)


class ScanDocumentArgs(BaseModel):
    invoice_id: str = Field(description="Id of a stored invoice whose image should be read again")
    document_type: Literal["invoice", "vehicle_document", "service_booklet"] = Field(
        default="invoice", description="Kind of document on the stored image"
    )


# ---------- registry ---------------------------------------------------------


@dataclass
class Tool:
    name: str
    description: str
    params: Type[BaseModel]
    handler: Callable[[Any], Awaitable[Outcome]]

    def spec(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.params.model_json_schema(),
            },
        }


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool]) -> None:
        self._tools: Dict[str, Tool] = {t.name: t for t in tools}

    def names(self) -> List[str]:
        return list(self._tools)

    def without(self, *names: str) -> "ToolRegistry":
        return ToolRegistry(t for t in self._tools.values() if t.name not in names)

    def specs(self) -> List[Dict[str, Any]]:
        return [t.spec() for t in self._tools.values()]

    async def dispatch(self, name: str, arguments: Any) -> Outcome:
        tool = self._tools.get(name)
        if tool is None:
            LOG.warning(f"Model called unknown tool {name!r}")
            return Failure(reason=f"Unknown tool: {name}")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments or "{}")
            except json.JSONDecodeError as exc:
                return Failure(reason=f"Arguments for {name} are not valid JSON: {exc}")
        try:
            args = tool.params.model_validate(arguments or {})
        except ValidationError as exc:
            problems = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
            LOG.info(f"Invalid arguments for {name}: {problems}")
            return Failure(reason=f"Invalid arguments for {name}: {problems}")
        try:
            return await tool.handler(args)
        except NotFound as exc:
            LOG.info(f"{name}: {exc}")
            return Failure(reason=f"{exc.kind.capitalize()} not found: {exc.record_id}", kind="not_found")


# ---------- implementations --------------------------------------------------


class MaintenanceTools:
    """Tool handlers bound to a store and, for one turn, the pending images."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        images: Sequence[bytes] = (),
        ocr_cache: Optional[OcrCache] = None,
        extractor: Any = None,
    ) -> None:
        self.store = store
        self.images = list(images)
        self.ocr_cache = ocr_cache
        self.extractor = extractor

    def _vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = self.store.vehicle(vehicle_id)
        if vehicle is None:
            raise NotFound("vehicle", vehicle_id)
        return vehicle

    def _invoice(self, invoice_id: str) -> Invoice:
        invoice = self.store.invoice(invoice_id)
        if invoice is None:
            raise NotFound("invoice", invoice_id)
        return invoice

    @staticmethod
    def _advance_mileage(vehicle: Vehicle, mileage: Optional[int]) -> Optional[Patch]:
        if mileage and mileage > (vehicle.mileage or 0):
            return Patch(VEHICLES, vehicle.id, {"mileage": mileage})
        return None

    async def list_vehicles(self, args: NoArgs) -> Outcome:
        return VehicleList(vehicles=self.store.vehicles())

    async def add_vehicle(self, args: AddVehicleArgs) -> Outcome:
        vehicle_id = self.store.new_id()
        fields = {
            "make": args.make.strip(),
            "model": args.model.strip(),
            "year": args.year,
            "mileage": args.mileage or 0,
            "license_plate": _clean_plate(args.license_plate),
            "vin": _clean_vin(args.vin),
        }
        self.store.transact([Put(VEHICLES, vehicle_id, fields)])
        LOG.info(f"Vehicle created: {fields['make']} {fields['model']} ({vehicle_id})")
        return VehicleCreated(vehicle=self._vehicle(vehicle_id))

    async def update_vehicle(self, args: UpdateVehicleArgs) -> Outcome:
        vehicle = self._vehicle(args.vehicle_id)
        patch = args.model_dump(exclude_none=True, exclude={"vehicle_id"})
        if "license_plate" in patch:
            patch["license_plate"] = _clean_plate(patch["license_plate"])
        if "vin" in patch:
            patch["vin"] = _clean_vin(patch["vin"])
        if not patch:
            return Failure(reason="No fields to change were given.")
        before = {key: getattr(vehicle, key) for key in patch}
        self.store.transact([Patch(VEHICLES, vehicle.id, patch)])
        updated = self._vehicle(vehicle.id)
        return FieldsChanged(vehicle_id=vehicle.id, name=f"{updated.make} {updated.model}", before=before, after=patch)

    async def delete_vehicle(self, args: VehicleRef) -> Outcome:
        vehicle = self._vehicle(args.vehicle_id)
        invoices = self.store.invoices(vehicle.id)
        maintenances = self.store.maintenances(vehicle_id=vehicle.id)
        ops: List[Operation] = [Delete(MAINTENANCES, m.id) for m in maintenances]
        ops += [Delete(INVOICES, i.id) for i in invoices]
        ops.append(Delete(VEHICLES, vehicle.id))
        self.store.transact(ops)
        LOG.info(f"Vehicle {vehicle.id} deleted with {len(invoices)} invoice(s), {len(maintenances)} entr(ies)")
        return RecordsDeleted(
            kind="vehicle",
            label=f"{vehicle.make} {vehicle.model}",
            counts={"invoices": len(invoices), "maintenances": len(maintenances)},
        )

    async def get_vehicle(self, args: VehicleRef) -> Outcome:
        vehicle = self._vehicle(args.vehicle_id)
        return VehicleDetails(
            vehicle=vehicle,
            invoices=self.store.invoices(vehicle.id),
            maintenances=self.store.maintenances(vehicle_id=vehicle.id),
        )

    async def get_maintenance_status(self, args: VehicleRef) -> Outcome:
        vehicle = self._vehicle(args.vehicle_id)
        items = due_status(vehicle.mileage, self.store.maintenances(vehicle_id=vehicle.id), resolve_schedule(vehicle))
        return MaintenanceStatus(
            vehicle_name=f"{vehicle.make} {vehicle.model}",
            has_custom_schedule=vehicle.has_custom_schedule,
            items=items,
        )

    async def set_maintenance_schedule(self, args: SetScheduleArgs) -> Outcome:
        vehicle = self._vehicle(args.vehicle_id)
        schedule = [
            MaintenanceScheduleItem(
                type=normalize_category(item.type),
                label=item.label.strip() or item.type,
                interval_km=item.interval_km,
                interval_months=item.interval_months,
            )
            for item in args.schedule
        ]
        if not schedule:
            return Failure(reason="The schedule is empty; nothing was saved.")
        self.store.transact([Patch(VEHICLES, vehicle.id, {"custom_schedule": [s.to_dict() for s in schedule]})])
        return ScheduleSaved(vehicle_name=f"{vehicle.make} {vehicle.model}", schedule=schedule)

    async def add_invoice(self, args: AddInvoiceArgs) -> Outcome:
        vehicle = self._vehicle(args.vehicle_id)
        duplicate = find_duplicate(
            self.store.invoices(vehicle.id), vehicle.id, args.date, args.workshop_name, args.total_amount
        )
        if duplicate is not None:
            return DuplicateFound(existing=duplicate)

        image = b""
        if self.images:
            index = args.image_index or 0
            if index < len(self.images):
                image = self.images[index]
            else:
                LOG.warning(f"image_index {index} out of range ({len(self.images)} image(s)); storing no image")

        schedule = resolve_schedule(vehicle)
        invoice_id = self.store.new_id()
        mileage = args.mileage_at_service or None
        items = [
            InvoiceLineItem(
                description=item.description.strip(),
                category=correct_category(item.description, normalize_category(item.category)),
                amount=round(item.amount, 2),
            )
            for item in args.items
        ]
        invoice = Invoice(
            id=invoice_id,
            vehicle_id=vehicle.id,
            workshop_name=args.workshop_name.strip(),
            date=args.date,
            total_amount=round(args.total_amount, 2),
            currency=(args.currency or "EUR").strip().upper() or "EUR",
            mileage_at_service=mileage,
            image_data=image,
            ocr_cache_id=content_hash(image) if image else "",
            items=items,
        )
        ops: List[Operation] = [
            Put(
                INVOICES,
                invoice_id,
                {
                    "vehicle_id": invoice.vehicle_id,
                    "workshop_name": invoice.workshop_name,
                    "date": invoice.date,
                    "total_amount": invoice.total_amount,
                    "currency": invoice.currency,
                    "mileage_at_service": invoice.mileage_at_service,
                    "image_data": invoice.image_data or None,
                    "ocr_cache_id": invoice.ocr_cache_id,
                    "items": [{"description": i.description, "category": i.category, "amount": i.amount} for i in items],
                },
            )
        ]
        for item in items:
            next_date, next_mileage = next_due_for(item.category, args.date, mileage, schedule)
            ops.append(
                Put(
                    MAINTENANCES,
                    self.store.new_id(),
                    {
                        "vehicle_id": vehicle.id,
                        "invoice_id": invoice_id,
                        "type": item.category,
                        "description": item.description,
                        "done_at": args.date,
                        "mileage_at_service": mileage,
                        "next_due_date": next_date,
                        "next_due_mileage": next_mileage,
                        "status": "done",
                    },
                )
            )
        advance = self._advance_mileage(vehicle, mileage)
        if advance is not None:
            ops.append(advance)

        self.store.transact(ops)
        LOG.info(f"Invoice {invoice_id} recorded with {len(items)} maintenance entr(ies)")
        return InvoiceRecorded(
            invoice=invoice,
            entries=len(items),
            new_mileage=mileage if advance is not None else None,
        )

    async def add_maintenance(self, args: AddMaintenanceArgs) -> Outcome:
        vehicle = self._vehicle(args.vehicle_id)
        category = correct_category(args.description, normalize_category(args.type))
        mileage = args.mileage_at_service or None
        next_date, next_mileage = next_due_for(category, args.done_at, mileage, resolve_schedule(vehicle))
        entry = MaintenanceEntry(
            id=self.store.new_id(),
            vehicle_id=vehicle.id,
            type=category,
            description=args.description.strip(),
            done_at=args.done_at,
            mileage_at_service=mileage,
            next_due_date=next_date,
            next_due_mileage=next_mileage,
        )
        ops: List[Operation] = [
            Put(
                MAINTENANCES,
                entry.id,
                {
                    "vehicle_id": entry.vehicle_id,
                    "invoice_id": None,
                    "type": entry.type,
                    "description": entry.description,
                    "done_at": entry.done_at,
                    "mileage_at_service": entry.mileage_at_service,
                    "next_due_date": entry.next_due_date,
                    "next_due_mileage": entry.next_due_mileage,
                    "status": entry.status,
                },
            )
        ]
        advance = self._advance_mileage(vehicle, mileage)
        if advance is not None:
            ops.append(advance)
        self.store.transact(ops)
        return MaintenanceRecorded(
            entry=entry,
            vehicle_name=f"{vehicle.make} {vehicle.model}",
            new_mileage=mileage if advance is not None else None,
        )

    async def delete_invoice(self, args: InvoiceRef) -> Outcome:
        invoice = self._invoice(args.invoice_id)
        entries = self.store.maintenances(invoice_id=invoice.id)
        ops: List[Operation] = [Delete(MAINTENANCES, m.id) for m in entries]
        ops.append(Delete(INVOICES, invoice.id))
        self.store.transact(ops)
        return RecordsDeleted(
            kind="invoice",
            label=f"{invoice.workshop_name} ({invoice.date}, {invoice.total_amount:.2f} {invoice.currency})",
            counts={"maintenances": len(entries)},
        )

    async def get_ocr_text(self, args: InvoiceRef) -> Outcome:
        invoice = self._invoice(args.invoice_id)
        if not invoice.ocr_cache_id:
            return Failure(reason="No OCR text is stored for this invoice.", kind="not_found")
        if self.ocr_cache is not None:
            text = self.ocr_cache.lookup(invoice.ocr_cache_id)
        else:
            text = self.store.ocr_text(invoice.ocr_cache_id)
        if text is None:
            return Failure(reason="The OCR cache entry for this invoice was not found.", kind="not_found")
        return OcrText(invoice_id=invoice.id, text=text)

    async def scan_document(self, args: ScanDocumentArgs) -> Outcome:
        invoice = self._invoice(args.invoice_id)
        if not invoice.image_data:
            return Failure(reason="This invoice has no stored image.", kind="not_found")
        if self.extractor is None:
            return Failure(reason="Document scanning is not configured.", kind="error")
        try:
            result = await self.extractor.extract(args.document_type, image=invoice.image_data)
        except OcrUnavailable as exc:
            return Failure(reason=str(exc), kind="error")
        if not result.ok:
            return Failure(reason="Could not read this document.", kind="error", partial=result.partial)
        reconciled = reconcile(result.value).matches if isinstance(result.value, InvoiceExtraction) else None
        return DocumentScanned(
            document_type=args.document_type,
            fields=result.value.model_dump(),
            reconciled=reconciled,
        )


def build_registry(
    store: DocumentStore,
    *,
    images: Sequence[bytes] = (),
    ocr_cache: Optional[OcrCache] = None,
    extractor: Any = None,
) -> ToolRegistry:
    t = MaintenanceTools(store, images=images, ocr_cache=ocr_cache, extractor=extractor)
    return ToolRegistry(
        [
            Tool("list_vehicles", "List all vehicles", NoArgs, t.list_vehicles),
            Tool(
                "add_vehicle",
                "Create a vehicle. Ask for missing required fields (make, model, year).",
                AddVehicleArgs,
                t.add_vehicle,
            ),
            Tool("update_vehicle", "Update vehicle fields; only the given fields change.", UpdateVehicleArgs, t.update_vehicle),
            Tool("delete_vehicle", "Delete a vehicle with all its invoices and maintenance entries", VehicleRef, t.delete_vehicle),
            Tool("get_vehicle", "Show a vehicle with its invoices and maintenance history", VehicleRef, t.get_vehicle),
            Tool(
                "get_maintenance_status",
                "Check what maintenance is due, overdue or done for a vehicle",
                VehicleRef,
                t.get_maintenance_status,
            ),
            Tool(
                "set_maintenance_schedule",
                "Store the vehicle's maintenance intervals as read from its service booklet",
                SetScheduleArgs,
                t.set_maintenance_schedule,
            ),
            Tool(
                "add_invoice",
                "Record a workshop invoice with its items; creates one maintenance entry per item",
                AddInvoiceArgs,
                t.add_invoice,
            ),
            Tool(
                "add_maintenance",
                "Record maintenance WITHOUT an invoice, when the user reports work done but has no receipt",
                AddMaintenanceArgs,
                t.add_maintenance,
            ),
            Tool("delete_invoice", "Delete an invoice and its maintenance entries", InvoiceRef, t.delete_invoice),
            Tool(
                "get_ocr_text",
                "Read the stored OCR text of an invoice, for questions about details of a saved document",
                InvoiceRef,
                t.get_ocr_text,
            ),
            Tool(
                SCAN_DOCUMENT,
                "Read the stored image of an invoice again and extract it as invoice, vehicle document or service booklet",
                ScanDocumentArgs,
                t.scan_document,
            ),
        ]
    )
