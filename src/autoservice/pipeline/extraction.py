"""Structured extraction of invoices, vehicle documents and service booklets.

Two strategies:
- ocr_then_parse: OCR the image first, then let a text-only call fill the
  schema. Used for providers whose vision JSON mode invents table numbers.
- direct_vision: send the image with the schema as output constraint.

The strict attempt asks for a JSON-schema response. If that output fails
validation, one lenient `json_object` attempt follows; its payload is
normalized (German number formats, dates, subtotal lines) and validated again.
The outcome is an ExtractionResult carrying either a value or an error plus
whatever partial payload could be recovered.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..config import AssistantSettings
from ..domain.categories import CATEGORY_HINT, normalize_category
from ..domain.normalize import detect_currency, normalize_amount, normalize_date_iso, normalize_mileage
from ..errors import OcrUnavailable, SchemaValidationFailed
from ..logging import get_logger

LOG = get_logger("extraction")

T = TypeVar("T", bound=BaseModel)

VIN_PATTERN = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")

SUBTOTAL_PATTERN = re.compile(
    r"^\s*(summe|zwischensumme|subtotal|sub-total|total|gesamt|netto|nettobetrag|net amount|"
    r"mwst|mehrwertsteuer|ust|vat|tax)\b",
    re.IGNORECASE,
)


# ---------- schemas ---------------------------------------------------------


def check_vin(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    compact = value.replace(" ", "").upper()
    if not VIN_PATTERN.match(compact):
        raise ValueError("vin must be exactly 17 characters (A-Z without I/O/Q, digits)")
    return compact


class InvoiceItemExtraction(BaseModel):
    description: str = Field(description="Work performed or part supplied, as printed on the invoice")
    category: str = Field(default="other", description=f"Maintenance category. {CATEGORY_HINT}")
    amount: float = Field(description="Line amount (quantity x unit price), before tax")

    @field_validator("category", mode="before")
    @classmethod
    def _known_category(cls, value: Any) -> str:
        return normalize_category(value)


class InvoiceExtraction(BaseModel):
    workshop_name: str = Field(description="Name of the workshop or dealer that issued the invoice")
    date: str = Field(description="Invoice date as YYYY-MM-DD")
    total_amount: float = Field(description="Final amount payable including tax")
    net_amount: Optional[float] = Field(default=None, description="Pre-tax total; line items should sum to this")
    currency: str = Field(default="EUR", description="ISO currency code, e.g. EUR, CHF, USD")
    mileage_at_service: Optional[int] = Field(default=None, description="Odometer reading in km printed on the invoice")
    license_plate: Optional[str] = Field(
        default=None,
        description="Short registration code such as 'M-AB 1234' or 'SG 218574'. Never the VIN.",
    )
    vin: Optional[str] = Field(
        default=None,
        description="Vehicle identification number: exactly 17 characters, never the license plate",
    )
    vehicle_make: Optional[str] = None
    vehicle_model: Optional[str] = None
    items: List[InvoiceItemExtraction] = Field(
        default_factory=list,
        description=(
            "Actual work and parts only. Subtotal lines (total labor, total parts, net amount) "
            "and tax lines are not items."
        ),
    )

    @field_validator("date")
    @classmethod
    def _iso_date(cls, value: str) -> str:
        if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value or ""):
            raise ValueError("date must be YYYY-MM-DD")
        return value

    @field_validator("vin")
    @classmethod
    def _vin_shape(cls, value: Optional[str]) -> Optional[str]:
        return check_vin(value)


class VehicleDocumentExtraction(BaseModel):
    make: str = Field(description="Manufacturer, e.g. BMW, VW, Toyota")
    model: str = Field(description="Model designation, e.g. 320d, Golf, Yaris")
    year: Optional[int] = Field(default=None, description="Model year or year of first registration")
    first_registration: Optional[str] = Field(default=None, description="Date of first registration as YYYY-MM-DD")
    mileage: Optional[int] = Field(default=None, description="Odometer reading in km, if stated")
    license_plate: Optional[str] = Field(default=None, description="Short registration code. Never the VIN.")
    vin: Optional[str] = Field(default=None, description="Exactly 17 characters; never the license plate")
    purchase_price: Optional[float] = Field(default=None, description="Price on a purchase contract")
    purchase_date: Optional[str] = Field(default=None, description="Contract date as YYYY-MM-DD")

    @field_validator("vin")
    @classmethod
    def _vin_shape(cls, value: Optional[str]) -> Optional[str]:
        return check_vin(value)


class ScheduleEntryExtraction(BaseModel):
    type: str = Field(description=f"Maintenance category. {CATEGORY_HINT}")
    label: str = Field(description="Item as printed, e.g. 'Engine oil + oil filter'")
    interval_km: int = Field(default=0, description="Distance interval in km; 0 if only time-based")
    interval_months: int = Field(default=0, description="Time interval in months; 0 if only distance-based")

    @field_validator("type", mode="before")
    @classmethod
    def _known_category(cls, value: Any) -> str:
        return normalize_category(value)


class ServiceBookletExtraction(BaseModel):
    vehicle_make: Optional[str] = None
    vehicle_model: Optional[str] = None
    schedule: List[ScheduleEntryExtraction] = Field(
        default_factory=list,
        description="Manufacturer maintenance intervals found on the page",
    )


DOCUMENT_SCHEMAS: Dict[str, Type[BaseModel]] = {
    "invoice": InvoiceExtraction,
    "vehicle_document": VehicleDocumentExtraction,
    "service_booklet": ServiceBookletExtraction,
}

DOCUMENT_PROMPTS: Dict[str, str] = {
    "invoice": (
        "Extract the workshop invoice into the JSON schema. Read the table columns carefully: "
        "description | quantity | unit | unit price | amount. The amount of a line equals quantity times "
        "unit price; if it does not, re-read the line. Lines such as 'total labor', 'total parts', "
        "'net amount', 'subtotal' and tax lines are NOT items. The sum of all item amounts should match "
        "the pre-tax total; if it does not, re-read the table. A license plate is a short alphanumeric "
        "code; a VIN is exactly 17 characters and is never the license plate. 'CHF' means Swiss francs."
    ),
    "vehicle_document": (
        "Extract the vehicle data from this registration document or purchase contract. "
        "A license plate is a short alphanumeric code; a VIN is exactly 17 characters and is never "
        "the license plate."
    ),
    "service_booklet": (
        "This is a page from a service booklet or manufacturer maintenance plan. Extract every maintenance "
        "interval with its distance (km) and time (months) interval. Use 0 where an interval does not apply."
    ),
}


# ---------- result channel --------------------------------------------------


@dataclass
class ExtractionResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None
    partial: Optional[Dict[str, Any]] = None
    strategy: str = ""

    @property
    def ok(self) -> bool:
        return self.value is not None

    def require(self) -> T:
        if self.value is None:
            raise SchemaValidationFailed(self.error or "extraction failed", partial=self.partial)
        return self.value


@dataclass
class Reconciliation:
    items_sum: float
    reference: Optional[float]
    difference: Optional[float]
    matches: bool


def reconcile(invoice: InvoiceExtraction, tolerance: float = 0.05) -> Reconciliation:
    """Compare the line-item sum to the pre-tax total (or the gross total)."""
    items_sum = round(sum(i.amount for i in invoice.items), 2)
    candidates = [v for v in (invoice.net_amount, invoice.total_amount) if v]
    if not candidates:
        return Reconciliation(items_sum, None, None, True)
    best = min(candidates, key=lambda ref: abs(ref - items_sum))
    diff = round(items_sum - best, 2)
    allowed = max(tolerance, abs(best) * 0.005)
    return Reconciliation(items_sum, best, diff, abs(diff) <= allowed)


# ---------- lenient payload repair ------------------------------------------


def _scavenge_json_block(s: str) -> Optional[Any]:
    if not s:
        return None

    candidates: List[str] = []
    fenced = re.search(r"```(?:json)?\s*(.*?)```", s, re.DOTALL)
    if fenced and fenced.group(1):
        candidates.append(fenced.group(1).strip())

    start_obj = s.find("{")
    end_obj = s.rfind("}")
    if start_obj != -1 and end_obj != -1 and end_obj > start_obj:
        candidates.append(s[start_obj : end_obj + 1])

    candidates.append(s)
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def _swap_plate_and_vin(data: Dict[str, Any]) -> None:
    vin = data.get("vin")
    if not isinstance(vin, str) or not vin.strip():
        data["vin"] = None
        return
    compact = vin.replace(" ", "").upper()
    if VIN_PATTERN.match(compact):
        data["vin"] = compact
        return
    if not data.get("license_plate"):
        LOG.info(f"Moving {vin!r} from vin to license_plate (not a 17-character VIN)")
        data["license_plate"] = vin.strip()
    data["vin"] = None


def normalize_payload(doc_type: str, raw: Dict[str, Any], ocr_text: Optional[str] = None) -> Dict[str, Any]:
    """Best-effort repair of a loosely formatted model payload.

    A missing invoice currency is taken from the OCR text when there is one.
    """
    data = dict(raw)
    for key in ("date", "purchase_date", "first_registration"):
        if key in data and data[key] is not None:
            data[key] = normalize_date_iso(data[key])
    for key in ("total_amount", "net_amount", "purchase_price"):
        if key in data:
            data[key] = normalize_amount(data[key])
    for key in ("mileage_at_service", "mileage", "year"):
        if key in data:
            data[key] = normalize_mileage(data[key])
    if "vin" in data:
        _swap_plate_and_vin(data)
    if isinstance(data.get("currency"), str):
        data["currency"] = data["currency"].strip().upper()[:3] or "EUR"
    if doc_type == "invoice" and not data.get("currency") and ocr_text:
        data["currency"] = detect_currency(ocr_text)

    if doc_type == "invoice":
        items = []
        for item in data.get("items") or []:
            if not isinstance(item, dict):
                continue
            description = str(item.get("description") or "").strip()
            if not description or SUBTOTAL_PATTERN.match(description):
                LOG.debug(f"Dropping non-item line {description!r}")
                continue
            amount = normalize_amount(item.get("amount"))
            if amount is None:
                continue
            items.append({"description": description, "category": item.get("category"), "amount": amount})
        data["items"] = items
        if data.get("workshop_name") is None:
            data["workshop_name"] = ""
    elif doc_type == "service_booklet":
        entries = []
        for entry in data.get("schedule") or []:
            if not isinstance(entry, dict):
                continue
            entries.append(
                {
                    "type": entry.get("type"),
                    "label": str(entry.get("label") or entry.get("type") or ""),
                    "interval_km": normalize_mileage(entry.get("interval_km")) or 0,
                    "interval_months": normalize_mileage(entry.get("interval_months")) or 0,
                }
            )
        data["schedule"] = entries
    return data


def _user_text(doc_type: str, ocr_text: Optional[str]) -> str:
    text = DOCUMENT_PROMPTS[doc_type]
    if ocr_text:
        text += (
            "\n\n--- OCR RESULT (exact machine-read text of the document) ---\n"
            f"{ocr_text}\n--- END OCR ---\n"
            "The OCR text is more precise than image recognition for numbers, tables and amounts; "
            "use its values."
        )
    return text


# ---------- extractor --------------------------------------------------------


class StructuredExtractor:
    """Turn a document image (or its OCR text) into a validated schema object."""

    def __init__(self, model: Any, ocr: Any = None, *, ocr_first: bool = False) -> None:
        self.model = model
        self.ocr = ocr
        self.ocr_first = ocr_first

    @classmethod
    def from_settings(cls, settings: AssistantSettings, model: Any, ocr: Any = None) -> "StructuredExtractor":
        return cls(model, ocr, ocr_first=settings.uses_ocr_then_parse)

    async def extract(
        self,
        doc_type: str,
        *,
        image: Optional[bytes] = None,
        ocr_text: Optional[str] = None,
    ) -> ExtractionResult:
        schema = DOCUMENT_SCHEMAS.get(doc_type)
        if schema is None:
            raise ValueError(f"Unknown document type: {doc_type!r}")
        if image is None and not ocr_text:
            raise ValueError("extract() needs an image or OCR text")

        images: List[bytes] = []
        strategy = "ocr_then_parse"
        if not ocr_text:
            if self.ocr_first:
                if self.ocr is None:
                    raise OcrUnavailable("ocr_then_parse extraction requires an OCR backend")
                ocr_text = await self.ocr.ocr_image(image)
            else:
                strategy = "direct_vision"
                images = [image]
        LOG.info(f"Extracting {doc_type} via {strategy}")

        user_text = _user_text(doc_type, ocr_text)
        system = "You extract structured data from vehicle-related documents. Reply with JSON only."

        raw = await self.model.complete_json(
            system,
            user_text,
            images=images,
            schema_name=doc_type,
            schema=schema.model_json_schema(),
        )
        payload = _scavenge_json_block(raw)
        try:
            if not isinstance(payload, dict):
                raise ValueError("response is not a JSON object")
            return self._accept(schema.model_validate(payload), strategy)
        except ValueError as exc:
            LOG.warning(f"Strict {doc_type} extraction failed validation: {exc}; retrying lenient")

        raw = await self.model.complete_json(system, user_text, images=images, schema_name=doc_type, schema=None)
        payload = _scavenge_json_block(raw)
        if not isinstance(payload, dict):
            return ExtractionResult(error="model did not return a JSON object", strategy=strategy)
        repaired = normalize_payload(doc_type, payload, ocr_text)
        try:
            value = schema.model_validate(repaired)
        except ValidationError as exc:
            LOG.error(f"Lenient {doc_type} extraction still invalid: {exc.error_count()} error(s)")
            return ExtractionResult(error=str(exc), partial=repaired, strategy=strategy)
        return self._accept(value, strategy)

    @staticmethod
    def _accept(value: BaseModel, strategy: str) -> ExtractionResult:
        if isinstance(value, InvoiceExtraction):
            check = reconcile(value)
            if not check.matches:
                LOG.warning(f"Line items sum {check.items_sum} vs total {check.reference} (diff {check.difference})")
        return ExtractionResult(value=value, strategy=strategy)
