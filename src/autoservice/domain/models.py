from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class MaintenanceScheduleItem:
    type: str
    label: str
    interval_km: int      # 0 = time-based only
    interval_months: int  # 0 = mileage-based only

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MaintenanceScheduleItem":
        return cls(
            type=str(data.get("type") or ""),
            label=str(data.get("label") or data.get("type") or ""),
            interval_km=int(data.get("interval_km") or 0),
            interval_months=int(data.get("interval_months") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Vehicle:
    id: str
    make: str
    model: str
    year: Optional[int] = None
    mileage: int = 0
    license_plate: Optional[str] = None
    vin: Optional[str] = None
    custom_schedule: Optional[List[MaintenanceScheduleItem]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def has_custom_schedule(self) -> bool:
        return bool(self.custom_schedule)

    def display_name(self) -> str:
        name = f"{self.make} {self.model}".strip()
        if self.license_plate:
            name = f"{name} ({self.license_plate})"
        return name

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["has_custom_schedule"] = self.has_custom_schedule
        return data


@dataclass
class InvoiceLineItem:
    description: str
    category: str
    amount: float


@dataclass
class Invoice:
    id: str
    vehicle_id: str
    workshop_name: str
    date: str                 # YYYY-MM-DD
    total_amount: float
    currency: str = "EUR"
    mileage_at_service: Optional[int] = None
    image_data: bytes = b""   # normalized image, may be empty
    ocr_cache_id: str = ""    # sha256 of image_data, may be empty
    items: List[InvoiceLineItem] = field(default_factory=list)
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; image bytes are reduced to a flag."""
        data = asdict(self)
        data.pop("image_data", None)
        data["has_image"] = bool(self.image_data)
        return data


@dataclass
class MaintenanceEntry:
    id: str
    vehicle_id: str
    type: str
    description: str
    done_at: str              # YYYY-MM-DD
    mileage_at_service: Optional[int] = None
    invoice_id: Optional[str] = None
    next_due_date: Optional[str] = None
    next_due_mileage: Optional[int] = None
    status: str = "done"      # done | due | overdue
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OcrCacheEntry:
    hash: str                 # sha256 hex of the normalized image bytes
    markdown: str
    created_at: Optional[str] = None


@dataclass
class Attachment:
    kind: str                 # image | pdf
    name: str
    preview: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        # Older clients send `type` instead of `kind`; extra keys are ignored.
        kind = data.get("kind") or data.get("type") or "image"
        preview = data.get("preview")
        return cls(kind=str(kind), name=str(data.get("name") or ""), preview=str(preview) if preview else None)


@dataclass
class ToolResult:
    tool: str
    data: Dict[str, Any]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolResult":
        payload = data.get("data")
        return cls(tool=str(data.get("tool") or ""), data=payload if isinstance(payload, dict) else {})


@dataclass
class ChatMessage:
    role: str                 # user | assistant
    content: str
    attachments: List[Attachment] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            role=str(data.get("role") or "user"),
            content=str(data.get("content") or ""),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments") or [] if isinstance(a, dict)],
            tool_results=[ToolResult.from_dict(t) for t in data.get("tool_results") or [] if isinstance(t, dict)],
        )
