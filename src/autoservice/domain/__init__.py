"""Domain layer: records, category vocabulary and the deterministic business rules."""

from .category_rules import correct_category
from .duplicates import find_duplicate
from .models import (
    Attachment,
    ChatMessage,
    Invoice,
    InvoiceLineItem,
    MaintenanceEntry,
    MaintenanceScheduleItem,
    OcrCacheEntry,
    ToolResult,
    Vehicle,
)
from .schedule import DueResult, due_status, latest_by_type, resolve_schedule

__all__ = [
    "Attachment",
    "ChatMessage",
    "DueResult",
    "Invoice",
    "InvoiceLineItem",
    "MaintenanceEntry",
    "MaintenanceScheduleItem",
    "OcrCacheEntry",
    "ToolResult",
    "Vehicle",
    "correct_category",
    "due_status",
    "find_duplicate",
    "latest_by_type",
    "resolve_schedule",
]
