"""SQLite document store for vehicles, invoices, maintenance history and OCR text."""

from .db import INVOICES, MAINTENANCES, OCR_CACHE, VEHICLES, Delete, DocumentStore, Patch, Put

__all__ = [
    "DocumentStore",
    "Put",
    "Patch",
    "Delete",
    "VEHICLES",
    "INVOICES",
    "MAINTENANCES",
    "OCR_CACHE",
]
