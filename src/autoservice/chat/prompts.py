from __future__ import annotations

from typing import Iterable, List, Sequence

from ..domain.categories import CATEGORY_HINT
from ..domain.models import Vehicle

SYSTEM_PROMPT = f"""You are the vehicle service assistant. You help the user manage vehicles, invoices and maintenance.
You can:
- create, update and delete vehicles
- record invoices and maintenance
- analyze photos of invoices, purchase contracts, registration documents and service booklets
- check maintenance status and recommend what is due
- answer questions about maintenance intervals
- read the stored OCR text of saved invoices (get_ocr_text)

IDENTIFYING VEHICLES:
- The user does not know any ids. They say "my BMW", "the Golf", "the car".
- You receive the list of vehicles as context. Use it to pick the right vehicle.
- If exactly one vehicle exists, use it without asking.
- If several vehicles could match, ask briefly which one is meant.
- Never ask the user for an id.

RULES:
1. Before creating a vehicle, show all fields (make, model, year, mileage, plate, VIN) and wait for confirmation.
2. Before recording an invoice, show all fields (workshop, date, total, currency, mileage, every item with
   description, category and amount) and wait for confirmation.
3. Do not run tools before the user has confirmed the data.
4. If you are unsure about a field, show what you recognized and ask.
5. Simple edits ("change the year to 2008") need no confirmation; run them directly.

INVOICE ITEMS:
- Tax lines (VAT, MwSt., USt.) are not items.
- "Total labor", "total parts", "net amount", "subtotal" are not items.
- Only actual work and parts are items.

CATEGORIES: {CATEGORY_HINT}

MAINTENANCE WITHOUT INVOICE:
- When the user reports finished maintenance without a receipt, use add_maintenance, not add_invoice.
- add_invoice is only for invoices with a workshop, an amount and items.

SERVICE BOOKLET:
- Photos of a service booklet or maintenance plan describe INTERVALS. Read the km and time intervals,
  map them to categories, show them as a table, and after confirmation call set_maintenance_schedule
  (never add_maintenance for intervals).

SERVICE BOOKLET HINT:
- If a vehicle has no vehicle-specific schedule, mention once per conversation that its plan is based on
  generic intervals and that photographing the service booklet gives exact manufacturer intervals.

AFTER ACTIONS:
Summarize what you did: created vehicles with their fields, invoices with workshop, date, amount and items,
maintenance with type, date and km, edits as before -> after, deletions with what was removed, and for a
duplicate which existing record was found.

Keep answers short and helpful."""

IMAGE_ANALYSIS_PROMPT = """Analyze the image carefully. It may be rotated; read the text in its proper direction.

LICENSE PLATE vs. VIN:
- A license plate is a short code of letters and digits, e.g. "SG 218574" or "M-AB 1234", often printed next
  to the vehicle name.
- A VIN is exactly 17 characters, e.g. "WP1ZZZ9PZ8LA14872". A license plate is never the VIN.

READING ITEMS:
- Read the columns carefully: description | quantity | unit | unit price | amount.
- Amount per item = quantity x unit price. If it does not add up, you misread.
- "Total labor" and "total parts" are subtotals, not items.
- Check: the sum of all item amounts is about the net total (before tax). If not, re-read the table.

CURRENCY:
- "CHF" means Swiss francs; "EUR" or "€" means euro."""

CONFIRMATION_REQUEST = (
    "Present the recognized data in a structured way, separated into vehicle data and invoice data. "
    "Do not save anything yet. Ask the user whether the data is correct before continuing."
)

OCR_PREFERENCE = (
    "The OCR text above is machine-read and therefore MORE ACCURATE than your own image recognition for "
    "numbers, tables and amounts. Use the values from the OCR text."
)

NEVER_INVENT_IDS = (
    "IMPORTANT: Use ONLY the exact vehicle ids from the list above or from the result of add_vehicle. "
    "Never invent an id."
)


def ocr_block(texts: Sequence[str], label: str = "Image") -> str:
    body = "\n\n".join(f"{label} {i + 1}:\n{t}" for i, t in enumerate(texts) if t)
    return f"--- OCR RESULT (exact text of the document) ---\n{body}\n--- END OCR ---"


def pages_block(pages: Sequence[str]) -> str:
    return "\n\n".join(f"--- Page {i + 1} ---\n{t}" for i, t in enumerate(pages))


def image_phase_system(ocr_texts: Sequence[str]) -> str:
    parts = [SYSTEM_PROMPT, IMAGE_ANALYSIS_PROMPT]
    if any(ocr_texts):
        parts += [ocr_block(ocr_texts), OCR_PREFERENCE]
    parts.append(CONFIRMATION_REQUEST)
    return "\n\n".join(parts)


def pdf_phase_system(pages: Sequence[str]) -> str:
    return "\n\n".join(
        [
            SYSTEM_PROMPT,
            f"The user uploaded a PDF with {len(pages)} page(s). Each page may be a separate invoice or "
            "document. If two pages are identical or very similar, point it out (duplicate).",
            f"--- OCR RESULT (exact text of the document) ---\n{pages_block(pages)}\n--- END OCR ---",
            OCR_PREFERENCE,
            "Analyze every page separately. " + CONFIRMATION_REQUEST,
        ]
    )


def vehicle_line(v: Vehicle) -> str:
    schedule = "service booklet schedule" if v.has_custom_schedule else "generic schedule"
    plate = f", {v.license_plate}" if v.license_plate else ""
    return f"- {v.make} {v.model} ({v.year or '?'}), {v.mileage} km{plate} [{schedule}]: ID={v.id}"


def vehicle_context(vehicles: Iterable[Vehicle]) -> str:
    lines: List[str] = [vehicle_line(v) for v in vehicles]
    if not lines:
        return "(no vehicles stored yet; create one first with add_vehicle)"
    return "Available vehicles:\n" + "\n".join(lines)


def pdf_confirmation_context(pages: Sequence[str], vehicles: str) -> str:
    return (
        f"Context: a PDF with {len(pages)} page(s) was analyzed. Each page may be a separate invoice; "
        f"record each invoice separately.\n\n--- OCR TEXT ---\n{pages_block(pages)}\n--- END ---\n\n"
        f"{vehicles}\n\n{NEVER_INVENT_IDS}"
    )


def image_confirmation_context(count: int, vehicles: str) -> str:
    return (
        f"Context: {count} image(s) were sent (index 0-{count - 1}). Pass image_index to add_invoice to store "
        f"the matching image.\n\n{vehicles}\n\n{NEVER_INVENT_IDS}"
    )


def plain_context(vehicles: str) -> str:
    return f"[System context] {vehicles}\n\n{NEVER_INVENT_IDS}"
