from __future__ import annotations

from typing import Dict, Tuple

# Closed maintenance vocabulary used for line items, history entries and schedules.
OIL_CHANGE = "oil_change"
INSPECTION = "inspection"
BRAKES = "brakes"
TIRES = "tires"
SUSPENSION = "suspension"
EXHAUST = "exhaust"
COOLING = "cooling"
GLASS = "glass"
ELECTRICAL = "electrical"
BODYWORK = "bodywork"
AIR_CONDITIONING = "air_conditioning"
TIMING_BELT = "timing_belt"
BRAKE_FLUID = "brake_fluid"
AIR_FILTER = "air_filter"
STATUTORY_INSPECTION = "statutory_inspection"
OTHER = "other"

MAINTENANCE_CATEGORIES: Tuple[str, ...] = (
    OIL_CHANGE,
    INSPECTION,
    BRAKES,
    TIRES,
    SUSPENSION,
    EXHAUST,
    COOLING,
    GLASS,
    ELECTRICAL,
    BODYWORK,
    AIR_CONDITIONING,
    TIMING_BELT,
    BRAKE_FLUID,
    AIR_FILTER,
    STATUTORY_INSPECTION,
    OTHER,
)

CATEGORY_DEFAULT = OTHER

CATEGORY_LABELS: Dict[str, str] = {
    OIL_CHANGE: "Oil change",
    INSPECTION: "Inspection",
    BRAKES: "Brakes",
    TIRES: "Tires",
    SUSPENSION: "Suspension",
    EXHAUST: "Exhaust",
    COOLING: "Cooling system",
    GLASS: "Glass",
    ELECTRICAL: "Electrical",
    BODYWORK: "Bodywork",
    AIR_CONDITIONING: "A/C service",
    TIMING_BELT: "Timing belt",
    BRAKE_FLUID: "Brake fluid",
    AIR_FILTER: "Air filter",
    STATUTORY_INSPECTION: "Statutory inspection",
    OTHER: "Other",
}

# Short hints embedded in tool/extraction schemas so the model picks the right bucket.
CATEGORY_HINT = (
    "oil_change: oil, oil filter, drain plug | brakes: pads, discs, calipers | "
    "tires: tire fitting, balancing, winter/summer tires | suspension: springs, shocks, "
    "axle, steering, wheel bearings | exhaust: exhaust, catalytic converter, manifold | "
    "cooling: coolant, radiator, thermostat | glass: windscreen, wipers | "
    "electrical: battery, alternator, starter, spark plugs | bodywork: paint, dents, rust | "
    "inspection: service, check-up | air_conditioning | timing_belt | brake_fluid | "
    "air_filter: air/cabin filter | statutory_inspection: MOT/TUV/HU | "
    "other: only when nothing else fits"
)


def normalize_category(value: object) -> str:
    """Map free-form model output onto the closed vocabulary (unknown -> other)."""
    if not isinstance(value, str):
        return CATEGORY_DEFAULT
    candidate = value.strip().lower().replace("-", "_").replace(" ", "_")
    if candidate in MAINTENANCE_CATEGORIES:
        return candidate
    return CATEGORY_DEFAULT


def category_label(value: str) -> str:
    return CATEGORY_LABELS.get(value, value)
