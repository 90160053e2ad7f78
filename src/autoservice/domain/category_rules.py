"""Keyword rules that override the model's category for well-known repairs.

Workshop invoices use a small, stable vocabulary; a keyword hit in the line
description is a stronger signal than the model's guess. Rules are evaluated
in order and the first hit wins, so specific rules sit above generic ones
(e.g. A/C service above the generic "service" inspection rule).
"""

from __future__ import annotations

import re
from typing import List, Pattern, Tuple

from ..logging import get_logger
from . import categories as c

LOG = get_logger("category-rules")


def _rule(pattern: str, category: str) -> Tuple[Pattern[str], str]:
    return re.compile(pattern, re.IGNORECASE), category


CATEGORY_RULES: List[Tuple[Pattern[str], str]] = [
    _rule(
        r"auspuff|katalysator|kr[üu]mmer|abgasanlage|endtopf|mitteltopf|exhaust|muffler|silencer|catalytic",
        c.EXHAUST,
    ),
    _rule(
        r"k[üu]hl(wasser|er|mittel|fl[üu]ssigkeit)|frostschutz|thermostat|unterdruck|coolant|radiator|antifreeze",
        c.COOLING,
    ),
    _rule(
        r"windschutzscheibe|frontscheibe|heckscheibe|autoglas|scheibenwischer|windscreen|windshield|wiper",
        c.GLASS,
    ),
    _rule(r"klimaanlage|klima.?service|k[äa]ltemittel|air.?con|\ba/?c\b|refrigerant", c.AIR_CONDITIONING),
    _rule(r"bremsfl[üu]ssigkeit|brake fluid", c.BRAKE_FLUID),
    _rule(r"[öo]lwechsel|[öo]lfilter|[öo]lservice|motor[öo]l|[öo]lablassschraube|oil change|oil filter|engine oil|drain plug", c.OIL_CHANGE),
    _rule(
        r"bremsbe[lä]|bremsscheib|bremss[aä]ttel|bremstrommel|bremsbacke|brake pad|brake disc|brake rotor|brake caliper|brake shoe",
        c.BRAKES,
    ),
    _rule(
        r"\breifen\b|reifenmontage|reifenwechsel|auswuchten|winterreifen|sommerreifen|\btires?\b|\btyres?\b|wheel balanc",
        c.TIRES,
    ),
    _rule(
        r"feder(bein)?|sto[ßs]d[äa]mpfer|radlager|achse|lenkung|querlenker|spurstange|traggelenk|"
        r"shock absorber|strut|wheel bearing|control arm|tie rod|steering|suspension",
        c.SUSPENSION,
    ),
    _rule(r"zahnriemen|steuerriemen|steuerkette|timing belt|timing chain|cam belt", c.TIMING_BELT),
    _rule(
        r"batterie|lichtmaschine|anlasser|starter|z[üu]ndkerze|z[üu]ndspule|battery|alternator|spark plug|ignition coil",
        c.ELECTRICAL,
    ),
    _rule(r"lackier|\black\b|karosserie|\brost\b|delle|unfallschaden|blech|bodywork|paint|\bdent|\brust\b", c.BODYWORK),
    _rule(r"luftfilter|pollenfilter|innenraumfilter|air filter|cabin filter|pollen filter", c.AIR_FILTER),
    _rule(r"inspektion|inspection(?! statutory)|durchsicht|hu.vorbereitung|service(?!.*heft)", c.INSPECTION),
    _rule(r"t[üu]v\b|hauptuntersuchung|\bhu\b|\bau\b|\bmot\b|emissions test", c.STATUTORY_INSPECTION),
]


def correct_category(description: str, model_category: str) -> str:
    """Return the category to persist for a line item.

    The first matching keyword rule wins. Without a hit the model's category
    is kept when it belongs to the known vocabulary, else ``other``.
    """
    text = description or ""
    for pattern, category in CATEGORY_RULES:
        if pattern.search(text):
            if category != model_category:
                LOG.debug(f"Category override: {text!r} {model_category!r} -> {category!r}")
            return category
    return c.normalize_category(model_category)
