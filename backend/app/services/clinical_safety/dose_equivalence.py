"""
Dose-Equivalence Calculator - cumulative daily morphine milligram equivalents (MME).

Three conversion modes, chosen by the matched opioid's kind:
  - linear:           total daily mg × factor
  - transdermal:      patch mcg/hr × factor (2.4 for fentanyl)
  - methadone_tiered: total daily mg × step factor (≤20 → 4, ≤40 → 8, ≤60 → 10, >60 → 12)

Each line is rounded half-up to 0.1 before summing so that the displayed
per-line figures add up to the displayed total.

Reference: CDC Clinical Practice Guideline for Prescribing Opioids for Pain (2022).
"""

import logging
import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from .models import ConversionKind, MMELineItem, MMEResult, MMEThresholds, OpioidDose
from .rule_tables import OpioidConversion, RuleTables, get_default_rule_tables

logger = logging.getLogger(__name__)

# Not configurable; callers needing other cut-offs wrap total_mme
CAUTION_MME = 50.0
AVOID_MME = 90.0

CAUTION_NOTE = "MME ≥ 50/day: reassess benefits and risks; consider naloxone co-prescription."
AVOID_NOTE = "MME ≥ 90/day: avoid or carefully justify; consider tapering to a safer dose."

# (upper bound inclusive in mg/day, factor); above the last bound → 12
METHADONE_TIERS = ((20.0, 4.0), (40.0, 8.0), (60.0, 10.0))
METHADONE_TOP_FACTOR = 12.0

DECIMAL_PRECISION = 400

DoseInput = Union[OpioidDose, Mapping[str, Any]]


def round_half_up(value: float, places: str = "0.1") -> float:
    """Round to one decimal with half-up semantics (12.25 → 12.3), unlike built-in round()."""
    # enough digits to quantize any finite float
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return float(Decimal(repr(value)).quantize(Decimal(places), rounding=ROUND_HALF_UP))


def methadone_tier_factor(total_daily_mg: float) -> float:
    """Step factor for methadone; each bound belongs to the lower tier."""
    for upper, factor in METHADONE_TIERS:
        if total_daily_mg <= upper:
            return factor
    return METHADONE_TOP_FACTOR


def _valid_number(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value >= 0


def find_conversion(name: str, conversions: Sequence[OpioidConversion]) -> Optional[OpioidConversion]:
    """First table entry whose name is a case-insensitive substring of ``name``."""
    lowered = name.lower()
    for conversion in conversions:
        if conversion.name.lower() in lowered:
            return conversion
    return None


def _daily_mg(dose: OpioidDose, prefer_total: bool) -> Optional[float]:
    """
    Daily mg from the per-dose fields or ``total_daily_dose_mg``.

    Linear mode prefers per-dose × frequency; methadone prefers the stated total.
    Returns None when nothing usable is present.
    """
    per_dose = None
    if dose.dose_mg_per_dose is not None and dose.doses_per_day is not None:
        per_dose = dose.dose_mg_per_dose * dose.doses_per_day
        # two negatives make a positive; reject either
        if not (_valid_number(dose.dose_mg_per_dose) and _valid_number(dose.doses_per_day)):
            per_dose = float("nan")
    total = dose.total_daily_dose_mg

    ordered = (total, per_dose) if prefer_total else (per_dose, total)
    for candidate in ordered:
        if candidate is not None:
            return candidate
    return None


def _scaled(amount: float, factor: float) -> Optional[float]:
    """Rounded contribution, or None when the product is out of range."""
    product = amount * factor
    if not math.isfinite(product):
        return None
    try:
        return round_half_up(product)
    except InvalidOperation:
        return None


def _zero_line(dose: OpioidDose, conversion: OpioidConversion, note: str) -> MMELineItem:
    return MMELineItem(
        name=dose.name,
        route=dose.route,
        kind=conversion.kind,
        conversion_factor=conversion.factor,
        mme=0.0,
        included=False,
        note=note,
    )


def convert_dose(dose: OpioidDose, conversions: Sequence[OpioidConversion]) -> MMELineItem:
    """MME line item for one medication. Never raises for bad data."""
    conversion = find_conversion(dose.name, conversions)

    if conversion is None:
        logger.info("No MME conversion for %r; excluded from total", dose.name)
        return MMELineItem(
            name=dose.name,
            route=dose.route,
            kind=ConversionKind.EXCLUDED,
            note=f"{dose.name}: no MME conversion factor; excluded from total",
        )

    if conversion.kind == ConversionKind.EXCLUDED:
        logger.info("%s is excluded from MME totals", dose.name)
        return _zero_line(dose, conversion, conversion.note or f"{dose.name}: excluded from MME total")

    if conversion.kind == ConversionKind.TRANSDERMAL:
        rate = dose.strength_mcg_per_hr
        if not _valid_number(rate):
            return _zero_line(dose, conversion, f"{dose.name}: missing or invalid patch strength (mcg/hr)")
        mme = _scaled(rate, conversion.factor)
        if mme is None:
            return _zero_line(dose, conversion, f"{dose.name}: patch strength out of range")
        return MMELineItem(
            name=dose.name,
            route=dose.route,
            kind=conversion.kind,
            conversion_factor=conversion.factor,
            mme=mme,
            included=True,
        )

    if conversion.kind == ConversionKind.METHADONE_TIERED:
        daily = _daily_mg(dose, prefer_total=True)
        if not _valid_number(daily):
            return _zero_line(dose, conversion, f"{dose.name}: missing or invalid daily dose")
        factor = methadone_tier_factor(daily)
        mme = _scaled(daily, factor)
        if mme is None:
            return _zero_line(dose, conversion, f"{dose.name}: daily dose out of range")
        return MMELineItem(
            name=dose.name,
            route=dose.route,
            kind=conversion.kind,
            total_daily_dose_mg=daily,
            conversion_factor=factor,
            mme=mme,
            included=True,
        )

    daily = _daily_mg(dose, prefer_total=False)
    if not _valid_number(daily):
        return _zero_line(dose, conversion, f"{dose.name}: missing or invalid dose or frequency")
    mme = _scaled(daily, conversion.factor)
    if mme is None:
        return _zero_line(dose, conversion, f"{dose.name}: daily dose out of range")
    return MMELineItem(
        name=dose.name,
        route=dose.route,
        kind=conversion.kind,
        total_daily_dose_mg=daily,
        conversion_factor=conversion.factor,
        mme=mme,
        included=True,
    )


def _fallback_name(item: Any, index: int) -> str:
    raw = item.get("name") if isinstance(item, Mapping) else None
    return str(raw) if raw else f"medication #{index}"


def _coerce_dose(item: DoseInput) -> OpioidDose:
    if isinstance(item, OpioidDose):
        return item
    return OpioidDose.model_validate(item)


class DoseEquivalenceCalculator:
    """Converts an opioid regimen into one MME total with threshold flags."""

    def __init__(self, tables: Optional[RuleTables] = None):
        self.tables = tables or get_default_rule_tables()

    def calculate(self, medications: Iterable[DoseInput]) -> MMEResult:
        details: List[MMELineItem] = []
        for index, item in enumerate(medications):
            try:
                dose = _coerce_dose(item)
            except ValidationError as e:
                name = _fallback_name(item, index)
                logger.warning("Invalid opioid entry %d: %d validation error(s)", index, e.error_count())
                details.append(MMELineItem(name=name, note=f"{name}: invalid medication entry; excluded from total"))
                continue
            details.append(convert_dose(dose, self.tables.opioid_conversions))

        # lines are pre-rounded; re-round the sum to drop float noise
        total = sum(line.mme for line in details)
        if math.isfinite(total):
            total = round_half_up(total)
        else:
            logger.warning("MME total overflowed; reporting %s", total)

        thresholds = MMEThresholds(
            caution_at_50=total >= CAUTION_MME,
            avoid_above_90=total >= AVOID_MME,
        )
        notes = [line.note for line in details if line.note]
        if thresholds.caution_at_50:
            notes.append(CAUTION_NOTE)
        if thresholds.avoid_above_90:
            notes.append(AVOID_NOTE)

        return MMEResult(total_mme=total, details=details, thresholds=thresholds, notes=notes)


def calculate_mme(
    medications: Iterable[DoseInput],
    tables: Optional[RuleTables] = None,
) -> MMEResult:
    """Total daily MME for a regimen, with per-line details and threshold notes."""
    return DoseEquivalenceCalculator(tables).calculate(medications)
