"""
Opioid Safety - Co-prescribing, pharmacogenomic and organ-function checks for opioid regimens.

Features:
- MME threshold risk flags and patient-specific flags
- CNS depressant combinations (benzodiazepines, Z-drugs, gabapentinoids)
- CYP3A4 inhibitor/inducer effects on opioid substrates
- CYP2D6 poor/intermediate metabolizers on prodrug opioids
- Methadone with QT-prolonging agents
- Renal and hepatic impairment cautions
- Naloxone co-prescription recommendation
"""

import logging
import math
import re
from typing import Any, Iterable, List, Mapping, Optional, Union

from .models import (
    MMEResult,
    OpioidSafetyReport,
    PatientContext,
    PhenotypeObservation,
    SafetyFinding,
)

logger = logging.getLogger(__name__)

ContextInput = Union[PatientContext, Mapping[str, Any], None]
PhenotypeInput = Union[Iterable[PhenotypeObservation], Mapping[str, str], None]


# ============================================================================
# Drug classes
# ============================================================================

OPIOIDS = re.compile(
    r"morphine|hydrocodone|oxycodone|hydromorphone|oxymorphone|codeine|"
    r"tramadol|tapentadol|fentanyl|methadone|buprenorphine"
)
BENZODIAZEPINES = re.compile(r"diazepam|lorazepam|clonazepam|alprazolam|temazepam|midazolam")
Z_HYPNOTICS = re.compile(r"zolpidem|zopiclone|eszopiclone|zaleplon")
GABAPENTINOIDS = re.compile(r"gabapentin|pregabalin")

CYP3A4_INHIBITORS = re.compile(
    r"ketoconazole|itraconazole|voriconazole|clarithromycin|erythromycin|"
    r"ritonavir|cobicistat|diltiazem|verapamil|grapefruit"
)
CYP3A4_INDUCERS = re.compile(
    r"rifampin|rifampicin|carbamazepine|phenytoin|phenobarbital|"
    r"st\.? john'?s wort|nevirapine|efavirenz"
)
CYP3A4_OPIOIDS = re.compile(r"oxycodone|fentanyl|methadone|hydrocodone")
CYP2D6_PRODRUG_OPIOIDS = re.compile(r"codeine|tramadol")
METHADONE = re.compile(r"methadone")
QT_AGENTS = re.compile(
    r"amiodarone|sotalol|quinolone|ciprofloxacin|levofloxacin|ondansetron|"
    r"haloperidol|ziprasidone|citalopram"
)
RENALLY_CLEARED_OPIOIDS = re.compile(r"morphine|codeine")
HEPATIC_OPIOIDS = re.compile(r"oxycodone|hydrocodone|methadone")


# ============================================================================
# References
# ============================================================================

CDC_2022 = {"label": "CDC Guideline 2022", "url": "https://www.cdc.gov/mmwr/volumes/71/rr/rr7103a1.htm"}
FDA_GABAPENTINOIDS = {
    "label": "FDA Safety",
    "url": "https://www.fda.gov/drugs/drug-safety-and-availability/fda-warns-about-serious-breathing-"
           "problems-seizure-and-nerve-pain-medicines-gabapentin-neurontin",
}
FDA_CYP3A4_LABEL = {
    "label": "FDA Label",
    "url": "https://www.accessdata.fda.gov/drugsatfda_docs/label/2013/019516s074lbl.pdf",
}
CPIC_CODEINE = {"label": "CPIC Codeine", "url": "https://cpicpgx.org/guidelines/guideline-for-codeine-and-cyp2d6/"}
FDA_METHADONE = {
    "label": "FDA Methadone",
    "url": "https://www.fda.gov/drugs/postmarket-drug-safety-information-patients-and-providers/"
           "methadone-information",
}

NALOXONE_RECOMMENDATION = "Offer naloxone and counsel household on use."
MME_CAUTION_RECOMMENDATION = "Consider naloxone co-prescription and risk mitigation."
MME_AVOID_RECOMMENDATION = "Avoid or justify high MME; taper to safer dose if possible."


# ============================================================================
# Helpers
# ============================================================================

def _context(patient_context: ContextInput) -> PatientContext:
    if patient_context is None:
        return PatientContext()
    if isinstance(patient_context, PatientContext):
        return patient_context
    return PatientContext.model_validate(dict(patient_context))


def _names(medications: Iterable[Any]) -> List[str]:
    """Lower-cased names from strings, ``{name: ...}`` dicts or objects with ``name``."""
    names = []
    for med in medications:
        if isinstance(med, str):
            name = med
        elif isinstance(med, Mapping):
            name = med.get("name") or ""
        else:
            name = getattr(med, "name", "") or ""
        names.append(str(name).lower())
    return names


def _any(pattern: re.Pattern, names: List[str]) -> bool:
    return any(pattern.search(n) for n in names)


def _cyp2d6_phenotype(phenotypes: PhenotypeInput) -> str:
    if not phenotypes:
        return ""
    if isinstance(phenotypes, Mapping):
        return str(phenotypes.get("CYP2D6") or phenotypes.get("cyp2d6") or "").lower()
    for observation in phenotypes:
        if observation.gene.upper() == "CYP2D6":
            return observation.phenotype.lower()
    return ""


# ============================================================================
# Checks
# ============================================================================

def assess_mme_risk(result: MMEResult, patient_context: ContextInput = None) -> OpioidSafetyReport:
    """Risk flags and recommendations for an MME total plus patient factors."""
    context = _context(patient_context)
    flags: List[str] = []
    recommendations: List[str] = []

    if result.thresholds.caution_at_50:
        flags.append("Total MME ≥ 50/day")
    if result.thresholds.avoid_above_90:
        flags.append("Total MME ≥ 90/day")

    if (context.age or 0) >= 65:
        flags.append("Age ≥ 65: increased sensitivity")
    if context.respiratory or context.sleep_apnea:
        flags.append("Respiratory disease or OSA")
    if context.pregnancy:
        flags.append("Pregnancy: avoid chronic opioid use")

    if result.thresholds.caution_at_50:
        recommendations.append(MME_CAUTION_RECOMMENDATION)
    if result.thresholds.avoid_above_90:
        recommendations.append(MME_AVOID_RECOMMENDATION)

    return OpioidSafetyReport(risk_flags=flags, recommendations=recommendations)


def check_opioid_safety(
    medications: Iterable[Any],
    patient_context: ContextInput = None,
    phenotypes: PhenotypeInput = None,
    total_mme: Optional[float] = None,
) -> OpioidSafetyReport:
    """
    Co-prescribing and organ-function findings for a medication list.

    ``phenotypes`` may be derived PhenotypeObservations or a ``{gene: phenotype}``
    mapping. ``total_mme`` feeds the naloxone recommendation only.
    """
    context = _context(patient_context)
    names = _names(medications)
    findings: List[SafetyFinding] = []

    has_opioid = _any(OPIOIDS, names)
    has_benzo = _any(BENZODIAZEPINES, names)
    has_z_hypnotic = _any(Z_HYPNOTICS, names)

    # CNS depressant combinations
    if has_opioid and (has_benzo or has_z_hypnotic):
        findings.append(SafetyFinding(
            severity="major",
            issue="Opioid + benzodiazepine/Z-drug",
            recommendation="Avoid co-prescribing; consider taper and non-sedating alternatives; "
                           "ensure naloxone availability.",
            reason="Opioid + benzo/Z-drug",
            explanation="Combined CNS depression increases the risk of respiratory depression and overdose.",
            references=[CDC_2022],
        ))
    if has_opioid and _any(GABAPENTINOIDS, names):
        findings.append(SafetyFinding(
            severity="moderate",
            issue="Opioid + gabapentinoid",
            recommendation="Increased sedation/respiratory depression; use lowest effective doses and monitor.",
            reason="Opioid + gabapentinoid",
            explanation="Gabapentinoids add to opioid-induced respiratory depression.",
            references=[FDA_GABAPENTINOIDS],
        ))

    # CYP3A4 substrates
    if _any(CYP3A4_OPIOIDS, names):
        if _any(CYP3A4_INHIBITORS, names):
            findings.append(SafetyFinding(
                severity="major",
                issue="CYP3A4 inhibitor with opioid substrate",
                recommendation="Avoid combination or reduce opioid dose; monitor for toxicity.",
                reason="CYP3A4 inhibitor present",
                explanation="Inhibition raises opioid exposure and the risk of respiratory depression.",
                references=[FDA_CYP3A4_LABEL],
            ))
        if _any(CYP3A4_INDUCERS, names):
            findings.append(SafetyFinding(
                severity="moderate",
                issue="CYP3A4 inducer with opioid substrate",
                recommendation="May reduce analgesia; avoid or monitor closely.",
                reason="CYP3A4 inducer present",
                explanation="Induction lowers opioid exposure; stopping the inducer later can cause toxicity.",
                references=[FDA_CYP3A4_LABEL],
            ))

    # Prodrug activation
    cyp2d6 = _cyp2d6_phenotype(phenotypes)
    if _any(CYP2D6_PRODRUG_OPIOIDS, names) and ("poor" in cyp2d6 or "intermediate" in cyp2d6):
        findings.append(SafetyFinding(
            severity="major",
            issue="CYP2D6 PM/IM with codeine/tramadol",
            recommendation="Avoid; use non-CYP2D6-dependent opioid (e.g., morphine).",
            reason="CYP2D6 PM/IM reduces activation",
            explanation="Codeine/tramadol require CYP2D6 for activation; PM/IM phenotypes reduce "
                        "analgesia and increase risk.",
            references=[CPIC_CODEINE],
        ))

    if _any(METHADONE, names) and _any(QT_AGENTS, names):
        findings.append(SafetyFinding(
            severity="major",
            issue="Methadone + QT-prolonging agents",
            recommendation="Avoid if possible; baseline and follow-up ECG; monitor electrolytes.",
            reason="QT-prolonging agents with methadone",
            explanation="Additive QT prolongation increases torsades risk.",
            references=[FDA_METHADONE],
        ))

    # Organ function
    crcl = context.renal_clearance
    if crcl is not None and math.isfinite(crcl) and crcl < 30 and _any(RENALLY_CLEARED_OPIOIDS, names):
        findings.append(SafetyFinding(
            severity="moderate",
            issue="Renal impairment with morphine/codeine",
            recommendation="Accumulation of active metabolites; prefer hydromorphone/fentanyl with careful dosing.",
            reason="CrCl < 30 with morphine/codeine",
            explanation="Active metabolites can accumulate in renal impairment; prefer alternatives "
                        "with careful dosing.",
        ))
    if context.liver_disease and _any(HEPATIC_OPIOIDS, names):
        findings.append(SafetyFinding(
            severity="moderate",
            issue="Hepatic impairment with CYP-metabolized opioids",
            recommendation="Start low and go slow; consider non-hepatic routes or agents.",
            reason="Hepatic impairment",
        ))

    suggest_naloxone = (
        (context.age or 0) >= 65
        or has_benzo
        or (total_mme is not None and total_mme >= 50)
        or context.respiratory
        or context.opioid_use_disorder
    )
    recommendations = [NALOXONE_RECOMMENDATION] if suggest_naloxone else []

    if findings:
        logger.info(
            "Opioid safety check: %d finding(s), highest severity %s",
            len(findings),
            "major" if any(f.severity == "major" for f in findings) else "moderate",
        )

    return OpioidSafetyReport(findings=findings, recommendations=recommendations)
