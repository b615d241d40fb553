"""
Evidence Normalizer - collapses raw DDI evidence into one judgment per drug pair.

Handles:
  1. Drug name, mechanism and enzyme pathway standardization
  2. Canonical (order-independent) drug pair keys
  3. Evidence quality scoring (0-100 ranking heuristic, not a probability)
  4. Severity standardization and major-vs-minor conflict detection
  5. Aggregation by pair, with malformed records dropped into diagnostics

Malformed input never raises: the aggregation is total over the valid subset.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from .config import get_config, get_evidence_config
from .models import (
    DrugIdentity,
    EvidenceLevel,
    InteractionEvidenceRecord,
    NormalizedInteraction,
    Severity,
    SkippedRecord,
    SourceType,
)

logger = logging.getLogger(__name__)

EvidenceInput = Union[InteractionEvidenceRecord, Mapping[str, Any]]


# ---------------------------------------------------------------------------
# Scoring tables
# ---------------------------------------------------------------------------

SOURCE_TYPE_SCORES: Dict[SourceType, int] = {
    SourceType.REGULATORY_LABEL: 40,
    SourceType.TRIAL: 30,
    SourceType.PUBLICATION: 25,
}
OTHER_SOURCE_SCORE = 10

EVIDENCE_LEVEL_SCORES: Dict[EvidenceLevel, int] = {
    EvidenceLevel.HIGH: 30,
    EvidenceLevel.MEDIUM: 20,
    EvidenceLevel.LOW: 10,
}

STUDY_TYPE_SCORES: Dict[str, int] = {
    "rct": 20,
    "dedicated-ddi-study": 15,
    "observational": 10,
    "case-report": 5,
}

SEVERITY_SCORES: Dict[Severity, int] = {
    Severity.MAJOR: 10,
    Severity.MODERATE: 5,
}

# Source type spellings seen from the extractors
_SOURCE_TYPE_ALIASES: Dict[str, SourceType] = {
    "clinical-trial": SourceType.TRIAL,
    "trial": SourceType.TRIAL,
    "regulatory-label": SourceType.REGULATORY_LABEL,
    "label": SourceType.REGULATORY_LABEL,
    "publication": SourceType.PUBLICATION,
    "literature": SourceType.PUBLICATION,
}

_SEVERITY_MAP: Dict[str, Severity] = {
    "contraindicated": Severity.MAJOR,
    "high": Severity.MAJOR,
    "severe": Severity.MAJOR,
    "major": Severity.MAJOR,
    "moderate": Severity.MODERATE,
    "medium": Severity.MODERATE,
    "minor": Severity.MINOR,
    "low": Severity.MINOR,
    "mild": Severity.MINOR,
}

# Tie-break on equal quality score
_SEVERITY_RANK: Dict[Severity, int] = {
    Severity.MAJOR: 3,
    Severity.MODERATE: 2,
    Severity.MINOR: 1,
    Severity.UNKNOWN: 0,
}

_EVIDENCE_LEVEL_RANK: Dict[EvidenceLevel, int] = {
    EvidenceLevel.HIGH: 3,
    EvidenceLevel.MEDIUM: 2,
    EvidenceLevel.LOW: 1,
}


# ---------------------------------------------------------------------------
# Standardization
# ---------------------------------------------------------------------------

ENZYME_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "CYP3A4": ("CYP3A4", "3A4", "cytochrome P450 3A4"),
    "CYP2D6": ("CYP2D6", "2D6", "cytochrome P450 2D6"),
    "CYP2C9": ("CYP2C9", "2C9", "cytochrome P450 2C9"),
    "CYP2C19": ("CYP2C19", "2C19", "cytochrome P450 2C19"),
    "CYP1A2": ("CYP1A2", "1A2", "cytochrome P450 1A2"),
    "P-gp": ("P-glycoprotein", "P-gp", "Pgp", "MDR1", "ABCB1"),
    "OATP1B1": ("OATP1B1", "SLCO1B1"),
    "OATP1B3": ("OATP1B3", "SLCO1B3"),
    "UGT1A1": ("UGT1A1", "UDP-glucuronosyltransferase 1A1"),
    "BCRP": ("BCRP", "ABCG2", "breast cancer resistance protein"),
}

MECHANISM_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "enzyme inhibition": (
        "enzyme inhibition", "metabolic inhibition", "inhibits metabolism",
        "cyp inhibition", "cytochrome inhibition",
    ),
    "enzyme induction": (
        "enzyme induction", "metabolic induction", "induces metabolism",
        "cyp induction", "cytochrome induction",
    ),
    "transporter inhibition": (
        "transporter inhibition", "p-gp inhibition", "oatp inhibition",
        "efflux inhibition", "uptake inhibition",
    ),
    "protein binding displacement": (
        "protein binding displacement", "protein displacement",
        "albumin binding", "plasma protein binding",
    ),
    "absorption interference": (
        "absorption interference", "altered absorption", "chelation",
        "gastric ph alteration",
    ),
    "renal clearance alteration": (
        "renal clearance", "renal elimination", "kidney clearance",
        "tubular secretion", "glomerular filtration",
    ),
    "pharmacodynamic interaction": (
        "pharmacodynamic", "additive effects", "synergistic effects",
        "antagonistic effects", "receptor interaction",
    ),
}

DRUG_ABBREVIATIONS: Dict[str, str] = {
    "5-fu": "5-fluorouracil",
    "ctx": "cyclophosphamide",
    "mtx": "methotrexate",
    "cddp": "cisplatin",
}

_DOSAGE_FORM_SUFFIX_RE = re.compile(r"\s+(tablet|capsule|injection|oral|iv)s?$")
_TOKEN_SEPARATORS_RE = re.compile(r"[\s_]+")


def _token(value: Optional[str]) -> str:
    """Lower-case and treat spaces, underscores and hyphens alike."""
    if not value:
        return ""
    return _TOKEN_SEPARATORS_RE.sub("-", value.strip().lower())


def standardize_drug_name(name: Optional[str]) -> str:
    """
    Normalise a drug name for keying.
    - Trim and lower-case
    - Strip a trailing dosage form (tablet, capsule, injection, oral, iv)
    - Expand common oncology abbreviations (5-FU → 5-fluorouracil)
    """
    if not name:
        return ""
    standardized = " ".join(name.split()).lower()
    standardized = _DOSAGE_FORM_SUFFIX_RE.sub("", standardized)
    return DRUG_ABBREVIATIONS.get(standardized, standardized)


def standardize_severity(raw: Optional[str]) -> Severity:
    """Map a raw severity string onto major/moderate/minor/unknown."""
    if not raw:
        return Severity.UNKNOWN
    return _SEVERITY_MAP.get(raw.strip().lower(), Severity.UNKNOWN)


def standardize_source_type(raw: Optional[str]) -> str:
    """Known spellings map onto a SourceType value; anything else is returned as its token."""
    token = _token(raw)
    source_type = _SOURCE_TYPE_ALIASES.get(token)
    return source_type.value if source_type else token


def standardize_mechanism(mechanism: Optional[str]) -> str:
    """Map free-text mechanism onto a canonical class; unmapped text is kept as-is."""
    if not mechanism or not mechanism.strip():
        return "unknown"
    lowered = mechanism.lower()
    for canonical, variants in MECHANISM_SYNONYMS.items():
        if any(variant in lowered for variant in variants):
            return canonical
    return mechanism.strip()


def standardize_enzyme_pathways(pathways: Optional[str]) -> List[str]:
    """Split a pathway string on , or ; and map each entry to a canonical enzyme name."""
    if not pathways:
        return []
    standardized: List[str] = []
    for entry in re.split(r"[,;]", pathways):
        entry = entry.strip()
        if not entry:
            continue
        lowered = entry.lower()
        canonical = next(
            (name for name, variants in ENZYME_SYNONYMS.items()
             if any(variant.lower() in lowered for variant in variants)),
            entry,
        )
        if canonical not in standardized:
            standardized.append(canonical)
    return standardized


# ---------------------------------------------------------------------------
# Keys and scores
# ---------------------------------------------------------------------------

def drug_key(drug: DrugIdentity) -> str:
    """Identity used in canonical keys: rxcui when present, else the standardized name."""
    return drug.rxcui or standardize_drug_name(drug.name)


def canonical_pair_key(drug_a: DrugIdentity, drug_b: DrugIdentity, separator: Optional[str] = None) -> str:
    sep = separator if separator is not None else get_evidence_config().key_separator
    first, second = sorted((drug_key(drug_a), drug_key(drug_b)))
    return f"{first}{sep}{second}"


def canonical_key(record: InteractionEvidenceRecord, separator: Optional[str] = None) -> str:
    """Order-independent key for the record's drug pair; (A, B) and (B, A) collide."""
    if not _has_both_drugs(record):
        raise ValueError(f"Record {record.source_id or '<no id>'} lacks a drug identity")
    return canonical_pair_key(record.drug_a, record.drug_b, separator)


def quality_score(record: InteractionEvidenceRecord) -> int:
    """
    Additive evidence quality score in [0, 100].

    source type (≤40) + evidence level (≤30) + study type (≤20) + severity (≤10)
    """
    score = SOURCE_TYPE_SCORES.get(standardize_source_type(record.source_type), OTHER_SOURCE_SCORE)
    score += EVIDENCE_LEVEL_SCORES.get(_token(record.evidence_level), 0)
    score += STUDY_TYPE_SCORES.get(_token(record.study_type), 0)
    score += SEVERITY_SCORES.get(standardize_severity(record.severity), 0)
    return max(0, min(100, score))


def conflicts_with(a: InteractionEvidenceRecord, b: InteractionEvidenceRecord) -> bool:
    """True iff both records share a key and their severities are exactly {major, minor}."""
    if not (_has_both_drugs(a) and _has_both_drugs(b)):
        return False
    if canonical_key(a) != canonical_key(b):
        return False
    severities = {standardize_severity(a.severity), standardize_severity(b.severity)}
    return severities == {Severity.MAJOR, Severity.MINOR}


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def _has_both_drugs(record: InteractionEvidenceRecord) -> bool:
    return bool(
        record.drug_a is not None and record.drug_a.has_identity
        and record.drug_b is not None and record.drug_b.has_identity
    )


def _coerce_record(item: EvidenceInput) -> InteractionEvidenceRecord:
    if isinstance(item, InteractionEvidenceRecord):
        return item
    return InteractionEvidenceRecord.model_validate(item)


def _source_id_of(item: Any) -> Optional[str]:
    if isinstance(item, InteractionEvidenceRecord):
        return item.source_id or None
    if isinstance(item, Mapping):
        value = item.get("source_id")
        return str(value) if value is not None else None
    return None


def _top_record(group: Sequence[InteractionEvidenceRecord]) -> Tuple[InteractionEvidenceRecord, int]:
    """Highest score wins; ties prefer the more severe claim, then the earlier record."""
    best_index = max(
        range(len(group)),
        key=lambda i: (
            quality_score(group[i]),
            _SEVERITY_RANK[standardize_severity(group[i].severity)],
            -i,
        ),
    )
    best = group[best_index]
    return best, quality_score(best)


def _fold_group(key: str, group: Sequence[InteractionEvidenceRecord]) -> NormalizedInteraction:
    top, top_score = _top_record(group)

    mechanisms: List[str] = []
    enzymes: List[str] = []
    source_types: List[str] = []
    for record in group:
        mechanism = standardize_mechanism(record.mechanism)
        if mechanism not in mechanisms:
            mechanisms.append(mechanism)
        for enzyme in standardize_enzyme_pathways(record.enzyme_pathway):
            if enzyme not in enzymes:
                enzymes.append(enzyme)
        source_type = standardize_source_type(record.source_type)
        if source_type not in source_types:
            source_types.append(source_type)

    levels = [_token(r.evidence_level) for r in group if _token(r.evidence_level) in _EVIDENCE_LEVEL_RANK]
    best_level = max(levels, key=_EVIDENCE_LEVEL_RANK.__getitem__) if levels else None

    conflicted = any(conflicts_with(a, b) for a, b in combinations(group, 2))

    return NormalizedInteraction(
        key=key,
        drug_a=top.drug_a,
        drug_b=top.drug_b,
        severity=standardize_severity(top.severity),
        quality_score=top_score,
        evidence_level=best_level,
        conflicted=conflicted,
        mechanisms=mechanisms,
        enzyme_pathways=enzymes,
        source_types=source_types,
        source_ids=[r.source_id for r in group if r.source_id],
        records=list(group),
    )


def aggregate(records: Iterable[InteractionEvidenceRecord]) -> Dict[str, NormalizedInteraction]:
    """
    Group records by canonical key and fold each group into a NormalizedInteraction.

    Records without two drug identities are skipped. Output keys follow
    first-seen order. The input is never mutated, so repeated calls on the
    same evidence return equal results.
    """
    groups: Dict[str, List[InteractionEvidenceRecord]] = {}
    for record in records:
        if not _has_both_drugs(record):
            continue
        groups.setdefault(canonical_key(record), []).append(record)
    return {key: _fold_group(key, group) for key, group in groups.items()}


def deduplicate_evidence(records: Iterable[InteractionEvidenceRecord]) -> List[InteractionEvidenceRecord]:
    """Drop repeats of the same claim: same pair, mechanism, source, source id and severity."""
    seen = set()
    unique: List[InteractionEvidenceRecord] = []
    for record in records:
        if not _has_both_drugs(record):
            unique.append(record)
            continue
        dedup_key = (
            canonical_key(record),
            standardize_mechanism(record.mechanism).lower(),
            standardize_source_type(record.source_type),
            record.source_id,
            standardize_severity(record.severity),
        )
        if dedup_key in seen:
            continue
        seen.add(dedup_key)
        unique.append(record)
    return unique


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class NormalizationResult:
    """Complete result of the normalization pipeline."""
    interactions: Dict[str, NormalizedInteraction] = field(default_factory=dict)
    skipped: List[SkippedRecord] = field(default_factory=list)
    input_count: int = 0
    filtered_out: int = 0

    def report(self) -> Dict[str, object]:
        """Distribution and quality summary of the normalized store."""
        interactions = list(self.interactions.values())
        scores = [i.quality_score for i in interactions]
        return {
            "summary": {
                "input_count": self.input_count,
                "normalized_count": len(interactions),
                "skipped_count": len(self.skipped),
                "filtered_out": self.filtered_out,
                "conflicted_count": sum(1 for i in interactions if i.conflicted),
            },
            "distributions": {
                "severity": dict(Counter(i.severity.value for i in interactions)),
                "source_types": dict(Counter(st for i in interactions for st in i.source_types)),
                "evidence_levels": dict(Counter(i.evidence_level or "unknown" for i in interactions)),
            },
            "quality": {
                "average_score": round(sum(scores) / len(scores), 1) if scores else 0.0,
                "high_quality_count": sum(1 for s in scores if s >= 70),
            },
        }


def normalize_evidence(
    records: Sequence[EvidenceInput],
    min_quality_score: Optional[int] = None,
) -> NormalizationResult:
    """
    Validate, deduplicate and aggregate raw evidence records.

    Dicts that fail validation and records missing a drug identity are
    returned in ``skipped`` rather than raised.
    """
    config = get_evidence_config()
    floor = config.min_quality_score if min_quality_score is None else min_quality_score
    result = NormalizationResult(input_count=len(records))

    valid: List[InteractionEvidenceRecord] = []
    for index, item in enumerate(records):
        try:
            record = _coerce_record(item)
        except ValidationError as e:
            reason = f"invalid record: {e.error_count()} validation error(s)"
            result.skipped.append(SkippedRecord(index=index, source_id=_source_id_of(item), reason=reason))
            if config.log_skipped_records:
                logger.warning("Dropping evidence record %d: %s", index, reason)
            continue

        if not _has_both_drugs(record):
            reason = "missing drug identity (needs name or rxcui for both drugs)"
            result.skipped.append(SkippedRecord(index=index, source_id=record.source_id or None, reason=reason))
            if config.log_skipped_records:
                logger.warning("Dropping evidence record %d (%s): %s", index, record.source_id, reason)
            continue

        valid.append(record)

    interactions = aggregate(deduplicate_evidence(valid))

    if floor > 0:
        kept = {k: v for k, v in interactions.items() if v.quality_score >= floor}
        result.filtered_out = len(interactions) - len(kept)
        interactions = kept

    result.interactions = interactions

    if get_config().verbose_logging:
        logger.debug(
            "Normalized %d evidence records into %d interactions (%d skipped, %d below floor)",
            len(records), len(interactions), len(result.skipped), result.filtered_out,
        )
    return result
