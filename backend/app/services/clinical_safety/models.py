"""
Data models for the clinical safety engine.
These models describe the inputs the engine accepts from its caller and the
structured findings it returns. Inputs are immutable once created.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class SourceType(str, Enum):
    """Where an interaction claim came from."""
    TRIAL = "trial"
    REGULATORY_LABEL = "regulatory-label"
    PUBLICATION = "publication"


class Severity(str, Enum):
    """Standardized interaction severity."""
    MAJOR = "major"
    MODERATE = "moderate"
    MINOR = "minor"
    UNKNOWN = "unknown"


class EvidenceLevel(str, Enum):
    """Evidence level attached to a single claim."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ConversionKind(str, Enum):
    """How an opioid's daily dose is converted to MME."""
    LINEAR = "linear"
    TRANSDERMAL = "transdermal"
    METHADONE_TIERED = "methadone_tiered"
    EXCLUDED = "excluded"


class DrugIdentity(BaseModel):
    """A drug reference: display name plus optional RxNorm concept id."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(default="", description="Drug name as supplied by the caller")
    rxcui: Optional[str] = Field(None, description="RxNorm concept unique identifier")

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("rxcui", mode="before")
    @classmethod
    def _coerce_rxcui(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @property
    def has_identity(self) -> bool:
        """True when the drug can be identified by name or rxcui."""
        return bool(self.rxcui or self.name.strip())

    def same_drug(self, other: "DrugIdentity") -> bool:
        """
        Two identities refer to the same drug iff their rxcuis match, or,
        when either rxcui is absent, one name contains the other
        (case-insensitive substring).
        """
        if self.rxcui and other.rxcui:
            return self.rxcui == other.rxcui
        mine = self.name.strip().lower()
        theirs = other.name.strip().lower()
        if not mine or not theirs:
            return False
        return mine in theirs or theirs in mine


class InteractionEvidenceRecord(BaseModel):
    """One claim about a drug pair from one source."""
    model_config = ConfigDict(frozen=True)

    source_type: str = Field(..., description="trial, regulatory-label or publication")
    source_id: str = Field(default="", description="NCT id, label set id, PMID, ...")
    drug_a: Optional[DrugIdentity] = Field(None, description="First drug of the pair")
    drug_b: Optional[DrugIdentity] = Field(None, description="Second drug of the pair")
    mechanism: str = Field(default="", description="Free-text interaction mechanism")
    enzyme_pathway: Optional[str] = Field(None, description="Enzymes/transporters involved")
    severity: str = Field(default="unknown", description="Raw severity as reported by the source")
    evidence_level: str = Field(default="low", description="high, medium or low")
    study_type: str = Field(default="", description="RCT, dedicated-DDI-study, observational, case-report, ...")
    raw_source_text: str = Field(default="", description="Source sentence the claim was extracted from")

    @field_validator("source_id", "mechanism", "severity", "evidence_level", "study_type",
                     "raw_source_text", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)


class SkippedRecord(BaseModel):
    """Diagnostic entry for an evidence record that was dropped."""
    index: int = Field(..., description="Position of the record in the input list")
    source_id: Optional[str] = Field(None, description="Source id, when one could be read")
    reason: str = Field(..., description="Why the record was dropped")


class NormalizedInteraction(BaseModel):
    """All evidence for one canonical drug pair folded into a single judgment."""
    key: str = Field(..., description="Canonical interaction key")
    drug_a: DrugIdentity = Field(..., description="First drug, taken from the top record")
    drug_b: DrugIdentity = Field(..., description="Second drug, taken from the top record")
    severity: Severity = Field(..., description="Standardized severity of the top-scoring record")
    quality_score: int = Field(..., ge=0, le=100, description="Evidence quality score of the top record")
    evidence_level: Optional[str] = Field(None, description="Highest evidence level in the group")
    conflicted: bool = Field(False, description="True when major and minor claims disagree")
    mechanisms: List[str] = Field(default_factory=list, description="Standardized mechanisms, first-seen order")
    enzyme_pathways: List[str] = Field(default_factory=list, description="Standardized enzymes/transporters")
    source_types: List[str] = Field(default_factory=list, description="Distinct source types")
    source_ids: List[str] = Field(default_factory=list, description="Contributing source ids")
    records: List[InteractionEvidenceRecord] = Field(default_factory=list, description="Contributing records")

    @computed_field
    @property
    def sources_count(self) -> int:
        """Number of contributing records."""
        return len(self.records)


class PhenotypeObservation(BaseModel):
    """Derived metabolizer phenotype for one gene."""
    model_config = ConfigDict(frozen=True)

    gene: str = Field(..., description="Gene symbol (e.g., CYP2D6)")
    phenotype: str = Field(..., description="Metabolizer phenotype (e.g., Poor metabolizer)")


class OpioidDose(BaseModel):
    """One opioid on the patient's regimen."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Opioid name")
    route: str = Field(default="oral", description="oral, transdermal, iv, ...")
    dose_mg_per_dose: Optional[float] = Field(None, description="mg per administration")
    doses_per_day: Optional[float] = Field(None, description="Administrations per day")
    total_daily_dose_mg: Optional[float] = Field(None, description="Total mg per day")
    strength_mcg_per_hr: Optional[float] = Field(None, description="Patch strength (mcg/hr)")


class MMELineItem(BaseModel):
    """Per-medication MME contribution."""
    name: str
    route: str = "oral"
    kind: ConversionKind = ConversionKind.EXCLUDED
    total_daily_dose_mg: Optional[float] = None
    conversion_factor: Optional[float] = None
    mme: float = 0.0
    included: bool = False
    note: Optional[str] = None


class MMEThresholds(BaseModel):
    """Fixed MME safety thresholds that were crossed."""
    caution_at_50: bool = False
    avoid_above_90: bool = False


class MMEResult(BaseModel):
    """Cumulative daily morphine milligram equivalents for a regimen."""
    total_mme: float = Field(0.0, ge=0.0, description="Sum of per-line MME (each rounded to 0.1)")
    details: List[MMELineItem] = Field(default_factory=list)
    thresholds: MMEThresholds = Field(default_factory=MMEThresholds)
    notes: List[str] = Field(default_factory=list)


class AlternativeSuggestion(BaseModel):
    """A safer drug suggested for one member of a flagged pair."""
    for_drug: DrugIdentity = Field(..., description="Patient drug the alternative would replace")
    with_drug: DrugIdentity = Field(..., description="Co-prescribed drug that triggered the rule")
    alternative: DrugIdentity = Field(..., description="Suggested replacement")
    rationale: str = Field(default="", description="Why the alternative is safer")
    citations: List[str] = Field(default_factory=list, description="Supporting references")


class PatientContext(BaseModel):
    """Patient factors that modify opioid risk. Unknown keys are ignored."""
    age: Optional[float] = Field(None, description="Age in years")
    respiratory: bool = Field(False, description="Chronic respiratory disease")
    sleep_apnea: bool = Field(False, description="Obstructive sleep apnea")
    pregnancy: bool = False
    renal_clearance: Optional[float] = Field(None, description="Creatinine clearance (mL/min)")
    liver_disease: bool = False
    opioid_use_disorder: bool = False


class SafetyFinding(BaseModel):
    """An opioid co-prescribing or organ-function finding."""
    severity: str = Field(..., description="major or moderate")
    issue: str
    recommendation: str
    reason: Optional[str] = None
    explanation: Optional[str] = None
    references: List[Dict[str, str]] = Field(default_factory=list)


class OpioidSafetyReport(BaseModel):
    """Findings from the opioid safety checks."""
    findings: List[SafetyFinding] = Field(default_factory=list)
    risk_flags: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class SafetyReport(BaseModel):
    """Merged client-facing report built from all four components."""
    interactions: Dict[str, NormalizedInteraction] = Field(default_factory=dict)
    pair_interactions: List[NormalizedInteraction] = Field(
        default_factory=list, description="Normalized interactions that apply to the patient's drug pairs"
    )
    skipped_evidence: List[SkippedRecord] = Field(default_factory=list)
    alternatives: List[AlternativeSuggestion] = Field(default_factory=list)
    phenotypes: List[PhenotypeObservation] = Field(default_factory=list)
    mme: Optional[MMEResult] = None
    opioid_safety: Optional[OpioidSafetyReport] = None
