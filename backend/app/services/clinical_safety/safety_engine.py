"""
Safety Engine - Façade over the four clinical safety components.

Features:
- Evidence normalization into one judgment per drug pair
- Alternative suggestions for flagged drug pairs
- Metabolizer phenotypes from genomic observations
- Cumulative opioid MME with threshold flags
- Opioid co-prescribing safety checks
- One merged SafetyReport per request

The engine holds only its read-only rule tables, so a single instance can be
shared across threads.
"""

import logging
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .config import get_config
from .dose_equivalence import DoseEquivalenceCalculator
from .evidence_normalizer import EvidenceInput, NormalizationResult, normalize_evidence
from .interaction_matcher import DrugInput, InteractionMatcher
from .models import (
    AlternativeSuggestion,
    MMEResult,
    NormalizedInteraction,
    OpioidSafetyReport,
    PhenotypeObservation,
    SafetyReport,
)
from .opioid_safety import ContextInput, assess_mme_risk, check_opioid_safety
from .phenotype_deriver import PhenotypeDeriver
from .rule_tables import RuleTables, get_default_rule_tables, load_rule_tables

logger = logging.getLogger(__name__)


class SafetyEngine:
    """
    Evaluates drug-interaction, pharmacogenomic and opioid-dose safety for one patient.

    Rule tables are injected at construction; the engine keeps no per-call state.
    """

    def __init__(self, tables: Optional[RuleTables] = None):
        self.tables = tables or get_default_rule_tables()

        self.matcher = InteractionMatcher(self.tables)
        self.deriver = PhenotypeDeriver(self.tables)
        self.dose_calculator = DoseEquivalenceCalculator(self.tables)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def normalize_evidence(
        self,
        records: Sequence[EvidenceInput],
        min_quality_score: Optional[int] = None,
    ) -> NormalizationResult:
        return normalize_evidence(records, min_quality_score=min_quality_score)

    def match_alternatives(self, drugs: Iterable[DrugInput]) -> List[AlternativeSuggestion]:
        return self.matcher.match_alternatives(drugs)

    def find_pair_interactions(
        self,
        drugs: Iterable[DrugInput],
        interactions: Mapping[str, NormalizedInteraction],
    ) -> List[NormalizedInteraction]:
        return self.matcher.find_pair_interactions(drugs, interactions)

    def derive_phenotypes(self, observations: Iterable[Any]) -> List[PhenotypeObservation]:
        return self.deriver.derive_phenotypes(observations)

    def calculate_mme(self, medications: Iterable[Any]) -> MMEResult:
        return self.dose_calculator.calculate(medications)

    def check_opioid_safety(
        self,
        medications: Iterable[Any],
        patient_context: ContextInput = None,
        phenotypes: Optional[Iterable[PhenotypeObservation]] = None,
        mme: Optional[MMEResult] = None,
    ) -> OpioidSafetyReport:
        """Co-prescribing findings merged with MME risk flags (when an MME result is given)."""
        report = check_opioid_safety(
            medications,
            patient_context=patient_context,
            phenotypes=phenotypes,
            total_mme=mme.total_mme if mme is not None else None,
        )
        if mme is None:
            return report

        risk = assess_mme_risk(mme, patient_context)
        recommendations = list(risk.recommendations)
        for rec in report.recommendations:
            if rec not in recommendations:
                recommendations.append(rec)
        return OpioidSafetyReport(
            findings=report.findings,
            risk_flags=risk.risk_flags,
            recommendations=recommendations,
        )

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def build_report(
        self,
        drugs: Sequence[DrugInput] = (),
        evidence: Sequence[EvidenceInput] = (),
        observations: Sequence[Any] = (),
        opioids: Sequence[Any] = (),
        patient_context: ContextInput = None,
    ) -> SafetyReport:
        """
        Run every component that has input and merge the results.

        Sections without input are left empty: ``mme`` stays None when no
        opioid doses were given, and ``opioid_safety`` stays None when neither
        drugs nor opioid doses were given. Co-prescribing checks cover both lists.
        """
        normalized = self.normalize_evidence(evidence) if evidence else NormalizationResult()
        pair_interactions = (
            self.find_pair_interactions(drugs, normalized.interactions)
            if drugs and normalized.interactions else []
        )
        alternatives = self.match_alternatives(drugs) if drugs else []
        phenotypes = self.derive_phenotypes(observations) if observations else []

        mme = self.calculate_mme(opioids) if opioids else None
        opioid_report: Optional[OpioidSafetyReport] = None
        if drugs or opioids:
            medication_names = [_name_of(d) for d in drugs] + [_name_of(o) for o in opioids]
            opioid_report = self.check_opioid_safety(
                medication_names,
                patient_context=patient_context,
                phenotypes=phenotypes,
                mme=mme,
            )

        if get_config().verbose_logging:
            logger.debug(
                "Safety report: %d interactions (%d on patient pairs), %d alternatives, "
                "%d phenotypes, MME %s",
                len(normalized.interactions), len(pair_interactions), len(alternatives),
                len(phenotypes), mme.total_mme if mme else "n/a",
            )

        return SafetyReport(
            interactions=normalized.interactions,
            pair_interactions=pair_interactions,
            skipped_evidence=normalized.skipped,
            alternatives=alternatives,
            phenotypes=phenotypes,
            mme=mme,
            opioid_safety=opioid_report,
        )


def _name_of(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping):
        return str(item.get("name") or "")
    return str(getattr(item, "name", "") or "")


def create_safety_engine(tables: Optional[RuleTables] = None) -> SafetyEngine:
    """
    Factory function to create a SafetyEngine.

    Without explicit tables, ``rule_tables_path`` from the configuration is
    loaded when set; otherwise the built-in defaults are used.
    """
    if tables is None:
        path = get_config().rule_tables_path
        if path:
            logger.info("Loading rule tables from %s", path)
            tables = load_rule_tables(path)
    return SafetyEngine(tables)
