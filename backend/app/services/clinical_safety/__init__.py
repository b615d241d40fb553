"""
Clinical Safety Engine

Rule-based drug-interaction, pharmacogenomic phenotype and opioid dose-equivalence
checks for one patient's medication list. Deterministic, synchronous and
side-effect free.
"""

from .models import (
    DrugIdentity,
    InteractionEvidenceRecord,
    NormalizedInteraction,
    SkippedRecord,
    PhenotypeObservation,
    OpioidDose,
    MMELineItem,
    MMEResult,
    AlternativeSuggestion,
    PatientContext,
    SafetyFinding,
    OpioidSafetyReport,
    SafetyReport,
    Severity,
    SourceType,
    EvidenceLevel,
    ConversionKind,
)
from .rule_tables import (
    RuleTables,
    RuleTableError,
    AlternativeRule,
    GenePhenotypeRule,
    OpioidConversion,
    load_rule_tables,
    get_default_rule_tables,
)
from .evidence_normalizer import (
    NormalizationResult,
    canonical_key,
    quality_score,
    standardize_severity,
    conflicts_with,
    aggregate,
    normalize_evidence,
)
from .interaction_matcher import InteractionMatcher, build_pairs, rule_fires, match_alternatives
from .phenotype_deriver import PhenotypeDeriver, extract_text, joined_corpus, derive_phenotypes
from .dose_equivalence import DoseEquivalenceCalculator, calculate_mme, methadone_tier_factor
from .opioid_safety import assess_mme_risk, check_opioid_safety
from .safety_engine import SafetyEngine, create_safety_engine
from .config import (
    get_config,
    update_config,
    reset_config,
    load_config_from_file,
    save_config_to_file,
)

__all__ = [
    # Models
    'DrugIdentity',
    'InteractionEvidenceRecord',
    'NormalizedInteraction',
    'SkippedRecord',
    'PhenotypeObservation',
    'OpioidDose',
    'MMELineItem',
    'MMEResult',
    'AlternativeSuggestion',
    'PatientContext',
    'SafetyFinding',
    'OpioidSafetyReport',
    'SafetyReport',
    'Severity',
    'SourceType',
    'EvidenceLevel',
    'ConversionKind',

    # Rule tables
    'RuleTables',
    'RuleTableError',
    'AlternativeRule',
    'GenePhenotypeRule',
    'OpioidConversion',
    'load_rule_tables',
    'get_default_rule_tables',

    # Evidence Normalizer
    'NormalizationResult',
    'canonical_key',
    'quality_score',
    'standardize_severity',
    'conflicts_with',
    'aggregate',
    'normalize_evidence',

    # Interaction Matcher
    'InteractionMatcher',
    'build_pairs',
    'rule_fires',
    'match_alternatives',

    # Phenotype Deriver
    'PhenotypeDeriver',
    'extract_text',
    'joined_corpus',
    'derive_phenotypes',

    # Dose Equivalence
    'DoseEquivalenceCalculator',
    'calculate_mme',
    'methadone_tier_factor',

    # Opioid Safety
    'assess_mme_risk',
    'check_opioid_safety',

    # Engine
    'SafetyEngine',
    'create_safety_engine',

    # Config
    'get_config',
    'update_config',
    'reset_config',
    'load_config_from_file',
    'save_config_to_file',
]
