"""
Configuration for the clinical safety engine.
Centralizes tunable parameters for evidence normalization and phenotype derivation.

MME thresholds are not configurable; they are fixed constants in
``dose_equivalence``.
"""

import json
from typing import Optional
from pydantic import BaseModel, Field


class EvidenceConfig(BaseModel):
    """Configuration for evidence normalization."""

    key_separator: str = Field(
        default="__",
        min_length=1,
        description="Separator joining the two sorted drug identities of a canonical key"
    )

    min_quality_score: int = Field(
        default=0,
        ge=0,
        le=100,
        description="Drop normalized interactions whose top record scores below this floor"
    )

    log_skipped_records: bool = Field(
        default=True,
        description="Emit a warning for every malformed evidence record that is dropped"
    )


class PhenotypeConfig(BaseModel):
    """Configuration for phenotype derivation."""

    corpus_separator: str = Field(
        default=" | ",
        description="Separator placed between observation texts in the joined corpus"
    )


class SafetyEngineConfig(BaseModel):
    """Main configuration for the clinical safety engine."""

    evidence: EvidenceConfig = Field(
        default_factory=EvidenceConfig,
        description="Evidence normalization configuration"
    )

    phenotype: PhenotypeConfig = Field(
        default_factory=PhenotypeConfig,
        description="Phenotype derivation configuration"
    )

    # Data paths
    rule_tables_path: Optional[str] = Field(
        default=None,
        description="Optional JSON file with caller-owned rule tables (defaults are built in)"
    )

    # Logging
    verbose_logging: bool = Field(
        default=False,
        description="Log every rule decision at DEBUG level"
    )


# Global configuration instance
_config: SafetyEngineConfig = SafetyEngineConfig()


def get_config() -> SafetyEngineConfig:
    """Get the global configuration instance."""
    return _config


def update_config(**kwargs) -> SafetyEngineConfig:
    """
    Update configuration parameters.

    Nested parameters use dotted keys, e.g.
    ``update_config(**{"evidence.min_quality_score": 40})``.
    """
    global _config
    current_dict = _config.model_dump()

    for key, value in kwargs.items():
        if '.' in key:
            parts = key.split('.')
            current = current_dict
            for part in parts[:-1]:
                current = current[part]
            current[parts[-1]] = value
        else:
            current_dict[key] = value

    _config = SafetyEngineConfig(**current_dict)
    return _config


def reset_config() -> SafetyEngineConfig:
    """Restore the default configuration."""
    global _config
    _config = SafetyEngineConfig()
    return _config


def load_config_from_file(filepath: str) -> SafetyEngineConfig:
    """Load configuration from a JSON file."""
    global _config

    with open(filepath, 'r') as f:
        config_dict = json.load(f)

    _config = SafetyEngineConfig(**config_dict)
    return _config


def save_config_to_file(filepath: str):
    """Save current configuration to a JSON file."""
    with open(filepath, 'w') as f:
        json.dump(_config.model_dump(), f, indent=2)


# Convenience accessors
def get_evidence_config() -> EvidenceConfig:
    """Get evidence normalization configuration."""
    return _config.evidence


def get_phenotype_config() -> PhenotypeConfig:
    """Get phenotype derivation configuration."""
    return _config.phenotype
