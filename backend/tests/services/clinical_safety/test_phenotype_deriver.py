"""
Tests for the phenotype deriver.

Validates:
  - Text extraction from FHIR-like observations (codes, values, components)
  - First-match-wins rule precedence per gene
  - Silence for genes without evidence
  - Identical output for any ordering of the input observations
"""

import itertools
import re
from types import SimpleNamespace

import pytest

from app.services.clinical_safety.models import PhenotypeObservation
from app.services.clinical_safety.phenotype_deriver import (
    PhenotypeDeriver,
    derive_phenotypes,
    extract_text,
    joined_corpus,
)
from app.services.clinical_safety.rule_tables import GenePhenotypeRule, RuleTables


@pytest.fixture
def mixed_observations():
    return [
        {"valueString": "CYP2D6 *4/*4"},
        {
            "code": {"text": "CYP2C19 diplotype", "coding": [{"display": "Genotype display"}]},
            "valueCodeableConcept": {"coding": [{"display": "*1/*17"}]},
        },
        {
            "code": {"text": "Pharmacogenomic panel"},
            "component": [
                {"code": {"text": "TPMT"}, "valueString": "*3A/*3A"},
            ],
        },
    ]


class TestExtractText:
    """Flattening observations into upper-cased text."""

    def test_code_and_value_fields(self):
        """Test extraction of code, value, interpretation and note text"""
        observation = {
            "code": {"text": "CYP2C19 diplotype", "coding": [{"display": "Genotype"}]},
            "valueCodeableConcept": {"text": "*1/*17"},
            "interpretation": [{"coding": [{"display": "Rapid metabolizer"}]}],
            "note": [{"text": "confirmed"}],
        }
        assert extract_text(observation) == "CYP2C19 DIPLOTYPE GENOTYPE *1/*17 RAPID METABOLIZER CONFIRMED"

    def test_components_are_included(self):
        """Test that component entries are extracted"""
        observation = {
            "code": {"text": "panel"},
            "component": [
                {"code": {"text": "DPYD"}, "valueString": "*1/*2A"},
                {"code": {"text": "Activity score"}, "valueQuantity": {"value": 1.5, "unit": "score"}},
            ],
        }
        assert extract_text(observation) == "PANEL DPYD *1/*2A ACTIVITY SCORE 1.5 SCORE"

    def test_snake_case_keys(self):
        """Test snake_case field names"""
        assert extract_text({"value_string": "ugt1a1 *28/*28"}) == "UGT1A1 *28/*28"

    def test_object_with_attributes(self):
        """Test observation objects with attributes instead of keys"""
        observation = SimpleNamespace(valueString="DPYD *1/*2A", code=None)
        assert extract_text(observation) == "DPYD *1/*2A"

    @pytest.mark.parametrize("observation", [None, {}, {"status": "final"}])
    def test_no_text(self, observation):
        """Test that empty observations give an empty string"""
        assert extract_text(observation) == ""


class TestDerivePhenotypes:
    """Per-gene first-match derivation over the joined corpus."""

    def test_cyp2d6_poor_metabolizer_only(self):
        """Test CYP2D6 *4/*4 -> Poor metabolizer only"""
        result = derive_phenotypes([{"valueString": "CYP2D6 *4/*4"}])
        assert result == [PhenotypeObservation(gene="CYP2D6", phenotype="Poor metabolizer")]

    def test_multiple_genes_in_table_order(self, mixed_observations):
        """Test several genes reported in table order"""
        result = derive_phenotypes(mixed_observations)
        assert [(p.gene, p.phenotype) for p in result] == [
            ("CYP2D6", "Poor metabolizer"),
            ("CYP2C19", "Rapid metabolizer"),
            ("TPMT", "Poor metabolizer"),
        ]

    def test_ultra_rapid_wins_over_normal(self):
        """Test that the ultra-rapid rule takes precedence over normal"""
        observations = [
            {"valueString": "CYP2D6 ultrarapid metabolizer"},
            {"valueString": "CYP2D6 *1/*1 normal metabolizer"},
        ]
        result = derive_phenotypes(observations)
        assert result == [PhenotypeObservation(gene="CYP2D6", phenotype="Ultra-rapid metabolizer")]

    def test_gene_duplication_is_ultra_rapid(self):
        """Test that gene duplication (xN) -> Ultra-rapid metabolizer"""
        result = derive_phenotypes([{"valueString": "CYP2D6 *1/*2xN"}])
        assert result[0].phenotype == "Ultra-rapid metabolizer"

    def test_intermediate_diplotypes(self):
        """Test intermediate diplotypes across genes"""
        observations = [
            {"valueString": "CYP2C19 *1/*2"},
            {"valueString": "UGT1A1 *1/*28"},
            {"valueString": "DPYD c.1236G>A heterozygous"},
        ]
        result = {p.gene: p.phenotype for p in derive_phenotypes(observations)}
        assert result == {
            "CYP2C19": "Intermediate metabolizer",
            "UGT1A1": "Intermediate metabolizer",
            "DPYD": "Intermediate metabolizer",
        }

    def test_single_observation_panel_keeps_results_per_gene(self):
        """Test that one panel observation keeps each gene's own result"""
        result = derive_phenotypes([{"valueString": "CYP2D6: Normal metabolizer; DPYD: Poor metabolizer"}])
        assert [(p.gene, p.phenotype) for p in result] == [
            ("CYP2D6", "Normal metabolizer"),
            ("DPYD", "Poor metabolizer"),
        ]

    @pytest.mark.parametrize("observations,expected", [
        (
            [{"valueString": "CYP2C19 *1/*1"}, {"valueString": "CYP2D6 *1/*3"}],
            [("CYP2D6", "Intermediate metabolizer"), ("CYP2C19", "Normal metabolizer")],
        ),
        (
            ["CYP2D6 *1/*1", "UGT1A1 *6/*6"],
            [("CYP2D6", "Normal metabolizer"), ("UGT1A1", "Poor metabolizer")],
        ),
    ])
    def test_two_observation_panel_keeps_results_per_gene(self, observations, expected):
        """Test that a later gene's result is not given to an earlier gene"""
        result = derive_phenotypes(observations)
        assert [(p.gene, p.phenotype) for p in result] == expected

    def test_result_in_following_record_still_matches(self):
        """Test a gene name and its result split across two records"""
        observations = [{"code": {"text": "CYP2D6"}}, {"valueString": "diplotype *4/*4"}]
        assert joined_corpus(observations) == "CYP2D6 | DIPLOTYPE *4/*4"
        result = derive_phenotypes(observations)
        assert result == [PhenotypeObservation(gene="CYP2D6", phenotype="Poor metabolizer")]

    def test_unrelated_text_yields_nothing(self):
        """Test that unrelated text yields no phenotypes"""
        assert derive_phenotypes([{"valueString": "Hemoglobin A1c 6.1 %"}]) == []
        assert derive_phenotypes([]) == []

    def test_permutation_invariance(self, mixed_observations):
        """Test the same phenotypes for every input ordering"""
        expected = derive_phenotypes(mixed_observations)
        for permutation in itertools.permutations(mixed_observations):
            assert derive_phenotypes(list(permutation)) == expected

    def test_corpus_is_order_independent(self, mixed_observations):
        """Test that the joined corpus ignores input order"""
        assert joined_corpus(mixed_observations) == joined_corpus(list(reversed(mixed_observations)))
        assert " | " in joined_corpus(mixed_observations)


class TestCustomRules:
    """Injected rule tables."""

    def test_rule_order_is_precedence(self):
        """Test that the first matching rule wins"""
        tables = RuleTables(phenotype_rules=(
            GenePhenotypeRule("CYP2C9", r"CYP2C9.*\*3/\*3", "Poor metabolizer"),
            GenePhenotypeRule("CYP2C9", r"CYP2C9", "Normal metabolizer"),
        ))
        deriver = PhenotypeDeriver(tables)
        assert deriver.derive_phenotypes(["cyp2c9 *3/*3"])[0].phenotype == "Poor metabolizer"
        assert deriver.derive_phenotypes(["cyp2c9 *1/*1"])[0].phenotype == "Normal metabolizer"

    def test_invalid_regex_fails_at_construction(self):
        """Test that an invalid pattern raises at construction"""
        with pytest.raises(re.error):
            GenePhenotypeRule("CYP2D6", r"CYP2D6 (*4", "Poor metabolizer")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
