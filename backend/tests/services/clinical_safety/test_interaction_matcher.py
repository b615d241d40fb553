"""
Tests for the interaction matcher: pair building, rule firing, alternative
suggestions and pair lookup in the normalized interaction store.
"""

import pytest

from app.services.clinical_safety.evidence_normalizer import normalize_evidence
from app.services.clinical_safety.interaction_matcher import (
    InteractionMatcher,
    build_pairs,
    find_pair_interactions,
    match_alternatives,
    rule_fires,
)
from app.services.clinical_safety.models import DrugIdentity
from app.services.clinical_safety.rule_tables import AlternativeRule, RuleTables


WARFARIN_AMIODARONE = AlternativeRule(
    match_a="warfarin",
    match_b="amiodarone",
    for_drug="warfarin",
    suggestion_name="apixaban",
    rationale="Avoids CYP2C9-mediated INR swings",
    citations=("FDA Coumadin label",),
)


@pytest.fixture
def warfarin_tables():
    return RuleTables(
        alternative_rules=(WARFARIN_AMIODARONE,),
        rxcui_lookup={"Apixaban": "1364430"},
    )


class TestBuildPairs:
    """Unordered pairs in input order."""

    def test_pair_count(self):
        """Test n drugs -> n*(n-1)/2 pairs"""
        drugs = [DrugIdentity(name=n) for n in ("a", "b", "c", "d")]
        pairs = build_pairs(drugs)
        assert len(pairs) == 6
        assert [(x.name, y.name) for x, y in pairs[:3]] == [("a", "b"), ("a", "c"), ("a", "d")]

    @pytest.mark.parametrize("count", [0, 1])
    def test_fewer_than_two_drugs(self, count):
        """Test that fewer than two drugs give no pairs"""
        drugs = [DrugIdentity(name="warfarin")] * count
        assert build_pairs(drugs) == []


class TestRuleFires:
    """Case-insensitive substring matching in either orientation."""

    def test_both_orientations(self):
        """Test that a rule fires in either pair orientation"""
        warfarin = DrugIdentity(name="Warfarin Sodium")
        amiodarone = DrugIdentity(name="AMIODARONE HCl")
        assert rule_fires(WARFARIN_AMIODARONE, warfarin, amiodarone)
        assert rule_fires(WARFARIN_AMIODARONE, amiodarone, warfarin)

    def test_needs_both_members(self):
        """Test that a rule needs both of its drugs"""
        warfarin = DrugIdentity(name="warfarin")
        aspirin = DrugIdentity(name="aspirin")
        assert not rule_fires(WARFARIN_AMIODARONE, warfarin, aspirin)


class TestMatchAlternatives:
    """Alternative suggestions for flagged pairs."""

    def test_warfarin_amiodarone_single_suggestion(self, warfarin_tables):
        """Test warfarin + amiodarone -> one apixaban suggestion"""
        drugs = [{"name": "Warfarin Sodium"}, {"name": "Amiodarone HCl"}]

        suggestions = InteractionMatcher(warfarin_tables).match_alternatives(drugs)

        assert len(suggestions) == 1
        suggestion = suggestions[0]
        assert "Warfarin" in suggestion.for_drug.name
        assert suggestion.with_drug.name == "Amiodarone HCl"
        assert suggestion.alternative == DrugIdentity(name="apixaban", rxcui="1364430")
        assert suggestion.rationale == "Avoids CYP2C9-mediated INR swings"
        assert suggestion.citations == ["FDA Coumadin label"]

    def test_reversed_input_order(self, warfarin_tables):
        """Test the same suggestion when the input order is reversed"""
        suggestions = match_alternatives(["Amiodarone", "Warfarin"], warfarin_tables)
        assert len(suggestions) == 1
        assert suggestions[0].for_drug.name == "Warfarin"
        assert suggestions[0].with_drug.name == "Amiodarone"

    def test_duplicate_rules_emit_once(self):
        """Test that duplicate rules emit one suggestion"""
        tables = RuleTables(alternative_rules=(WARFARIN_AMIODARONE, WARFARIN_AMIODARONE))
        suggestions = match_alternatives(["warfarin", "amiodarone"], tables)
        assert len(suggestions) == 1

    def test_overlapping_default_rules_deduplicated(self):
        """Test that overlapping default rules are deduplicated"""
        # "esomeprazole" contains "omeprazole", so two default rules fire for the same triple
        suggestions = match_alternatives(["clopidogrel", "esomeprazole"])
        assert [(s.for_drug.name, s.alternative.name) for s in suggestions] == [("esomeprazole", "pantoprazole")]
        assert suggestions[0].alternative.rxcui == "40790"

    def test_for_drug_not_in_pair_is_skipped(self):
        """Test that a rule whose for_drug is not in the pair is skipped"""
        rule = AlternativeRule(
            match_a="warfarin", match_b="amiodarone", for_drug="aspirin", suggestion_name="apixaban",
        )
        suggestions = match_alternatives(["warfarin", "amiodarone"], RuleTables(alternative_rules=(rule,)))
        assert suggestions == []

    def test_rxcui_resolution_order(self):
        """Test rxcui lookup before the rule's own rxcui"""
        own = AlternativeRule(
            match_a="warfarin", match_b="amiodarone", for_drug="warfarin",
            suggestion_name="dabigatran", suggestion_rxcui="1037042",
        )
        unknown = AlternativeRule(
            match_a="warfarin", match_b="amiodarone", for_drug="warfarin",
            suggestion_name="heparin",
        )
        tables = RuleTables(alternative_rules=(own, unknown), rxcui_lookup={})

        suggestions = match_alternatives(["warfarin", "amiodarone"], tables)

        assert [s.alternative.rxcui for s in suggestions] == ["1037042", None]
        assert suggestions[1].alternative.name == "heparin"

    def test_stable_order_pairs_then_rules(self):
        """Test output ordered by pair, then by rule"""
        drugs = ["warfarin", "simvastatin", "amiodarone", "clarithromycin"]
        suggestions = match_alternatives(drugs)
        assert [(s.for_drug.name, s.alternative.name) for s in suggestions] == [
            ("warfarin", "apixaban"),
            ("clarithromycin", "azithromycin"),
            ("simvastatin", "pravastatin"),
        ]

    @pytest.mark.parametrize("drugs", [[], ["warfarin"]])
    def test_no_pairs_no_suggestions(self, drugs):
        """Test that a single drug yields no suggestions"""
        assert match_alternatives(drugs) == []


class TestFindPairInteractions:
    """Normalized interactions that apply to a patient's drug list."""

    @pytest.fixture
    def store(self):
        evidence = [
            {
                "source_type": "regulatory-label",
                "drug_a": {"name": "warfarin"},
                "drug_b": {"name": "amiodarone"},
                "severity": "major",
                "evidence_level": "high",
            },
            {
                "source_type": "publication",
                "drug_a": {"name": "simvastatin"},
                "drug_b": {"name": "clarithromycin"},
                "severity": "major",
            },
        ]
        return normalize_evidence(evidence).interactions

    def test_substring_names_match(self, store):
        """Test pair interactions matched by name substring"""
        found = find_pair_interactions(["Warfarin Sodium", "Amiodarone HCl", "metformin"], store)
        assert [i.key for i in found] == ["amiodarone__warfarin"]

    def test_rxcui_match(self):
        """Test pair interactions matched by rxcui"""
        tagged = normalize_evidence([{
            "source_type": "trial",
            "drug_a": {"name": "Coumadin", "rxcui": "11289"},
            "drug_b": {"name": "fluconazole", "rxcui": "4450"},
            "severity": "major",
        }]).interactions
        drugs = [{"name": "Jantoven", "rxcui": "11289"}, {"name": "Diflucan", "rxcui": "4450"}]
        assert [i.key for i in find_pair_interactions(drugs, tagged)] == ["11289__4450"]

    def test_no_applicable_pair(self, store):
        """Test that unrelated interactions are not returned"""
        assert find_pair_interactions(["warfarin", "clarithromycin"], store) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
