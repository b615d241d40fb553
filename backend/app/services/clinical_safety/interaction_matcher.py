"""
Interaction Matcher - pairs up a patient's drugs and fires alternative-suggestion rules.

Drug identity in rules is substring-based (case-insensitive): a rule for
"warfarin" also fires on "Warfarin Sodium" and on combination products that
contain warfarin. Existing rule tables depend on this.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .models import AlternativeSuggestion, DrugIdentity, NormalizedInteraction
from .rule_tables import AlternativeRule, RuleTables, get_default_rule_tables

logger = logging.getLogger(__name__)

DrugInput = Union[DrugIdentity, Mapping[str, Any], str]


def to_drug_identity(drug: DrugInput) -> DrugIdentity:
    """Accept a DrugIdentity, a ``{name, rxcui}`` dict or a bare name."""
    if isinstance(drug, DrugIdentity):
        return drug
    if isinstance(drug, str):
        return DrugIdentity(name=drug)
    return DrugIdentity.model_validate(drug)


def build_pairs(drugs: Sequence[DrugIdentity]) -> List[Tuple[DrugIdentity, DrugIdentity]]:
    """All unordered pairs in input order; n*(n-1)/2 of them, none for n < 2."""
    return [
        (drugs[i], drugs[j])
        for i in range(len(drugs))
        for j in range(i + 1, len(drugs))
    ]


def _contains(haystack: str, needle: str) -> bool:
    return needle.lower() in haystack.lower()


def rule_fires(rule: AlternativeRule, a: DrugIdentity, b: DrugIdentity) -> bool:
    """True if the pair matches the rule in either orientation."""
    return (
        (_contains(a.name, rule.match_a) and _contains(b.name, rule.match_b))
        or (_contains(b.name, rule.match_a) and _contains(a.name, rule.match_b))
    )


def resolve_rxcui(rule: AlternativeRule, rxcui_lookup: Mapping[str, str]) -> Optional[str]:
    """Injected lookup first, then the rule's own rxcui; None when neither knows the drug."""
    return rxcui_lookup.get(rule.suggestion_name.strip().lower()) or rule.suggestion_rxcui


class InteractionMatcher:
    """
    Evaluates alternative-suggestion rules over every pair of a drug list.

    The matcher keeps no state between calls; the rule tables it is given are
    read-only.
    """

    def __init__(self, tables: Optional[RuleTables] = None):
        self.tables = tables or get_default_rule_tables()

    def match_alternatives(self, drugs: Iterable[DrugInput]) -> List[AlternativeSuggestion]:
        """
        Suggestions for every (pair, rule) that fires.

        Output follows pair order, then rule-table order. Suggestions with the
        same (for_drug, with_drug, alternative) names, compared
        case-insensitively, are emitted once.
        """
        identities = [to_drug_identity(d) for d in drugs]
        suggestions: List[AlternativeSuggestion] = []
        seen = set()

        for a, b in build_pairs(identities):
            for rule in self.tables.alternative_rules:
                if not rule_fires(rule, a, b):
                    continue

                if _contains(a.name, rule.for_drug):
                    for_drug, with_drug = a, b
                elif _contains(b.name, rule.for_drug):
                    for_drug, with_drug = b, a
                else:
                    logger.debug(
                        "Rule %s+%s fired on (%s, %s) but neither drug contains for_drug=%s; skipped",
                        rule.match_a, rule.match_b, a.name, b.name, rule.for_drug,
                    )
                    continue

                dedup_key = (
                    for_drug.name.lower(),
                    with_drug.name.lower(),
                    rule.suggestion_name.lower(),
                )
                if dedup_key in seen:
                    continue
                seen.add(dedup_key)

                suggestions.append(
                    AlternativeSuggestion(
                        for_drug=for_drug,
                        with_drug=with_drug,
                        alternative=DrugIdentity(
                            name=rule.suggestion_name,
                            rxcui=resolve_rxcui(rule, self.tables.rxcui_lookup),
                        ),
                        rationale=rule.rationale,
                        citations=list(rule.citations),
                    )
                )

        return suggestions

    def find_pair_interactions(
        self,
        drugs: Iterable[DrugInput],
        interactions: Union[Mapping[str, NormalizedInteraction], Iterable[NormalizedInteraction]],
    ) -> List[NormalizedInteraction]:
        """
        Normalized interactions that apply to the patient's drug pairs.

        An interaction applies when its two drugs match the pair (in either
        orientation) by ``DrugIdentity.same_drug``. Each interaction is
        returned at most once, in pair order.
        """
        identities = [to_drug_identity(d) for d in drugs]
        if isinstance(interactions, Mapping):
            candidates = list(interactions.values())
        else:
            candidates = list(interactions)

        found: Dict[str, NormalizedInteraction] = {}
        for a, b in build_pairs(identities):
            for interaction in candidates:
                if interaction.key in found:
                    continue
                x, y = interaction.drug_a, interaction.drug_b
                if (a.same_drug(x) and b.same_drug(y)) or (a.same_drug(y) and b.same_drug(x)):
                    found[interaction.key] = interaction
        return list(found.values())


def match_alternatives(
    drugs: Iterable[DrugInput],
    tables: Optional[RuleTables] = None,
) -> List[AlternativeSuggestion]:
    """Convenience wrapper around ``InteractionMatcher.match_alternatives``."""
    return InteractionMatcher(tables).match_alternatives(drugs)


def find_pair_interactions(
    drugs: Iterable[DrugInput],
    interactions: Union[Mapping[str, NormalizedInteraction], Iterable[NormalizedInteraction]],
) -> List[NormalizedInteraction]:
    """Convenience wrapper around ``InteractionMatcher.find_pair_interactions``."""
    return InteractionMatcher().find_pair_interactions(drugs, interactions)
