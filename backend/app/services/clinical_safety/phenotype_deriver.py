"""
Phenotype Deriver - metabolizer phenotypes from loosely structured genomic observations.

Every text-bearing field of every observation is flattened into one upper-cased
corpus, and each gene's ordered regex rules are evaluated against that corpus.
Matching is purely textual. Because the corpus spans observations, one
observation's unrelated text can complete a gene's pattern. Default rules are
anchored on the gene symbol and stop at the next panel gene symbol, so one
gene never picks up another gene's stated result.
"""

import logging
from typing import Any, Iterable, List, Optional

from .config import get_config, get_phenotype_config
from .models import PhenotypeObservation
from .rule_tables import RuleTables, get_default_rule_tables

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------

def _field(obj: Any, *names: str) -> Any:
    """First present value among camelCase/snake_case spellings, for dicts or objects."""
    for name in names:
        if isinstance(obj, dict):
            value = obj.get(name)
        else:
            value = getattr(obj, name, None)
        if value is not None:
            return value
    return None


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _concept_texts(concept: Any) -> List[str]:
    """Text and coding displays of a CodeableConcept-like value."""
    if concept is None:
        return []
    if isinstance(concept, str):
        return [concept]
    texts: List[str] = []
    text = _field(concept, "text")
    if text:
        texts.append(str(text))
    for coding in _as_list(_field(concept, "coding")):
        display = _field(coding, "display")
        if display:
            texts.append(str(display))
        code = _field(coding, "code")
        if code and not display:
            texts.append(str(code))
    return texts


def _quantity_text(quantity: Any) -> List[str]:
    if quantity is None:
        return []
    value = _field(quantity, "value")
    unit = _field(quantity, "unit")
    parts = [str(p) for p in (value, unit) if p is not None and p != ""]
    return [" ".join(parts)] if parts else []


def _own_texts(observation: Any) -> List[str]:
    texts: List[str] = []
    texts.extend(_concept_texts(_field(observation, "code")))

    value_string = _field(observation, "valueString", "value_string")
    if value_string:
        texts.append(str(value_string))
    texts.extend(_concept_texts(_field(observation, "valueCodeableConcept", "value_codeable_concept")))
    texts.extend(_quantity_text(_field(observation, "valueQuantity", "value_quantity")))

    for interpretation in _as_list(_field(observation, "interpretation")):
        texts.extend(_concept_texts(interpretation))

    for note in _as_list(_field(observation, "note")):
        note_text = note if isinstance(note, str) else _field(note, "text")
        if note_text:
            texts.append(str(note_text))
    return texts


def extract_text(observation: Any) -> str:
    """
    Flatten one observation into an upper-cased string.

    Reads code text/displays, value fields, interpretation, notes and the same
    fields of every ``component`` entry. Accepts dicts or objects; unknown
    shapes yield an empty string.
    """
    if observation is None:
        return ""
    if isinstance(observation, str):
        return observation.upper()

    texts = _own_texts(observation)
    for component in _as_list(_field(observation, "component")):
        texts.extend(_own_texts(component))
    return " ".join(t.strip() for t in texts if t and t.strip()).upper()


def joined_corpus(observations: Iterable[Any], separator: Optional[str] = None) -> str:
    """
    All observations' extracted text in one string.

    Segments are sorted before joining so the corpus, and hence every derived
    phenotype, is identical for any ordering of the input.
    """
    sep = separator if separator is not None else get_phenotype_config().corpus_separator
    segments = [extract_text(o) for o in observations]
    return sep.join(sorted(s for s in segments if s))


# ---------------------------------------------------------------------------
# Derivation
# ---------------------------------------------------------------------------

class PhenotypeDeriver:
    """Applies per-gene ordered rules (first match wins) to an observation corpus."""

    def __init__(self, tables: Optional[RuleTables] = None):
        self.tables = tables or get_default_rule_tables()

    def derive_from_corpus(self, corpus: str) -> List[PhenotypeObservation]:
        results: List[PhenotypeObservation] = []
        verbose = get_config().verbose_logging
        for gene in self.tables.genes:
            for rule in self.tables.rules_for_gene(gene):
                if rule.matches(corpus):
                    results.append(PhenotypeObservation(gene=gene, phenotype=rule.phenotype))
                    if verbose:
                        logger.debug("%s → %s (pattern %r)", gene, rule.phenotype, rule.pattern)
                    break
        return results

    def derive_phenotypes(self, observations: Iterable[Any]) -> List[PhenotypeObservation]:
        """
        One PhenotypeObservation per gene with a matching rule, in table gene
        order. Genes without a match are omitted, not reported as unknown.
        """
        return self.derive_from_corpus(joined_corpus(observations))


def derive_phenotypes(
    observations: Iterable[Any],
    tables: Optional[RuleTables] = None,
) -> List[PhenotypeObservation]:
    return PhenotypeDeriver(tables).derive_phenotypes(observations)
