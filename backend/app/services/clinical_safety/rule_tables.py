"""
rule_tables.py
==============
Static rule tables consumed by the clinical safety engine.

  - Alternative-suggestion rules (drug pair → safer drug for one member)
  - Name → RxCUI lookup for suggested alternatives
  - Ordered per-gene phenotype regex rules (first match wins)
  - Opioid name → MME conversion mode

Tables are immutable once built. Structural mistakes (an empty match term, a
regex that does not compile, a linear opioid without a factor) raise at
construction time, before any patient data is seen.

Sources: CPIC guidelines (https://cpicpgx.org/guidelines/),
CDC Clinical Practice Guideline for Prescribing Opioids for Pain (2022).
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .models import ConversionKind


class RuleTableError(ValueError):
    """A static rule table is structurally invalid."""


# ---------------------------------------------------------------------------
# Rule entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AlternativeRule:
    """Suggest ``suggestion_name`` for ``for_drug`` when ``match_a`` and ``match_b`` co-occur."""
    match_a: str
    match_b: str
    for_drug: str
    suggestion_name: str
    suggestion_rxcui: Optional[str] = None
    rationale: str = ""
    citations: Tuple[str, ...] = ()

    def __post_init__(self):
        for attr in ("match_a", "match_b", "for_drug", "suggestion_name"):
            if not str(getattr(self, attr) or "").strip():
                raise RuleTableError(f"AlternativeRule.{attr} must be a non-empty string")
        object.__setattr__(self, "citations", tuple(self.citations))


@dataclass(frozen=True)
class GenePhenotypeRule:
    """One ``pattern → phenotype`` rule; evaluated against the upper-cased corpus."""
    gene: str
    pattern: str
    phenotype: str
    compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.gene or not self.phenotype:
            raise RuleTableError("GenePhenotypeRule requires a gene and a phenotype")
        # re.error propagates: a broken pattern must stop initialization
        object.__setattr__(self, "compiled", re.compile(self.pattern, re.IGNORECASE))

    def matches(self, corpus: str) -> bool:
        return self.compiled.search(corpus) is not None


@dataclass(frozen=True)
class OpioidConversion:
    """Conversion mode for one opioid name (matched as a case-insensitive substring)."""
    name: str
    kind: ConversionKind
    factor: Optional[float] = None
    note: Optional[str] = None

    def __post_init__(self):
        if not self.name.strip():
            raise RuleTableError("OpioidConversion.name must be a non-empty string")
        object.__setattr__(self, "kind", ConversionKind(self.kind))
        needs_factor = self.kind in (ConversionKind.LINEAR, ConversionKind.TRANSDERMAL)
        if needs_factor and (self.factor is None or self.factor <= 0):
            raise RuleTableError(f"{self.name}: {self.kind.value} conversion needs a positive factor")


# ---------------------------------------------------------------------------
# Default tables
# ---------------------------------------------------------------------------

DEFAULT_ALTERNATIVE_RULES: Tuple[AlternativeRule, ...] = (
    AlternativeRule(
        match_a="clopidogrel", match_b="omeprazole", for_drug="omeprazole",
        suggestion_name="pantoprazole",
        rationale="Omeprazole inhibits CYP2C19 and reduces clopidogrel activation; "
                  "pantoprazole is a weak CYP2C19 inhibitor",
        citations=("FDA Drug Safety Communication: Plavix and omeprazole (2010)",
                   "CPIC Guideline for CYP2C19 and Clopidogrel (2022)"),
    ),
    AlternativeRule(
        match_a="clopidogrel", match_b="esomeprazole", for_drug="esomeprazole",
        suggestion_name="pantoprazole",
        rationale="Esomeprazole inhibits CYP2C19 and reduces clopidogrel activation",
        citations=("FDA Plavix label, Drug Interactions (7.1)",),
    ),
    AlternativeRule(
        match_a="warfarin", match_b="amiodarone", for_drug="warfarin",
        suggestion_name="apixaban",
        rationale="Amiodarone inhibits CYP2C9 and raises warfarin exposure; "
                  "apixaban avoids INR instability",
        citations=("FDA Coumadin label, Drug Interactions (7)",),
    ),
    AlternativeRule(
        match_a="warfarin", match_b="fluconazole", for_drug="warfarin",
        suggestion_name="apixaban",
        rationale="Fluconazole strongly inhibits CYP2C9, increasing warfarin levels and bleeding risk",
        citations=("FDA Coumadin label, Drug Interactions (7)",),
    ),
    AlternativeRule(
        match_a="warfarin", match_b="aspirin", for_drug="aspirin",
        suggestion_name="acetaminophen",
        rationale="Additive bleeding risk with aspirin; acetaminophen has minimal interaction at analgesic doses",
        citations=("ACCP Antithrombotic Therapy Guidelines, 9th ed.",),
    ),
    AlternativeRule(
        match_a="simvastatin", match_b="clarithromycin", for_drug="clarithromycin",
        suggestion_name="azithromycin",
        rationale="Clarithromycin inhibits CYP3A4 and raises simvastatin exposure (rhabdomyolysis risk); "
                  "azithromycin is not a meaningful CYP3A4 inhibitor",
        citations=("FDA Zocor label, Contraindications (4)",),
    ),
    AlternativeRule(
        match_a="simvastatin", match_b="clarithromycin", for_drug="simvastatin",
        suggestion_name="pravastatin",
        rationale="Pravastatin is not metabolized by CYP3A4",
        citations=("FDA Drug Safety Communication: simvastatin dose limitations (2011)",),
    ),
    AlternativeRule(
        match_a="codeine", match_b="fluoxetine", for_drug="codeine",
        suggestion_name="morphine",
        rationale="Fluoxetine inhibits CYP2D6, blocking codeine conversion to morphine; "
                  "morphine does not require CYP2D6 activation",
        citations=("CPIC Guideline for Opioids and CYP2D6, OPRM1, and COMT (2021)",),
    ),
    AlternativeRule(
        match_a="tramadol", match_b="paroxetine", for_drug="paroxetine",
        suggestion_name="sertraline",
        rationale="Paroxetine strongly inhibits CYP2D6 and adds serotonergic risk with tramadol",
        citations=("CPIC Guideline for SSRIs and CYP2D6/CYP2C19 (2023)",),
    ),
    AlternativeRule(
        match_a="citalopram", match_b="omeprazole", for_drug="omeprazole",
        suggestion_name="famotidine",
        rationale="Omeprazole competes for CYP2C19 and can raise citalopram levels (QT risk)",
        citations=("FDA Celexa label, Drug Interactions (7)",),
    ),
)

DEFAULT_RXCUI_LOOKUP: Dict[str, str] = {
    "acetaminophen": "161",
    "allopurinol": "519",
    "amiodarone": "703",
    "apixaban": "1364430",
    "aspirin": "1191",
    "azithromycin": "18631",
    "citalopram": "2556",
    "clarithromycin": "21212",
    "clopidogrel": "32968",
    "codeine": "2670",
    "esomeprazole": "283742",
    "famotidine": "4278",
    "fluconazole": "4450",
    "fluoxetine": "4493",
    "ibuprofen": "5640",
    "morphine": "7052",
    "naproxen": "7258",
    "omeprazole": "7646",
    "pantoprazole": "40790",
    "paroxetine": "32937",
    "pravastatin": "42463",
    "sertraline": "36437",
    "simvastatin": "36567",
    "tramadol": "10689",
    "warfarin": "11289",
}

# Order inside each gene is a precedence policy: the more specific
# ultra-rapid/rapid and poor patterns come before intermediate and normal.
_METABOLIZER = r"METABOLI[SZ]ER"
_PANEL_GENES = ("CYP2D6", "CYP2C19", "UGT1A1", "TPMT", "DPYD")


def _gene_pattern(gene: str, result: str) -> str:
    """
    ``gene`` followed by ``result``, with no other panel gene symbol in between.

    The gap may still cross record separators, so a gene named in one
    observation can pick up a result stated in the next.
    """
    others = "|".join(g for g in _PANEL_GENES if g != gene)
    return rf"{gene}(?:(?!{others}).)*?({result})"


DEFAULT_PHENOTYPE_RULES: Tuple[GenePhenotypeRule, ...] = (
    # ── CYP2D6 ──────────────────────────────────────────────────────────────
    GenePhenotypeRule("CYP2D6", _gene_pattern("CYP2D6", rf"ULTRA[\s-]?RAPID|\*\d+[A-Z]?X(N|[2-9])"),
                      "Ultra-rapid metabolizer"),
    GenePhenotypeRule("CYP2D6", _gene_pattern("CYP2D6", rf"POOR {_METABOLIZER}|\*(3|4|5|6)/\*(3|4|5|6)\b"),
                      "Poor metabolizer"),
    GenePhenotypeRule("CYP2D6", _gene_pattern("CYP2D6", rf"INTERMEDIATE {_METABOLIZER}|\*(1|2)/\*(3|4|5|6|10|41)\b|\*(10|41)/\*(10|41)\b"),
                      "Intermediate metabolizer"),
    GenePhenotypeRule("CYP2D6", _gene_pattern("CYP2D6", rf"(NORMAL|EXTENSIVE) {_METABOLIZER}|\*(1|2)/\*(1|2)\b"),
                      "Normal metabolizer"),

    # ── CYP2C19 ─────────────────────────────────────────────────────────────
    GenePhenotypeRule("CYP2C19", _gene_pattern("CYP2C19", rf"ULTRA[\s-]?RAPID|\*17/\*17\b"),
                      "Ultra-rapid metabolizer"),
    GenePhenotypeRule("CYP2C19", _gene_pattern("CYP2C19", rf"POOR {_METABOLIZER}|\*(2|3)/\*(2|3)\b"),
                      "Poor metabolizer"),
    GenePhenotypeRule("CYP2C19", _gene_pattern("CYP2C19", rf"INTERMEDIATE {_METABOLIZER}|\*(1|17)/\*(2|3)\b|\*(2|3)/\*17\b"),
                      "Intermediate metabolizer"),
    GenePhenotypeRule("CYP2C19", _gene_pattern("CYP2C19", rf"RAPID {_METABOLIZER}|\*1/\*17\b"), "Rapid metabolizer"),
    GenePhenotypeRule("CYP2C19", _gene_pattern("CYP2C19", rf"(NORMAL|EXTENSIVE) {_METABOLIZER}|\*1/\*1\b"),
                      "Normal metabolizer"),

    # ── UGT1A1 ──────────────────────────────────────────────────────────────
    GenePhenotypeRule("UGT1A1", _gene_pattern("UGT1A1", rf"POOR {_METABOLIZER}|\*(6|28|37)/\*(6|28|37)\b"),
                      "Poor metabolizer"),
    GenePhenotypeRule("UGT1A1", _gene_pattern("UGT1A1", rf"INTERMEDIATE {_METABOLIZER}|\*(1|36)/\*(6|28|37)\b"),
                      "Intermediate metabolizer"),
    GenePhenotypeRule("UGT1A1", _gene_pattern("UGT1A1", rf"NORMAL {_METABOLIZER}|\*(1|36)/\*(1|36)\b"),
                      "Normal metabolizer"),

    # ── TPMT ────────────────────────────────────────────────────────────────
    GenePhenotypeRule("TPMT", _gene_pattern("TPMT", rf"POOR {_METABOLIZER}|LOW ACTIVITY|\*(2|3A|3B|3C|4)/\*(2|3A|3B|3C|4)\b"),
                      "Poor metabolizer"),
    GenePhenotypeRule("TPMT", _gene_pattern("TPMT", rf"INTERMEDIATE {_METABOLIZER}|INTERMEDIATE ACTIVITY|\*1/\*(2|3A|3B|3C|4)\b"),
                      "Intermediate metabolizer"),
    GenePhenotypeRule("TPMT", _gene_pattern("TPMT", rf"NORMAL {_METABOLIZER}|NORMAL ACTIVITY|\*1/\*1\b"),
                      "Normal metabolizer"),

    # ── DPYD ────────────────────────────────────────────────────────────────
    GenePhenotypeRule("DPYD", _gene_pattern("DPYD", rf"POOR {_METABOLIZER}|\*(2A|13)/\*(2A|13)\b"),
                      "Poor metabolizer"),
    GenePhenotypeRule("DPYD", _gene_pattern("DPYD", rf"INTERMEDIATE {_METABOLIZER}|\*1/\*(2A|13)\b|C\.1236G>A"),
                      "Intermediate metabolizer"),
    GenePhenotypeRule("DPYD", _gene_pattern("DPYD", rf"NORMAL {_METABOLIZER}|\*1/\*1\b"), "Normal metabolizer"),
)

# CDC 2022 conversion factors. Substring match, first entry wins.
DEFAULT_OPIOID_CONVERSIONS: Tuple[OpioidConversion, ...] = (
    OpioidConversion("buprenorphine", ConversionKind.EXCLUDED,
                     note="Buprenorphine is excluded from MME totals (partial agonist; "
                          "conversion factors do not apply)"),
    OpioidConversion("methadone", ConversionKind.METHADONE_TIERED),
    OpioidConversion("fentanyl", ConversionKind.TRANSDERMAL, factor=2.4),
    OpioidConversion("hydromorphone", ConversionKind.LINEAR, factor=5.0),
    OpioidConversion("oxymorphone", ConversionKind.LINEAR, factor=3.0),
    OpioidConversion("oxycodone", ConversionKind.LINEAR, factor=1.5),
    OpioidConversion("hydrocodone", ConversionKind.LINEAR, factor=1.0),
    OpioidConversion("morphine", ConversionKind.LINEAR, factor=1.0),
    OpioidConversion("codeine", ConversionKind.LINEAR, factor=0.15),
    OpioidConversion("tapentadol", ConversionKind.LINEAR, factor=0.4),
    OpioidConversion("tramadol", ConversionKind.LINEAR, factor=0.2),
    OpioidConversion("meperidine", ConversionKind.LINEAR, factor=0.1),
)


# ---------------------------------------------------------------------------
# Table bundle
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RuleTables:
    """Read-only bundle of every static table the engine needs."""
    alternative_rules: Tuple[AlternativeRule, ...] = DEFAULT_ALTERNATIVE_RULES
    rxcui_lookup: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_RXCUI_LOOKUP))
    phenotype_rules: Tuple[GenePhenotypeRule, ...] = DEFAULT_PHENOTYPE_RULES
    opioid_conversions: Tuple[OpioidConversion, ...] = DEFAULT_OPIOID_CONVERSIONS

    def __post_init__(self):
        object.__setattr__(self, "alternative_rules", tuple(self.alternative_rules))
        object.__setattr__(self, "phenotype_rules", tuple(self.phenotype_rules))
        object.__setattr__(self, "opioid_conversions", tuple(self.opioid_conversions))
        lookup = {str(k).strip().lower(): str(v) for k, v in dict(self.rxcui_lookup).items()}
        object.__setattr__(self, "rxcui_lookup", MappingProxyType(lookup))

    @property
    def genes(self) -> List[str]:
        """Genes in first-appearance order."""
        return list(dict.fromkeys(rule.gene for rule in self.phenotype_rules))

    def rules_for_gene(self, gene: str) -> List[GenePhenotypeRule]:
        return [rule for rule in self.phenotype_rules if rule.gene == gene]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuleTables":
        """
        Build tables from a JSON-style mapping. Missing sections fall back to
        the defaults; malformed sections raise ``RuleTableError``.
        """
        try:
            alt_rules = (
                tuple(_alternative_rule_from_dict(item) for item in data["alternative_rules"])
                if "alternative_rules" in data else DEFAULT_ALTERNATIVE_RULES
            )
            rxcui_lookup = data.get("rxcui_lookup", DEFAULT_RXCUI_LOOKUP)
            phenotype_rules = (
                tuple(_phenotype_rules_from_dict(data["phenotype_rules"]))
                if "phenotype_rules" in data else DEFAULT_PHENOTYPE_RULES
            )
            conversions = (
                tuple(
                    OpioidConversion(
                        name=item["name"],
                        kind=item["kind"],
                        factor=item.get("factor"),
                        note=item.get("note"),
                    )
                    for item in data["opioid_conversions"]
                )
                if "opioid_conversions" in data else DEFAULT_OPIOID_CONVERSIONS
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise RuleTableError(f"Malformed rule table: {e!r}") from e

        return cls(
            alternative_rules=alt_rules,
            rxcui_lookup=rxcui_lookup,
            phenotype_rules=phenotype_rules,
            opioid_conversions=conversions,
        )


def _alternative_rule_from_dict(item: Mapping[str, Any]) -> AlternativeRule:
    suggestion = item["suggestion"]
    return AlternativeRule(
        match_a=item["match_a"],
        match_b=item["match_b"],
        for_drug=item["for_drug"],
        suggestion_name=suggestion["name"],
        suggestion_rxcui=suggestion.get("rxcui"),
        rationale=item.get("rationale", ""),
        citations=tuple(item.get("citations", ())),
    )


def _phenotype_rules_from_dict(section: Mapping[str, Iterable[Mapping[str, str]]]) -> List[GenePhenotypeRule]:
    rules: List[GenePhenotypeRule] = []
    # JSON objects keep key order, so gene order and per-gene rule order survive
    for gene, entries in section.items():
        for entry in entries:
            rules.append(GenePhenotypeRule(gene, entry["pattern"], entry["phenotype"]))
    return rules


def load_rule_tables(filepath: str) -> RuleTables:
    """Load caller-owned rule tables from a JSON file."""
    path = Path(filepath)
    with open(path, 'r') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise RuleTableError(f"{path}: top-level JSON value must be an object")
    return RuleTables.from_dict(data)


@lru_cache(maxsize=1)
def get_default_rule_tables() -> RuleTables:
    """Shared default tables (built once, read-only)."""
    return RuleTables()
