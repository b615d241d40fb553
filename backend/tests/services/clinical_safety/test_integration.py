"""
Integration tests for the SafetyEngine façade: all four components feeding
one merged SafetyReport.
"""

import json
import logging
import threading

import pytest

from app.core.logging import setup_logging
from app.services.clinical_safety import SafetyEngine, create_safety_engine, reset_config, update_config
from app.services.clinical_safety.models import Severity
from app.services.clinical_safety.rule_tables import AlternativeRule, RuleTables


@pytest.fixture
def engine():
    return SafetyEngine()


@pytest.fixture
def patient_request():
    return {
        "drugs": [
            {"name": "Warfarin Sodium", "rxcui": None},
            {"name": "Amiodarone HCl"},
            {"name": "Alprazolam"},
        ],
        "evidence": [
            {
                "source_type": "regulatory-label",
                "source_id": "setid-coumadin",
                "drug_a": {"name": "warfarin"},
                "drug_b": {"name": "amiodarone"},
                "mechanism": "CYP2C9 inhibition",
                "enzyme_pathway": "CYP2C9",
                "severity": "major",
                "evidence_level": "high",
            },
            {
                "source_type": "publication",
                "source_id": "PMID:123456",
                "drug_a": {"name": "amiodarone"},
                "drug_b": {"name": "warfarin"},
                "severity": "minor",
                "evidence_level": "low",
                "study_type": "case-report",
            },
            {"source_type": "trial", "source_id": "NCT-broken"},
        ],
        "observations": [
            {"code": {"text": "CYP2D6 genotype"}, "valueString": "*4/*4"},
        ],
        "opioids": [
            {"name": "codeine", "dose_mg_per_dose": 60, "doses_per_day": 4},
            {"name": "buprenorphine", "dose_mg_per_dose": 2, "doses_per_day": 1},
        ],
        "patient_context": {"age": 72},
    }


class TestBuildReport:
    """End-to-end report assembly."""

    def test_full_report(self, engine, patient_request):
        """Test a complete request through every component"""
        report = engine.build_report(**patient_request)

        # Evidence
        interaction = report.interactions["amiodarone__warfarin"]
        assert interaction.severity == Severity.MAJOR
        assert interaction.conflicted is True
        assert [i.key for i in report.pair_interactions] == ["amiodarone__warfarin"]
        assert [s.source_id for s in report.skipped_evidence] == ["NCT-broken"]

        # Alternatives
        assert [(a.for_drug.name, a.alternative.name, a.alternative.rxcui) for a in report.alternatives] == [
            ("Warfarin Sodium", "apixaban", "1364430"),
        ]

        # Phenotypes
        assert [(p.gene, p.phenotype) for p in report.phenotypes] == [("CYP2D6", "Poor metabolizer")]

        # MME: codeine 240 mg/day × 0.15 = 36; buprenorphine excluded
        assert report.mme.total_mme == 36.0
        assert [line.included for line in report.mme.details] == [True, False]
        assert report.mme.thresholds.caution_at_50 is False

        # Opioid safety
        issues = [f.issue for f in report.opioid_safety.findings]
        assert "Opioid + benzodiazepine/Z-drug" in issues
        assert "CYP2D6 PM/IM with codeine/tramadol" in issues
        assert report.opioid_safety.risk_flags == ["Age ≥ 65: increased sensitivity"]
        assert report.opioid_safety.recommendations == ["Offer naloxone and counsel household on use."]

    def test_report_is_json_serializable(self, engine, patient_request):
        """Test that the report dumps to JSON"""
        report = engine.build_report(**patient_request)
        payload = json.loads(report.model_dump_json())
        assert payload["mme"]["thresholds"] == {"caution_at_50": False, "avoid_above_90": False}
        assert payload["interactions"]["amiodarone__warfarin"]["severity"] == "major"
        assert payload["interactions"]["amiodarone__warfarin"]["sources_count"] == 2

    def test_empty_request(self, engine):
        """Test that an empty request leaves every section empty"""
        report = engine.build_report()
        assert report.interactions == {}
        assert report.alternatives == []
        assert report.phenotypes == []
        assert report.mme is None
        assert report.opioid_safety is None

    def test_co_prescribing_checked_without_dose_list(self, engine):
        """Test that opioid checks run over the drug list when no doses are given"""
        report = engine.build_report(drugs=["Oxycodone 5 mg", "Alprazolam"])

        assert report.mme is None
        issues = [f.issue for f in report.opioid_safety.findings]
        assert "Opioid + benzodiazepine/Z-drug" in issues

    def test_repeatable(self, engine, patient_request):
        """Test that the same request gives the same report"""
        first = engine.build_report(**patient_request).model_dump()
        second = engine.build_report(**patient_request).model_dump()
        assert first == second

    def test_concurrent_calls_share_engine(self, engine, patient_request):
        """Test concurrent reports from one shared engine"""
        expected = engine.build_report(**patient_request).model_dump()
        results = []

        def worker():
            results.append(engine.build_report(**patient_request).model_dump())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 8
        assert all(r == expected for r in results)


class TestEngineConstruction:
    """Injected and configured rule tables."""

    def test_injected_tables(self):
        """Test an engine built from injected rule tables"""
        rule = AlternativeRule(
            match_a="metformin", match_b="contrast", for_drug="metformin", suggestion_name="insulin",
        )
        engine = SafetyEngine(RuleTables(alternative_rules=(rule,), rxcui_lookup={}))
        suggestions = engine.match_alternatives(["Metformin", "iodinated contrast"])
        assert [(s.for_drug.name, s.alternative.name, s.alternative.rxcui) for s in suggestions] == [
            ("Metformin", "insulin", None),
        ]

    def test_factory_reads_configured_path(self, tmp_path):
        """Test that the factory loads tables from the configured path"""
        path = tmp_path / "tables.json"
        path.write_text(json.dumps({"opioid_conversions": [{"name": "morphine", "kind": "linear", "factor": 1}]}))
        try:
            update_config(rule_tables_path=str(path))
            engine = create_safety_engine()
        finally:
            reset_config()

        result = engine.calculate_mme([{"name": "oxycodone", "total_daily_dose_mg": 20}])
        assert result.total_mme == 0.0
        assert result.details[0].included is False

    def test_factory_defaults(self):
        """Test that the factory uses the default tables"""
        engine = create_safety_engine()
        assert engine.calculate_mme([{"name": "oxycodone", "total_daily_dose_mg": 20}]).total_mme == 30.0


class TestLogging:
    """Host-side logging setup."""

    def test_setup_logging_configures_package_logger(self):
        """Test that setup_logging configures the package logger"""
        package_logger = logging.getLogger("app.services.clinical_safety")
        saved = (package_logger.level, list(package_logger.handlers), package_logger.propagate)
        try:
            setup_logging("debug")
            assert package_logger.level == logging.DEBUG
            assert len(package_logger.handlers) == 1
            assert logging.getLogger("app.services.clinical_safety.dose_equivalence").getEffectiveLevel() == logging.DEBUG
        finally:
            package_logger.setLevel(saved[0])
            package_logger.handlers = saved[1]
            package_logger.propagate = saved[2]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
