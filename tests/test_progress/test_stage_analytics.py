"""
Tests for the application efficiency and yield analytics.
"""

import pytest

from orderflow.services.progress.enums import ProgressStage, YieldEfficiency
from orderflow.services.progress.stages import (
    ResultAnalysis,
    analyze_stages,
    application_efficiency,
    area_variance,
    has_yield_gain,
    result_analysis,
    yield_efficiency,
    yield_per_area,
)

ESTIMATE_ONLY = {"est_applied_area": 80.0}
APPLIED = {"est_applied_area": 80.0, "actual_applied_area": 100.0}
YIELD = {"status": True, "yield_amount": 750.0}
NO_YIELD = {"status": False}


def _snapshot(**stages):
    return {ProgressStage(name): data for name, data in stages.items()}


# ============================================================================
# Applied area
# ============================================================================


class TestApplicationEfficiency:
    def test_actual_over_estimate(self):
        assert application_efficiency(_snapshot(applied=APPLIED)) == 125.0

    def test_rounded_to_two_decimals(self):
        snapshot = _snapshot(applied={"est_applied_area": 3.0, "actual_applied_area": 2.0})
        assert application_efficiency(snapshot) == 66.67

    def test_no_applied_record(self):
        assert application_efficiency(_snapshot()) is None

    def test_actual_not_recorded(self):
        assert application_efficiency(_snapshot(applied=ESTIMATE_ONLY)) is None

    def test_zero_actual_counts_as_unrecorded(self):
        snapshot = _snapshot(applied={"est_applied_area": 80.0, "actual_applied_area": 0})
        assert application_efficiency(snapshot) is None


class TestAreaVariance:
    def test_over_applied(self):
        assert area_variance(_snapshot(applied=APPLIED)) == 20.0

    def test_under_applied(self):
        snapshot = _snapshot(applied={"est_applied_area": 80.0, "actual_applied_area": 60.0})
        assert area_variance(snapshot) == -20.0

    def test_no_applied_record(self):
        assert area_variance(_snapshot()) is None

    def test_actual_not_recorded(self):
        assert area_variance(_snapshot(applied=ESTIMATE_ONLY)) is None


# ============================================================================
# Yield
# ============================================================================


class TestYieldGain:
    def test_yield_obtained(self):
        assert has_yield_gain(_snapshot(result=YIELD)) is True

    def test_no_yield(self):
        assert has_yield_gain(_snapshot(result=NO_YIELD)) is False

    def test_no_result_record(self):
        assert has_yield_gain(_snapshot(applied=APPLIED)) is False


class TestYieldPerArea:
    def test_yield_over_actual_area(self):
        assert yield_per_area(_snapshot(applied=APPLIED, result=YIELD)) == 7.5

    @pytest.mark.parametrize(
        "stages",
        [
            {"applied": APPLIED},
            {"result": YIELD},
            {"applied": ESTIMATE_ONLY, "result": YIELD},
            {"applied": APPLIED, "result": NO_YIELD},
            {"applied": APPLIED, "result": {"status": False, "yield_amount": 0.0}},
        ],
    )
    def test_missing_inputs(self, stages):
        assert yield_per_area(_snapshot(**stages)) is None


class TestYieldEfficiency:
    @pytest.mark.parametrize(
        "per_area, band",
        [
            (10, YieldEfficiency.HIGH),
            (25.5, YieldEfficiency.HIGH),
            (9.99, YieldEfficiency.MEDIUM),
            (5, YieldEfficiency.MEDIUM),
            (4.99, YieldEfficiency.LOW),
            (0.5, YieldEfficiency.LOW),
        ],
    )
    def test_bands(self, per_area, band):
        assert yield_efficiency(per_area) is band

    def test_unknown_yield(self):
        assert yield_efficiency(None) is None


# ============================================================================
# Result analysis
# ============================================================================


class TestResultAnalysis:
    def test_full_analysis(self):
        analysis = result_analysis(_snapshot(applied=APPLIED, result=YIELD))

        assert analysis == ResultAnalysis(
            has_yield=True,
            yield_amount=750.0,
            applied_area=100.0,
            yield_per_area=7.5,
            efficiency=YieldEfficiency.MEDIUM,
        )

    def test_estimate_used_until_actual_recorded(self):
        analysis = result_analysis(_snapshot(applied=ESTIMATE_ONLY, result=YIELD))

        assert analysis.applied_area == 80.0
        assert analysis.yield_per_area is None
        assert analysis.efficiency is None

    def test_no_yield(self):
        analysis = result_analysis(_snapshot(applied=APPLIED, result=NO_YIELD))

        assert analysis.to_dict() == {
            "has_yield": False,
            "yield_amount": None,
            "applied_area": 100.0,
            "yield_per_area": None,
            "efficiency": None,
        }

    @pytest.mark.parametrize("stages", [{}, {"applied": APPLIED}, {"result": YIELD}])
    def test_requires_applied_and_result(self, stages):
        assert result_analysis(_snapshot(**stages)) is None

    def test_to_dict_uses_band_value(self):
        analysis = result_analysis(
            _snapshot(applied=APPLIED, result={"status": True, "yield_amount": 1200.0})
        )
        assert analysis.to_dict()["efficiency"] == "high"


class TestAnalyzeStages:
    def test_empty_order(self):
        analysis = analyze_stages(_snapshot())

        assert analysis.application_efficiency is None
        assert analysis.area_variance is None
        assert analysis.has_yield_gain is False
        assert analysis.yield_per_area is None
        assert analysis.result is None

    def test_complete_order(self):
        analysis = analyze_stages(_snapshot(applied=APPLIED, result=YIELD))

        assert analysis.application_efficiency == 125.0
        assert analysis.area_variance == 20.0
        assert analysis.has_yield_gain is True
        assert analysis.result.efficiency is YieldEfficiency.MEDIUM
