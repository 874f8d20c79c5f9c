"""Tests for shared domain types package."""

import json

import pytest

from libs.domain_types import (
    AttemptStatus,
    EstimationMethod,
    ExposureMethod,
    IRTModel,
    PerformanceLevel,
    TerminationReason,
)


class TestIRTModel:
    """Tests for IRTModel enum."""

    def test_values(self):
        assert IRTModel.RASCH.value == "1PL"
        assert IRTModel.TWO_PL.value == "2PL"
        assert IRTModel.THREE_PL.value == "3PL"

    def test_count(self):
        assert len(IRTModel) == 3

    def test_str_mixin(self):
        assert IRTModel("3PL") == IRTModel.THREE_PL

    def test_json_serializable(self):
        assert json.dumps(IRTModel.TWO_PL) == '"2PL"'


class TestEstimationMethod:
    """Tests for EstimationMethod enum."""

    def test_values(self):
        assert EstimationMethod.MLE.value == "MLE"
        assert EstimationMethod.EAP.value == "EAP"

    def test_count(self):
        assert len(EstimationMethod) == 2


class TestAttemptStatus:
    """Tests for AttemptStatus enum."""

    def test_values(self):
        assert AttemptStatus.ACTIVE.value == "active"
        assert AttemptStatus.TERMINATED.value == "terminated"


class TestTerminationReason:
    """Tests for TerminationReason enum."""

    def test_values(self):
        assert TerminationReason.CONTINUE.value == "continue"
        assert TerminationReason.STOP_PRECISION.value == "stop_precision"
        assert TerminationReason.STOP_MAX_ITEMS.value == "stop_max_items"
        assert TerminationReason.STOP_POOL_EXHAUSTED.value == "stop_pool_exhausted"
        assert TerminationReason.STOP_EXTERNAL.value == "stop_external"

    def test_count(self):
        assert len(TerminationReason) == 5

    def test_only_continue_is_not_terminal(self):
        terminal = {reason for reason in TerminationReason if reason.is_terminal}
        assert TerminationReason.CONTINUE not in terminal
        assert len(terminal) == 4


class TestExposureAndPerformance:
    """Tests for ExposureMethod and PerformanceLevel enums."""

    def test_exposure_methods(self):
        assert ExposureMethod("sympson_hetter") is ExposureMethod.SYMPSON_HETTER
        assert ExposureMethod("randomesque") is ExposureMethod.RANDOMESQUE

    def test_performance_levels(self):
        assert PerformanceLevel.ABOVE_AVERAGE.value == "Above Average"
        assert len(PerformanceLevel) == 5


class TestBackwardCompatibility:
    """Tests verifying enums behave as plain strings."""

    def test_all_enums_are_str_subclass(self):
        """All domain enums should be str subclasses for JSON serialization."""
        for enum_cls in [
            IRTModel,
            EstimationMethod,
            AttemptStatus,
            TerminationReason,
            ExposureMethod,
            PerformanceLevel,
        ]:
            for member in enum_cls:
                assert isinstance(member, str), (
                    f"{enum_cls.__name__}.{member.name} is not a str instance"
                )

    def test_invalid_value_raises(self):
        """Invalid values should raise ValueError."""
        with pytest.raises(ValueError):
            IRTModel("4PL")
        with pytest.raises(ValueError):
            TerminationReason("timeout")
