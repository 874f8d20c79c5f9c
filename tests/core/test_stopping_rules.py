"""
Tests for the CAT stopping rules.

Tests cover:
- Each stop state independently
- Priority order when several rules hold at once
- TerminationDecision.should_stop and details
- Input validation
"""

import pytest

from cat_engine.core.cat.stopping_rules import evaluate_termination
from libs.domain_types import TerminationReason


def _evaluate(**overrides):
    kwargs = dict(
        se=0.5,
        num_items=12,
        min_items=10,
        max_items=50,
        se_target=0.3,
        eligible_remaining=100,
    )
    kwargs.update(overrides)
    return evaluate_termination(**kwargs)


class TestStopStates:
    def test_continue(self):
        decision = _evaluate()
        assert decision.reason == TerminationReason.CONTINUE
        assert not decision.should_stop

    def test_max_items(self):
        decision = _evaluate(num_items=50)
        assert decision.reason == TerminationReason.STOP_MAX_ITEMS
        assert decision.should_stop

    def test_precision(self):
        assert _evaluate(se=0.29).reason == TerminationReason.STOP_PRECISION

    def test_precision_at_exact_target(self):
        assert _evaluate(se=0.3).reason == TerminationReason.STOP_PRECISION

    def test_precision_waits_for_min_items(self):
        assert _evaluate(se=0.1, num_items=9).reason == TerminationReason.CONTINUE

    def test_pool_exhausted(self):
        assert (
            _evaluate(eligible_remaining=0).reason
            == TerminationReason.STOP_POOL_EXHAUSTED
        )


class TestPriority:
    def test_max_items_beats_precision(self):
        assert _evaluate(se=0.1, num_items=50).reason == TerminationReason.STOP_MAX_ITEMS

    def test_precision_beats_pool_exhausted(self):
        decision = _evaluate(se=0.1, eligible_remaining=0)
        assert decision.reason == TerminationReason.STOP_PRECISION

    def test_max_items_beats_pool_exhausted(self):
        decision = _evaluate(num_items=50, eligible_remaining=0)
        assert decision.reason == TerminationReason.STOP_MAX_ITEMS

    def test_pool_exhausted_before_min_items(self):
        decision = _evaluate(num_items=4, eligible_remaining=0)
        assert decision.reason == TerminationReason.STOP_POOL_EXHAUSTED


class TestDetails:
    def test_details_record_inputs(self):
        details = _evaluate(num_items=10).details
        assert details["min_items_met"] is True
        assert details["at_max_items"] is False
        assert details["se"] == 0.5
        assert details["eligible_remaining"] == 100


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [{"se": -0.1}, {"num_items": -1}, {"eligible_remaining": -3}],
    )
    def test_negative_inputs_raise(self, overrides):
        with pytest.raises(ValueError, match="non-negative"):
            _evaluate(**overrides)
