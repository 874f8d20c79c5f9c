"""
Tests for the session controller.

Tests cover:
- start: initial state, configuration validation, generated ids and seeds
- Full attempts: no repeated items, length bounds, terminal reasons
- submit_response transition errors
- States whose estimate or tally does not follow from their responses
- Determinism and purity of next_item
- Serialization round-trip of the attempt state
- Pool exhaustion, excluded items, external termination
- finalize: summary contents, unanswered items
- Exposure bookkeeping and store failures
"""

import random

import pytest

from cat_engine.core.cat.engine import (
    SessionController,
    deserialize_state,
    serialize_state,
    start,
)
from cat_engine.core.cat.exposure_store import InMemoryExposureStore
from cat_engine.core.errors import (
    ExposureStoreError,
    InvalidConfiguration,
    InvalidStateTransition,
)
from cat_engine.schemas.cat import (
    UNBOUNDED_STANDARD_ERROR,
    AbilityEstimate,
    AttemptState,
    CATConfig,
    CategoryLimit,
    Item,
    ItemBank,
    LinearScoreTransform,
    TerminationSignal,
)
from libs.domain_types import (
    AttemptStatus,
    EstimationMethod,
    IRTModel,
    PerformanceLevel,
    TerminationReason,
)
from tests.conftest import build_item_bank, respond_2pl


def run_attempt(controller, answer, seed=1, **start_kwargs):
    """Drive an attempt to termination, returning the final state."""
    state = controller.start(seed=seed, **start_kwargs)
    while True:
        nxt = controller.next_item(state)
        if isinstance(nxt, TerminationSignal):
            return state
        state = controller.submit_response(state, nxt.id, answer(nxt))


class FailingExposureStore(InMemoryExposureStore):
    def increment(self, item_id: str) -> int:
        raise ExposureStoreError("store unavailable")

    def record_attempt(self, session_id=None) -> int:
        raise ExposureStoreError("store unavailable")


# ── start ────────────────────────────────────────────────────────────────────


class TestStart:
    def test_initial_state(self, controller):
        state = controller.start(session_id="abc", seed=5)
        assert state.session_id == "abc"
        assert state.seed == 5
        assert state.status == AttemptStatus.ACTIVE
        assert state.termination_reason == TerminationReason.CONTINUE
        assert state.administered_item_ids == ()
        assert state.current_estimate.theta == 0.0
        assert state.current_estimate.standard_error == UNBOUNDED_STANDARD_ERROR

    def test_generates_session_id_and_seed(self, controller):
        first, second = controller.start(), controller.start()
        assert first.session_id != second.session_id
        assert isinstance(first.seed, int)

    def test_accepts_dict_config(self, item_bank):
        controller = SessionController(item_bank, {"min_items": 5, "max_items": 15})
        assert controller.config.max_items == 15

    def test_bad_dict_config_raises(self, item_bank):
        with pytest.raises(InvalidConfiguration):
            SessionController(item_bank, {"min_items": "many"})

    @pytest.mark.parametrize(
        "overrides",
        [
            {"min_items": 30, "max_items": 20},
            {"max_items": 0, "min_items": 0},
            {"theta_start": 5.0},
            {"theta_min": 1.0, "theta_max": -1.0},
            {"se_target": 0.0},
            {"category_targets": {"A": 70.0, "B": 10.0}},
            {"randomesque_n": 0},
        ],
    )
    def test_invalid_configuration_raises(self, item_bank, overrides):
        controller = SessionController(item_bank, CATConfig(**overrides))
        with pytest.raises(InvalidConfiguration):
            controller.start()

    def test_config_targets_override_bank_targets(self, item_bank):
        controller = SessionController(
            item_bank, CATConfig(category_targets={"A": 70.0, "B": 30.0})
        )
        assert controller.category_targets == {"A": 70.0, "B": 30.0}

    def test_bank_targets_used_when_config_has_none(self, controller):
        assert controller.category_targets == {"A": 50.0, "B": 50.0}

    def test_module_level_start(self, item_bank):
        state = start(CATConfig(), item_bank, session_id="x", seed=3)
        assert state.session_id == "x"
        assert state.seed == 3

    def test_module_level_start_excludes_items(self, item_bank):
        state = start(CATConfig(), item_bank, excluded_item_ids=["A-00", "B-01"])
        assert state.excluded_item_ids == ("A-00", "B-01")

    def test_invalid_category_limits_raise(self, item_bank):
        config = CATConfig(
            max_items=20,
            category_limits={
                "A": CategoryLimit(min_items=15),
                "B": CategoryLimit(min_items=10),
            },
        )
        with pytest.raises(InvalidConfiguration, match="minimums need 25"):
            SessionController(item_bank, config).start()


# ── full attempts ────────────────────────────────────────────────────────────


class TestFullAttempt:
    @pytest.mark.parametrize("true_theta", [-2.0, -0.5, 0.0, 1.0, 2.5])
    def test_no_repeats_and_length_bounds(self, controller, true_theta):
        state = run_attempt(controller, respond_2pl(true_theta, random.Random(3)))

        administered = state.administered_item_ids
        assert len(administered) == len(set(administered))
        assert 10 <= len(administered) <= 50
        assert state.is_terminated
        assert state.termination_reason in {
            TerminationReason.STOP_PRECISION,
            TerminationReason.STOP_MAX_ITEMS,
        }

    def test_precision_stop_meets_target(self, controller):
        state = run_attempt(controller, respond_2pl(0.0, random.Random(8)))
        if state.termination_reason == TerminationReason.STOP_PRECISION:
            assert state.current_estimate.standard_error <= 0.3

    def test_estimate_tracks_true_ability(self, controller):
        high = run_attempt(controller, respond_2pl(2.0, random.Random(1)), seed=1)
        low = run_attempt(controller, respond_2pl(-2.0, random.Random(1)), seed=1)
        assert high.current_estimate.theta > low.current_estimate.theta

    @pytest.mark.parametrize("model", [IRTModel.RASCH, IRTModel.THREE_PL])
    def test_other_models(self, model):
        bank = build_item_bank(with_guessing=True)
        controller = SessionController(bank, CATConfig(model=model))
        state = run_attempt(controller, respond_2pl(0.5, random.Random(2)))
        assert state.is_terminated
        assert -4.0 <= state.current_estimate.theta <= 4.0

    def test_eap_only_configuration(self, item_bank):
        controller = SessionController(
            item_bank, CATConfig(estimation_method=EstimationMethod.EAP)
        )
        state = run_attempt(controller, respond_2pl(0.0, random.Random(4)))
        assert state.current_estimate.method == EstimationMethod.EAP

    def test_history_is_consistent(self, controller):
        state = run_attempt(controller, respond_2pl(0.3, random.Random(6)))
        assert [r.item_id for r in state.responses] == list(state.administered_item_ids)
        assert sum(state.category_tally.values()) == state.items_administered


# ── transitions ──────────────────────────────────────────────────────────────


class TestSubmitResponseErrors:
    def test_response_for_inactive_item(self, controller):
        state = controller.start(seed=1)
        active = controller.next_item(state)
        other = next(i for i in controller.item_bank.items if i.id != active.id)
        with pytest.raises(InvalidStateTransition, match="not for the active item"):
            controller.submit_response(state, other.id, True)

    def test_repeated_item(self, controller):
        state = controller.start(seed=1)
        item = controller.next_item(state)
        state = controller.submit_response(state, item.id, True)
        with pytest.raises(InvalidStateTransition, match="already been administered"):
            controller.submit_response(state, item.id, False)

    def test_unknown_item(self, controller):
        with pytest.raises(InvalidStateTransition, match="not in the exam's item bank"):
            controller.submit_response(controller.start(seed=1), "nope", True)

    def test_terminated_attempt(self, controller):
        state = controller.terminate(controller.start(seed=1))
        item = controller.item_bank.items[0]
        with pytest.raises(InvalidStateTransition, match="already terminated"):
            controller.submit_response(state, item.id, True)

    def test_state_is_not_mutated(self, controller):
        state = controller.start(seed=1)
        item = controller.next_item(state)
        controller.submit_response(state, item.id, True)
        assert state.administered_item_ids == ()


class TestStateIntegrity:
    @pytest.fixture
    def answered_state(self, controller):
        state = controller.start(seed=3)
        for correct in (True, False):
            item = controller.next_item(state)
            state = controller.submit_response(state, item.id, correct)
        return state

    def test_forged_estimate_rejected_by_finalize(self, controller, answered_state):
        forged = answered_state.model_copy(
            update={
                "current_estimate": AbilityEstimate(theta=3.9, standard_error=0.01)
            }
        )
        with pytest.raises(InvalidStateTransition, match="response history"):
            controller.finalize(forged)

    def test_forged_estimate_rejected_by_next_item(self, controller, answered_state):
        forged = answered_state.model_copy(
            update={
                "current_estimate": answered_state.current_estimate.model_copy(
                    update={"theta": answered_state.current_estimate.theta + 0.5}
                )
            }
        )
        with pytest.raises(InvalidStateTransition):
            controller.next_item(forged)

    def test_forged_tally_rejected_by_submit(self, controller, answered_state):
        tally = dict(answered_state.category_tally)
        tally["A"] = tally.get("A", 0) + 1
        forged = answered_state.model_copy(update={"category_tally": tally})
        item = controller.next_item(answered_state)
        with pytest.raises(InvalidStateTransition, match="response history"):
            controller.submit_response(forged, item.id, True)

    def test_forged_initial_estimate_rejected(self, controller):
        state = controller.start(seed=3)
        forged = state.model_copy(
            update={"current_estimate": AbilityEstimate(theta=2.0, standard_error=0.2)}
        )
        with pytest.raises(InvalidStateTransition):
            controller.next_item(forged)

    def test_genuine_state_accepted_after_round_trip(self, controller, answered_state):
        restored = deserialize_state(serialize_state(answered_state))
        assert controller.finalize(restored).final_theta == pytest.approx(
            answered_state.current_estimate.theta
        )


class TestDeterminism:
    def test_next_item_is_pure(self, controller):
        state = controller.start(seed=9)
        assert controller.next_item(state) == controller.next_item(state)

    def test_same_seed_and_responses_same_sequence(self, item_bank):
        def sequence():
            controller = SessionController(item_bank, CATConfig())
            answers = iter([True, False] * 30)
            state = run_attempt(controller, lambda item: next(answers), seed=21)
            return state.administered_item_ids

        assert sequence() == sequence()


class TestSerialization:
    def test_round_trip(self, controller):
        state = controller.start(seed=4)
        for _ in range(3):
            item = controller.next_item(state)
            state = controller.submit_response(state, item.id, item.difficulty < 0)

        restored = deserialize_state(serialize_state(state))
        assert restored == state
        assert controller.next_item(restored) == controller.next_item(state)

    def test_initial_state_round_trip(self, controller):
        state = controller.start(seed=4)
        assert deserialize_state(serialize_state(state)) == state

    def test_inconsistent_payload_rejected(self, controller):
        state = controller.start(seed=4)
        payload = state.model_dump(mode="json")
        payload["administered_item_ids"] = ["A-00"]
        with pytest.raises(ValueError):
            AttemptState.model_validate(payload)


# ── pool exhaustion, exclusions, termination ────────────────────────────────


class TestPoolAndTermination:
    @pytest.fixture
    def small_controller(self):
        bank = ItemBank(
            items=[
                Item(id=f"i{n}", discrimination=1.0, difficulty=d)
                for n, d in enumerate([-1.0, 0.0, 1.0])
            ]
        )
        return SessionController(
            bank, CATConfig(min_items=5, max_items=10, content_balancing_enabled=False)
        )

    def test_pool_exhausted(self, small_controller):
        answers = iter([True, False, True])
        state = run_attempt(small_controller, lambda item: next(answers))
        assert state.items_administered == 3
        assert state.termination_reason == TerminationReason.STOP_POOL_EXHAUSTED
        assert small_controller.next_item(state) == TerminationSignal(
            reason=TerminationReason.STOP_POOL_EXHAUSTED
        )

    def test_all_excluded_signals_exhaustion(self, small_controller):
        state = small_controller.start(excluded_item_ids=["i0", "i1", "i2"])
        assert small_controller.next_item(state) == TerminationSignal(
            reason=TerminationReason.STOP_POOL_EXHAUSTED
        )
        summary = small_controller.finalize(state)
        assert summary.termination_reason == TerminationReason.STOP_POOL_EXHAUSTED
        assert summary.items_administered == 0

    def test_terminate_without_reason_on_empty_pool(self, small_controller):
        state = small_controller.start(excluded_item_ids=["i0", "i1", "i2"])
        stopped = small_controller.terminate(state)
        assert stopped.termination_reason == TerminationReason.STOP_POOL_EXHAUSTED

    def test_terminate_without_reason_is_external(self, small_controller):
        state = small_controller.start(excluded_item_ids=["i0"])
        stopped = small_controller.terminate(state)
        assert stopped.termination_reason == TerminationReason.STOP_EXTERNAL

    def test_excluded_items_never_administered(self, controller):
        excluded = [item.id for item in controller.item_bank.items[::3]]
        state = run_attempt(
            controller,
            respond_2pl(0.0, random.Random(2)),
            excluded_item_ids=excluded,
        )
        assert not set(excluded) & set(state.administered_item_ids)

    def test_terminate_external(self, controller, exposure_store):
        state = controller.terminate(controller.start(seed=1))
        assert state.status == AttemptStatus.TERMINATED
        assert state.termination_reason == TerminationReason.STOP_EXTERNAL
        assert exposure_store.attempt_count() == 1
        assert controller.next_item(state) == TerminationSignal(
            reason=TerminationReason.STOP_EXTERNAL
        )

    def test_terminate_is_idempotent(self, controller, exposure_store):
        state = controller.terminate(controller.start(seed=1))
        assert controller.terminate(state, TerminationReason.STOP_MAX_ITEMS) is state
        assert exposure_store.attempt_count() == 1

    def test_terminate_with_continue_raises(self, controller):
        with pytest.raises(ValueError, match="non-terminal"):
            controller.terminate(controller.start(), TerminationReason.CONTINUE)


# ── finalize ─────────────────────────────────────────────────────────────────


class TestFinalize:
    def test_summary_of_completed_attempt(self, item_bank):
        config = CATConfig(score_transform=LinearScoreTransform.from_ranges(passing_score=500))
        controller = SessionController(item_bank, config)
        state = run_attempt(controller, respond_2pl(1.0, random.Random(5)))

        summary = controller.finalize(state)

        assert summary.session_id == state.session_id
        assert summary.final_theta == state.current_estimate.theta
        assert summary.items_administered == state.items_administered
        assert summary.administered_item_ids == list(state.administered_item_ids)
        assert summary.correct_count == state.correct_count
        assert 200 <= summary.scaled_score <= 800
        assert summary.pass_fail == (summary.scaled_score >= 500)
        low, high = summary.confidence_interval
        assert low <= summary.final_theta <= high
        assert 0.0 <= summary.percentile <= 100.0
        assert summary.unanswered_count == 0
        assert set(summary.category_scores) <= {"A", "B"}
        assert (
            sum(s.items_administered for s in summary.category_scores.values())
            == summary.items_administered
        )

    def test_finalize_active_attempt_terminates_it(self, controller, exposure_store):
        state = controller.start(seed=2)
        for _ in range(4):
            item = controller.next_item(state)
            state = controller.submit_response(state, item.id, True)

        summary = controller.finalize(state)

        assert summary.termination_reason == TerminationReason.STOP_EXTERNAL
        assert summary.items_administered == 4
        assert summary.unanswered_count == 6
        assert exposure_store.attempt_count() == 1

    def test_repeated_finalize_counts_attempt_once(self, controller, exposure_store):
        state = controller.start(seed=2)
        item = controller.next_item(state)
        state = controller.submit_response(state, item.id, False)

        first = controller.finalize(state)
        second = controller.finalize(state)

        assert first == second
        assert exposure_store.attempt_count() == 1

    def test_terminate_then_finalize_counts_attempt_once(
        self, controller, exposure_store
    ):
        state = controller.start(seed=2)
        item = controller.next_item(state)
        state = controller.submit_response(state, item.id, True)

        controller.finalize(controller.terminate(state))
        controller.finalize(state)

        assert exposure_store.attempt_count() == 1

    def test_finalize_without_responses(self, controller):
        summary = controller.finalize(controller.start(seed=2))
        assert summary.items_administered == 0
        assert summary.accuracy == 0.0
        assert summary.final_theta == 0.0
        assert summary.performance_level == PerformanceLevel.AVERAGE
        assert summary.pass_fail is None


# ── exposure bookkeeping ─────────────────────────────────────────────────────


class TestExposureBookkeeping:
    def test_each_administration_counted(self, controller, exposure_store):
        state = run_attempt(controller, respond_2pl(0.0, random.Random(9)))
        counts = exposure_store.get_counts()
        assert counts == {item_id: 1 for item_id in state.administered_item_ids}
        assert exposure_store.attempt_count() == 1

    def test_store_failure_does_not_fail_attempt(self, item_bank):
        controller = SessionController(
            item_bank, CATConfig(), exposure_store=FailingExposureStore()
        )
        state = run_attempt(controller, respond_2pl(0.0, random.Random(9)))
        assert state.is_terminated
