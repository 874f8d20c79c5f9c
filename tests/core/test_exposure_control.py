"""
Tests for Sympson-Hetter and randomesque exposure control.

Tests cover:
- apply_sympson_hetter: gate, per-attempt draws, rejection cap, fallback
- Simulation: an always-top item with k = 0.25 is administered in ~25% of attempts
- apply_randomesque: top-N selection, determinism with a seeded generator
- recalibrate_control_parameters: proportional update, clamping, validation
- ExposureMonitor: rates, over-exposure alerts
"""

import random

import pytest

from cat_engine.core.cat.engine import SessionController
from cat_engine.core.cat.exposure_control import (
    ExposureMonitor,
    apply_randomesque,
    apply_sympson_hetter,
    recalibrate_control_parameters,
    step_rng,
    sympson_hetter_draw,
)
from cat_engine.core.cat.exposure_store import InMemoryExposureStore
from cat_engine.core.cat.item_selection import ItemCandidate
from cat_engine.schemas.cat import CATConfig, Item, ItemBank, TerminationSignal


def _make_ranked_candidates(n: int = 10) -> list[ItemCandidate]:
    """Create ranked candidates sorted by information (descending)."""
    return [
        ItemCandidate(
            item=Item(id=f"item-{i:02d}", discrimination=1.0, difficulty=0.0),
            information=10.0 - i,
            score=1.0 - i / n,
        )
        for i in range(n)
    ]


# ── Sympson-Hetter ───────────────────────────────────────────────────────────


class TestApplySympsonHetter:
    def test_k_of_one_always_accepts_top(self):
        candidates = _make_ranked_candidates()
        for seed in range(50):
            selected, rejected = apply_sympson_hetter(candidates, {}, seed)
            assert selected is candidates[0]
            assert rejected == []

    def test_draw_is_fixed_per_attempt_and_item(self):
        assert sympson_hetter_draw(11, "item-00") == sympson_hetter_draw(11, "item-00")
        assert sympson_hetter_draw(11, "item-00") != sympson_hetter_draw(12, "item-00")

    def test_rejects_when_draw_exceeds_k(self):
        candidates = _make_ranked_candidates()
        seed = next(s for s in range(1000) if sympson_hetter_draw(s, "item-00") > 0.5)
        selected, rejected = apply_sympson_hetter(candidates, {"item-00": 0.5}, seed)
        assert rejected == ["item-00"]
        assert selected is candidates[1]

    def test_rejection_cap_accepts_next_unconditionally(self):
        candidates = _make_ranked_candidates(5)
        tiny_k = {c.item.id: 1e-9 for c in candidates}
        selected, rejected = apply_sympson_hetter(
            candidates, tiny_k, seed=3, max_rejections=2
        )
        assert rejected == ["item-00", "item-01"]
        assert selected is candidates[2]

    def test_all_rejected_falls_back_to_best(self):
        candidates = _make_ranked_candidates(3)
        tiny_k = {c.item.id: 1e-9 for c in candidates}
        selected, rejected = apply_sympson_hetter(
            candidates, tiny_k, seed=3, max_rejections=10
        )
        assert len(rejected) == 3
        assert selected is candidates[0]

    def test_empty_list_raises(self):
        with pytest.raises(ValueError, match="empty"):
            apply_sympson_hetter([], {}, seed=1)

    def test_negative_max_rejections_raises(self):
        with pytest.raises(ValueError, match="max_rejections"):
            apply_sympson_hetter(_make_ranked_candidates(), {}, seed=1, max_rejections=-1)


class TestSympsonHetterSimulation:
    """An item that is always the most informative, with k = 0.25."""

    N_ATTEMPTS = 1000

    @pytest.fixture
    def bank(self) -> ItemBank:
        items = [Item(id="hot", discrimination=2.5, difficulty=0.0, category="A")]
        items += [
            Item(
                id=f"filler-{i:02d}",
                discrimination=0.9,
                difficulty=-2.0 + 4.0 * i / 19,
                category="A",
            )
            for i in range(20)
        ]
        return ItemBank(items=items)

    def test_administration_rate_close_to_k(self, bank):
        store = InMemoryExposureStore(control_parameters={"hot": 0.25})
        controller = SessionController(
            bank,
            CATConfig(min_items=5, max_items=5, content_balancing_enabled=False),
            exposure_store=store,
        )

        for seed in range(self.N_ATTEMPTS):
            state = controller.start(session_id=f"s{seed}", seed=seed)
            answer = True
            while True:
                nxt = controller.next_item(state)
                if isinstance(nxt, TerminationSignal):
                    break
                state = controller.submit_response(state, nxt.id, answer)
                answer = not answer

        assert store.attempt_count() == self.N_ATTEMPTS
        rate = store.get_count("hot") / store.attempt_count()
        assert rate == pytest.approx(0.25, abs=0.05)


# ── Randomesque ──────────────────────────────────────────────────────────────


class TestApplyRandomesque:
    def test_selects_from_top_n(self):
        candidates = _make_ranked_candidates(20)
        rng = random.Random(42)
        selections = {apply_randomesque(candidates, n=5, rng=rng).item.id for _ in range(200)}
        assert selections == {f"item-{i:02d}" for i in range(5)}

    def test_deterministic_for_seed_and_step(self):
        candidates = _make_ranked_candidates(20)
        first = apply_randomesque(candidates, n=5, rng=step_rng(99, 3))
        second = apply_randomesque(candidates, n=5, rng=step_rng(99, 3))
        assert first is second

    def test_n_larger_than_list(self):
        candidates = _make_ranked_candidates(2)
        selected = apply_randomesque(candidates, n=10, rng=random.Random(0))
        assert selected in candidates

    def test_n_of_one_is_greedy(self):
        candidates = _make_ranked_candidates(5)
        assert apply_randomesque(candidates, n=1, rng=random.Random(0)) is candidates[0]

    def test_invalid_n_raises(self):
        with pytest.raises(ValueError, match="n must be positive"):
            apply_randomesque(_make_ranked_candidates(), n=0)


# ── Recalibration ────────────────────────────────────────────────────────────


class TestRecalibrateControlParameters:
    def test_overexposed_item_gets_smaller_k(self):
        new_k = recalibrate_control_parameters({"a": 500}, 1000, {"a": 1.0}, target_rate=0.25)
        assert new_k["a"] == pytest.approx(0.5)

    def test_underexposed_item_grows_to_ceiling(self):
        new_k = recalibrate_control_parameters({"a": 100}, 1000, {"a": 0.5}, target_rate=0.25)
        assert new_k["a"] == pytest.approx(1.0)

    def test_unexposed_item_grows(self):
        new_k = recalibrate_control_parameters({}, 1000, {"a": 0.5})
        assert new_k["a"] == pytest.approx(0.55)

    def test_floor_applied(self):
        new_k = recalibrate_control_parameters({"a": 1000}, 1000, {"a": 0.01}, floor=0.05)
        assert new_k["a"] == pytest.approx(0.05)

    def test_missing_current_k_defaults_to_one(self):
        new_k = recalibrate_control_parameters({"a": 500, "b": 250}, 1000, {})
        assert new_k == {"a": pytest.approx(0.5), "b": pytest.approx(1.0)}

    def test_damping(self):
        new_k = recalibrate_control_parameters({"a": 1000}, 1000, {"a": 1.0}, alpha=0.5)
        assert new_k["a"] == pytest.approx(0.5)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"attempts": 0},
            {"target_rate": 0.0},
            {"floor": 0.0},
            {"floor": 0.5, "ceiling": 0.4},
            {"alpha": 0.0},
        ],
    )
    def test_invalid_arguments_raise(self, kwargs):
        args = {"counts": {"a": 1}, "attempts": 10, "current_k": {}}
        args.update(kwargs)
        with pytest.raises(ValueError):
            recalibrate_control_parameters(**args)


# ── Monitoring ───────────────────────────────────────────────────────────────


class TestExposureMonitor:
    @pytest.fixture
    def store(self) -> InMemoryExposureStore:
        store = InMemoryExposureStore()
        for _ in range(10):
            store.record_attempt()
        for _ in range(6):
            store.increment("a")
        for _ in range(3):
            store.increment("b")
        store.increment("c")
        return store

    def test_rates_per_attempt(self, store):
        monitor = ExposureMonitor(store)
        assert monitor.get_exposure_rate("a") == pytest.approx(0.6)
        assert monitor.get_exposure_rates() == {
            "a": pytest.approx(0.6),
            "b": pytest.approx(0.3),
            "c": pytest.approx(0.1),
        }

    def test_no_attempts_means_zero_rates(self):
        monitor = ExposureMonitor(InMemoryExposureStore())
        assert monitor.get_exposure_rate("a") == 0.0
        assert monitor.get_exposure_rates() == {}

    def test_overexposed_sorted_descending(self, store):
        monitor = ExposureMonitor(store, alert_threshold=0.25)
        overexposed = monitor.check_and_alert()
        assert [item_id for item_id, _ in overexposed] == ["a", "b"]

    def test_invalid_threshold_raises(self, store):
        with pytest.raises(ValueError, match="alert_threshold"):
            ExposureMonitor(store, alert_threshold=1.5)
