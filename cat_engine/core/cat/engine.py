"""
SessionController: orchestrator for adaptive attempts.

Drives the adaptive loop: item selection, ability estimation (MLE with EAP
fallback), content balancing, exposure control and the stopping rules. The
controller is stateless between calls; all per-attempt state lives in the
immutable ``AttemptState`` that callers persist between round-trips.
Every transition returns a new state, so an attempt is a fold over its
response events. The estimate and category tally a state carries are
recomputed from its responses on every call, and a mismatch is rejected.

The only side effects are writes to the injected exposure store (an
atomic counter per administered item and an attempt counter on
termination, counted once per session id). Store failures are logged and
never reach the caller.
"""
import logging
import math
import secrets
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from cat_engine.core.cat.ability_estimation import estimate_ability
from cat_engine.core.cat.content_balancing import (
    increment_tally,
    track_category_tally,
    validate_category_limits,
    validate_category_targets,
)
from cat_engine.core.cat.exposure_store import ExposureStore, InMemoryExposureStore
from cat_engine.core.cat.item_selection import (
    PoolExhausted,
    eligible_items,
    select_next_item,
)
from cat_engine.core.cat.response_model import ItemParameters, item_parameters
from cat_engine.core.cat.score_conversion import (
    calculate_category_scores,
    confidence_interval,
    pass_fail,
    percentile_rank,
    performance_level,
    scale_score,
)
from cat_engine.core.cat.stopping_rules import evaluate_termination
from cat_engine.core.errors import (
    ExposureStoreError,
    InvalidConfiguration,
    InvalidStateTransition,
)
from cat_engine.core.logging_config import session_id_context
from cat_engine.schemas.cat import (
    AttemptState,
    AttemptSummary,
    CATConfig,
    Item,
    ItemBank,
    ResponseRecord,
    TerminationSignal,
)
from libs.domain_types import AttemptStatus, ExposureMethod, TerminationReason

logger = logging.getLogger(__name__)


def _coerce_config(config: Union[CATConfig, Mapping[str, Any]]) -> CATConfig:
    if isinstance(config, CATConfig):
        return config
    try:
        return CATConfig.model_validate(config)
    except ValidationError as e:
        raise InvalidConfiguration(
            "CAT configuration failed validation", original_error=e
        ) from e


def effective_category_targets(config: CATConfig, item_bank: ItemBank) -> Dict[str, float]:
    """Targets from the configuration, or the bank's when the configuration has none."""
    return dict(config.category_targets or item_bank.category_targets)


def validate_config(config: CATConfig, item_bank: Optional[ItemBank] = None) -> None:
    """
    Cross-field validation of a CAT configuration.

    Raises:
        InvalidConfiguration: On the first rule the configuration breaks.
    """
    problems: List[str] = []

    if config.max_items < 1:
        problems.append(f"max_items must be at least 1, got {config.max_items}")
    if config.min_items < 0:
        problems.append(f"min_items must be non-negative, got {config.min_items}")
    if config.min_items > config.max_items:
        problems.append(
            f"min_items ({config.min_items}) must not exceed "
            f"max_items ({config.max_items})"
        )
    if config.se_target <= 0:
        problems.append(f"se_target must be positive, got {config.se_target}")
    if not config.theta_min < config.theta_start < config.theta_max:
        problems.append(
            "theta bounds must satisfy theta_min < theta_start < theta_max, got "
            f"{config.theta_min} < {config.theta_start} < {config.theta_max}"
        )
    if config.randomesque_n < 1:
        problems.append(f"randomesque_n must be at least 1, got {config.randomesque_n}")
    if config.max_exposure_rejections < 0:
        problems.append(
            "max_exposure_rejections must be non-negative, got "
            f"{config.max_exposure_rejections}"
        )
    if config.content_balance_weight < 0:
        problems.append(
            "content_balance_weight must be non-negative, got "
            f"{config.content_balance_weight}"
        )
    if config.max_iterations < 1:
        problems.append(f"max_iterations must be at least 1, got {config.max_iterations}")
    if config.tolerance <= 0:
        problems.append(f"tolerance must be positive, got {config.tolerance}")
    if config.quadrature_points < 2:
        problems.append(
            f"quadrature_points must be at least 2, got {config.quadrature_points}"
        )
    if config.prior_sd <= 0:
        problems.append(f"prior_sd must be positive, got {config.prior_sd}")

    if config.content_balancing_enabled:
        targets = (
            effective_category_targets(config, item_bank)
            if item_bank is not None
            else dict(config.category_targets)
        )
        try:
            validate_category_targets(targets)
        except ValueError as e:
            problems.append(str(e))
        try:
            validate_category_limits(config.category_limits, config.max_items)
        except ValueError as e:
            problems.append(str(e))

    if problems:
        raise InvalidConfiguration(
            "Invalid CAT configuration: " + "; ".join(problems),
            context={"n_problems": len(problems)},
        )


class SessionController:
    """
    Orchestrator for Computerized Adaptive Testing attempts.

    One controller serves every attempt of one exam definition (item bank
    plus configuration). It holds no per-attempt state.

    Example:
        controller = SessionController(bank, config, exposure_store=store)
        state = controller.start()
        while True:
            nxt = controller.next_item(state)
            if isinstance(nxt, TerminationSignal):
                break
            state = controller.submit_response(state, nxt.id, answer(nxt))
        summary = controller.finalize(state)
    """

    def __init__(
        self,
        item_bank: ItemBank,
        config: Union[CATConfig, Mapping[str, Any]],
        exposure_store: Optional[ExposureStore] = None,
    ):
        self.item_bank = item_bank
        self.config = _coerce_config(config)
        self.exposure_store = exposure_store or InMemoryExposureStore()
        self.category_targets = effective_category_targets(self.config, item_bank)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        session_id: Optional[str] = None,
        seed: Optional[int] = None,
        excluded_item_ids: Iterable[str] = (),
    ) -> AttemptState:
        """
        Validate the configuration and create the initial attempt state.

        Args:
            session_id: Caller-supplied id (a UUID is generated if omitted).
            seed: Seed for every random draw in the attempt. Fixing it fixes
                the item sequence for any given response pattern.
            excluded_item_ids: Items to keep out of this attempt.

        Raises:
            InvalidConfiguration: If the configuration is inconsistent.
        """
        validate_config(self.config, self.item_bank)

        state = AttemptState(
            session_id=session_id or uuid.uuid4().hex,
            seed=seed if seed is not None else secrets.randbits(31),
            excluded_item_ids=tuple(excluded_item_ids),
            current_estimate=estimate_ability([], [], self.config),
        )
        logger.info(
            f"Started attempt {state.session_id} "
            f"(pool={len(self.item_bank)}, model={self.config.model.value}, "
            f"theta_start={self.config.theta_start:.3f})"
        )
        return state

    def next_item(self, state: AttemptState) -> Union[Item, TerminationSignal]:
        """
        The item to administer next, or why the attempt is over.

        Pure with respect to the attempt: the same state (and the same
        control parameters in the exposure store) always yields the same
        item.

        Raises:
            InvalidStateTransition: If the state's estimate or category tally
                does not follow from its responses.
        """
        self._check_history(state)
        return self._next_item(state)

    def submit_response(
        self, state: AttemptState, item_id: str, correct: bool
    ) -> AttemptState:
        """
        Record a response to the active item and return the next state.

        Re-estimates ability from the full history, updates the category
        tally, evaluates the stopping rules and records the exposure.

        Raises:
            InvalidStateTransition: If the attempt is terminated, item_id is
                not the item currently selected for it, or the state does not
                follow from its responses.
        """
        token = session_id_context.set(state.session_id)
        try:
            return self._submit_response(state, item_id, correct)
        finally:
            session_id_context.reset(token)

    def terminate(
        self,
        state: AttemptState,
        reason: Optional[TerminationReason] = None,
    ) -> AttemptState:
        """
        Force the attempt into a stop state (timeout, cancellation).

        Without a reason the attempt stops with STOP_POOL_EXHAUSTED when no
        item is left to administer and STOP_EXTERNAL otherwise. A terminated
        attempt is returned unchanged.

        Raises:
            ValueError: If reason is not a stop state.
        """
        if reason is None:
            reason = self._forced_stop_reason(state)
        if not reason.is_terminal:
            raise ValueError(f"Cannot terminate with non-terminal reason {reason.value}")
        if state.is_terminated:
            return state

        logger.info(
            f"Attempt {state.session_id} terminated ({reason.value}) after "
            f"{state.items_administered} items",
            extra={"reason": reason.value},
        )
        self._record_attempt(state.session_id)
        return state.model_copy(
            update={
                "status": AttemptStatus.TERMINATED,
                "termination_reason": reason,
            }
        )

    def finalize(self, state: AttemptState) -> AttemptSummary:
        """
        Score the attempt.

        An active attempt is first terminated, with STOP_POOL_EXHAUSTED if
        nothing is left to administer and STOP_EXTERNAL otherwise. Items
        that were never answered are reported as skipped and play no part in
        the estimate. Finalizing the same state again does not count the
        attempt twice in the exposure store.

        Raises:
            InvalidStateTransition: If the state does not follow from its
                responses.
        """
        self._check_history(state)
        if not state.is_terminated:
            state = self.terminate(state)

        estimate = state.current_estimate
        transform = self.config.score_transform
        score = scale_score(estimate.theta, transform)
        administered = state.items_administered
        correct = state.correct_count

        category_scores = calculate_category_scores(
            (self._category_of(r.item_id), r.correct) for r in state.responses
        )

        summary = AttemptSummary(
            session_id=state.session_id,
            final_theta=estimate.theta,
            final_se=estimate.standard_error,
            estimation_method=estimate.method,
            scaled_score=score,
            pass_fail=pass_fail(score, transform),
            administered_item_ids=list(state.administered_item_ids),
            termination_reason=state.termination_reason,
            items_administered=administered,
            correct_count=correct,
            accuracy=round(correct / administered, 3) if administered else 0.0,
            unanswered_count=max(0, self.config.min_items - administered),
            confidence_interval=confidence_interval(
                estimate.theta,
                estimate.standard_error,
                self.config.theta_min,
                self.config.theta_max,
            ),
            percentile=percentile_rank(estimate.theta),
            performance_level=performance_level(estimate.theta),
            category_scores=category_scores,
        )

        logger.info(
            f"Attempt {state.session_id} finalized: "
            f"theta={estimate.theta:.3f}, SE={estimate.standard_error:.3f}, "
            f"score={score}, items={administered}, correct={correct}, "
            f"reason={state.termination_reason.value}"
        )
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_item(self, state: AttemptState) -> Union[Item, TerminationSignal]:
        if state.is_terminated:
            return TerminationSignal(reason=state.termination_reason)

        selected = self._select(state)
        if isinstance(selected, PoolExhausted):
            return TerminationSignal(reason=TerminationReason.STOP_POOL_EXHAUSTED)
        return selected

    def _forced_stop_reason(self, state: AttemptState) -> TerminationReason:
        remaining = eligible_items(
            self.item_bank.items,
            state.administered_item_ids,
            frozenset(state.excluded_item_ids),
        )
        if not remaining:
            return TerminationReason.STOP_POOL_EXHAUSTED
        return TerminationReason.STOP_EXTERNAL

    def _check_history(self, state: AttemptState) -> None:
        """Reject a state whose estimate or tally does not follow from its responses."""
        expected = estimate_ability(
            self._parameters_for(state.administered_item_ids),
            [r.correct for r in state.responses],
            self.config,
        )
        stored = state.current_estimate
        estimate_matches = math.isclose(
            stored.theta, expected.theta, rel_tol=1e-9, abs_tol=1e-9
        ) and math.isclose(
            stored.standard_error, expected.standard_error, rel_tol=1e-9, abs_tol=1e-9
        )
        tally = track_category_tally(
            self._category_of(item_id) for item_id in state.administered_item_ids
        )
        if estimate_matches and state.category_tally == tally:
            return

        logger.warning(
            f"Attempt {state.session_id}: state does not match its responses "
            f"(theta {stored.theta:.3f} vs {expected.theta:.3f}, "
            f"tally {state.category_tally} vs {tally})"
        )
        raise InvalidStateTransition(
            "Attempt state does not match its response history",
            context={
                "session_id": state.session_id,
                "items_administered": state.items_administered,
            },
        )

    def _select(self, state: AttemptState) -> Union[Item, PoolExhausted]:
        excluded = frozenset(state.excluded_item_ids)
        control_parameters: Dict[str, float] = {}
        if (
            self.config.exposure_control_enabled
            and self.config.exposure_method == ExposureMethod.SYMPSON_HETTER
        ):
            candidates = eligible_items(
                self.item_bank.items, state.administered_item_ids, excluded
            )
            control_parameters = self.exposure_store.get_control_parameters(
                item.id for item in candidates
            )

        return select_next_item(
            self.item_bank.items,
            state.current_estimate.theta,
            state.administered_item_ids,
            state.category_tally,
            self.config,
            seed=state.seed,
            category_targets=self.category_targets,
            control_parameters=control_parameters,
            excluded_ids=excluded,
        )

    def _submit_response(
        self, state: AttemptState, item_id: str, correct: bool
    ) -> AttemptState:
        self._check_history(state)
        if state.is_terminated:
            raise InvalidStateTransition(
                "Attempt is already terminated",
                context={
                    "session_id": state.session_id,
                    "reason": state.termination_reason.value,
                },
            )
        if item_id in state.administered_item_ids:
            raise InvalidStateTransition(
                "Item has already been administered in this attempt",
                context={"session_id": state.session_id, "item_id": item_id},
            )
        item = self.item_bank.get(item_id)
        if item is None:
            raise InvalidStateTransition(
                "Item is not in the exam's item bank",
                context={"session_id": state.session_id, "item_id": item_id},
            )

        active = self._next_item(state)
        if isinstance(active, TerminationSignal) or active.id != item_id:
            active_id = None if isinstance(active, TerminationSignal) else active.id
            raise InvalidStateTransition(
                "Response is not for the active item",
                context={
                    "session_id": state.session_id,
                    "item_id": item_id,
                    "active_item_id": active_id,
                },
            )

        administered = state.administered_item_ids + (item_id,)
        responses = state.responses + (ResponseRecord(item_id=item_id, correct=correct),)
        estimate = estimate_ability(
            self._parameters_for(administered),
            [r.correct for r in responses],
            self.config,
        )
        tally = increment_tally(state.category_tally, item.category)

        remaining = len(
            eligible_items(
                self.item_bank.items, administered, frozenset(state.excluded_item_ids)
            )
        )
        decision = evaluate_termination(
            se=estimate.standard_error,
            num_items=len(administered),
            min_items=self.config.min_items,
            max_items=self.config.max_items,
            se_target=self.config.se_target,
            eligible_remaining=remaining,
        )

        new_state = AttemptState(
            session_id=state.session_id,
            seed=state.seed,
            administered_item_ids=administered,
            excluded_item_ids=state.excluded_item_ids,
            responses=responses,
            current_estimate=estimate,
            category_tally=tally,
            status=(
                AttemptStatus.TERMINATED
                if decision.should_stop
                else AttemptStatus.ACTIVE
            ),
            termination_reason=decision.reason,
        )

        logger.debug(
            f"Attempt {state.session_id}: response #{len(administered)} "
            f"({item_id}, correct={correct}) -> "
            f"theta={estimate.theta:.3f}, SE={estimate.standard_error:.3f}, "
            f"method={estimate.method.value}, reason={decision.reason.value}",
            extra={
                "item_id": item_id,
                "theta": estimate.theta,
                "standard_error": estimate.standard_error,
            },
        )

        self._record_exposure(item_id)
        if decision.should_stop:
            self._record_attempt(state.session_id)
        return new_state

    def _parameters_for(self, item_ids: Iterable[str]) -> List[ItemParameters]:
        params = []
        for item_id in item_ids:
            item = self.item_bank.get(item_id)
            if item is None:
                raise InvalidStateTransition(
                    "Administered item is no longer in the item bank",
                    context={"item_id": item_id},
                )
            params.append(item_parameters(item, self.config.model))
        return params

    def _category_of(self, item_id: str) -> Optional[str]:
        item = self.item_bank.get(item_id)
        return item.category if item is not None else None

    def _record_exposure(self, item_id: str) -> None:
        try:
            self.exposure_store.increment(item_id)
        except ExposureStoreError as e:
            logger.warning(f"Exposure count for {item_id} not recorded: {e}")

    def _record_attempt(self, session_id: str) -> None:
        try:
            self.exposure_store.record_attempt(session_id)
        except ExposureStoreError as e:
            logger.warning(f"Attempt {session_id} not recorded in exposure store: {e}")


def start(
    config: Union[CATConfig, Mapping[str, Any]],
    item_bank: ItemBank,
    exposure_store: Optional[ExposureStore] = None,
    session_id: Optional[str] = None,
    seed: Optional[int] = None,
    excluded_item_ids: Iterable[str] = (),
) -> AttemptState:
    """
    Validate ``config`` against ``item_bank`` and create an attempt.

    Convenience for callers that do not keep a SessionController around;
    the returned state works with any controller built from the same bank
    and configuration.
    """
    controller = SessionController(item_bank, config, exposure_store=exposure_store)
    return controller.start(
        session_id=session_id, seed=seed, excluded_item_ids=excluded_item_ids
    )


def serialize_state(state: AttemptState) -> str:
    """JSON form of an attempt state for persistence between round-trips."""
    return state.model_dump_json()


def deserialize_state(payload: Union[str, bytes]) -> AttemptState:
    """
    Rebuild an attempt state from ``serialize_state`` output.

    Raises:
        pydantic.ValidationError: If the payload is not a valid state.
    """
    return AttemptState.model_validate_json(payload)
