"""
Maximum Fisher Information (MFI) item selection for Computerized Adaptive Testing.

Selects the next item from the eligible pool that maximizes Fisher
information at the current ability estimate, subject to content balancing
and exposure control.

The selection pipeline:
1. Filter out administered, disabled and explicitly excluded items
2. Compute Fisher information for each eligible item at current theta
3. Normalise information to [0, 1] and add the content-balancing bonus
4. Rank by the combined score
5. Apply exposure control (Sympson-Hetter gate or randomesque choice)

Selection is deterministic given the attempt seed: all randomness comes from
generators derived from the seed, never from the global generator.

An empty eligible pool is not an error. The selector returns the
``POOL_EXHAUSTED`` signal and the caller treats it as a termination.

References:
    - van der Linden, W.J. (1998). Bayesian item selection criteria for
      adaptive testing.
    - Kingsbury, G.G., & Zara, A.R. (1989). Procedures for selecting items for
      computerized adaptive tests.
"""

import logging
from dataclasses import dataclass
from typing import (
    AbstractSet,
    Collection,
    List,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from cat_engine.core.cat.content_balancing import (
    capped_categories,
    content_balance_bonus,
    required_categories,
)
from cat_engine.core.cat.exposure_control import (
    apply_randomesque,
    apply_sympson_hetter,
    step_rng,
)
from cat_engine.core.cat.response_model import fisher_information, item_parameters
from cat_engine.schemas.cat import CATConfig, CategoryLimit, Item
from libs.domain_types import ExposureMethod, IRTModel

logger = logging.getLogger(__name__)


@dataclass
class ItemCandidate:
    """An eligible item with its information and combined selection score."""

    item: Item
    information: float
    score: float = 0.0


@dataclass(frozen=True)
class PoolExhausted:
    """Signal returned instead of an item when nothing is eligible."""

    pool_size: int = 0
    administered: int = 0


POOL_EXHAUSTED = PoolExhausted()


def eligible_items(
    item_pool: Sequence[Item],
    administered_items: Collection[str],
    excluded_ids: Optional[AbstractSet[str]] = None,
) -> List[Item]:
    """
    Items that may still be administered in this attempt.

    Args:
        item_pool: All items in the bank.
        administered_items: Ids already administered in this attempt.
        excluded_ids: Ids the caller wants kept out (e.g. seen in earlier
            attempts).
    """
    administered = set(administered_items)
    excluded = excluded_ids or frozenset()
    return [
        item
        for item in item_pool
        if item.enabled and item.id not in administered and item.id not in excluded
    ]


def rank_candidates(
    eligible: Sequence[Item],
    theta_estimate: float,
    model: IRTModel,
    category_tally: Optional[Mapping[str, int]] = None,
    category_targets: Optional[Mapping[str, float]] = None,
    items_administered: int = 0,
    content_balance_weight: float = 1.0,
    category_limits: Optional[Mapping[str, CategoryLimit]] = None,
    items_remaining: Optional[int] = None,
) -> List[ItemCandidate]:
    """
    Score and rank eligible items.

    score = I(theta) / max I(theta) + bonus, where the bonus applies only to
    items of the content-balancing priority category. Ties are broken by
    raw information, then by item id.

    Args:
        eligible: Items to rank.
        theta_estimate: Current ability estimate.
        model: IRT model in force for the exam.
        category_tally: category -> items administered so far.
        category_targets: category -> target percentage. Empty or None
            disables content balancing.
        items_administered: Total items administered so far.
        content_balance_weight: Multiplier on the priority category's deficit.
        category_limits: category -> min/max items. Items of a category at
            its max are dropped unless no other category has items left.
        items_remaining: Items still to come in the attempt. When given, and
            the outstanding category minimums need all of them, only items of
            the categories still short are ranked.

    Returns:
        Candidates sorted by score (descending).
    """
    capped = capped_categories(category_tally or {}, category_limits)
    if capped:
        uncapped = [item for item in eligible if item.category not in capped]
        if uncapped:
            eligible = uncapped
    if items_remaining is not None:
        required = required_categories(
            category_tally or {}, category_limits, items_remaining
        )
        restricted = [item for item in eligible if item.category in required]
        if restricted:
            eligible = restricted

    candidates = [
        ItemCandidate(
            item=item,
            information=fisher_information(
                theta_estimate, *item_parameters(item, model)
            ),
        )
        for item in eligible
    ]
    if not candidates:
        return candidates

    max_info = max(c.information for c in candidates)

    priority_category: Optional[str] = None
    bonus = 0.0
    if category_targets or category_limits:
        priority_category, bonus = content_balance_bonus(
            category_tally or {},
            category_targets or {},
            items_administered,
            weight=content_balance_weight,
            limits=category_limits,
        )

    for candidate in candidates:
        normalized = candidate.information / max_info if max_info > 0 else 0.0
        if priority_category is not None and candidate.item.category == priority_category:
            normalized += bonus
        candidate.score = normalized

    candidates.sort(key=lambda c: (-c.score, -c.information, c.item.id))
    return candidates


def select_next_item(
    item_pool: Sequence[Item],
    theta_estimate: float,
    administered_items: Collection[str],
    category_tally: Mapping[str, int],
    config: CATConfig,
    seed: int,
    category_targets: Optional[Mapping[str, float]] = None,
    control_parameters: Optional[Mapping[str, float]] = None,
    excluded_ids: Optional[AbstractSet[str]] = None,
) -> Union[Item, PoolExhausted]:
    """
    Select the next item using Maximum Fisher Information with constraints.

    Args:
        item_pool: All items in the bank.
        theta_estimate: Current ability estimate.
        administered_items: Ids already administered in this attempt.
        category_tally: category -> items administered so far.
        config: Exam CAT configuration.
        seed: Attempt seed; every random draw is derived from it.
        category_targets: Effective category targets (percentages). Ignored
            when content balancing is disabled.
        control_parameters: item_id -> Sympson-Hetter k. Missing items use 1.0.
        excluded_ids: Ids to keep out of the pool.

    Returns:
        The selected Item, or POOL_EXHAUSTED if no eligible items remain.
    """
    eligible = eligible_items(item_pool, administered_items, excluded_ids)
    if not eligible:
        logger.info(
            "No eligible items remaining after filtering. "
            f"Pool size: {len(item_pool)}, administered: {len(administered_items)}"
        )
        return POOL_EXHAUSTED

    candidates = rank_candidates(
        eligible,
        theta_estimate,
        config.model,
        category_tally=category_tally,
        category_targets=category_targets if config.content_balancing_enabled else None,
        items_administered=len(administered_items),
        content_balance_weight=config.content_balance_weight,
        category_limits=(
            config.category_limits if config.content_balancing_enabled else None
        ),
        items_remaining=config.max_items - len(administered_items),
    )

    selected = _apply_exposure_control(
        candidates,
        config=config,
        seed=seed,
        step=len(administered_items),
        control_parameters=control_parameters or {},
    )

    logger.debug(
        f"Item selection: theta={theta_estimate:.3f}, "
        f"eligible={len(candidates)}, "
        f"selected {selected.item.id} "
        f"(a={selected.item.discrimination:.2f}, "
        f"b={selected.item.difficulty:.2f}, "
        f"info={selected.information:.4f}, score={selected.score:.4f})"
    )
    return selected.item


def _apply_exposure_control(
    candidates: List[ItemCandidate],
    config: CATConfig,
    seed: int,
    step: int,
    control_parameters: Mapping[str, float],
) -> ItemCandidate:
    if not config.exposure_control_enabled:
        return candidates[0]

    if config.exposure_method == ExposureMethod.RANDOMESQUE:
        return apply_randomesque(
            candidates, n=config.randomesque_n, rng=step_rng(seed, step)
        )

    selected, rejected = apply_sympson_hetter(
        candidates,
        control_parameters,
        seed,
        max_rejections=config.max_exposure_rejections,
    )
    if rejected:
        logger.debug(f"Sympson-Hetter rejected {rejected} at step {step}")
    return selected
