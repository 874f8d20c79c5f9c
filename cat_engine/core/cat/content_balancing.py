"""
Content balancing for Computerized Adaptive Testing.

Keeps the category mix of an attempt close to the exam's target percentages
using the weighted (Kingsbury-Zara style) approach: the category that is
furthest behind its quota gets a bonus added to the selection score of its
items. Nothing is filtered out, so a thin category pool can never deadlock
selection.

    deficit_c = target_c * total_administered - count_c

Only the category with the largest positive deficit is boosted, by
``weight * deficit``, on top of information normalised to [0, 1].

Optional per-category limits add hard bounds. A category below its
``min_items`` is treated as at least that many items behind, and once the
items left in the attempt only just cover the outstanding minimums, selection
is restricted to the categories still short. A category that has reached its
``max_items`` is never boosted, and its items are dropped from selection
while other categories still have items.

References:
    - Kingsbury, G.G., & Zara, A.R. (1989). Procedures for selecting items for
      computerized adaptive tests.
    - Cheng, Y., & Chang, H.-H. (2009). The maximum priority index method
      for severely constrained item selection in CAT.
"""

import logging
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from cat_engine.schemas.cat import CategoryLimit

logger = logging.getLogger(__name__)

# Category target percentages must sum to 100 within this tolerance
TARGET_SUM_TOLERANCE = 0.5

# Weight applied to the priority category's deficit
DEFAULT_CONTENT_BALANCE_WEIGHT = 1.0

# is_content_balanced: allowed distance (in items) from each quota
CONTENT_BALANCE_TOLERANCE_ITEMS = 2


def validate_category_targets(targets: Mapping[str, float]) -> None:
    """
    Check category target percentages.

    Raises:
        ValueError: If a target is outside [0, 100] or the targets do not sum
            to 100 (within TARGET_SUM_TOLERANCE).
    """
    if not targets:
        return
    for category, pct in targets.items():
        if not 0.0 <= pct <= 100.0:
            raise ValueError(
                f"Target for category '{category}' must be in [0, 100], got {pct}"
            )
    total = sum(targets.values())
    if abs(total - 100.0) > TARGET_SUM_TOLERANCE:
        raise ValueError(f"Category targets must sum to 100, got {total:.2f}")


def track_category_tally(categories: Iterable[Optional[str]]) -> Dict[str, int]:
    """
    Count administered items per category.

    Items without a category are not counted.
    """
    tally: Dict[str, int] = {}
    for category in categories:
        if category is not None:
            tally[category] = tally.get(category, 0) + 1
    return tally


def increment_tally(tally: Mapping[str, int], category: Optional[str]) -> Dict[str, int]:
    """Return a new tally with one more item in ``category``."""
    updated = dict(tally)
    if category is not None:
        updated[category] = updated.get(category, 0) + 1
    return updated


def validate_category_limits(
    limits: Mapping[str, CategoryLimit], max_items: int
) -> None:
    """
    Check per-category item limits against the attempt length.

    Raises:
        ValueError: If a category's min_items exceeds its max_items, or the
            minimums together need more than max_items items.
    """
    for category, limit in limits.items():
        if limit.max_items is not None and limit.min_items > limit.max_items:
            raise ValueError(
                f"Category '{category}' min_items ({limit.min_items}) exceeds "
                f"max_items ({limit.max_items})"
            )
    required = sum(limit.min_items for limit in limits.values())
    if required > max_items:
        raise ValueError(
            f"Category minimums need {required} items but max_items is {max_items}"
        )


def capped_categories(
    tally: Mapping[str, int], limits: Optional[Mapping[str, CategoryLimit]] = None
) -> FrozenSet[str]:
    """Categories that have reached their max_items."""
    if not limits:
        return frozenset()
    return frozenset(
        category
        for category, limit in limits.items()
        if limit.max_items is not None and tally.get(category, 0) >= limit.max_items
    )


def required_categories(
    tally: Mapping[str, int],
    limits: Optional[Mapping[str, CategoryLimit]],
    items_remaining: int,
) -> FrozenSet[str]:
    """
    Categories the next item must come from for every min_items to be met.

    Empty until the items left in the attempt are no more than the
    outstanding minimums.
    """
    if not limits:
        return frozenset()
    shortfalls = {
        category: limit.min_items - tally.get(category, 0)
        for category, limit in limits.items()
        if limit.min_items > tally.get(category, 0)
    }
    if shortfalls and sum(shortfalls.values()) >= items_remaining:
        return frozenset(shortfalls)
    return frozenset()


def compute_deficits(
    tally: Mapping[str, int],
    targets: Mapping[str, float],
    total_administered: int,
    limits: Optional[Mapping[str, CategoryLimit]] = None,
) -> Dict[str, float]:
    """
    Deficit of every targeted or limited category.

    Args:
        tally: category -> items administered.
        targets: category -> target percentage (0-100).
        total_administered: Items administered so far, in any category.
        limits: category -> CategoryLimit. A shortfall below min_items raises
            the deficit to at least the shortfall; capped categories are left
            out.

    Returns:
        category -> target share of the items so far minus the actual count.
        Positive means the category is behind its quota.
    """
    deficits = {
        category: (pct / 100.0) * total_administered - tally.get(category, 0)
        for category, pct in targets.items()
    }
    if not limits:
        return deficits

    for category, limit in limits.items():
        shortfall = limit.min_items - tally.get(category, 0)
        if shortfall > 0:
            deficits[category] = max(deficits.get(category, 0.0), float(shortfall))
    for category in capped_categories(tally, limits):
        deficits.pop(category, None)
    return deficits


def get_priority_category(
    tally: Mapping[str, int],
    targets: Mapping[str, float],
    total_administered: int,
    limits: Optional[Mapping[str, CategoryLimit]] = None,
) -> Tuple[Optional[str], float]:
    """
    Category with the largest positive deficit.

    Ties go to the alphabetically first category so that selection stays
    deterministic.

    Returns:
        Tuple of (category, deficit), or (None, 0.0) if no category is behind.
    """
    deficits = compute_deficits(tally, targets, total_administered, limits)
    priority: Optional[str] = None
    best = 0.0
    for category in sorted(deficits):
        if deficits[category] > best:
            best = deficits[category]
            priority = category
    return priority, best


def content_balance_bonus(
    tally: Mapping[str, int],
    targets: Mapping[str, float],
    total_administered: int,
    weight: float = DEFAULT_CONTENT_BALANCE_WEIGHT,
    limits: Optional[Mapping[str, CategoryLimit]] = None,
) -> Tuple[Optional[str], float]:
    """
    Bonus to add to the normalised information of the priority category.

    Returns:
        Tuple of (category to boost, bonus). (None, 0.0) when nothing needs a
        boost.
    """
    category, deficit = get_priority_category(
        tally, targets, total_administered, limits
    )
    if category is None:
        return None, 0.0
    bonus = weight * deficit
    logger.debug(
        f"Content balancing: boosting '{category}' by {bonus:.3f} "
        f"(deficit={deficit:.2f}, tally={dict(tally)})"
    )
    return category, bonus


def is_content_balanced(
    tally: Mapping[str, int],
    targets: Mapping[str, float],
    total_administered: int,
    tolerance_items: float = CONTENT_BALANCE_TOLERANCE_ITEMS,
) -> bool:
    """
    Whether every targeted category is within ``tolerance_items`` of its quota.
    """
    deficits = compute_deficits(tally, targets, total_administered)
    for category, deficit in deficits.items():
        if abs(deficit) > tolerance_items:
            logger.debug(
                f"Content balance not met: category '{category}' is "
                f"{deficit:+.1f} items from target after {total_administered} items"
            )
            return False
    return True
