"""
Stopping rules for Computerized Adaptive Testing (CAT).

A small state machine evaluated after every response:

    1. administered >= max_items                        -> STOP_MAX_ITEMS
    2. administered >= min_items and SE <= se_target   -> STOP_PRECISION
    3. no eligible items remain                         -> STOP_POOL_EXHAUSTED
    4. otherwise                                        -> CONTINUE

Every stop state is terminal. STOP_EXTERNAL (timeout, cancellation) is
injected by the session controller and never produced here.

References:
    - Weiss, D. J., & Kingsbury, G. G. (1984). Application of computerized
      adaptive testing to educational problems. Journal of Educational
      Measurement, 21(4), 361-375.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict

from libs.domain_types import TerminationReason

logger = logging.getLogger(__name__)


@dataclass
class TerminationDecision:
    """
    Result of evaluating the stopping rules for an attempt.

    Attributes:
        reason: CONTINUE or the stop state reached.
        details: Diagnostic information (se, num_items, thresholds, flags).
    """

    reason: TerminationReason
    details: Dict[str, Any]

    @property
    def should_stop(self) -> bool:
        return self.reason.is_terminal


def evaluate_termination(
    se: float,
    num_items: int,
    min_items: int,
    max_items: int,
    se_target: float,
    eligible_remaining: int,
) -> TerminationDecision:
    """
    Evaluate the stopping rules in priority order.

    Args:
        se: Current standard error of the ability estimate.
        num_items: Items administered so far.
        min_items: Minimum items before precision may stop the attempt.
        max_items: Hard limit on the attempt length.
        se_target: Standard error at or below which precision is met.
        eligible_remaining: Items still eligible for selection.

    Returns:
        TerminationDecision with the reason and diagnostic details.

    Raises:
        ValueError: If se, num_items or eligible_remaining is negative.
    """
    if se < 0:
        raise ValueError(f"Standard error must be non-negative, got {se}")
    if num_items < 0:
        raise ValueError(f"Number of items must be non-negative, got {num_items}")
    if eligible_remaining < 0:
        raise ValueError(
            f"Eligible item count must be non-negative, got {eligible_remaining}"
        )

    details: Dict[str, Any] = {
        "se": se,
        "num_items": num_items,
        "se_target": se_target,
        "min_items_met": num_items >= min_items,
        "at_max_items": num_items >= max_items,
        "eligible_remaining": eligible_remaining,
    }

    if num_items >= max_items:
        logger.info(f"Stopping: reached maximum items ({num_items}/{max_items})")
        return TerminationDecision(TerminationReason.STOP_MAX_ITEMS, details)

    if num_items >= min_items and se <= se_target:
        logger.info(
            f"Stopping: SE target met (SE={se:.4f} <= {se_target:.4f}) "
            f"after {num_items} items"
        )
        return TerminationDecision(TerminationReason.STOP_PRECISION, details)

    if eligible_remaining == 0:
        logger.info(f"Stopping: item pool exhausted after {num_items} items")
        return TerminationDecision(TerminationReason.STOP_POOL_EXHAUSTED, details)

    logger.debug(
        f"Continuing: SE={se:.4f} (target={se_target:.4f}), items={num_items}"
    )
    return TerminationDecision(TerminationReason.CONTINUE, details)
