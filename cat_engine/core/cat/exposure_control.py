"""
Item exposure control for Computerized Adaptive Testing.

Over-exposure occurs when a small subset of items is administered
disproportionately often, compromising item security and making the test
predictable. Two methods are supported:

Sympson-Hetter (Sympson & Hetter, 1985):
    Each item carries a control parameter k_item in (0, 1], the probability
    that it may be administered once it has been chosen as the most
    informative eligible item. For every candidate a uniform draw r is taken;
    the candidate is rejected when r > k_item and the next-ranked candidate is
    considered. After ``max_rejections`` rejections the best remaining
    candidate is returned unconditionally.

    The draw is keyed on (attempt seed, item id), so an item rejected once is
    rejected for the rest of the attempt. The probability that an always-top
    item is administered in an attempt is then exactly k_item.

Randomesque (Kingsbury & Zara, 1989):
    Uniform choice among the top-N most informative candidates.

Control parameters are recalibrated out of band from observed exposure
rates (``recalibrate_control_parameters``); an attempt only reads them.

References:
    - Sympson, J.B., & Hetter, R.D. (1985). Controlling item-exposure rates
      in computerized adaptive testing.
    - Kingsbury, G.G., & Zara, A.R. (1989). Procedures for selecting items for
      computerized adaptive tests.
    - Stocking, M.L., & Lewis, C. (1998). Controlling item exposure conditional
      on ability in computerized adaptive testing.
"""

import logging
import random
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence, Tuple

from cat_engine.core.cat.exposure_store import DEFAULT_CONTROL_PARAMETER, ExposureStore

if TYPE_CHECKING:
    from cat_engine.core.cat.item_selection import ItemCandidate

logger = logging.getLogger(__name__)

# Randomesque: choose among the top-N most informative items
DEFAULT_RANDOMESQUE_N = 5

# Sympson-Hetter: rejections before the best remaining item is taken anyway
DEFAULT_MAX_REJECTIONS = 10

# Exposure rate above which the monitor logs an alert
DEFAULT_EXPOSURE_ALERT_THRESHOLD = 0.25

# Recalibration defaults (iterative Sympson-Hetter)
DEFAULT_TARGET_EXPOSURE_RATE = 0.25
DEFAULT_RECALIBRATION_ALPHA = 1.0
DEFAULT_K_FLOOR = 0.01
DEFAULT_K_CEILING = 1.0
# Multiplier applied to k for items that were never administered
UNEXPOSED_K_GROWTH = 1.1


def sympson_hetter_draw(seed: int, item_id: str) -> float:
    """Uniform draw in [0, 1) fixed for one (attempt, item) pair."""
    return random.Random(f"{seed}:{item_id}").random()


def step_rng(seed: int, step: int) -> random.Random:
    """Generator for the randomesque choice at a given step of an attempt."""
    return random.Random(f"{seed}:{step}:randomesque")


def apply_sympson_hetter(
    ranked_items: Sequence["ItemCandidate"],
    control_parameters: Mapping[str, float],
    seed: int,
    max_rejections: int = DEFAULT_MAX_REJECTIONS,
) -> Tuple["ItemCandidate", List[str]]:
    """
    Walk ranked candidates applying the Sympson-Hetter gate.

    Args:
        ranked_items: Candidates sorted by selection score (descending).
        control_parameters: item_id -> k_item. Missing items use 1.0.
        seed: Attempt seed.
        max_rejections: Rejections allowed before the next candidate is
            accepted unconditionally.

    Returns:
        Tuple of (selected candidate, ids rejected on the way).

    Raises:
        ValueError: If ranked_items is empty or max_rejections is negative.
    """
    if not ranked_items:
        raise ValueError("Cannot select from empty ranked_items list")
    if max_rejections < 0:
        raise ValueError(f"max_rejections must be non-negative, got {max_rejections}")

    rejected: List[str] = []
    for candidate in ranked_items:
        item_id = candidate.item.id
        if len(rejected) >= max_rejections:
            logger.debug(
                f"Sympson-Hetter: {len(rejected)} rejections, taking item {item_id} "
                "unconditionally"
            )
            return candidate, rejected

        k = control_parameters.get(item_id, DEFAULT_CONTROL_PARAMETER)
        if sympson_hetter_draw(seed, item_id) <= k:
            return candidate, rejected
        rejected.append(item_id)

    # Every candidate was rejected; fall back to the best one.
    logger.debug(
        f"Sympson-Hetter: all {len(rejected)} candidates rejected, "
        f"taking item {ranked_items[0].item.id}"
    )
    return ranked_items[0], rejected


def apply_randomesque(
    ranked_items: Sequence["ItemCandidate"],
    n: int = DEFAULT_RANDOMESQUE_N,
    rng: Optional[random.Random] = None,
) -> "ItemCandidate":
    """
    Select uniformly from the top-N candidates.

    Args:
        ranked_items: Candidates sorted by selection score (descending).
        n: Number of top items to select from.
        rng: Seeded generator; the module-level generator is never used by
            the engine, which always passes one.

    Returns:
        The selected ItemCandidate.

    Raises:
        ValueError: If ranked_items is empty or n is not positive.
    """
    if not ranked_items:
        raise ValueError("Cannot select from empty ranked_items list")
    if n <= 0:
        raise ValueError(f"n must be positive, got {n}")

    top_n = list(ranked_items[: min(n, len(ranked_items))])
    selected = (rng or random.Random()).choice(top_n)

    logger.debug(
        f"Randomesque selection: chose item {selected.item.id} from top-{len(top_n)} "
        f"(info={selected.information:.4f})"
    )
    return selected


def recalibrate_control_parameters(
    counts: Mapping[str, int],
    attempts: int,
    current_k: Mapping[str, float],
    target_rate: float = DEFAULT_TARGET_EXPOSURE_RATE,
    alpha: float = DEFAULT_RECALIBRATION_ALPHA,
    floor: float = DEFAULT_K_FLOOR,
    ceiling: float = DEFAULT_K_CEILING,
) -> Dict[str, float]:
    """
    One iteration of Sympson-Hetter control parameter adjustment.

    For each item with observed exposure rate r = count / attempts:

        k_new = k * (target_rate / r) ** alpha     if r > 0
        k_new = k * 1.1                            if r == 0

    clamped to [floor, ceiling]. Items over-exposed relative to the target
    get smaller k, items under-exposed get larger k.

    Args:
        counts: item_id -> administrations over the observation window.
        attempts: Attempts in the observation window.
        current_k: item_id -> current k. Items present in either mapping are
            recalibrated; missing k defaults to 1.0.
        target_rate: Maximum desired exposure rate.
        alpha: Damping exponent (1.0 = full proportional step).
        floor: Lower bound for k.
        ceiling: Upper bound for k (at most 1.0).

    Returns:
        item_id -> new k.

    Raises:
        ValueError: If attempts is not positive or a bound is out of range.
    """
    if attempts <= 0:
        raise ValueError(f"attempts must be positive, got {attempts}")
    if not 0.0 < target_rate <= 1.0:
        raise ValueError(f"target_rate must be in (0, 1], got {target_rate}")
    if not 0.0 < floor <= ceiling <= 1.0:
        raise ValueError(
            f"Require 0 < floor <= ceiling <= 1, got floor={floor}, ceiling={ceiling}"
        )
    if alpha <= 0:
        raise ValueError(f"alpha must be positive, got {alpha}")

    new_k: Dict[str, float] = {}
    for item_id in sorted(set(counts) | set(current_k)):
        k = current_k.get(item_id, DEFAULT_CONTROL_PARAMETER)
        rate = counts.get(item_id, 0) / attempts
        if rate <= 0.0:
            value = k * UNEXPOSED_K_GROWTH
        else:
            value = k * (target_rate / rate) ** alpha
        new_k[item_id] = min(ceiling, max(floor, value))

    over_target = sum(1 for item_id in counts if counts[item_id] / attempts > target_rate)
    logger.info(
        f"Recalibrated {len(new_k)} control parameters from {attempts} attempts "
        f"({over_target} items above target rate {target_rate:.2f})"
    )
    return new_k


class ExposureMonitor:
    """
    Reports per-item exposure rates from an exposure store and alerts on
    over-exposure.

    Exposure rate is defined per attempt:
        rate_i = administrations_i / attempts

    Items exceeding the alert_threshold are logged as warnings.

    Example usage:
        monitor = ExposureMonitor(store, alert_threshold=0.25)

        # Periodic checks (e.g., after a batch of attempts)
        overexposed = monitor.check_and_alert()

    Attributes:
        alert_threshold: Exposure rate above which items are flagged (0.0-1.0).
    """

    def __init__(
        self,
        store: ExposureStore,
        alert_threshold: float = DEFAULT_EXPOSURE_ALERT_THRESHOLD,
    ):
        """
        Initialize the exposure monitor.

        Raises:
            ValueError: If alert_threshold is not in range [0.0, 1.0].
        """
        if not (0.0 <= alert_threshold <= 1.0):
            raise ValueError(
                f"alert_threshold must be in [0.0, 1.0], got {alert_threshold}"
            )
        self._store = store
        self.alert_threshold = alert_threshold

    def get_exposure_rate(self, item_id: str) -> float:
        """Exposure rate of one item, or 0.0 before any attempt is recorded."""
        attempts = self._store.attempt_count()
        if attempts == 0:
            return 0.0
        return self._store.get_count(item_id) / attempts

    def get_exposure_rates(self) -> Dict[str, float]:
        """Exposure rates for every item administered at least once."""
        attempts = self._store.attempt_count()
        if attempts == 0:
            return {}
        return {
            item_id: count / attempts
            for item_id, count in self._store.get_counts().items()
        }

    def get_overexposed_items(self) -> List[Tuple[str, float]]:
        """
        Items exceeding the alert threshold, sorted by rate (descending).
        """
        overexposed = [
            (item_id, rate)
            for item_id, rate in self.get_exposure_rates().items()
            if rate > self.alert_threshold
        ]
        overexposed.sort(key=lambda x: x[1], reverse=True)
        return overexposed

    def check_and_alert(self) -> List[Tuple[str, float]]:
        """
        Check for overexposed items and log warnings.

        Returns:
            List of (item_id, exposure_rate) tuples for overexposed items.
        """
        overexposed = self.get_overexposed_items()
        if overexposed:
            logger.warning(
                f"Exposure alert: {len(overexposed)} items exceed "
                f"{self.alert_threshold:.1%} threshold"
            )
            for item_id, rate in overexposed[:10]:
                logger.warning(f"  Item {item_id}: {rate:.1%} exposure")
            if len(overexposed) > 10:
                logger.warning(f"  ... and {len(overexposed) - 10} more items")
        return overexposed
