"""
Score conversion for finished adaptive attempts.

Converts the final theta estimate into the reported score using the
transform supplied by the exam definition:

    linear:   score = intercept + slope * theta, optionally clamped
    lookup:   piecewise-linear interpolation over (theta, score) points,
              flat beyond the first and last point
    percent:  100 * P(theta | a=1, b=0), the chance of answering an item of
              average difficulty correctly
    raw:      theta rounded to two decimals

The default 200-800 scale (``LinearScoreTransform.from_ranges()``) maps
theta in [-3, 3] linearly onto [200, 800].

95% Confidence Interval (theta scale):
    CI = theta ± 1.96 × SE(theta), clamped to [theta_min, theta_max]

Percentile Rank:
    percentile = Φ(θ) × 100, with Φ the standard normal CDF.

Performance bands:
    θ > 2 High, θ > 1 Above Average, θ < -2 Low, θ < -1 Below Average,
    otherwise Average.
"""

import logging
import math
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
from scipy.stats import norm

from cat_engine.core.cat.response_model import probability
from cat_engine.schemas.cat import (
    CategoryScore,
    LinearScoreTransform,
    LookupScoreTransform,
    PercentScoreTransform,
    RawScoreTransform,
    ScoreTransform,
)
from libs.domain_types import PerformanceLevel

logger = logging.getLogger(__name__)

Z_95 = 1.96  # z-score for 95% confidence interval

# Performance band cut points on the theta scale
HIGH_THETA = 2.0
ABOVE_AVERAGE_THETA = 1.0
BELOW_AVERAGE_THETA = -1.0
LOW_THETA = -2.0


def scale_score(theta: float, transform: ScoreTransform) -> float:
    """
    Apply a score transform to a theta estimate.

    Args:
        theta: Final ability estimate.
        transform: Score transform from the exam definition.

    Returns:
        Reported score.

    Raises:
        ValueError: If theta is NaN or infinite, or the transform is unknown.
    """
    if math.isnan(theta) or math.isinf(theta):
        raise ValueError(f"theta must be finite, got {theta}")

    if isinstance(transform, LinearScoreTransform):
        score = transform.intercept + transform.slope * theta
        if transform.min_score is not None:
            score = max(transform.min_score, score)
        if transform.max_score is not None:
            score = min(transform.max_score, score)
        return round(score, transform.decimals)

    if isinstance(transform, LookupScoreTransform):
        thetas = [point[0] for point in transform.points]
        scores = [point[1] for point in transform.points]
        return round(float(np.interp(theta, thetas, scores)), transform.decimals)

    if isinstance(transform, PercentScoreTransform):
        return round(100.0 * probability(theta, a=1.0, b=0.0), 1)

    if isinstance(transform, RawScoreTransform):
        return round(theta, 2)

    raise ValueError(f"Unsupported score transform: {type(transform).__name__}")


def pass_fail(score: float, transform: ScoreTransform) -> Optional[bool]:
    """Whether the score meets the cut, or None if the exam has no cut."""
    if transform.passing_score is None:
        return None
    return score >= transform.passing_score


def confidence_interval(
    theta: float,
    se: float,
    theta_min: float = -4.0,
    theta_max: float = 4.0,
) -> Tuple[float, float]:
    """
    95% confidence interval for theta, clamped to the theta bounds.

    Raises:
        ValueError: If se is negative or not finite.
    """
    if math.isnan(se) or math.isinf(se):
        raise ValueError(f"se must be finite, got {se}")
    if se < 0:
        raise ValueError(f"se must be non-negative, got {se}")

    margin = Z_95 * se
    lower = max(theta_min, theta - margin)
    upper = min(theta_max, theta + margin)
    return round(lower, 3), round(upper, 3)


def percentile_rank(theta: float) -> float:
    """Percentile of theta under a standard normal population, 0-100."""
    return round(float(norm.cdf(theta)) * 100, 1)


def performance_level(theta: float) -> PerformanceLevel:
    """Descriptive band for a theta estimate."""
    if theta > HIGH_THETA:
        return PerformanceLevel.HIGH
    if theta > ABOVE_AVERAGE_THETA:
        return PerformanceLevel.ABOVE_AVERAGE
    if theta < LOW_THETA:
        return PerformanceLevel.LOW
    if theta < BELOW_AVERAGE_THETA:
        return PerformanceLevel.BELOW_AVERAGE
    return PerformanceLevel.AVERAGE


def calculate_category_scores(
    responses: Iterable[Tuple[Optional[str], bool]],
) -> Dict[str, CategoryScore]:
    """
    Per-category accuracy from (category, is_correct) pairs.

    These are accuracy figures, not per-category ability estimates. Responses
    to uncategorised items are skipped, and categories with no responses are
    absent from the result.

    Examples:
        >>> scores = calculate_category_scores([("A", True), ("A", False)])
        >>> scores["A"].accuracy
        0.5
    """
    totals: Dict[str, int] = {}
    corrects: Dict[str, int] = {}
    for category, is_correct in responses:
        if category is None:
            continue
        totals[category] = totals.get(category, 0) + 1
        if is_correct:
            corrects[category] = corrects.get(category, 0) + 1

    return {
        category: CategoryScore(
            category=category,
            items_administered=total,
            correct_count=corrects.get(category, 0),
            accuracy=round(corrects.get(category, 0) / total, 3),
        )
        for category, total in totals.items()
    }
