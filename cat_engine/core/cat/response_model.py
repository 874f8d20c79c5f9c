"""
Logistic IRT response model: response probabilities, Fisher information, and
log-likelihood derivatives for the 1PL (Rasch), 2PL and 3PL models.

    P(theta) = c + (1 - c) / (1 + exp(-a * (theta - b)))

    I(theta) = a^2 * (P - c)^2 * (1 - P) / ((1 - c)^2 * P)

For c = 0 the information reduces to a^2 * P * (1 - P). Probabilities are
clamped to (PROBABILITY_EPSILON, 1 - PROBABILITY_EPSILON) so that the
information and likelihood terms never divide by zero.

This module is pure and stateless; every other component reaches the model
mathematics through it.

References:
    - Lord, F.M. (1980). Applications of Item Response Theory to Practical
      Testing Problems.
    - Baker, F.B., & Kim, S.-H. (2004). Item Response Theory: Parameter
      Estimation Techniques (2nd ed.).
"""

import math
from typing import Iterable, NamedTuple, Sequence, Tuple

import numpy as np

from libs.domain_types import IRTModel

PROBABILITY_EPSILON = 1e-10


class ItemParameters(NamedTuple):
    """Effective (a, b, c) for an item under a given model."""

    a: float
    b: float
    c: float


def effective_parameters(
    discrimination: float,
    difficulty: float,
    guessing: float = 0.0,
    model: IRTModel = IRTModel.THREE_PL,
) -> ItemParameters:
    """
    Apply the model's parameter restrictions.

    The Rasch model fixes a = 1 and c = 0; the 2PL model fixes c = 0. Stored
    parameters the model does not use are ignored rather than rejected so a
    single bank can be administered under several models.

    Raises:
        ValueError: If discrimination is not positive or guessing is outside [0, 1).
    """
    if discrimination <= 0:
        raise ValueError(
            f"Discrimination parameter must be positive, got {discrimination}"
        )
    if not 0.0 <= guessing < 1.0:
        raise ValueError(f"Guessing parameter must be in [0, 1), got {guessing}")

    if model == IRTModel.RASCH:
        return ItemParameters(1.0, difficulty, 0.0)
    if model == IRTModel.TWO_PL:
        return ItemParameters(discrimination, difficulty, 0.0)
    return ItemParameters(discrimination, difficulty, guessing)


def item_parameters(item, model: IRTModel) -> ItemParameters:
    """Effective parameters for an ``Item``-like object."""
    return effective_parameters(
        item.discrimination, item.difficulty, item.guessing, model
    )


def _sigmoid(logit: float) -> float:
    # Numerically stable logistic
    if logit >= 0:
        return 1.0 / (1.0 + math.exp(-logit))
    exp_logit = math.exp(logit)
    return exp_logit / (1.0 + exp_logit)


def probability(theta: float, a: float, b: float, c: float = 0.0) -> float:
    """Probability of a correct response, clamped away from 0 and 1."""
    p = c + (1.0 - c) * _sigmoid(a * (theta - b))
    return min(max(p, PROBABILITY_EPSILON), 1.0 - PROBABILITY_EPSILON)


def fisher_information(theta: float, a: float, b: float, c: float = 0.0) -> float:
    """
    Fisher information of one item at theta.

    Args:
        theta: Ability level.
        a: Discrimination (> 0).
        b: Difficulty.
        c: Pseudo-guessing lower asymptote in [0, 1).

    Returns:
        Non-negative information value.
    """
    p = probability(theta, a, b, c)
    return (a**2) * ((p - c) ** 2) * (1.0 - p) / (((1.0 - c) ** 2) * p)


def total_information(theta: float, params: Iterable[ItemParameters]) -> float:
    """Sum of item information over the administered items."""
    return sum(fisher_information(theta, *p) for p in params)


def log_likelihood_derivatives(
    theta: float,
    params: Sequence[ItemParameters],
    responses: Sequence[bool],
) -> Tuple[float, float]:
    """
    First and second derivatives of the response-vector log-likelihood.

    Per item, with u in {0, 1}:

        dl/dtheta   = a (P - c)(u - P) / ((1 - c) P)
        d2l/dtheta2 = a^2 (P - c)(1 - P)(c u - P^2) / ((1 - c)^2 P^2)

    For c = 0 the second derivative is -a^2 P (1 - P), so the 1PL/2PL
    log-likelihood is strictly concave. Under the 3PL it can be convex for
    correct responses far below the item difficulty.

    Returns:
        Tuple of (first_derivative, second_derivative).
    """
    first = 0.0
    second = 0.0
    for (a, b, c), correct in zip(params, responses):
        u = 1.0 if correct else 0.0
        p = probability(theta, a, b, c)
        first += a * (p - c) * (u - p) / ((1.0 - c) * p)
        second += (
            (a**2) * (p - c) * (1.0 - p) * (c * u - p**2) / (((1.0 - c) ** 2) * p**2)
        )
    return first, second


def log_likelihood_grid(
    thetas: np.ndarray,
    params: Sequence[ItemParameters],
    responses: Sequence[bool],
) -> np.ndarray:
    """
    Log-likelihood of the response vector at every theta in ``thetas``.

    Vectorised over the grid. The logistic part is evaluated in log space and
    the guessing floor mixed in with ``logaddexp`` so extreme logits neither
    overflow nor underflow.
    """
    thetas = np.asarray(thetas, dtype=float)
    log_lik = np.zeros_like(thetas)
    log_eps = math.log(PROBABILITY_EPSILON)
    for (a, b, c), correct in zip(params, responses):
        logit = a * (thetas - b)
        # log sigmoid(x) = -log(1 + exp(-x)); log(1 - sigmoid(x)) = -log(1 + exp(x))
        log_star = -np.logaddexp(0.0, -logit)
        log_star_complement = -np.logaddexp(0.0, logit)
        if c > 0:
            log_p = np.logaddexp(math.log(c), math.log1p(-c) + log_star)
        else:
            log_p = log_star
        log_q = math.log1p(-c) + log_star_complement
        if correct:
            log_lik += np.maximum(log_p, log_eps)
        else:
            log_lik += np.maximum(log_q, log_eps)
    return log_lik
