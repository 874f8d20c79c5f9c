"""
Ability (theta) estimation for Computerized Adaptive Testing.

Maximum likelihood is the primary estimator: Newton-Raphson on the
log-likelihood of the full response vector,

    theta <- theta - L'(theta) / L''(theta)

with SE = 1 / sqrt(sum of item information at the converged theta).

MLE has no finite solution for all-correct or all-incorrect response
patterns and can fail to converge under the 3PL, where the log-likelihood
is not concave. In both cases the estimator falls back silently to EAP
(Expected A Posteriori), the posterior mean under a normal prior evaluated
by numerical quadrature (Bock & Mislevy, 1982):

    theta_hat = integral(theta * L(theta) * prior(theta)) / integral(L(theta) * prior(theta))

Estimates are a pure function of the response history and configuration,
and are always clamped to [theta_min, theta_max].
"""

import logging
import math
from typing import Sequence

import numpy as np

from cat_engine.core.cat.response_model import (
    ItemParameters,
    log_likelihood_derivatives,
    log_likelihood_grid,
    total_information,
)
from cat_engine.core.errors import NonConvergentEstimate
from cat_engine.schemas.cat import UNBOUNDED_STANDARD_ERROR, AbilityEstimate, CATConfig
from libs.domain_types import EstimationMethod

logger = logging.getLogger(__name__)

# Newton-Raphson defaults
DEFAULT_MAX_ITERATIONS = 25
DEFAULT_TOLERANCE = 1e-6
# Largest single Newton step. Far from the root the 2PL log-likelihood is
# nearly flat, and an undamped step overshoots to the opposite theta bound.
MAX_NEWTON_STEP = 1.0

# Quadrature configuration
DEFAULT_QUADRATURE_POINTS = 61


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def estimate_ability_mle(
    params: Sequence[ItemParameters],
    responses: Sequence[bool],
    theta_start: float = 0.0,
    theta_min: float = -4.0,
    theta_max: float = 4.0,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    tolerance: float = DEFAULT_TOLERANCE,
) -> AbilityEstimate:
    """
    Estimate ability by maximum likelihood using Newton-Raphson.

    Args:
        params: Effective (a, b, c) of each administered item.
        responses: Correctness of each response, aligned with ``params``.
        theta_start: Starting point for the iteration.
        theta_min: Lower bound; iterates are clamped to it.
        theta_max: Upper bound; iterates are clamped to it.
        max_iterations: Iteration budget.
        tolerance: Convergence threshold on |delta theta|.

    Returns:
        AbilityEstimate with method MLE.

    Raises:
        NonConvergentEstimate: For all-correct/all-incorrect patterns, a
            non-negative second derivative, non-finite derivatives, or an
            exhausted iteration budget.
    """
    if not responses:
        raise NonConvergentEstimate("No responses to estimate from")
    if all(responses) or not any(responses):
        pattern = "all correct" if all(responses) else "all incorrect"
        raise NonConvergentEstimate(
            f"MLE is unbounded for a response pattern that is {pattern}",
            context={"n_responses": len(responses)},
        )

    theta = _clamp(theta_start, theta_min, theta_max)
    for iteration in range(1, max_iterations + 1):
        first, second = log_likelihood_derivatives(theta, params, responses)
        if not (math.isfinite(first) and math.isfinite(second)):
            raise NonConvergentEstimate(
                "Non-finite log-likelihood derivatives",
                context={"theta": round(theta, 4), "iteration": iteration},
            )
        if second >= 0:
            raise NonConvergentEstimate(
                "Log-likelihood is not concave at the current iterate",
                context={"theta": round(theta, 4), "iteration": iteration},
            )

        step = first / second
        step = _clamp(step, -MAX_NEWTON_STEP, MAX_NEWTON_STEP)
        new_theta = _clamp(theta - step, theta_min, theta_max)
        delta = abs(new_theta - theta)
        theta = new_theta

        if delta < tolerance:
            information = total_information(theta, params)
            se = (
                1.0 / math.sqrt(information)
                if information > 0
                else UNBOUNDED_STANDARD_ERROR
            )
            return AbilityEstimate(
                theta=theta,
                standard_error=min(se, UNBOUNDED_STANDARD_ERROR),
                iterations=iteration,
                method=EstimationMethod.MLE,
            )

    raise NonConvergentEstimate(
        f"Newton-Raphson did not converge within {max_iterations} iterations",
        context={"theta": round(theta, 4)},
    )


def estimate_ability_eap(
    params: Sequence[ItemParameters],
    responses: Sequence[bool],
    prior_mean: float = 0.0,
    prior_sd: float = 1.0,
    theta_min: float = -4.0,
    theta_max: float = 4.0,
    quadrature_points: int = DEFAULT_QUADRATURE_POINTS,
) -> AbilityEstimate:
    """
    Estimate ability using Expected A Posteriori with numerical quadrature.

    The quadrature grid is evenly spaced over [theta_min, theta_max], so the
    posterior mean always lies inside the bounds.

    Standard error is the posterior standard deviation:
        SE = sqrt(Var[theta | responses])

    Args:
        params: Effective (a, b, c) of each administered item.
        responses: Correctness of each response, aligned with ``params``.
        prior_mean: Mean of the Gaussian prior on theta.
        prior_sd: Standard deviation of the Gaussian prior on theta.
        theta_min: Lower end of the quadrature grid.
        theta_max: Upper end of the quadrature grid.
        quadrature_points: Number of grid points.

    Returns:
        AbilityEstimate with method EAP.

    Raises:
        ValueError: If prior_sd is not positive or fewer than 2 grid points.
    """
    if prior_sd <= 0:
        raise ValueError(f"prior_sd must be positive, got {prior_sd}")
    if quadrature_points < 2:
        raise ValueError(
            f"quadrature_points must be at least 2, got {quadrature_points}"
        )

    theta_points = np.linspace(theta_min, theta_max, quadrature_points)

    # log N(theta | mu, sigma^2) up to a constant, which cancels on normalisation
    log_priors = -((theta_points - prior_mean) ** 2) / (2.0 * prior_sd**2)
    log_posteriors = log_priors + log_likelihood_grid(theta_points, params, responses)

    # Normalize using log-sum-exp for numerical stability
    posteriors = np.exp(log_posteriors - np.max(log_posteriors))
    posterior_sum = float(np.sum(posteriors))
    if posterior_sum == 0.0 or not math.isfinite(posterior_sum):
        logger.warning(
            "Posterior collapsed at all quadrature points. Returning prior estimate."
        )
        return AbilityEstimate(
            theta=_clamp(prior_mean, theta_min, theta_max),
            standard_error=prior_sd,
            iterations=0,
            method=EstimationMethod.EAP,
        )

    posterior_probs = posteriors / posterior_sum
    theta_hat = float(np.sum(theta_points * posterior_probs))
    posterior_variance = float(np.sum((theta_points - theta_hat) ** 2 * posterior_probs))

    return AbilityEstimate(
        theta=_clamp(theta_hat, theta_min, theta_max),
        standard_error=math.sqrt(posterior_variance),
        iterations=0,
        method=EstimationMethod.EAP,
    )


def estimate_ability(
    params: Sequence[ItemParameters],
    responses: Sequence[bool],
    config: CATConfig,
) -> AbilityEstimate:
    """
    Estimate ability for a response history under an exam configuration.

    With no responses the estimate is theta_start with an unbounded SE.
    Otherwise MLE is tried first (unless the configuration asks for EAP
    throughout) and any NonConvergentEstimate is absorbed by falling back
    to EAP. The fallback is logged, never raised.
    """
    if not responses:
        return AbilityEstimate(
            theta=config.theta_start,
            standard_error=UNBOUNDED_STANDARD_ERROR,
            iterations=0,
            method=config.estimation_method,
        )

    eap_kwargs = dict(
        prior_mean=config.prior_mean,
        prior_sd=config.prior_sd,
        theta_min=config.theta_min,
        theta_max=config.theta_max,
        quadrature_points=config.quadrature_points,
    )

    if config.estimation_method == EstimationMethod.EAP:
        return estimate_ability_eap(params, responses, **eap_kwargs)

    try:
        return estimate_ability_mle(
            params,
            responses,
            theta_start=config.theta_start,
            theta_min=config.theta_min,
            theta_max=config.theta_max,
            max_iterations=config.max_iterations,
            tolerance=config.tolerance,
        )
    except NonConvergentEstimate as e:
        logger.debug(f"Falling back to EAP: {e}")
        return estimate_ability_eap(params, responses, **eap_kwargs)
