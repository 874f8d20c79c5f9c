"""
Monte Carlo simulation of adaptive attempts.

Simulates N examinees with known ability taking adaptive tests through the
SessionController, and summarises precision, test length, exposure and
content balance. Used to check an exam configuration before it goes live
and to produce the observed exposure counts that feed Sympson-Hetter
recalibration.

References:
    - Weiss, D. J. (2004). Computerized adaptive testing for effective and
      efficient measurement in counseling and education. Measurement and
      Evaluation in Counseling and Development, 37(2), 70-84.
    - Kingsbury, G. G., & Zara, A. R. (1989). Procedures for selecting items
      for computerized adaptive tests. Applied Measurement in Education, 2(4), 359-375.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from cat_engine.core.cat.content_balancing import is_content_balanced
from cat_engine.core.cat.engine import SessionController
from cat_engine.core.cat.exposure_store import ExposureStore, InMemoryExposureStore
from cat_engine.core.cat.response_model import ItemParameters, item_parameters, probability
from cat_engine.schemas.cat import CATConfig, Item, ItemBank, TerminationSignal
from libs.domain_types import IRTModel

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_TARGETS = {"A": 50.0, "B": 50.0}

# Synthetic item parameter distributions (Lord, 1980)
DISCRIMINATION_LOGNORMAL_MEAN = 0.0
DISCRIMINATION_LOGNORMAL_SD = 0.3
DISCRIMINATION_MIN = 0.5
DISCRIMINATION_MAX = 2.5
DIFFICULTY_NORMAL_MEAN = 0.0
DIFFICULTY_NORMAL_SD = 1.0
DIFFICULTY_MIN = -3.0
DIFFICULTY_MAX = 3.0
# 3PL guessing ~ Beta(5, 17), mean ~0.23
GUESSING_BETA_A = 5.0
GUESSING_BETA_B = 17.0
GUESSING_MAX = 0.35

# Ability quintiles for stratified analysis
QUINTILE_BOUNDARIES = [
    ("Very Low", -3.0, -1.2),
    ("Low", -1.2, -0.4),
    ("Average", -0.4, 0.4),
    ("High", 0.4, 1.2),
    ("Very High", 1.2, 3.0),
]


@dataclass
class SimulationConfig:
    """Configuration for a simulation run."""

    n_examinees: int = 1000
    theta_mean: float = 0.0
    theta_sd: float = 1.0
    seed: int = 42
    cat_config: CATConfig = field(default_factory=CATConfig)


@dataclass
class ExamineeResult:
    """Per-examinee simulation results."""

    true_theta: float
    estimated_theta: float
    final_se: float
    bias: float  # estimated_theta - true_theta
    items_administered: int
    termination_reason: str
    converged: bool  # SE <= se_target at the end
    content_balanced: bool
    category_tally: Dict[str, int]
    administered_item_ids: List[str] = field(default_factory=list)


@dataclass
class QuintileMetrics:
    """Metrics for an ability quintile."""

    label: str
    theta_range: Tuple[float, float]
    n: int
    mean_items: float
    mean_se: float
    mean_bias: float
    rmse: float
    convergence_rate: float


@dataclass
class SimulationResult:
    """Aggregate simulation results."""

    config: SimulationConfig
    examinee_results: List[ExamineeResult]
    overall_mean_items: float
    overall_median_items: float
    overall_mean_se: float
    overall_mean_bias: float
    overall_rmse: float
    overall_convergence_rate: float
    content_balance_rate: float
    quintile_metrics: List[QuintileMetrics]
    termination_reason_counts: Dict[str, int]
    exposure_rates: Dict[str, float]
    max_exposure_rate: float
    unused_item_count: int


def generate_item_bank(
    n_items_per_category: int = 50,
    categories: Optional[List[str]] = None,
    category_targets: Optional[Dict[str, float]] = None,
    model: IRTModel = IRTModel.TWO_PL,
    seed: int = 42,
) -> ItemBank:
    """
    Generate a synthetic item bank with realistic IRT parameters.

    Item parameters are drawn from distributions that match typical
    operational item banks (Lord, 1980):
        - Discrimination (a) ~ LogNormal(0.0, 0.3), clipped to [0.5, 2.5]
        - Difficulty (b) ~ Normal(0.0, 1.0), clipped to [-3.0, 3.0]
        - Guessing (c, 3PL only) ~ Beta(5, 17), clipped to [0, 0.35]

    Args:
        n_items_per_category: Items to generate per category.
        categories: Category names. Defaults to the keys of the targets.
        category_targets: Target percentages stored on the bank. Defaults to
            an even split over ``categories``.
        model: Model the parameters are generated for.
        seed: Random seed for reproducibility.
    """
    if categories is None:
        categories = list((category_targets or DEFAULT_CATEGORY_TARGETS).keys())
    if category_targets is None:
        category_targets = {c: 100.0 / len(categories) for c in categories}

    rng = np.random.default_rng(seed)
    items: List[Item] = []

    for category in categories:
        for _ in range(n_items_per_category):
            a = rng.lognormal(
                mean=DISCRIMINATION_LOGNORMAL_MEAN, sigma=DISCRIMINATION_LOGNORMAL_SD
            )
            a = float(np.clip(a, DISCRIMINATION_MIN, DISCRIMINATION_MAX))

            b = rng.normal(loc=DIFFICULTY_NORMAL_MEAN, scale=DIFFICULTY_NORMAL_SD)
            b = float(np.clip(b, DIFFICULTY_MIN, DIFFICULTY_MAX))

            c = 0.0
            if model == IRTModel.THREE_PL:
                c = float(
                    np.clip(rng.beta(GUESSING_BETA_A, GUESSING_BETA_B), 0.0, GUESSING_MAX)
                )

            items.append(
                Item(
                    id=f"item-{len(items) + 1:04d}",
                    discrimination=a,
                    difficulty=b,
                    guessing=c,
                    category=category,
                )
            )

    logger.info(
        f"Generated item bank: {len(items)} items across {len(categories)} categories "
        f"({n_items_per_category} per category)"
    )
    return ItemBank(items=items, category_targets=category_targets)


def simulate_response(
    true_theta: float,
    params: ItemParameters,
    rng: random.Random,
) -> bool:
    """Draw a response from the model's probability of a correct answer."""
    return rng.random() < probability(true_theta, params.a, params.b, params.c)


def run_simulation(
    item_bank: ItemBank,
    config: SimulationConfig,
    exposure_store: Optional[ExposureStore] = None,
) -> SimulationResult:
    """
    Run a simulation through the SessionController.

    For each simulated examinee:
    1. Draw true_theta from N(config.theta_mean, config.theta_sd)
    2. Start an attempt seeded with config.seed + examinee index
    3. Loop: next_item -> simulate_response -> submit_response
    4. Record ExamineeResult

    Args:
        item_bank: Bank to administer from.
        config: Simulation configuration.
        exposure_store: Store to count exposures in. A fresh in-memory store
            is used if omitted; pass one holding control parameters to
            simulate Sympson-Hetter.
    """
    store = exposure_store or InMemoryExposureStore()
    controller = SessionController(item_bank, config.cat_config, exposure_store=store)
    cat_config = controller.config

    logger.info(
        f"Starting CAT simulation: N={config.n_examinees}, "
        f"theta ~ N({config.theta_mean}, {config.theta_sd}²)"
    )

    rng = random.Random(config.seed)
    np_rng = np.random.default_rng(config.seed)
    examinee_results = []

    for examinee in range(config.n_examinees):
        true_theta = float(np_rng.normal(loc=config.theta_mean, scale=config.theta_sd))

        state = controller.start(
            session_id=f"sim-{examinee:06d}", seed=config.seed + examinee
        )
        while True:
            nxt = controller.next_item(state)
            if isinstance(nxt, TerminationSignal):
                break
            correct = simulate_response(
                true_theta, item_parameters(nxt, cat_config.model), rng
            )
            state = controller.submit_response(state, nxt.id, correct)

        if not state.is_terminated:
            # next_item reported an exhausted pool before the stopping rules did
            state = controller.terminate(state, nxt.reason)

        estimate = state.current_estimate
        examinee_results.append(
            ExamineeResult(
                true_theta=true_theta,
                estimated_theta=estimate.theta,
                final_se=estimate.standard_error,
                bias=estimate.theta - true_theta,
                items_administered=state.items_administered,
                termination_reason=state.termination_reason.value,
                converged=estimate.standard_error <= cat_config.se_target,
                content_balanced=is_content_balanced(
                    state.category_tally,
                    controller.category_targets,
                    state.items_administered,
                ),
                category_tally=dict(state.category_tally),
                administered_item_ids=list(state.administered_item_ids),
            )
        )

        if (examinee + 1) % 100 == 0:
            logger.info(f"Completed {examinee + 1}/{config.n_examinees} examinees")

    return _aggregate_results(config, examinee_results, item_bank)


def _aggregate_results(
    config: SimulationConfig,
    examinee_results: List[ExamineeResult],
    item_bank: ItemBank,
) -> SimulationResult:
    if not examinee_results:
        raise ValueError("Cannot aggregate results from empty examinee list")

    n = len(examinee_results)
    items_administered = [r.items_administered for r in examinee_results]
    biases = np.array([r.bias for r in examinee_results])

    termination_reason_counts: Dict[str, int] = {}
    exposure_counts: Dict[str, int] = {item.id: 0 for item in item_bank.items}
    for result in examinee_results:
        reason = result.termination_reason
        termination_reason_counts[reason] = termination_reason_counts.get(reason, 0) + 1
        for item_id in result.administered_item_ids:
            exposure_counts[item_id] = exposure_counts.get(item_id, 0) + 1

    exposure_rates = {item_id: count / n for item_id, count in exposure_counts.items()}

    result = SimulationResult(
        config=config,
        examinee_results=examinee_results,
        overall_mean_items=float(np.mean(items_administered)),
        overall_median_items=float(np.median(items_administered)),
        overall_mean_se=float(np.mean([r.final_se for r in examinee_results])),
        overall_mean_bias=float(np.mean(biases)),
        overall_rmse=float(np.sqrt(np.mean(biases**2))),
        overall_convergence_rate=sum(1 for r in examinee_results if r.converged) / n,
        content_balance_rate=sum(1 for r in examinee_results if r.content_balanced)
        / n,
        quintile_metrics=compute_quintile_metrics(examinee_results),
        termination_reason_counts=termination_reason_counts,
        exposure_rates=exposure_rates,
        max_exposure_rate=max(exposure_rates.values(), default=0.0),
        unused_item_count=sum(1 for count in exposure_counts.values() if count == 0),
    )

    logger.info(
        f"Simulation complete: "
        f"mean_items={result.overall_mean_items:.1f}, "
        f"mean_SE={result.overall_mean_se:.3f}, "
        f"RMSE={result.overall_rmse:.3f}, "
        f"convergence_rate={result.overall_convergence_rate:.1%}, "
        f"max_exposure={result.max_exposure_rate:.1%}"
    )
    return result


def compute_quintile_metrics(
    examinee_results: List[ExamineeResult],
) -> List[QuintileMetrics]:
    """
    Stratified metrics for each ability quintile.

    Quintiles are defined by true_theta, not estimated theta, to avoid
    regression to the mean artifacts. The first and last quintiles are
    open-ended.
    """
    quintile_metrics = []
    for label, theta_min, theta_max in QUINTILE_BOUNDARIES:
        members = [
            r
            for r in examinee_results
            if (label == "Very Low" and r.true_theta < theta_max)
            or (label == "Very High" and r.true_theta >= theta_min)
            or theta_min <= r.true_theta < theta_max
        ]

        if not members:
            quintile_metrics.append(
                QuintileMetrics(label, (theta_min, theta_max), 0, 0.0, 0.0, 0.0, 0.0, 0.0)
            )
            continue

        biases = np.array([r.bias for r in members])
        quintile_metrics.append(
            QuintileMetrics(
                label=label,
                theta_range=(theta_min, theta_max),
                n=len(members),
                mean_items=float(np.mean([r.items_administered for r in members])),
                mean_se=float(np.mean([r.final_se for r in members])),
                mean_bias=float(np.mean(biases)),
                rmse=float(np.sqrt(np.mean(biases**2))),
                convergence_rate=sum(1 for r in members if r.converged) / len(members),
            )
        )
    return quintile_metrics


def generate_report(result: SimulationResult) -> str:
    """Markdown report of a simulation run."""
    cfg = result.config
    cat = cfg.cat_config
    lines = [
        "# CAT Simulation Report",
        "",
        "## Simulation Configuration",
        "",
        f"- **N Examinees**: {cfg.n_examinees:,}",
        f"- **Theta Distribution**: N({cfg.theta_mean}, {cfg.theta_sd}²)",
        f"- **Model**: {cat.model.value}",
        f"- **SE Target**: {cat.se_target}",
        f"- **Min / Max Items**: {cat.min_items} / {cat.max_items}",
        f"- **Estimation**: {cat.estimation_method.value}",
        "- **Exposure Control**: "
        + (cat.exposure_method.value if cat.exposure_control_enabled else "off"),
        f"- **Content Balancing**: {'on' if cat.content_balancing_enabled else 'off'}",
        f"- **Random Seed**: {cfg.seed}",
        "",
        "## Overall Metrics",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Mean Items | {result.overall_mean_items:.2f} |",
        f"| Median Items | {result.overall_median_items:.1f} |",
        f"| Mean SE | {result.overall_mean_se:.3f} |",
        f"| Mean Bias | {result.overall_mean_bias:.3f} |",
        f"| RMSE | {result.overall_rmse:.3f} |",
        f"| Convergence Rate | {result.overall_convergence_rate:.1%} |",
        f"| Content Balanced | {result.content_balance_rate:.1%} |",
        f"| Max Exposure Rate | {result.max_exposure_rate:.1%} |",
        f"| Unused Items | {result.unused_item_count} |",
        "",
        "## Quintile Breakdown",
        "",
        "| Quintile | N | Mean Items | Mean SE | RMSE | Convergence |",
        "|----------|---|------------|---------|------|-------------|",
    ]
    for qm in result.quintile_metrics:
        lines.append(
            f"| {qm.label} | {qm.n} | {qm.mean_items:.2f} | "
            f"{qm.mean_se:.3f} | {qm.rmse:.3f} | {qm.convergence_rate:.1%} |"
        )

    lines.extend(
        [
            "",
            "## Termination Reasons",
            "",
            "| Reason | Count | Percentage |",
            "|--------|-------|------------|",
        ]
    )
    total = sum(result.termination_reason_counts.values())
    for reason, count in sorted(
        result.termination_reason_counts.items(), key=lambda x: -x[1]
    ):
        pct = count / total if total > 0 else 0.0
        lines.append(f"| {reason} | {count:,} | {pct:.1%} |")

    most_exposed = sorted(result.exposure_rates.items(), key=lambda x: -x[1])[:10]
    lines.extend(
        [
            "",
            "## Most Exposed Items",
            "",
            "| Item | Exposure Rate |",
            "|------|---------------|",
        ]
    )
    for item_id, rate in most_exposed:
        lines.append(f"| {item_id} | {rate:.1%} |")
    lines.append("")

    return "\n".join(lines)
