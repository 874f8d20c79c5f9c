"""
Monte Carlo simulation of an adaptive exam configuration.

Simulates examinees with known ability through the session controller and
prints (or writes) a markdown report of precision, test length, exposure
and content balance. With --exam-file the bank and configuration of a
registered exam definition are used; otherwise a synthetic bank is
generated.

Usage:
    python scripts/run_cat_simulation.py [--examinees N] [--seed SEED]
        [--exam-file exams.json --exam-id ID] [--output report.md]
        [--counts-output counts.json]

Exit codes:
    0 - Success
    1 - Simulation error
    3 - Configuration error
"""

import argparse
import json
import logging
import sys
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("cat_simulation")

DEFAULT_EXAMINEES = 1000
DEFAULT_ITEMS_PER_CATEGORY = 50


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a Monte Carlo simulation of adaptive attempts"
    )
    parser.add_argument(
        "--examinees",
        type=int,
        default=DEFAULT_EXAMINEES,
        help=f"Simulated examinees (default: {DEFAULT_EXAMINEES})",
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument(
        "--items-per-category",
        type=int,
        default=DEFAULT_ITEMS_PER_CATEGORY,
        help="Synthetic bank size per category (ignored with --exam-file)",
    )
    parser.add_argument(
        "--exam-file",
        type=Path,
        help="JSON file with a list of exam definitions",
    )
    parser.add_argument(
        "--exam-id",
        help="Exam to simulate from --exam-file (default: the first one)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Write the markdown report here instead of stdout",
    )
    parser.add_argument(
        "--counts-output",
        type=Path,
        help="Write observed exposure counts as JSON for recalibrate_exposure.py",
    )
    return parser.parse_args(argv)


def _load_exam(path: Path, exam_id):
    from pydantic import TypeAdapter

    from cat_engine.schemas.cat import ExamDefinition

    definitions = TypeAdapter(list[ExamDefinition]).validate_json(
        path.read_text(encoding="utf-8")
    )
    if not definitions:
        raise ValueError(f"{path} holds no exam definitions")
    if exam_id is None:
        return definitions[0]
    for definition in definitions:
        if definition.exam_id == exam_id:
            return definition
    raise ValueError(f"Exam {exam_id} not found in {path}")


def main(argv=None) -> int:
    args = _parse_args(argv)

    # Defer imports so config/import failures produce exit code 3
    try:
        from cat_engine.core.cat.exposure_control import ExposureMonitor
        from cat_engine.core.cat.exposure_store import InMemoryExposureStore
        from cat_engine.core.cat.simulation import (
            SimulationConfig,
            generate_item_bank,
            generate_report,
            run_simulation,
        )
        from cat_engine.core.config import settings
        from cat_engine.schemas.cat import CATConfig
    except Exception as exc:
        logger.error("Failed to import required modules: %s", exc)
        return 3

    try:
        if args.exam_file is not None:
            definition = _load_exam(args.exam_file, args.exam_id)
            item_bank, cat_config = definition.item_bank, definition.config
            logger.info(
                "Simulating exam %s (%d items)", definition.exam_id, len(item_bank)
            )
        else:
            item_bank = generate_item_bank(
                n_items_per_category=args.items_per_category, seed=args.seed
            )
            cat_config = CATConfig()
            logger.info("Simulating synthetic bank (%d items)", len(item_bank))
    except Exception as exc:
        logger.error("Failed to load exam definition: %s", exc)
        return 3

    store = InMemoryExposureStore()
    try:
        result = run_simulation(
            item_bank,
            SimulationConfig(
                n_examinees=args.examinees, seed=args.seed, cat_config=cat_config
            ),
            exposure_store=store,
        )
    except Exception as exc:
        logger.error("Simulation failed: %s", exc)
        return 1

    report = generate_report(result)
    if args.output is not None:
        args.output.write_text(report, encoding="utf-8")
        logger.info("Report written to %s", args.output)
    else:
        print(report)

    if args.counts_output is not None:
        counts = {
            "attempts": store.attempt_count(),
            "counts": store.get_counts(),
        }
        args.counts_output.write_text(json.dumps(counts, indent=2), encoding="utf-8")
        logger.info("Exposure counts written to %s", args.counts_output)

    monitor = ExposureMonitor(store, alert_threshold=settings.EXPOSURE_ALERT_THRESHOLD)
    monitor.check_and_alert()

    logger.info(
        "Simulation complete: mean_items=%.1f, rmse=%.3f, max_exposure=%.3f",
        result.overall_mean_items,
        result.overall_rmse,
        result.max_exposure_rate,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
