"""
Out-of-band Sympson-Hetter recalibration.

Reads observed exposure counts (as written by run_cat_simulation.py
--counts-output, or exported from a production exposure store), runs one
recalibration iteration and writes the new control parameters as JSON.

Input file format:
    {
        "attempts": 1000,
        "counts": {"item-0001": 412, "item-0002": 37, ...},
        "control_parameters": {"item-0001": 0.8, ...}    # optional
    }

Usage:
    python scripts/recalibrate_exposure.py counts.json [--output k.json]
        [--target-rate 0.25] [--alpha 1.0] [--apply] [--dry-run]

With --apply the new parameters are also written to the exposure store
selected by the CAT_EXPOSURE_* environment settings. --dry-run logs the
changes and writes nothing.

Exit codes:
    0 - Success
    1 - Exposure store error
    2 - Recalibration error
    3 - Input/configuration error
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
logger = logging.getLogger("exposure_recalibration")

# Changes smaller than this are not reported individually.
REPORT_CHANGE_THRESHOLD = 0.01


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Recalibrate Sympson-Hetter control parameters from exposure counts"
    )
    parser.add_argument("counts_file", type=Path, help="JSON file with observed counts")
    parser.add_argument(
        "--output",
        type=Path,
        help="Write new control parameters here instead of stdout",
    )
    parser.add_argument(
        "--target-rate",
        type=float,
        default=None,
        help="Maximum desired exposure rate (default: 0.25)",
    )
    parser.add_argument(
        "--alpha",
        type=float,
        default=None,
        help="Damping exponent, 1.0 is a full proportional step",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Also write the parameters to the configured exposure store",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the changes without writing anything",
    )
    return parser.parse_args(argv)


def _load_counts(path: Path):
    payload = json.loads(path.read_text(encoding="utf-8"))
    attempts = int(payload["attempts"])
    counts = {str(k): int(v) for k, v in payload["counts"].items()}
    current_k = {
        str(k): float(v) for k, v in payload.get("control_parameters", {}).items()
    }
    return attempts, counts, current_k


def main(argv=None) -> int:
    args = _parse_args(argv)

    # Defer imports so config/import failures produce exit code 3
    try:
        from cat_engine.core.cat.exposure_control import (
            DEFAULT_RECALIBRATION_ALPHA,
            DEFAULT_TARGET_EXPOSURE_RATE,
            recalibrate_control_parameters,
        )
        from cat_engine.core.errors import CATEngineError
    except Exception as exc:
        logger.error("Failed to import required modules: %s", exc)
        return 3

    try:
        attempts, counts, current_k = _load_counts(args.counts_file)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        logger.error("Failed to read %s: %s", args.counts_file, exc)
        return 3

    try:
        new_k = recalibrate_control_parameters(
            counts,
            attempts,
            current_k,
            target_rate=(
                args.target_rate
                if args.target_rate is not None
                else DEFAULT_TARGET_EXPOSURE_RATE
            ),
            alpha=args.alpha if args.alpha is not None else DEFAULT_RECALIBRATION_ALPHA,
        )
    except ValueError as exc:
        logger.error("Recalibration failed: %s", exc)
        return 2

    changed = 0
    for item_id, k in new_k.items():
        previous = current_k.get(item_id, 1.0)
        if abs(k - previous) >= REPORT_CHANGE_THRESHOLD:
            changed += 1
            logger.info(
                "%s: rate=%.3f k %.3f -> %.3f",
                item_id,
                counts.get(item_id, 0) / attempts,
                previous,
                k,
            )
    logger.info("%d of %d control parameters changed", changed, len(new_k))

    if args.dry_run:
        logger.info("Dry run: nothing written")
        return 0

    output = json.dumps(new_k, indent=2, sort_keys=True)
    if args.output is not None:
        args.output.write_text(output, encoding="utf-8")
        logger.info("Control parameters written to %s", args.output)
    else:
        print(output)

    if args.apply:
        try:
            from cat_engine.core.cat.exposure_store import create_exposure_store
            from cat_engine.core.config import settings

            store = create_exposure_store(
                backend=settings.EXPOSURE_STORE,
                redis_url=settings.EXPOSURE_REDIS_URL,
                key_prefix=settings.EXPOSURE_KEY_PREFIX,
                max_retries=settings.EXPOSURE_MAX_RETRIES,
            )
            store.set_control_parameters(new_k)
        except (CATEngineError, ValueError) as exc:
            logger.error("Failed to apply control parameters: %s", exc)
            return 1
        logger.info(
            "Applied %d control parameters to the %s exposure store",
            len(new_k),
            settings.EXPOSURE_STORE,
        )

    return 0


if __name__ == "__main__":
    sys.exit(main())
