"""Orchestrator for the wildfire BACI bat-activity GLMM analysis."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

from bat_baci import common, pipeline
from bat_baci.preparation import PARTITIONS


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fit, select and summarise negative-binomial GLMMs per response and year partition."
    )
    parser.add_argument(
        "--data-path",
        type=Path,
        default=None,
        help="Optional override for the raw bat pass table (defaults to data/bat_passes.csv).",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Root directory for outputs (defaults to outputs/baci).",
    )
    parser.add_argument(
        "--responses",
        nargs="+",
        default=list(common.RESPONSES),
        help="Response columns to model.",
    )
    parser.add_argument(
        "--partitions",
        nargs="+",
        choices=list(PARTITIONS),
        default=list(PARTITIONS),
        help="Year partitions to model.",
    )
    parser.add_argument(
        "--delta",
        type=float,
        default=common.DELTA_AICC,
        help="AICc delta within which candidate models count as supported.",
    )
    parser.add_argument(
        "--no-prune",
        action="store_true",
        help="Keep collinear covariates instead of dropping them before selection.",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Worker processes for candidate fits (sequential when omitted).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    out_dir = pipeline.run(
        output_dir=args.output_dir,
        data_path=args.data_path,
        responses=args.responses,
        partitions=args.partitions,
        delta=args.delta,
        prune=not args.no_prune,
        max_workers=args.max_workers,
    )
    print(f"Outputs written to {out_dir}")


if __name__ == "__main__":
    main()
