"""CLI entry point for connectome-stats."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import StatsConfig
from .core import ConnectomeStatsAnalyzer
from .exceptions import ConnectomeStatsError


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def cmd_run(args):
    """Run the permutation test for a study."""
    config = StatsConfig.from_yaml(args.config)
    analyzer = ConnectomeStatsAnalyzer(config)

    print(f"Study: {config.name}")
    print(f"Subjects: {analyzer.n_subjects}")
    print(f"Nodes: {analyzer.cohort.mat2vec.n_nodes} ({analyzer.cohort.n_edges} edges)")
    print(f"Algorithm: {config.algorithm}")
    print()

    try:
        result = analyzer.run()
    except ConnectomeStatsError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    if result.fwe_pvalues is not None:
        for ih, hyp in enumerate(result.hypotheses):
            n_sig = int((result.fwe_pvalues[:, ih] < 0.05).sum())
            print(f"  {hyp.name}: {n_sig} edges with FWE p < 0.05")
    print(f"\nDone. Output: {config.output_dir}")


def cmd_validate(args):
    """Validate a study configuration."""
    config = StatsConfig.from_yaml(args.config)

    try:
        analyzer = ConnectomeStatsAnalyzer(config)
    except Exception as e:
        print(f"ERROR: Failed to load cohort: {e}")
        sys.exit(1)

    issues = analyzer.validate()

    print(f"Study: {config.name}")
    print(f"Config: {args.config}")
    print(f"Subjects: {analyzer.n_subjects}")
    print(f"Edges: {analyzer.cohort.n_edges}")
    print(f"Element-wise columns: {len(config.columns)}")
    print(f"Algorithm: {config.algorithm}")
    print(f"Shuffles: {config.permutation.n_shuffles} ({config.permutation.errors})")

    if issues:
        print(f"\nProblems ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")
        sys.exit(1)
    else:
        print("\nValidation passed.")


def main():
    parser = argparse.ArgumentParser(
        prog="connectome-stats",
        description="Connectome edge-wise statistics using non-parametric permutation testing",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = subparsers.add_parser("run", help="Run the permutation test")
    p_run.add_argument("--config", required=True, type=Path, help="Path to study YAML config")
    p_run.set_defaults(func=cmd_run)

    # validate
    p_val = subparsers.add_parser("validate", help="Validate study config")
    p_val.add_argument("--config", required=True, type=Path, help="Path to study YAML config")
    p_val.set_defaults(func=cmd_validate)

    args = parser.parse_args()
    setup_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
