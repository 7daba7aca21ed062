#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

import numpy as np

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from soupclust.clustering.purity import PurityPolicy  # noqa: E402
from soupclust.clustering.soup import run_soup  # noqa: E402
from soupclust.cross_validation import cross_validate, save_cross_validation  # noqa: E402
from soupclust.metrics import major_labels  # noqa: E402
from soupclust.synthetic import (  # noqa: E402
    generate_blobs,
    generate_soft_mixture,
    generate_trajectory,
)


CV_ROOT = REPO_ROOT / "Results" / "cv"
DEFAULT_KS = (2, 3, 4, 5)
# a path has no gaps, so it is only cut into K pieces with a fine separation
TRAJECTORY_SEPARATION = 0.25


@dataclass(frozen=True)
class Scenario:
    name: str
    family: str
    n_samples: int
    n_features: int
    n_clusters: int
    seed: int
    separation: float = 2.0


def build_scenarios() -> List[Scenario]:
    """Return the catalog of synthetic scenarios."""
    scenarios: list[Scenario] = []
    for family in ("blobs", "soft", "trajectory"):
        for n_clusters in (3, 4):
            for n_samples, n_features in ((100, 50), (300, 200)):
                scenarios.append(
                    Scenario(
                        name=f"{family}_k{n_clusters}_n{n_samples}_p{n_features}",
                        family=family,
                        n_samples=n_samples,
                        n_features=n_features,
                        n_clusters=n_clusters,
                        seed=n_samples + n_features + n_clusters,
                        separation=TRAJECTORY_SEPARATION if family == "trajectory" else 2.0,
                    )
                )
    return scenarios


def generate_matrix(scenario: Scenario) -> Tuple[np.ndarray, np.ndarray]:
    """Render a scenario into its expression matrix and true hard labels."""
    if scenario.family == "blobs":
        return generate_blobs(
            scenario.n_samples, scenario.n_features, scenario.n_clusters, seed=scenario.seed
        )
    if scenario.family == "soft":
        values, memberships, _ = generate_soft_mixture(
            scenario.n_samples, scenario.n_features, scenario.n_clusters, concentration=0.2, seed=scenario.seed
        )
        return values, major_labels(memberships)
    if scenario.family == "trajectory":
        values, memberships, _ = generate_trajectory(
            scenario.n_samples, scenario.n_features, scenario.n_clusters, seed=scenario.seed
        )
        return values, major_labels(memberships)
    raise ValueError(f"Unsupported scenario family: {scenario.family!r}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate synthetic expression matrices and cross-validate the number of SOUP clusters."
    )
    parser.add_argument(
        "--scenario",
        action="append",
        dest="scenarios",
        help="Run only the named scenario (can be provided multiple times).",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List available scenarios and exit.",
    )
    parser.add_argument(
        "--k",
        action="append",
        type=int,
        dest="ks",
        help="Candidate K (can be repeated). Defaults to 2, 3, 4 and 5.",
    )
    parser.add_argument(
        "--nfold",
        type=int,
        default=5,
        help="Number of folds per repetition (default: 5).",
    )
    parser.add_argument(
        "--n-cv",
        type=int,
        default=2,
        help="Number of cross-validation repetitions (default: 2).",
    )
    parser.add_argument(
        "--base-seed",
        type=int,
        default=0,
        help="Repetition r uses seed base_seed + r (default: 0).",
    )
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=None,
        help="Worker pool size (default: min(nfold, cpu count)).",
    )
    parser.add_argument(
        "--separation",
        type=float,
        default=None,
        help="Override the anchor selector's group separation for every scenario.",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help=f"Write records and summary under {CV_ROOT.relative_to(REPO_ROOT)}.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show the package's info-level log messages.",
    )
    return parser.parse_args()


def select_scenarios(scenarios: Sequence[Scenario], *, names: Sequence[str] | None) -> list[Scenario]:
    """Filter the scenario catalog."""
    if not names:
        return list(scenarios)
    name_filter = set(names)
    return [scenario for scenario in scenarios if scenario.name in name_filter]


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    scenarios = build_scenarios()

    if args.list:
        print("Available scenarios:")
        for scenario in scenarios:
            print(f"  {scenario.name:>28}  ({scenario.family}, true K={scenario.n_clusters})")
        return

    selected = select_scenarios(scenarios, names=args.scenarios)
    if not selected:
        raise SystemExit("No scenarios selected. Use --list to inspect available names.")

    ks = tuple(args.ks) if args.ks else DEFAULT_KS
    seeds = [args.base_seed + r for r in range(args.n_cv)]

    for scenario in selected:
        print(f"[scenario] {scenario.name}  ({scenario.family}, true K={scenario.n_clusters})")
        matrix, labels = generate_matrix(scenario)
        policy = PurityPolicy(separation=args.separation or scenario.separation)
        result = cross_validate(
            matrix,
            ks,
            nfold=args.nfold,
            n_cv=args.n_cv,
            seeds=seeds,
            policy=policy,
            n_jobs=args.n_jobs,
        )
        print(result.summary.to_string())
        print(f"  selected K={result.optimal_k}")
        soup = run_soup(matrix, [result.optimal_k], policy=policy, random_state=args.base_seed)
        if soup.succeeded:
            agreement = soup.compare(result.optimal_k, labels)
            print("  agreement with truth: " + ", ".join(f"{name}={value:.3f}" for name, value in agreement.items()))
        if args.save:
            target = save_cross_validation(result, CV_ROOT, dataset_name=scenario.name)
            print(f"  [saved] {target}")


if __name__ == "__main__":
    main()
