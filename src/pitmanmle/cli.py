# src/pitmanmle/cli.py

import argparse
import logging

from pitmanmle.core import pitman
from pitmanmle.newton import NewtonConfig


def _class_pair(text: str):
    """Parse SIZE:COUNT."""
    try:
        size, count = text.split(":")
        return int(size), int(count)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"expected SIZE:COUNT (e.g. 1:50), got {text!r}"
        ) from None


def main(argv=None):
    parser = argparse.ArgumentParser(
        description=(
            "Estimate the number of population uniques from a sample's "
            "equivalence-class sizes with the Pitman model.\n\n"
            "Tip: For raw records, call `pitman_from_records` from Python."
        )
    )

    parser.add_argument(
        "--classes",
        type=_class_pair,
        nargs="+",
        required=True,
        metavar="SIZE:COUNT",
        help="Class-size histogram, e.g. --classes 1:50 2:20 3:5",
    )

    population = parser.add_mutually_exclusive_group(required=True)
    population.add_argument("--population", type=float, help="Population size")
    population.add_argument(
        "--sampling-fraction",
        type=float,
        help="Fraction of the population contained in the sample",
    )

    parser.add_argument(
        "--formulation",
        choices=["closed", "iterative"],
        default="closed",
        help=(
            "How the score equations are evaluated:\n"
            "  - closed    : digamma/trigamma closed forms (default)\n"
            "  - iterative : explicit summation\n"
        ),
    )

    parser.add_argument(
        "--accuracy",
        type=float,
        default=1e-6,
        help="Solver convergence threshold on the residual (default: 1e-6).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=1000,
        help="Newton steps across all tries (default: 1000).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=0,
        help="Seed for the solver's restart points (default: 0).",
    )

    parser.add_argument("--progress", action="store_true", help="Show solver progress bar.")
    parser.add_argument("--verbose", action="store_true", help="Log solver diagnostics.")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(message)s",
    )

    try:
        config = NewtonConfig(
            accuracy=args.accuracy,
            max_iterations=args.max_iterations,
            random_seed=args.seed,
        )
        res = pitman(
            args.classes,
            args.population,
            sampling_fraction=args.sampling_fraction,
            formulation=args.formulation,
            config=config,
            show_progress=args.progress,
        )
    except ValueError as exc:
        parser.error(str(exc))

    print(res.report())


if __name__ == "__main__":
    main()
