# src/pitmanmle/__init__.py

from pitmanmle.core import (
    pitman,
    pitman_from_records,
    estimate_uniques,
    histogram_from_records,
    initial_guess,
    make_evaluator,
    compile_result,
    PitmanResult,
    SampleStatistics,
)
from pitmanmle.newton import NewtonConfig, solve
from pitmanmle.cancellation import CancellationToken, EstimationCancelled

__all__ = [
    "pitman",
    "pitman_from_records",
    "estimate_uniques",
    "histogram_from_records",
    "initial_guess",
    "make_evaluator",
    "compile_result",
    "PitmanResult",
    "SampleStatistics",
    "NewtonConfig",
    "solve",
    "CancellationToken",
    "EstimationCancelled",
]
