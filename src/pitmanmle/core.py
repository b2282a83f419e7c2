# src/pitmanmle/core.py

import logging
import math
import numbers
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

from scipy.special import digamma, gamma, gammaln, polygamma

from pitmanmle.cancellation import CancellationToken
from pitmanmle.newton import Evaluator, Jacobian, NewtonConfig, Vector, solve


logger = logging.getLogger(__name__)

# (classSize, classCount) pairs, ordered by class size
Histogram = Tuple[Tuple[int, int], ...]
HistogramLike = Union[Mapping[int, int], Iterable[Tuple[int, int]]]


class SampleStatistics(NamedTuple):
    c1: int   # classes of size 1
    c2: int   # classes of size 2
    u: int    # distinct classes
    n: int    # sample size
    p: float  # population size


# =====================================================================
# special functions
# =====================================================================
def _digamma(x: float) -> float:
    return float(digamma(x))


def _trigamma(x: float) -> float:
    return float(polygamma(1, x))


def _log_gamma(x: float) -> float:
    """log-gamma, undefined (NaN) for non-positive arguments."""
    if not x > 0:
        return math.nan
    return float(gammaln(x))


def _gamma(x: float) -> float:
    return float(gamma(x))


def _ieee_div(a: float, b: float) -> float:
    """a / b with IEEE semantics for a zero divisor instead of an exception."""
    if b != 0:
        return a / b
    if a == 0 or math.isnan(a):
        return math.nan
    return math.copysign(math.inf, a) * math.copysign(1.0, b)


# =====================================================================
# validation
# =====================================================================
def _validate_histogram(classes: HistogramLike) -> Histogram:
    """Normalise the class-size histogram into sorted (size, count) pairs."""
    if classes is None:
        raise ValueError("histogram must not be None.")
    items = classes.items() if isinstance(classes, Mapping) else classes

    pairs: List[Tuple[int, int]] = []
    seen = set()
    for entry in items:
        try:
            size, count = entry
        except (TypeError, ValueError):
            raise ValueError(
                f"histogram entries must be (classSize, classCount) pairs, got {entry!r}."
            ) from None
        for name, v in (("classSize", size), ("classCount", count)):
            if isinstance(v, bool) or not isinstance(v, numbers.Integral) or v < 1:
                raise ValueError(f"{name} must be a positive int (got {v!r}).")
        if size in seen:
            raise ValueError(f"classSize {size} appears more than once.")
        seen.add(size)
        pairs.append((int(size), int(count)))

    if not pairs:
        raise ValueError("histogram must contain at least one equivalence class.")
    return tuple(sorted(pairs))


def _population_size(
    n: int, population: Optional[float], sampling_fraction: Optional[float]
) -> float:
    """
    Population model: either an explicit size, or the sampling fraction
    the sample was drawn with (p = n / fraction).
    """
    if (population is None) == (sampling_fraction is None):
        raise ValueError("Give exactly one of population or sampling_fraction.")
    if population is not None:
        p = float(population)
        if not math.isfinite(p):
            raise ValueError("population must be a finite number.")
    else:
        f = float(sampling_fraction)
        if not (0.0 < f <= 1.0):
            raise ValueError("sampling_fraction must lie in (0, 1].")
        p = n / f
    if p < n:
        raise ValueError(
            f"population size ({p:g}) must be at least the sample size ({n})."
        )
    return p


def _sample_statistics(
    histogram: Histogram,
    population: Optional[float],
    sampling_fraction: Optional[float],
    sample_size: Optional[int],
) -> SampleStatistics:
    counts = dict(histogram)
    n = sum(size * count for size, count in histogram)
    u = sum(count for _, count in histogram)

    if sample_size is not None and sample_size != n:
        raise ValueError(
            f"sample_size ({sample_size}) does not match the histogram ({n} records)."
        )
    if n < 2:
        raise ValueError("the sample must contain at least two records.")

    p = _population_size(n, population, sampling_fraction)
    return SampleStatistics(
        c1=counts.get(1, 0), c2=counts.get(2, 0), u=u, n=n, p=p
    )


def _normalize_formulation(formulation: str) -> str:
    mode = (formulation or "closed").strip().lower()
    if mode not in _FORMULATIONS:
        raise ValueError("formulation must be one of {'closed','iterative'}.")
    return mode


# =====================================================================
# initial guess
# =====================================================================
def initial_guess(stats: SampleStatistics) -> Vector:
    """
    Closed-form starting point (theta, alpha) from c1, c2, u and n.

    Not validated: the result may be NaN or far outside the parameter
    space, the solver copes with that.
    """
    c1 = float(stats.c1)
    c2 = float(stats.c2) if stats.c2 != 0 else 1.0  # overestimate
    u = float(stats.u)
    n = float(stats.n)

    c = (c1 * (c1 - 1)) / c2
    t = _ieee_div(
        (n * u * c) - (c1 * (n - 1) * ((2 * u) + c)),
        ((2 * c1 * u) + (c1 * c)) - (n * c),
    )
    a = _ieee_div((t * (c1 - n)) + ((n - 1) * c1), n * u)
    return t, a


# =====================================================================
# score equations and their jacobian
# =====================================================================
def _score_and_jacobian(
    o1: float, o2: float, o3: float, o4: float,
    d1: float, d2: float, d3: float, d4: float, d5: float,
) -> Tuple[Vector, Jacobian]:
    residual = (o1 - o2, o3 - o4)
    jacobian = ((d2 - d1, 0.0 - d5), (0.0 - d5, 0.0 - d3 - d4))
    return residual, jacobian


def _evaluator_iterative(
    histogram: Histogram, u: int, n: int, cancel: CancellationToken
) -> Evaluator:
    """Score and jacobian by explicit summation, O(u + n + sum of class sizes)."""

    def evaluate(x: Vector) -> Tuple[Vector, Jacobian]:
        t, a = x
        d1 = d2 = d3 = d4 = d5 = 0.0
        o1 = o2 = o3 = o4 = 0.0

        for i in range(1, u):
            cancel.check()
            val0 = t + (i * a)
            val1 = 1.0 / val0
            val3 = 1.0 / (val0 * val0)
            d1 += val3          # d^2L / dtheta^2
            d5 += i * val3      # d^2L / dtheta dalpha
            d3 += i * i * val3  # d^2L / dalpha^2
            o1 += val1
            o3 += i * val1

        for size, count in histogram:
            cancel.check()
            if size == 1:
                continue
            s1 = 0.0
            s2 = 0.0
            for j in range(1, size):
                val3 = j - a
                s1 += 1.0 / (val3 * val3)
                s2 += 1.0 / val3
            d4 += count * s1
            o4 += count * s2

        for i in range(1, n):
            cancel.check()
            val0 = t + i
            d2 += 1.0 / (val0 * val0)
            o2 += 1.0 / val0

        return _score_and_jacobian(o1, o2, o3, o4, d1, d2, d3, d4, d5)

    return evaluate


def _evaluator_closed(
    histogram: Histogram, u: int, n: int, cancel: CancellationToken
) -> Evaluator:
    """
    Same sums as the iterative form, written with digamma/trigamma.
    Only the loop over histogram entries remains.
    """

    def evaluate(x: Vector) -> Tuple[Vector, Jacobian]:
        t, a = x
        cancel.check()

        val0 = u - 1.0
        val1 = _digamma(val0 + (t / a) + 1.0)
        val2 = _trigamma((a + t + (a * val0)) / a)
        val3 = _trigamma((t / a) + 1.0)
        val4 = _digamma((t / a) + 1.0)
        val5 = a * a

        d1 = (val3 - val2) / val5
        d5 = ((a * val1) + (t * val2) - (a * val4) - (t * val3)) / (val5 * a)
        d3 = (
            (val5 * val0) - (t * t * val2) + (t * t * val3)
            - (2.0 * a * t * val1) + (2.0 * a * t * val4)
        ) / (val5 * val5)
        o1 = (val1 - val4) / a
        o3 = ((-t * val1) + (a * val0) + (t * val4)) / val5
        o2 = _digamma(n + t) - _digamma(t + 1.0)
        d2 = _trigamma(t + 1.0) - _trigamma(n + t)

        d4 = 0.0
        o4 = 0.0
        val6 = _digamma(1.0 - a)
        val7 = _trigamma(1.0 - a)
        for size, count in histogram:
            cancel.check()
            if size != 1:
                d4 += count * (val7 - _trigamma(size - a))
                o4 += count * (_digamma(size - a) - val6)

        return _score_and_jacobian(o1, o2, o3, o4, d1, d2, d3, d4, d5)

    return evaluate


_FORMULATIONS = {
    "closed": _evaluator_closed,
    "iterative": _evaluator_iterative,
}


def make_evaluator(
    classes: HistogramLike,
    formulation: str = "closed",
    cancel: Optional[CancellationToken] = None,
) -> Evaluator:
    """
    Build the function (theta, alpha) -> (residual, jacobian) of the Pitman
    log-likelihood for a class-size histogram.
    """
    histogram = _validate_histogram(classes)
    mode = _normalize_formulation(formulation)
    u = sum(count for _, count in histogram)
    n = sum(size * count for size, count in histogram)
    return _FORMULATIONS[mode](histogram, u, n, cancel or CancellationToken())


def _admissible(x: Vector) -> bool:
    """Pitman parameter space: 0 < alpha < 1, theta > -alpha."""
    t, a = x
    return 0.0 < a < 1.0 and t > -a


# =====================================================================
# result compilation
# =====================================================================
def _in_population(value: float, p: float) -> float:
    return value if 0.0 <= value <= p else math.nan


def _estimate_log_space(t: float, a: float, p: float) -> float:
    try:
        value = math.exp(_log_gamma(t + 1) - _log_gamma(t + a)) * math.pow(p, a)
    except (OverflowError, ValueError, ZeroDivisionError):
        return math.nan
    return _in_population(value, p)


def _estimate_direct(t: float, a: float, p: float) -> float:
    try:
        value = (_gamma(t + 1) / _gamma(t + a)) * math.pow(p, a)
    except (OverflowError, ValueError, ZeroDivisionError):
        return math.nan
    return _in_population(value, p)


def _select_estimate(val1: float, val2: float) -> float:
    """Prefer the larger valid estimate; NaN if neither is valid."""
    if math.isnan(val1) and math.isnan(val2):
        return math.nan
    if not math.isnan(val1) and not math.isnan(val2):
        return max(val1, val2)
    if math.isnan(val1):
        return val2
    return val1


def _compile(t: float, a: float, p: float) -> Tuple[float, float, float]:
    """Return (num_uniques, log-space estimate, direct estimate)."""
    if math.isnan(t) and (math.isnan(a) or a == 0):
        return math.nan, math.nan, math.nan
    val1 = _estimate_log_space(t, a, p)
    val2 = _estimate_direct(t, a, p)
    return _select_estimate(val1, val2), val1, val2


def compile_result(theta: float, alpha: float, population: float) -> float:
    """
    Number of population uniques implied by a fitted (theta, alpha):
    Gamma(theta + 1) / Gamma(theta + alpha) * p^alpha, or NaN.
    """
    return _compile(theta, alpha, population)[0]


# =====================================================================
# report
# =====================================================================
def _make_report(
    stats: SampleStatistics,
    seed: Vector,
    solution: Vector,
    num_uniques: float,
    formulation: str,
) -> str:
    lines: List[str] = []
    lines.append(" ")
    lines.append("Pitman Population Uniqueness Estimate")
    lines.append("----------------------------------------------")
    lines.append(f"Sample Size                 {stats.n}")
    lines.append(f"Population Size             {stats.p:g}")
    lines.append(f"Equivalence Classes         {stats.u}")
    lines.append(f"Classes of Size 1           {stats.c1}")
    lines.append(f"Classes of Size 2           {stats.c2}")
    lines.append(f"Initial Guess               theta = {seed[0]:.6g}, alpha = {seed[1]:.6g}")
    if math.isnan(solution[0]) and math.isnan(solution[1]):
        lines.append("Maximum Likelihood          no convergence")
    else:
        lines.append(
            f"Maximum Likelihood          theta = {solution[0]:.6g}, alpha = {solution[1]:.6g}"
        )
    if math.isnan(num_uniques):
        lines.append("Population Uniques          undefined (no valid model fit)")
    else:
        lines.append(
            "Population Uniques          "
            f"{num_uniques:.2f} = {num_uniques / stats.p * 100:.4f}% of population"
        )
    lines.append(f"Formulation                 {formulation}")
    return "\n".join(lines)


# =====================================================================
# result object
# =====================================================================
class PitmanResult(dict):
    """
    Wrapper around a dict that carries both the structured output
    and a printable report.
    """
    def report(self) -> str:
        return self.get("report", repr(self))

    @property
    def num_uniques(self) -> float:
        return self["num_uniques"]


# ── records → histogram ─────────────────────────────────────────────
def histogram_from_records(
    records: Iterable[Sequence[Any]],
    invalid_report_limit: int = 10,
) -> Histogram:
    """
    Count identical quasi-identifier tuples and return the class-size
    histogram.

    Raises ValueError if records is None, or if any row is not a sequence
    of hashable values of the same length as the first row.
    """
    if records is None:
        raise ValueError("histogram_from_records: records must be a non-None iterable.")

    classes: Dict[Tuple[Any, ...], int] = {}
    width: Optional[int] = None
    bad_idxs: List[int] = []
    bad_samples: List[str] = []

    for i, row in enumerate(records):
        ok = isinstance(row, Sequence) and not isinstance(row, (str, bytes))
        if ok and width is not None and len(row) != width:
            ok = False
        if ok:
            key = tuple(row)
            try:
                hash(key)
            except TypeError:
                ok = False

        if not ok:
            if len(bad_idxs) < invalid_report_limit:
                bad_idxs.append(i)
                bad_samples.append(f"records[{i}]={row!r}")
            continue

        if width is None:
            width = len(row)
        classes[key] = classes.get(key, 0) + 1

    if bad_idxs:
        preview = "; ".join(bad_samples)
        raise ValueError(
            "histogram_from_records: invalid rows detected. "
            f"First invalid indices: {bad_idxs}. Examples: {preview}. "
            f"Rows must be sequences of hashable values of equal length ({width})."
        )
    if not classes:
        raise ValueError("histogram_from_records: no records.")

    return tuple(sorted(Counter(classes.values()).items()))


# =====================================================================
# main command
# =====================================================================
def pitman(
    classes: HistogramLike,
    population: Optional[float] = None,
    *,
    sampling_fraction: Optional[float] = None,
    sample_size: Optional[int] = None,
    formulation: str = "closed",
    config: Optional[NewtonConfig] = None,
    cancel: Optional[CancellationToken] = None,
    show_progress: bool = False,
) -> PitmanResult:
    """
    Estimate the number of population uniques with the Pitman model
    (Hoshino, 2001).

    Parameters
    ----------
    classes : mapping or iterable of pairs
        Class-size histogram {classSize: classCount}.
    population : float, optional
        Population size p. Exactly one of population / sampling_fraction.
    sampling_fraction : float, optional
        Fraction of the population in the sample; p = n / sampling_fraction.
    sample_size : int, optional
        Checked against the histogram when given.
    formulation : {"closed","iterative"}, default "closed"
        How the score equations are evaluated.
    config : NewtonConfig, optional
        Solver settings.
    cancel : CancellationToken, optional
        Checked inside every loop; EstimationCancelled is raised once set.
    show_progress : bool, default False
        Show a tqdm bar over the solver iterations.

    Returns
    -------
    PitmanResult
        Structured output with a printable "report" string. num_uniques is
        NaN when no valid estimate exists.
    """
    histogram = _validate_histogram(classes)
    stats = _sample_statistics(histogram, population, sampling_fraction, sample_size)
    mode = _normalize_formulation(formulation)
    config = config or NewtonConfig()
    cancel = cancel or CancellationToken()
    cancel.check()

    seed = initial_guess(stats)
    logger.debug("initial guess theta=%g alpha=%g", seed[0], seed[1])

    # restarts cover theta >= 0 only; the strip -alpha < theta < 0 is reached from the seed
    restart_bounds = ((0.0, float(stats.n)), (0.0, 1.0))
    function = _FORMULATIONS[mode](histogram, stats.u, stats.n, cancel)
    solution = solve(
        function,
        seed,
        config,
        restart_bounds=restart_bounds,
        domain=_admissible,
        cancel=cancel,
        show_progress=show_progress,
    )
    theta, alpha = solution
    num_uniques, val1, val2 = _compile(theta, alpha, stats.p)
    logger.info("population uniques: %g (theta=%g, alpha=%g)", num_uniques, theta, alpha)

    out: Dict[str, Any] = {
        "summary": {"inputs": {"histogram": histogram, **stats._asdict()}},
        "seed": seed,
        "solution": {
            "theta": theta,
            "alpha": alpha,
            "converged": not (math.isnan(theta) or math.isnan(alpha)),
        },
        "estimates": {"log_space": val1, "direct": val2},
        "num_uniques": num_uniques,
        "uniqueness": num_uniques / stats.p,
        "meta": {
            "formulation": mode,
            "restart_bounds": restart_bounds,
            "config": {
                "accuracy": config.accuracy,
                "iterations_per_try": config.iterations_per_try,
                "max_iterations": config.max_iterations,
                "max_step_halvings": config.max_step_halvings,
                "random_seed": config.random_seed,
            },
        },
        "report": "\n" + _make_report(stats, seed, solution, num_uniques, mode),
    }
    return PitmanResult(out)


def estimate_uniques(classes: HistogramLike, population: Optional[float] = None, **kwargs) -> float:
    """Shortcut for pitman(...).num_uniques."""
    return pitman(classes, population, **kwargs).num_uniques


# =====================================================================
# pitman_from_records
# =====================================================================
def pitman_from_records(
    records: Iterable[Sequence[Any]],
    population: Optional[float] = None,
    **kwargs,
) -> PitmanResult:
    """
    Aggregate raw rows of quasi-identifier values into a class-size
    histogram and run pitman() on it. Keyword arguments are passed through.
    """
    histogram = histogram_from_records(records)
    result = pitman(histogram, population, **kwargs)

    meta = result.setdefault("meta", {})
    meta["from_records"] = {
        "records": result["summary"]["inputs"]["n"],
        "classes": result["summary"]["inputs"]["u"],
    }
    return result
