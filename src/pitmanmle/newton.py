# src/pitmanmle/newton.py

import logging
import math
import random
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from tqdm import tqdm

from pitmanmle.cancellation import CancellationToken


logger = logging.getLogger(__name__)

Vector = Tuple[float, float]
Jacobian = Tuple[Tuple[float, float], Tuple[float, float]]
Evaluator = Callable[[Vector], Tuple[Vector, Jacobian]]
Bounds = Tuple[Tuple[float, float], Tuple[float, float]]

NAN_VECTOR: Vector = (math.nan, math.nan)


@dataclass(frozen=True)
class NewtonConfig:
    """
    Settings for the 2D Newton-Raphson search.

    accuracy           : converged once max(|r1|, |r2|) <= accuracy
    iterations_per_try : Newton steps before a try is abandoned
    max_iterations     : Newton steps across all tries
    max_step_halvings  : step-damping depth; 0 takes plain Newton steps
    random_seed        : seeds the restart generator
    """
    accuracy: float = 1e-6
    iterations_per_try: int = 100
    max_iterations: int = 1000
    max_step_halvings: int = 10
    random_seed: int = 0

    def __post_init__(self) -> None:
        if not (self.accuracy > 0 and math.isfinite(self.accuracy)):
            raise ValueError("accuracy must be a positive finite number.")
        if self.iterations_per_try <= 0 or self.max_iterations <= 0:
            raise ValueError("iteration limits must be positive.")
        if self.max_step_halvings < 0:
            raise ValueError("max_step_halvings must be nonnegative.")


# =====================================================================
# linear algebra helpers
# =====================================================================
def _is_finite(*values: float) -> bool:
    return all(math.isfinite(v) for v in values)


def _norm(r: Vector) -> float:
    return max(abs(r[0]), abs(r[1]))


def _newton_step(r: Vector, jac: Jacobian) -> Optional[Vector]:
    """Solve jac * dx = -r by Cramer's rule; None if jac is singular."""
    (j11, j12), (j21, j22) = jac
    det = j11 * j22 - j12 * j21
    if det == 0 or not math.isfinite(det):
        return None
    dx = -(j22 * r[0] - j12 * r[1]) / det
    dy = -(j11 * r[1] - j21 * r[0]) / det
    if not _is_finite(dx, dy):
        return None
    return dx, dy


def _evaluate(function: Evaluator, x: Vector) -> Optional[Tuple[Vector, Jacobian]]:
    """
    Evaluate the system at x. Arithmetic faults and non-finite output are a
    numerical breakdown and come back as None.
    """
    try:
        r, jac = function(x)
    except ArithmeticError:
        return None
    if not _is_finite(r[0], r[1], jac[0][0], jac[0][1], jac[1][0], jac[1][1]):
        return None
    return r, jac


# =====================================================================
# one try
# =====================================================================
def _damped_step(
    function: Evaluator,
    x: Vector,
    r: Vector,
    step: Vector,
    config: NewtonConfig,
    domain: Optional[Callable[[Vector], bool]],
) -> Optional[Tuple[Vector, Tuple[Vector, Jacobian]]]:
    """
    Halve the Newton step until the residual shrinks. Once inside the
    domain, trial points outside it are skipped.
    """
    norm0 = _norm(r)
    stay_inside = domain is not None and domain(x)
    scale = 1.0
    for _ in range(config.max_step_halvings + 1):
        trial = (x[0] + scale * step[0], x[1] + scale * step[1])
        if not (stay_inside and not domain(trial)):
            evaluated = _evaluate(function, trial)
            if evaluated is not None and (
                config.max_step_halvings == 0 or _norm(evaluated[0]) < norm0
            ):
                return trial, evaluated
        scale *= 0.5
    return None


def _run_try(
    function: Evaluator,
    start: Vector,
    config: NewtonConfig,
    budget: int,
    domain: Optional[Callable[[Vector], bool]],
    cancel: CancellationToken,
    pbar,
) -> Tuple[Optional[Vector], int]:
    """Iterate from start; return (solution or None, steps used)."""
    if not _is_finite(*start):
        return None, 0
    current = _evaluate(function, start)
    if current is None:
        return None, 0

    x = start
    used = 0
    while True:
        cancel.check()
        r, jac = current
        if _norm(r) <= config.accuracy:
            if domain is None or domain(x):
                return x, used
            logger.debug("converged outside the admissible domain at %s", x)
            return None, used
        if used >= budget:
            return None, used

        used += 1
        if pbar is not None:
            pbar.update(1)

        step = _newton_step(r, jac)
        if step is None:
            return None, used
        nxt = _damped_step(function, x, r, step, config, domain)
        if nxt is None:
            return None, used
        x, current = nxt


def _restart_point(
    rng: random.Random, seed: Vector, bounds: Optional[Bounds]
) -> Optional[Vector]:
    if bounds is not None:
        (t_lo, t_hi), (a_lo, a_hi) = bounds
        return rng.uniform(t_lo, t_hi), rng.uniform(a_lo, a_hi)
    if not _is_finite(*seed):
        return None
    return (
        seed[0] + (abs(seed[0]) + 1.0) * rng.uniform(-0.5, 0.5),
        seed[1] + (abs(seed[1]) + 1.0) * rng.uniform(-0.5, 0.5),
    )


# =====================================================================
# solver
# =====================================================================
def solve(
    function: Evaluator,
    start: Vector,
    config: Optional[NewtonConfig] = None,
    *,
    restart_bounds: Optional[Bounds] = None,
    domain: Optional[Callable[[Vector], bool]] = None,
    cancel: Optional[CancellationToken] = None,
    show_progress: bool = False,
) -> Vector:
    """
    Find a root of a 2D system with damped Newton-Raphson.

    Parameters
    ----------
    function : callable
        Maps (x, y) to (residual, jacobian).
    start : (float, float)
        Seed of the first try; may be NaN, in which case the first try
        fails immediately.
    config : NewtonConfig, optional
    restart_bounds : ((lo, hi), (lo, hi)), optional
        Box from which restart points are drawn after a failed try. Without
        it restarts perturb the seed.
    domain : callable, optional
        Predicate a converged point must satisfy to be accepted.
    cancel : CancellationToken, optional
        Polled once per Newton step; EstimationCancelled propagates.
    show_progress : bool, default False
        Show a tqdm bar over the iteration budget.

    Returns
    -------
    (float, float)
        The root, or (nan, nan) when no try converges. Non-convergence is
        never raised.
    """
    config = config or NewtonConfig()
    cancel = cancel or CancellationToken()
    rng = random.Random(config.random_seed)

    pbar = tqdm(
        total=config.max_iterations,
        desc="Newton-Raphson",
        unit="iteration",
        leave=False,
    ) if show_progress else None

    remaining = config.max_iterations
    x0 = start
    tries = 0
    try:
        while remaining > 0:
            tries += 1
            budget = min(config.iterations_per_try, remaining)
            solution, used = _run_try(function, x0, config, budget, domain, cancel, pbar)
            if solution is not None:
                logger.debug(
                    "converged to %s after %d steps (try %d)", solution, used, tries
                )
                return solution
            logger.debug("try %d from %s failed after %d steps", tries, x0, used)
            # a try that fails on its first evaluation still costs one step
            remaining -= max(used, 1)
            x0 = _restart_point(rng, start, restart_bounds)
            if x0 is None:
                break
    finally:
        if pbar is not None:
            pbar.close()

    logger.debug("no convergence after %d tries", tries)
    return NAN_VECTOR
