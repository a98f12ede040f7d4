"""
Robust model estimation: fixed-threshold RANSAC and a-contrario RANSAC.

Estimation problems are described by a small set of strategies chosen at
construction time:

- `Solver` fits candidate models to a minimal (or larger) sample,
- `ErrorMetric` scores every datum against a model,
- `Kernel` binds a solver and a metric to the data.

`robust_estimate` dispatches on the configured policy.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.special import gammaln

from seqsfm.sfm_inc.config import RobustEstimationConfig, RobustEstimatorType

logger = logging.getLogger(__name__)


class Solver(ABC):
    """Fits models to correspondences (x[i], y[i])."""

    min_samples: int = 0
    # Maximum number of models returned for one minimal sample.
    max_models: int = 1

    @abstractmethod
    def solve(self, x: np.ndarray, y: np.ndarray) -> List[np.ndarray]:
        ...

    def solve_nonminimal(self, x: np.ndarray, y: np.ndarray) -> List[np.ndarray]:
        return self.solve(x, y)


class ErrorMetric(ABC):
    """Residual of every correspondence with respect to a model."""

    # The probability that a random datum falls within error e grows like
    # e ** error_exponent: 2 for point-to-point, 1 for point-to-line errors.
    error_exponent: float = 2.0

    @abstractmethod
    def residuals(self, model: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        ...

    def log_alpha0(self, image_size: Tuple[int, int]) -> float:
        """Log probability of a random point-to-point error below 1 pixel."""
        width, height = image_size
        return math.log(math.pi / float(width * height))


class PointToLineMetricMixin:
    error_exponent = 1.0

    def log_alpha0(self, image_size: Tuple[int, int]) -> float:
        width, height = image_size
        diagonal = math.hypot(width, height)
        return math.log(2.0 * diagonal / float(width * height))


class Kernel:
    def __init__(
        self,
        solver: Solver,
        metric: ErrorMetric,
        x: np.ndarray,
        y: np.ndarray,
        image_size: Tuple[int, int],
    ) -> None:
        if len(x) != len(y):
            raise ValueError("x and y must hold the same number of samples")
        self.solver = solver
        self.metric = metric
        self.x = x
        self.y = y
        self.image_size = image_size

    @property
    def num_samples(self) -> int:
        return len(self.x)

    @property
    def min_samples(self) -> int:
        return self.solver.min_samples

    def fit(self, indices: np.ndarray) -> List[np.ndarray]:
        if len(indices) > self.min_samples:
            return self.solver.solve_nonminimal(self.x[indices], self.y[indices])
        return self.solver.solve(self.x[indices], self.y[indices])

    def residuals(self, model: np.ndarray) -> np.ndarray:
        return self.metric.residuals(model, self.x, self.y)

    def log_alpha0(self) -> float:
        return self.metric.log_alpha0(self.image_size)


@dataclass
class RobustResult:
    model: np.ndarray
    inliers: np.ndarray
    threshold: float
    nfa: float = 0.0


def _ransac_iterations(inlier_ratio: float, min_samples: int, confidence: float, max_iterations: int) -> int:
    if inlier_ratio >= 1.0:
        return 1
    good_sample = inlier_ratio ** min_samples
    if good_sample <= 0.0:
        return max_iterations
    # log1p keeps tiny sample probabilities from rounding to log(1) = 0.
    denominator = math.log1p(-good_sample)
    if denominator == 0.0:
        return max_iterations
    needed = math.log(1.0 - confidence) / denominator
    return int(min(max_iterations, max(1, math.ceil(needed))))


def ransac(
    kernel: Kernel,
    threshold: float,
    rng: np.random.Generator,
    max_iterations: int = 1024,
    confidence: float = 0.999,
) -> Optional[RobustResult]:
    """Classic RANSAC with a fixed inlier threshold and adaptive stopping."""
    n, m = kernel.num_samples, kernel.min_samples
    if n < m:
        return None

    best_model = None
    best_inliers = np.zeros(0, dtype=np.int64)
    best_cost = math.inf
    iterations = max_iterations
    i = 0
    while i < iterations:
        sample = rng.choice(n, size=m, replace=False)
        for model in kernel.fit(sample):
            residuals = kernel.residuals(model)
            inliers = np.flatnonzero(residuals < threshold)
            cost = float(np.sum(np.minimum(residuals, threshold)))
            if len(inliers) > len(best_inliers) or (len(inliers) == len(best_inliers) and cost < best_cost):
                best_model, best_inliers, best_cost = model, inliers, cost
                iterations = _ransac_iterations(len(inliers) / n, m, confidence, max_iterations)
        i += 1

    if best_model is None or len(best_inliers) < m:
        return None

    # Local optimization: refit on the inlier set.
    if len(best_inliers) > m:
        for model in kernel.fit(best_inliers):
            inliers = np.flatnonzero(kernel.residuals(model) < threshold)
            if len(inliers) >= len(best_inliers):
                best_model, best_inliers = model, inliers

    return RobustResult(model=best_model, inliers=best_inliers, threshold=threshold)


def _best_nfa(
    residuals: np.ndarray,
    min_samples: int,
    log_alpha0: float,
    error_exponent: float,
    log_e0: float,
    logc_n: np.ndarray,
    logc_k: np.ndarray,
    max_threshold: float,
) -> Tuple[float, int, np.ndarray, float]:
    order = np.argsort(residuals, kind="stable")
    sorted_res = residuals[order]
    n = residuals.shape[0]
    ks = np.arange(min_samples + 1, n + 1)
    errors = sorted_res[ks - 1]
    valid = np.isfinite(errors) & (errors <= max_threshold)
    log_errors = np.log(np.maximum(errors, 1e-12))
    log_alpha = np.minimum(log_alpha0 + error_exponent * log_errors, 0.0)
    nfa = log_e0 + log_alpha * (ks - min_samples) + logc_n[ks] + logc_k[ks]
    nfa = np.where(valid, nfa, np.inf)
    best = int(np.argmin(nfa))
    k_best = int(ks[best])
    return float(nfa[best]), k_best, order[:k_best], float(errors[best])


def ac_ransac(
    kernel: Kernel,
    rng: np.random.Generator,
    max_iterations: int = 1024,
    max_threshold: float = math.inf,
) -> Optional[RobustResult]:
    """
    A-contrario RANSAC: the inlier threshold is the one minimizing the
    number of false alarms (NFA) of the model.

    A model is meaningful when its log-NFA is negative. The last tenth of the
    iteration budget is spent sampling among the best inliers found so far.
    """
    n, m = kernel.num_samples, kernel.min_samples
    if n <= m:
        return None

    log_alpha0 = kernel.log_alpha0()
    log_e0 = math.log(kernel.solver.max_models * (n - m))
    k = np.arange(n + 1)
    logc_n = gammaln(n + 1) - gammaln(k + 1) - gammaln(n - k + 1)
    with np.errstate(invalid="ignore"):
        logc_k = np.where(k >= m, gammaln(k + 1) - gammaln(m + 1) - gammaln(np.maximum(k - m, 0) + 1), -np.inf)

    reserve = max_iterations // 10
    n_iterations = max_iterations - reserve
    pool = np.arange(n)

    best: Optional[RobustResult] = None
    i = 0
    while i < n_iterations:
        sample = rng.choice(pool, size=m, replace=False)
        for model in kernel.fit(sample):
            residuals = kernel.residuals(model)
            nfa, k_best, inliers, threshold = _best_nfa(
                residuals, m, log_alpha0, kernel.metric.error_exponent, log_e0, logc_n, logc_k, max_threshold
            )
            if best is None or nfa < best.nfa:
                best = RobustResult(model=model, inliers=inliers, threshold=threshold, nfa=nfa)
                if nfa < 0 and len(inliers) > m:
                    pool = np.sort(inliers)
                    if reserve:
                        n_iterations = i + 1 + reserve
                        reserve = 0
        i += 1

    if best is None or best.nfa >= 0:
        logger.debug(f"AC-RANSAC found no meaningful model among {n} samples")
        return None

    # Local optimization: refit on the inliers, keep it if the NFA improves.
    if len(best.inliers) > m:
        for model in kernel.fit(np.sort(best.inliers)):
            nfa, _, inliers, threshold = _best_nfa(
                kernel.residuals(model), m, log_alpha0, kernel.metric.error_exponent, log_e0, logc_n, logc_k,
                max_threshold,
            )
            if nfa < best.nfa:
                best = RobustResult(model=model, inliers=inliers, threshold=threshold, nfa=nfa)
    return best


def robust_estimate(
    kernel: Kernel,
    config: RobustEstimationConfig,
    rng: np.random.Generator,
) -> Optional[RobustResult]:
    if config.estimator == RobustEstimatorType.ACRANSAC:
        return ac_ransac(kernel, rng, config.max_iterations, config.max_threshold)
    return ransac(kernel, config.threshold, rng, config.max_iterations, config.confidence)


__all__ = [
    "Solver",
    "ErrorMetric",
    "PointToLineMetricMixin",
    "Kernel",
    "RobustResult",
    "ransac",
    "ac_ransac",
    "robust_estimate",
]
