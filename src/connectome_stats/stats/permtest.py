"""Permutation testing with maximum-statistic FWE control.

Each shuffle is evaluated independently (GLM statistic, then enhancement) on
worker threads. Shuffles are drawn in ascending index order on the calling
thread and outcomes are consumed in the same order, so results do not depend
on the number of threads. Every shuffle owns one row of the null
distribution.

A degenerate element design in any shuffle aborts the whole run: the
outcome carries the error, the remaining work is cancelled and the error is
raised to the caller.
"""

from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterator

import numpy as np

from ..exceptions import DegenerateDesignError
from .enhance import Enhancer
from .fwe import fwe_pvalue, uncorrected_pvalue
from .glm import FixedGLMTest, VariableGLMTest
from .shuffle import Shuffle, Shuffler

logger = logging.getLogger(__name__)

GLMTest = FixedGLMTest | VariableGLMTest

EMPIRICAL_SKEW_DEFAULT = 1.0


@dataclass
class PermutationOutcome:
    """Result of evaluating one shuffle: either statistics or a fatal error."""

    index: int
    enhanced: np.ndarray | None = None  # (n_elements, n_hypotheses)
    error: DegenerateDesignError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PermutationResult:
    """Accumulated output of the permutation loop."""

    null_distribution: np.ndarray  # (n_shuffles, n_hypotheses) or (n_shuffles, 1)
    exceedances: np.ndarray  # (n_elements, n_hypotheses)
    null_contributions: np.ndarray  # (n_elements, n_hypotheses)
    strong: bool

    @property
    def n_shuffles(self) -> int:
        return self.null_distribution.shape[0]

    @property
    def uncorrected_pvalues(self) -> np.ndarray:
        return uncorrected_pvalue(self.exceedances, self.n_shuffles)

    def fwe_pvalues(self, enhanced: np.ndarray) -> np.ndarray:
        return fwe_pvalue(self.null_distribution, enhanced)


def _evaluate_shuffle(
    shuffle: Shuffle,
    glm_test: GLMTest,
    enhancer: Enhancer,
    empirical: np.ndarray | None,
) -> PermutationOutcome:
    try:
        stats = glm_test(shuffle)
    except DegenerateDesignError as e:
        return PermutationOutcome(index=shuffle.index, error=e)
    return PermutationOutcome(index=shuffle.index, enhanced=enhancer.enhance(stats, empirical))


def _evaluate(
    shuffler: Shuffler,
    process: Callable[[Shuffle], PermutationOutcome],
    n_threads: int = 1,
) -> Iterator[PermutationOutcome]:
    """Evaluate shuffles, yielding outcomes in shuffle order.

    With several threads, at most a few shuffles per thread are in flight;
    closing the iterator cancels any work not yet started.
    """
    if n_threads <= 1:
        for shuffle in shuffler:
            yield process(shuffle)
        return

    window = 4 * n_threads
    with ThreadPoolExecutor(max_workers=n_threads) as executor:
        pending = deque()
        try:
            for shuffle in shuffler:
                pending.append(executor.submit(process, shuffle))
                if len(pending) >= window:
                    yield pending.popleft().result()
            while pending:
                yield pending.popleft().result()
        finally:
            for future in pending:
                future.cancel()


def precompute_empirical_stat(
    glm_test: GLMTest,
    enhancer: Enhancer,
    shuffler: Shuffler,
    skew: float = EMPIRICAL_SKEW_DEFAULT,
    n_threads: int = 1,
) -> np.ndarray:
    """Empirical enhanced statistic for non-stationarity adjustment.

    For each element, the mean over shuffles of the positive enhanced values
    raised to ``skew``, taken back to the power ``1/skew`` (Salimi-Khorshidi
    et al., 2011).

    Returns
    -------
    empirical : ndarray, shape (n_elements, n_hypotheses)
        Zero where no shuffle produced a positive enhanced value.
    """
    if skew <= 0:
        raise ValueError(f"Non-stationarity skew must be positive, got {skew}")

    n_hyp = len(glm_test.hypotheses)
    sums = np.zeros((glm_test.n_elements, n_hyp))
    counts = np.zeros((glm_test.n_elements, n_hyp), dtype=np.int64)

    logger.info("Pre-computing empirical statistic from %d shuffles...", len(shuffler))

    def process(shuffle: Shuffle) -> PermutationOutcome:
        return _evaluate_shuffle(shuffle, glm_test, enhancer, None)

    for outcome in _evaluate(shuffler, process, n_threads):
        if not outcome.ok:
            raise outcome.error
        positive = outcome.enhanced > 0
        sums[positive] += outcome.enhanced[positive] ** skew
        counts += positive

    empirical = np.zeros_like(sums)
    supported = counts > 0
    empirical[supported] = (sums[supported] / counts[supported]) ** (1.0 / skew)
    logger.info(
        "Empirical statistic: %d/%d element-hypothesis pairs supported",
        int(supported.sum()), supported.size,
    )
    return empirical


def precompute_default_permutation(
    glm_test: GLMTest,
    enhancer: Enhancer,
    empirical: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Statistic and enhanced statistic of the unshuffled data.

    Returns
    -------
    stats : ndarray, shape (n_elements, n_hypotheses)
        t-values, or square roots of F-values.
    enhanced : ndarray, shape (n_elements, n_hypotheses)
    """
    stats = glm_test(Shuffle(index=0))
    enhanced = enhancer.enhance(stats, empirical)
    return stats, enhanced


def run_permutations(
    glm_test: GLMTest,
    enhancer: Enhancer,
    shuffler: Shuffler,
    observed_enhanced: np.ndarray,
    empirical: np.ndarray | None = None,
    strong: bool = False,
    n_threads: int = 1,
) -> PermutationResult:
    """Build the null distribution and element-wise exceedance counts.

    Parameters
    ----------
    glm_test : FixedGLMTest or VariableGLMTest
    enhancer : Enhancer
    shuffler : Shuffler
        Must start with the identity, which then counts towards the null.
    observed_enhanced : ndarray, shape (n_elements, n_hypotheses)
        Enhanced statistic of the unshuffled data.
    empirical : ndarray, optional
        Empirical statistic for non-stationarity adjustment.
    strong : bool
        Record one maximum across all hypotheses per shuffle (strong FWE
        control) instead of one per hypothesis.
    n_threads : int
        Worker threads evaluating shuffles.

    Returns
    -------
    PermutationResult
    """
    if not shuffler.include_default:
        raise ValueError("Permutation testing requires the unshuffled data as shuffle 0")

    n_elements, n_hyp = observed_enhanced.shape
    if strong and n_hyp == 1:
        logger.warning("Strong FWE control has no effect when testing a single hypothesis")
        strong = False

    n_shuffles = len(shuffler)
    null_distribution = np.zeros((n_shuffles, 1 if strong else n_hyp))
    exceedances = np.zeros((n_elements, n_hyp), dtype=np.int64)
    null_contributions = np.zeros((n_elements, n_hyp), dtype=np.int64)
    columns = np.arange(n_hyp)

    logger.info(
        "Running %d shuffles (%d elements, %d hypotheses, %d threads)...",
        n_shuffles, n_elements, n_hyp, n_threads,
    )

    def process(shuffle: Shuffle) -> PermutationOutcome:
        return _evaluate_shuffle(shuffle, glm_test, enhancer, empirical)

    for outcome in _evaluate(shuffler, process, n_threads):
        if not outcome.ok:
            logger.error("Shuffle %d failed; aborting permutation test", outcome.index)
            raise outcome.error

        enhanced = outcome.enhanced
        if strong:
            ie, ih = np.unravel_index(np.argmax(enhanced), enhanced.shape)
            null_distribution[outcome.index, 0] = enhanced[ie, ih]
            null_contributions[ie, ih] += 1
        else:
            argmax = np.argmax(enhanced, axis=0)
            null_distribution[outcome.index] = enhanced[argmax, columns]
            null_contributions[argmax, columns] += 1
        exceedances += enhanced >= observed_enhanced

    logger.info(
        "Null distribution maxima: %s",
        ", ".join(f"{v:.3g}" for v in null_distribution.max(axis=0)),
    )
    return PermutationResult(
        null_distribution=null_distribution,
        exceedances=exceedances,
        null_contributions=null_contributions,
        strong=strong,
    )
