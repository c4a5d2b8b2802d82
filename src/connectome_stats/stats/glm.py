"""General linear model statistics for permutation testing.

For every hypothesis the design is partitioned into effects of interest and
nuisance (Beckmann et al., 2001; Winkler et al., 2014). Shuffling follows
Freedman & Lane (1983): the data are projected onto the residual space of the
nuisance partition, shuffled, and regressed on the full design. For the
unshuffled data this gives exactly the statistic of a direct regression.

The statistic of a t-test is the signed t-value. For an F-test the square
root of the F-value is returned, so that both kinds of hypothesis share the
same scale when thresholded or enhanced; square it to obtain F.

Two variants are provided:

- :class:`FixedGLMTest` shares one design across all elements and precomputes
  every projection once.
- :class:`VariableGLMTest` rebuilds the design at each element, appending the
  element-wise columns and dropping subjects whose data or element-wise
  values are not finite.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy import linalg

from ..exceptions import DegenerateDesignError
from .design import ElementColumns, Hypothesis, check_inputs
from .shuffle import Shuffle

logger = logging.getLogger(__name__)

# Upper bound on memory spent caching element-wise design projections
TERMS_CACHE_LIMIT_BYTES = 512 * 1024 ** 2


@dataclass
class Partition:
    """Partition of a design matrix for one contrast."""

    X: np.ndarray  # (n_subjects, rank), effects of interest
    Z: np.ndarray  # (n_subjects, n_nuisance), nuisance
    Rz: np.ndarray  # (n_subjects, n_subjects), residual-forming matrix of Z


def partition(design: np.ndarray, contrast: np.ndarray) -> Partition:
    """Split ``design`` into effects of interest and nuisance for ``contrast``."""
    n = design.shape[0]
    D = linalg.pinv(design.T @ design)
    inv_cDc = linalg.pinv(contrast @ D @ contrast.T)
    X = design @ D @ contrast.T @ inv_cDc

    Cu = linalg.null_space(contrast)
    Cv = Cu - contrast.T @ inv_cDc @ contrast @ D @ Cu
    if Cv.size and np.linalg.matrix_rank(Cv) > 0:
        Z = design @ D @ Cv @ linalg.pinv(Cv.T @ D @ Cv)
        Rz = np.eye(n) - Z @ linalg.pinv(Z)
    else:
        Z = np.zeros((n, 0))
        Rz = np.eye(n)
    return Partition(X=X, Z=Z, Rz=Rz)


@dataclass
class _ModelTerms:
    """Projections of one design that do not depend on the data."""

    pinv_design: np.ndarray  # (n_factors, n_subjects)
    residual_forming: np.ndarray  # (n_subjects, n_subjects)
    dof: int
    residual_nuisance: list[np.ndarray]  # Rz per hypothesis
    inv_cDc: list[np.ndarray]  # (rank, rank) per hypothesis

    @classmethod
    def build(cls, design: np.ndarray, hypotheses: list[Hypothesis]) -> _ModelTerms:
        pinv_design = linalg.pinv(design)
        D = linalg.pinv(design.T @ design)
        return cls(
            pinv_design=pinv_design,
            residual_forming=np.eye(design.shape[0]) - design @ pinv_design,
            dof=design.shape[0] - int(np.linalg.matrix_rank(design)),
            residual_nuisance=[partition(design, h.matrix).Rz for h in hypotheses],
            inv_cDc=[linalg.pinv(h.matrix @ D @ h.matrix.T) for h in hypotheses],
        )


def _statistic(
    shuffled: np.ndarray,
    terms: _ModelTerms,
    ih: int,
    hypothesis: Hypothesis,
) -> np.ndarray:
    """Statistic of one hypothesis for shuffled data of shape (n_subjects, n_elements)."""
    betas = terms.pinv_design @ shuffled
    residuals = terms.residual_forming @ shuffled
    sse = np.sum(residuals ** 2, axis=0)

    effect = hypothesis.matrix @ betas  # (rank, n_elements)
    numerator = np.einsum("ie,ij,je->e", effect, terms.inv_cDc[ih], effect) / hypothesis.rank
    variance = sse / terms.dof

    F = np.zeros_like(numerator)
    np.divide(numerator, variance, out=F, where=variance > 0)
    root_F = np.sqrt(np.maximum(F, 0.0))
    if hypothesis.is_F:
        return root_F
    return np.sign(effect[0]) * root_F


class FixedGLMTest:
    """GLM test with one design matrix shared by all elements.

    Parameters
    ----------
    data : ndarray, shape (n_subjects, n_elements)
        Measurements; must be finite.
    design : ndarray, shape (n_subjects, n_factors)
    hypotheses : list[Hypothesis]
    """

    def __init__(self, data: np.ndarray, design: np.ndarray, hypotheses: list[Hypothesis]):
        self.data = np.asarray(data, dtype=float)
        self.design = np.asarray(design, dtype=float)
        self.hypotheses = list(hypotheses)
        check_inputs(self.data, self.design, self.hypotheses)
        if not np.all(np.isfinite(self.data)):
            raise ValueError("Fixed GLM test requires finite data; use VariableGLMTest")

        self._terms = _ModelTerms.build(self.design, self.hypotheses)
        if self._terms.dof <= 0:
            raise DegenerateDesignError(None, self.design.shape[0], self.design.shape[1])
        # Data projected onto the residual space of each nuisance partition
        self._nuisance_residuals = [Rz @ self.data for Rz in self._terms.residual_nuisance]

    @property
    def n_subjects(self) -> int:
        return self.data.shape[0]

    @property
    def n_elements(self) -> int:
        return self.data.shape[1]

    @property
    def n_factors(self) -> int:
        return self.design.shape[1]

    def __call__(self, shuffle: Shuffle) -> np.ndarray:
        """Statistics for one shuffle, shape (n_elements, n_hypotheses)."""
        output = np.empty((self.n_elements, len(self.hypotheses)))
        for ih, hypothesis in enumerate(self.hypotheses):
            shuffled = shuffle.apply(self._nuisance_residuals[ih])
            output[:, ih] = _statistic(shuffled, self._terms, ih, hypothesis)
        return output


class VariableGLMTest:
    """GLM test whose design is rebuilt at every element.

    Used whenever element-wise design columns are given or the data contain
    non-finite values. At each element, subjects with a non-finite value in
    the data or in any element-wise column are excluded from the fit.

    Parameters
    ----------
    data : ndarray, shape (n_subjects, n_elements)
    design : ndarray, shape (n_subjects, n_design_columns)
    hypotheses : list[Hypothesis]
    extra_columns : ElementColumns, optional
        Appended after the design columns at each element.

    Raises
    ------
    DegenerateDesignError
        If any element retains no more subjects than there are factors.
    """

    def __init__(
        self,
        data: np.ndarray,
        design: np.ndarray,
        hypotheses: list[Hypothesis],
        extra_columns: ElementColumns | None = None,
    ):
        self.data = np.asarray(data, dtype=float)
        self.design = np.asarray(design, dtype=float)
        self.hypotheses = list(hypotheses)
        self.extra_columns = extra_columns if extra_columns is not None else ElementColumns()
        check_inputs(self.data, self.design, self.hypotheses, self.extra_columns)

        self._finite = np.isfinite(self.data)
        for column in self.extra_columns.columns:
            self._finite &= np.isfinite(column)

        retained = self._finite.sum(axis=0)
        degenerate = np.flatnonzero(retained <= self.n_factors)
        if degenerate.size:
            e = int(degenerate[0])
            raise DegenerateDesignError(e, int(retained[e]), self.n_factors)

        n_excluded = int((~self._finite).any(axis=0).sum())
        logger.info(
            "Variable GLM: %d factors (%d element-wise), %d/%d elements with excluded subjects",
            self.n_factors, len(self.extra_columns), n_excluded, self.n_elements,
        )

        # Without element-wise columns the design only depends on which
        # subjects are retained, so terms are shared between elements with
        # the same exclusion pattern. With them, terms are per element.
        # Either way they are only cached while memory allows.
        self._terms_cache: dict[bytes | int, _ModelTerms] = {}
        terms_bytes = 8 * self.n_subjects ** 2 * (len(self.hypotheses) + 1)
        if len(self.extra_columns):
            n_cached = self.n_elements
        else:
            n_cached = np.unique(self._finite, axis=1).shape[1]
        self._cache_enabled = n_cached * terms_bytes <= TERMS_CACHE_LIMIT_BYTES
        if not self._cache_enabled:
            logger.info("Design projections for %d element designs exceed the cache limit; "
                        "recomputing them for every shuffle", n_cached)

    @property
    def n_subjects(self) -> int:
        return self.data.shape[0]

    @property
    def n_elements(self) -> int:
        return self.data.shape[1]

    @property
    def n_factors(self) -> int:
        return self.design.shape[1] + len(self.extra_columns)

    def element_design(self, element: int) -> tuple[np.ndarray, np.ndarray]:
        """Design and retained-subject mask for one element."""
        keep = self._finite[:, element]
        if len(self.extra_columns):
            design = np.hstack([self.design, self.extra_columns.at(element)])
        else:
            design = self.design
        return design[keep], keep

    def _terms(self, element: int) -> tuple[_ModelTerms, np.ndarray]:
        design, keep = self.element_design(element)
        if not self._cache_enabled:
            key = None
        elif len(self.extra_columns):
            key = element
        else:
            key = keep.tobytes()

        terms = self._terms_cache.get(key) if key is not None else None
        if terms is None:
            terms = _ModelTerms.build(design, self.hypotheses)
            if key is not None:
                self._terms_cache[key] = terms
        if terms.dof <= 0:
            raise DegenerateDesignError(element, int(keep.sum()), self.n_factors)
        return terms, keep

    def __call__(self, shuffle: Shuffle) -> np.ndarray:
        """Statistics for one shuffle, shape (n_elements, n_hypotheses)."""
        output = np.empty((self.n_elements, len(self.hypotheses)))
        for ie in range(self.n_elements):
            terms, keep = self._terms(ie)
            y = self.data[keep, ie][:, np.newaxis]
            local = shuffle if keep.all() else shuffle.restrict(keep)
            for ih, hypothesis in enumerate(self.hypotheses):
                shuffled = local.apply(terms.residual_nuisance[ih] @ y)
                output[ie, ih] = _statistic(shuffled, terms, ih, hypothesis)[0]
        return output


def make_glm_test(
    data: np.ndarray,
    design: np.ndarray,
    hypotheses: list[Hypothesis],
    extra_columns: ElementColumns | None = None,
) -> FixedGLMTest | VariableGLMTest:
    """Select the GLM variant appropriate for the data."""
    if (extra_columns is not None and len(extra_columns)) or not np.all(np.isfinite(data)):
        return VariableGLMTest(data, design, hypotheses, extra_columns)
    return FixedGLMTest(data, design, hypotheses)


# -- One-shot statistics of the unshuffled data -----------------------------


def solve_betas(data: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Least-squares coefficients, shape (n_factors, n_elements)."""
    return linalg.pinv(design) @ data


def abs_effect_size(data: np.ndarray, design: np.ndarray, hypothesis: Hypothesis) -> np.ndarray:
    """Contrast of the fitted coefficients; NaN for F-tests."""
    if hypothesis.is_F:
        return np.full(data.shape[1], np.nan)
    return (hypothesis.matrix @ solve_betas(data, design))[0]


def stdev(data: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Residual standard deviation per element."""
    residuals = data - design @ solve_betas(data, design)
    dof = design.shape[0] - np.linalg.matrix_rank(design)
    return np.sqrt(np.sum(residuals ** 2, axis=0) / dof)


def std_effect_size(data: np.ndarray, design: np.ndarray, hypothesis: Hypothesis) -> np.ndarray:
    """Effect size standardised by the residual standard deviation."""
    abs_effect = abs_effect_size(data, design, hypothesis)
    sd = stdev(data, design)
    out = np.full_like(abs_effect, np.nan)
    np.divide(abs_effect, sd, out=out, where=sd > 0)
    return out


@dataclass
class AuxiliaryStats:
    """Descriptive GLM outputs computed once from the unshuffled data."""

    betas: np.ndarray  # (n_factors, n_elements)
    abs_effect: np.ndarray  # (n_elements, n_hypotheses)
    std_effect: np.ndarray  # (n_elements, n_hypotheses)
    stdev: np.ndarray  # (n_elements,)
    cond: np.ndarray  # (n_elements,)


def all_stats(
    data: np.ndarray,
    design: np.ndarray,
    hypotheses: list[Hypothesis],
    extra_columns: ElementColumns | None = None,
) -> AuxiliaryStats:
    """Betas, effect sizes, standard deviation and design conditioning."""
    data = np.asarray(data, dtype=float)
    design = np.asarray(design, dtype=float)
    n_elements = data.shape[1]
    n_hyp = len(hypotheses)

    if (extra_columns is None or not len(extra_columns)) and np.all(np.isfinite(data)):
        abs_effect = np.column_stack([abs_effect_size(data, design, h) for h in hypotheses])
        std_effect = np.column_stack([std_effect_size(data, design, h) for h in hypotheses])
        return AuxiliaryStats(
            betas=solve_betas(data, design),
            abs_effect=abs_effect,
            std_effect=std_effect,
            stdev=stdev(data, design),
            cond=np.full(n_elements, np.linalg.cond(design)),
        )

    glm = VariableGLMTest(data, design, hypotheses, extra_columns)
    betas = np.zeros((glm.n_factors, n_elements))
    abs_effect = np.zeros((n_elements, n_hyp))
    std_effect = np.zeros((n_elements, n_hyp))
    sd = np.zeros(n_elements)
    cond = np.zeros(n_elements)
    for ie in range(n_elements):
        element_design, keep = glm.element_design(ie)
        y = data[keep, ie][:, np.newaxis]
        betas[:, ie] = solve_betas(y, element_design)[:, 0]
        sd[ie] = stdev(y, element_design)[0]
        cond[ie] = np.linalg.cond(element_design)
        for ih, h in enumerate(hypotheses):
            abs_effect[ie, ih] = abs_effect_size(y, element_design, h)[0]
            std_effect[ie, ih] = std_effect_size(y, element_design, h)[0]
    return AuxiliaryStats(betas=betas, abs_effect=abs_effect, std_effect=std_effect, stdev=sd, cond=cond)
