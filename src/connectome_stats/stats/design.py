"""Design matrix, hypotheses and element-wise design columns.

A hypothesis is a contrast over the columns of the design matrix (followed by
any element-wise columns). A single contrast row is tested with a t-statistic;
a set of rows selected by an F-test matrix is tested jointly with an
F-statistic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from ..exceptions import ConfigurationError, ShapeMismatchError

logger = logging.getLogger(__name__)

# Above this condition number the design is reported as poorly conditioned
DESIGN_CONDITION_WARNING = 1.0e5


@dataclass(frozen=True, eq=False)
class Hypothesis:
    """A t-test (one contrast row) or F-test (several rows) over the factors."""

    matrix: np.ndarray  # (rank, n_factors)
    name: str
    is_F: bool = False

    def __post_init__(self):
        matrix = np.atleast_2d(np.asarray(self.matrix, dtype=float))
        object.__setattr__(self, "matrix", matrix)
        if not np.all(np.isfinite(matrix)):
            raise ConfigurationError(f"Hypothesis {self.name}: non-finite contrast values")
        if np.any(~matrix.any(axis=1)):
            raise ConfigurationError(f"Hypothesis {self.name}: contrast contains an all-zero row")
        if np.linalg.matrix_rank(matrix) != matrix.shape[0]:
            raise ConfigurationError(
                f"Hypothesis {self.name}: contrast matrix is rank deficient"
            )
        if not self.is_F and matrix.shape[0] != 1:
            raise ConfigurationError(
                f"Hypothesis {self.name}: a t-test takes exactly one contrast row"
            )

    @property
    def rank(self) -> int:
        return self.matrix.shape[0]

    @property
    def cols(self) -> int:
        return self.matrix.shape[1]


def load_hypotheses(
    contrast: np.ndarray,
    ftests: np.ndarray | None = None,
    fonly: bool = False,
) -> list[Hypothesis]:
    """Build the set of hypotheses from a contrast matrix.

    Parameters
    ----------
    contrast : ndarray, shape (n_contrasts, n_factors)
        One t-test per row.
    ftests : ndarray, shape (n_ftests, n_contrasts), optional
        Each row selects (with 1) the contrast rows combined into an F-test.
    fonly : bool
        Only test the F-tests, not the individual rows.

    Returns
    -------
    list[Hypothesis]
        t-tests named ``t1..tK`` followed by F-tests named ``F1..FM``.
    """
    contrast = np.atleast_2d(np.asarray(contrast, dtype=float))
    if fonly and ftests is None:
        raise ConfigurationError("F-only testing requested but no F-test matrix provided")

    hypotheses = []
    if not fonly:
        for i, row in enumerate(contrast, 1):
            hypotheses.append(Hypothesis(matrix=row[np.newaxis, :], name=f"t{i}"))

    if ftests is not None:
        ftests = np.atleast_2d(np.asarray(ftests))
        if ftests.shape[1] != contrast.shape[0]:
            raise ShapeMismatchError(
                f"F-test matrix has {ftests.shape[1]} columns but the contrast "
                f"matrix has {contrast.shape[0]} rows"
            )
        if not np.all(np.isin(ftests, (0, 1))):
            raise ConfigurationError("F-test matrix may only contain 0 and 1")
        for i, selection in enumerate(ftests.astype(bool), 1):
            if not selection.any():
                raise ConfigurationError(f"F-test {i} does not select any contrast row")
            hypotheses.append(Hypothesis(matrix=contrast[selection], name=f"F{i}", is_F=True))

    if not hypotheses:
        raise ConfigurationError("No hypotheses to test")
    return hypotheses


@dataclass
class ElementColumns:
    """Element-wise design matrix columns (one value per subject per element).

    Attributes
    ----------
    columns : list[ndarray]
        Each of shape (n_subjects, n_elements). Non-finite values mark the
        subject as unusable at that element.
    """

    columns: list[np.ndarray] = field(default_factory=list)

    def __post_init__(self):
        self.columns = [np.asarray(c, dtype=float) for c in self.columns]
        shapes = {c.shape for c in self.columns}
        if len(shapes) > 1:
            raise ShapeMismatchError(
                f"Element-wise columns have inconsistent shapes: {sorted(shapes)}"
            )
        self._stacked = np.stack(self.columns, axis=-1) if self.columns else None

    def __len__(self) -> int:
        return len(self.columns)

    @property
    def all_finite(self) -> bool:
        return all(np.all(np.isfinite(c)) for c in self.columns)

    def at(self, element: int) -> np.ndarray:
        """Design columns for one element, shape (n_subjects, n_columns)."""
        if self._stacked is None:
            raise IndexError("No element-wise columns")
        return self._stacked[:, element, :]


def check_design(design: np.ndarray, n_extra_columns: int = 0) -> float:
    """Check the design matrix and report its condition number.

    Returns
    -------
    cond : float
        Condition number of the fixed part of the design.
    """
    design = np.asarray(design, dtype=float)
    if design.ndim != 2:
        raise ShapeMismatchError(f"Design matrix must be 2-D, got shape {design.shape}")
    if not np.all(np.isfinite(design)):
        rows = np.unique(np.nonzero(~np.isfinite(design))[0])
        raise ConfigurationError(f"Design matrix contains non-finite values (rows {rows.tolist()})")

    n_factors = design.shape[1] + n_extra_columns
    if design.shape[0] <= n_factors:
        raise ShapeMismatchError(
            f"Design matrix has {design.shape[0]} rows, which is not more than "
            f"the number of factors ({n_factors})"
        )

    cond = float(np.linalg.cond(design)) if design.shape[1] else 1.0
    if cond > DESIGN_CONDITION_WARNING:
        logger.warning(
            "Design matrix conditioning is poor (condition number %.3g); "
            "model fitting may be highly influenced by noise", cond,
        )
    else:
        logger.debug("Design matrix condition number: %.3g", cond)
    return cond


def check_inputs(
    data: np.ndarray,
    design: np.ndarray,
    hypotheses: list[Hypothesis],
    extra_columns: ElementColumns | None = None,
) -> None:
    """Check that all inputs agree on subjects, elements and factors."""
    n_subjects = data.shape[0]
    if design.shape[0] != n_subjects:
        raise ShapeMismatchError(
            f"Number of subjects ({n_subjects}) does not match number of rows "
            f"in design matrix ({design.shape[0]})"
        )

    n_extra = len(extra_columns) if extra_columns is not None else 0
    for i, col in enumerate(extra_columns.columns if n_extra else [], 1):
        if col.shape != data.shape:
            raise ShapeMismatchError(
                f"Element-wise column {i} has shape {col.shape}; expected "
                f"{data.shape} (subjects x elements)"
            )

    n_factors = design.shape[1] + n_extra
    for hyp in hypotheses:
        if hyp.cols != n_factors:
            detail = f" (taking into account {n_extra} element-wise columns)" if n_extra else ""
            raise ShapeMismatchError(
                f"Hypothesis {hyp.name} has {hyp.cols} columns but the design has "
                f"{n_factors} factors{detail}"
            )
