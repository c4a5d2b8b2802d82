"""Family-wise error corrected and uncorrected p-values."""

from __future__ import annotations

import numpy as np


def fwe_pvalue(null_distribution: np.ndarray, enhanced: np.ndarray) -> np.ndarray:
    """FWE-corrected p-values from a maximum-statistic null distribution.

    Parameters
    ----------
    null_distribution : ndarray, shape (n_shuffles, n_columns)
        Maximum enhanced statistic per shuffle. One column per hypothesis, or
        a single column shared by all hypotheses (strong FWE control). The
        unshuffled data are expected to be row 0.
    enhanced : ndarray, shape (n_elements, n_hypotheses)
        Observed enhanced statistic.

    Returns
    -------
    p : ndarray, shape (n_elements, n_hypotheses)
        Fraction of the null distribution at or above each observed value.
    """
    null_distribution = np.asarray(null_distribution, dtype=float)
    if null_distribution.ndim == 1:
        null_distribution = null_distribution[:, np.newaxis]
    enhanced = np.asarray(enhanced, dtype=float)
    n_shuffles, n_columns = null_distribution.shape
    if n_columns not in (1, enhanced.shape[1]):
        raise ValueError(
            f"Null distribution has {n_columns} columns; expected 1 or {enhanced.shape[1]}"
        )

    p = np.empty_like(enhanced)
    for ih in range(enhanced.shape[1]):
        null = np.sort(null_distribution[:, 0 if n_columns == 1 else ih])
        n_at_or_above = n_shuffles - np.searchsorted(null, enhanced[:, ih], side="left")
        p[:, ih] = n_at_or_above / n_shuffles
    return p


def uncorrected_pvalue(exceedances: np.ndarray, n_shuffles: int) -> np.ndarray:
    """Element-wise p-values from counts of shuffled statistics >= observed."""
    return np.asarray(exceedances, dtype=float) / n_shuffles
