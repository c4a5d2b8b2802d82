"""Custom exceptions for connectome-stats."""

from __future__ import annotations


class ConnectomeStatsError(Exception):
    """Base exception for connectome-stats."""
    pass


class ConfigurationError(ConnectomeStatsError, ValueError):
    """Invalid value in the study configuration."""
    pass


class MissingParameterError(ConnectomeStatsError, ValueError):
    """A parameter required by the selected algorithm was not provided."""
    pass


class ShapeMismatchError(ConnectomeStatsError, ValueError):
    """Input matrices disagree on the number of subjects, elements or factors."""
    pass


class ShuffleError(ConnectomeStatsError, RuntimeError):
    """Shuffles could not be generated for the requested configuration."""
    pass


class DegenerateDesignError(ConnectomeStatsError):
    """Too few usable subjects remain to fit the GLM at one element.

    Parameters
    ----------
    element : int or None
        Index of the element whose design could not be fitted; None when the
        shared design matrix itself is degenerate.
    n_rows : int
        Number of subjects with finite data at that element.
    n_factors : int
        Number of columns in the element-wise design matrix.
    """

    def __init__(self, element: int | None, n_rows: int, n_factors: int):
        self.element = element
        self.n_rows = n_rows
        self.n_factors = n_factors
        where = f"Element {element}" if element is not None else "Design matrix"
        super().__init__(
            f"{where}: only {n_rows} subjects with finite data remain "
            f"for a design with {n_factors} factors; "
            f"cannot estimate residual variance"
        )
