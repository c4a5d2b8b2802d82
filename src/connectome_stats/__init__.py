"""Edge-wise connectome statistics using non-parametric permutation testing."""

__version__ = "0.1.0"
