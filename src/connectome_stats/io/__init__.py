"""I/O utilities for cohort inputs and statistical outputs."""

from .loader import (
    CohortImport,
    load_blocks,
    load_connectome,
    load_matrix,
    load_permutations,
    load_vector,
)
from .writers import OutputWriter

__all__ = [
    "CohortImport",
    "load_blocks",
    "load_connectome",
    "load_matrix",
    "load_permutations",
    "load_vector",
    "OutputWriter",
]
